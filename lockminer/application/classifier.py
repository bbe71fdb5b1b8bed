import logging
from typing import Iterable, Optional, Sequence, Set

import aiohttp

from lockminer.domain.lockfiles import DEFAULT_ECOSYSTEMS, Ecosystem, select_ecosystems
from lockminer.domain.models import ProjectInfo, ProjectType, Repository
from lockminer.infrastructure.github_client import GitHubRestClient

logger = logging.getLogger(__name__)


class LockfileClassifier:
    """
    Identifies a repository's package ecosystem and the lockfiles committed for it
    from the paths in its default branch.
    """

    def __init__(self, ecosystems: Iterable[str] = DEFAULT_ECOSYSTEMS, recursive_tree: bool = False):
        self.ecosystems: Sequence[Ecosystem] = select_ecosystems(ecosystems)
        self.recursive_tree = recursive_tree

    async def classify(
        self,
        session: aiohttp.ClientSession,
        client: GitHubRestClient,
        repository: Repository,
    ) -> Optional[ProjectInfo]:
        paths = await client.get_tree(
            session, repository.full_name, repository.default_branch, recursive=self.recursive_tree
        )
        return self.classify_tree(repository, paths)

    def classify_tree(self, repository: Repository, paths: Iterable[str]) -> Optional[ProjectInfo]:
        """
        Classifies a repository from its file paths in a single pass.

        Returns:
            Optional[ProjectInfo]: The first enabled ecosystem whose manifest is present,
            with every detected lockfile kind in table order, or None if no manifest was found.
        """
        manifests: Set[str] = set()
        lockfiles: Set[ProjectType] = set()
        for path in paths:
            self._scan_path(path, manifests, lockfiles)

        for ecosystem in self.ecosystems:
            if ecosystem.name not in manifests:
                continue
            kinds = tuple(dict.fromkeys(rule.kind for rule in ecosystem.lockfiles if rule.kind in lockfiles))
            if kinds:
                logger.debug(f"{repository.full_name}: {ecosystem.name} with {', '.join(k.value for k in kinds)}")
                return ProjectInfo(repository=repository, project_types=kinds, lockfile_exists=True)
            logger.debug(f"{repository.full_name}: {ecosystem.name} without lockfile")
            return ProjectInfo(repository=repository, project_types=(ecosystem.no_lockfile,), lockfile_exists=False)

        logger.debug(f"{repository.full_name}: no known ecosystem")
        return None

    def _scan_path(self, path: str, manifests: Set[str], lockfiles: Set[ProjectType]) -> None:
        # Lockfiles first: "Gemfile.lock" also contains "Gemfile".
        for ecosystem in self.ecosystems:
            for rule in ecosystem.lockfiles:
                if rule.filename in path:
                    lockfiles.add(rule.kind)
                    return
        for ecosystem in self.ecosystems:
            if any(manifest in path for manifest in ecosystem.manifests):
                manifests.add(ecosystem.name)
                return
