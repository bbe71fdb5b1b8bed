import logging
import re
from datetime import datetime
from typing import Callable, Iterable, Optional, Sequence

import aiohttp

from lockminer.domain.lockfiles import LockfileRule, rules_for
from lockminer.domain.models import ProjectType, PullRequest
from lockminer.infrastructure.github_client import GitHubRestClient
from lockminer.infrastructure.response_cache import DiffCache

logger = logging.getLogger(__name__)

_DIFF_GIT_RE = re.compile(r"^diff --git a/(.+?) b/(.+)$", re.MULTILINE)
_NEW_FILE_RE = re.compile(r"^\+{3} (?:b/)?(.+)$", re.MULTILINE)
# Binary lockfiles such as bun.lockb carry no "+++" header, only this marker line
_BINARY_RE = re.compile(r"^Binary files .+ and (?:b/)?(.+) differ$", re.MULTILINE)


def created_before(cutoff: datetime) -> Callable[[PullRequest], bool]:
    """Predicate that is true for pull requests created before `cutoff`."""
    return lambda pr: pr.created_at < cutoff


def touched_paths(diff: str) -> Sequence[str]:
    paths = [new for _, new in _DIFF_GIT_RE.findall(diff)]
    if paths:
        return paths
    return [path for path in _NEW_FILE_RE.findall(diff) if path != "/dev/null"]


def changes_only_lockfile(diff: str, rules: Sequence[LockfileRule]) -> bool:
    """
    True if the diff adds lines to one of the given lockfiles, or changes a binary
    one, and touches nothing else.
    """
    if not _changes_lockfile(diff, rules):
        return False
    paths = touched_paths(diff)
    return bool(paths) and all(any(rule.names_file(path) for rule in rules) for path in paths)


def _changes_lockfile(diff: str, rules: Sequence[LockfileRule]) -> bool:
    if any(rule.diff_pattern.search(diff) for rule in rules):
        return True
    return any(rule.names_file(path) for path in _BINARY_RE.findall(diff) for rule in rules)


class LockfileChangeFilter:
    """
    Keeps pull requests whose diff is confined to a lockfile. Diffs are read
    through the cache; a rejected pull request is evicted since it will not
    be looked at again.
    """

    def __init__(self, cache: Optional[DiffCache] = None):
        self.cache = cache if cache is not None else DiffCache()

    async def matching_diff(
        self,
        session: aiohttp.ClientSession,
        client: GitHubRestClient,
        pr: PullRequest,
        kinds: Iterable[ProjectType] = (),
    ) -> Optional[str]:
        """
        Returns the pull request's diff if it changes only a lockfile of the given kinds, else None.
        """
        diff = await self.cache.get_or_fetch(
            pr.id, lambda: client.get_pull_request_diff(session, pr.repository, pr.number)
        )
        if diff and changes_only_lockfile(diff, rules_for(kinds)):
            return diff
        self.cache.remove(pr.id)
        return None
