import re
from dataclasses import dataclass
from typing import Dict, Iterable, Pattern, Tuple

from lockminer.domain.models import ProjectType


@dataclass(frozen=True)
class LockfileRule:
    """A lockfile name and the kind it signals."""
    filename: str
    kind: ProjectType

    def names_file(self, path: str) -> bool:
        return path.rsplit("/", 1)[-1] == self.filename

    @property
    def diff_pattern(self) -> Pattern[str]:
        # Added-file header of a unified diff, e.g. "+++ b/web/package-lock.json"
        return _diff_pattern(self.filename)


@dataclass(frozen=True)
class Ecosystem:
    """
    One row of the classification table. A repository belongs to the ecosystem
    when any manifest is present; every matching lockfile rule adds its kind.
    """
    name: str
    manifests: Tuple[str, ...]
    lockfiles: Tuple[LockfileRule, ...]
    no_lockfile: ProjectType


ECOSYSTEMS: Tuple[Ecosystem, ...] = (
    Ecosystem(
        name="gradle",
        manifests=("build.gradle",),
        lockfiles=(LockfileRule("gradle.lockfile", ProjectType.GRADLE),),
        no_lockfile=ProjectType.GRADLE_NO_LOCKFILE,
    ),
    Ecosystem(
        name="npm",
        manifests=("package.json",),
        lockfiles=(
            LockfileRule("npm-shrinkwrap.json", ProjectType.NPMSHRINK),
            LockfileRule("yarn.lock", ProjectType.YARN),
            LockfileRule("pnpm-lock.yaml", ProjectType.PNPM),
            LockfileRule("package-lock.json", ProjectType.NPM),
            LockfileRule("bun.lockb", ProjectType.BUN),
            LockfileRule("bun.lock", ProjectType.BUN),
        ),
        no_lockfile=ProjectType.NPM_NO_LOCKFILE,
    ),
    Ecosystem(
        name="pipenv",
        manifests=("Pipfile",),
        lockfiles=(LockfileRule("Pipfile.lock", ProjectType.PIP),),
        no_lockfile=ProjectType.PIPENV_NO_LOCKFILE,
    ),
    Ecosystem(
        name="rubygems",
        manifests=("Gemfile",),
        lockfiles=(LockfileRule("Gemfile.lock", ProjectType.RUBYGEMS),),
        no_lockfile=ProjectType.RUBYGEMS_NO_LOCKFILE,
    ),
    Ecosystem(
        name="helm",
        manifests=("Chart.yaml",),
        lockfiles=(LockfileRule("Chart.lock", ProjectType.HELM),),
        no_lockfile=ProjectType.HELM_NO_LOCKFILE,
    ),
    Ecosystem(
        name="composer",
        manifests=("composer.json",),
        lockfiles=(LockfileRule("composer.lock", ProjectType.COMPOSER),),
        no_lockfile=ProjectType.COMPOSER_NO_LOCKFILE,
    ),
    Ecosystem(
        name="nuget",
        manifests=("packages.config",),
        lockfiles=(LockfileRule("packages.lock.json", ProjectType.NUGET),),
        no_lockfile=ProjectType.NUGET_NO_LOCKFILE,
    ),
    Ecosystem(
        name="bower",
        manifests=("bower.json",),
        lockfiles=(LockfileRule("bower.lock", ProjectType.BOWER),),
        no_lockfile=ProjectType.BOWER_NO_LOCKFILE,
    ),
    Ecosystem(
        name="cargo",
        manifests=("Cargo.toml",),
        lockfiles=(LockfileRule("Cargo.lock", ProjectType.CARGO),),
        no_lockfile=ProjectType.CARGO_NO_LOCKFILE,
    ),
)

ECOSYSTEMS_BY_NAME: Dict[str, Ecosystem] = {e.name: e for e in ECOSYSTEMS}

DEFAULT_ECOSYSTEMS: Tuple[str, ...] = ("npm",)

LOCKFILE_RULES: Tuple[LockfileRule, ...] = tuple(rule for e in ECOSYSTEMS for rule in e.lockfiles)


def select_ecosystems(names: Iterable[str]) -> Tuple[Ecosystem, ...]:
    """
    Returns the enabled ecosystems in table order.

    Raises:
        ValueError: If a name is not in the table.
    """
    wanted = set(names)
    unknown = wanted - ECOSYSTEMS_BY_NAME.keys()
    if unknown:
        raise ValueError(f"Unknown ecosystems: {', '.join(sorted(unknown))}")
    return tuple(e for e in ECOSYSTEMS if e.name in wanted)


def rules_for(kinds: Iterable[ProjectType]) -> Tuple[LockfileRule, ...]:
    """
    Lockfile rules for the given kinds. A repository tagged only as having no
    lockfile gets the rules of its own ecosystem; with no tags at all, every rule applies.
    """
    kinds = set(kinds)
    wanted = {k for k in kinds if k.is_lockfile}
    if wanted:
        return tuple(rule for rule in LOCKFILE_RULES if rule.kind in wanted)
    ecosystem_rules = tuple(rule for e in ECOSYSTEMS if e.no_lockfile in kinds for rule in e.lockfiles)
    return ecosystem_rules or LOCKFILE_RULES


_PATTERN_CACHE: Dict[str, Pattern[str]] = {}


def _diff_pattern(filename: str) -> Pattern[str]:
    pattern = _PATTERN_CACHE.get(filename)
    if pattern is None:
        pattern = re.compile(r"^\+{3} (?:b/)?(?:.*/)?" + re.escape(filename) + r"$", re.MULTILINE)
        _PATTERN_CACHE[filename] = pattern
    return pattern
