import json
from datetime import date, datetime
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Tuple
from pydantic import BaseModel, Field, ConfigDict


class ProjectType(str, Enum):
    """
    Classification tags stored in the checkpoint file.
    Upper-case members name a concrete lockfile kind, lower-case values mark
    an ecosystem whose manifest was found without any lockfile.
    """
    NPM = "NPM"
    YARN = "YARN"
    NPMSHRINK = "NPMSHRINK"
    PNPM = "PNPM"
    BUN = "BUN"
    GRADLE = "GRADLE"
    PIP = "PIP"
    RUBYGEMS = "RUBYGEMS"
    HELM = "HELM"
    COMPOSER = "COMPOSER"
    NUGET = "NUGET"
    BOWER = "BOWER"
    CARGO = "CARGO"

    NPM_NO_LOCKFILE = "npm"
    GRADLE_NO_LOCKFILE = "gradle"
    PIPENV_NO_LOCKFILE = "pipenv"
    RUBYGEMS_NO_LOCKFILE = "rubygems"
    HELM_NO_LOCKFILE = "helm"
    COMPOSER_NO_LOCKFILE = "composer"
    NUGET_NO_LOCKFILE = "nuget"
    BOWER_NO_LOCKFILE = "bower"
    CARGO_NO_LOCKFILE = "cargo"

    @property
    def is_lockfile(self) -> bool:
        return self.value.isupper()


class Repository(BaseModel):
    """
    Read-only view of a GitHub repository as returned by the search endpoint.
    """
    model_config = ConfigDict(frozen=True)

    full_name: str = Field(..., description="owner/name, globally unique")
    url: str = Field(..., description="API URL of the repository")
    html_url: str = Field("", description="Browser URL of the repository")
    created_at: datetime = Field(..., description="Creation timestamp")
    stars: int = Field(0, ge=0, description="Total number of stargazers")
    default_branch: str = Field("main", description="Name of the default branch")


class ProjectInfo(BaseModel):
    """
    Result of classifying a repository's file tree.
    """
    model_config = ConfigDict(frozen=True)

    repository: Repository
    project_types: Tuple[ProjectType, ...] = Field(..., min_length=1)
    lockfile_exists: bool


class CheckpointRecord(BaseModel):
    """
    Persisted progress for a single repository.
    """
    model_config = ConfigDict(populate_by_name=True)

    url: str
    last_checked_at: Optional[datetime] = Field(None, alias="lastCheckedAt")
    project_type: List[ProjectType] = Field(default_factory=list, alias="projectType")
    lockfile_exists: bool = Field(False, alias="lockfileExists")


class PullRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    number: int
    repository: str
    url: str
    html_url: str
    created_at: datetime


class BreakingUpdate(BaseModel):
    """
    A pull request whose change is confined to a lockfile.
    """
    model_config = ConfigDict(frozen=True)

    url: str
    repository: str
    number: int
    created_at: datetime
    project_types: Tuple[ProjectType, ...] = ()
    diff: str


class RateLimitWindow(BaseModel):
    """
    Last observed quota for one credential and one resource class.
    `remaining` is None until the first response has been seen.
    """
    limit: int = 5000
    remaining: Optional[int] = None
    reset_at: float = 0.0


class Credential(BaseModel):
    """
    An API token and the quota windows observed for it, one per resource class.
    """
    token: str = Field(..., min_length=1)
    windows: Dict[str, RateLimitWindow] = Field(default_factory=dict)

    def window(self, resource: str) -> RateLimitWindow:
        return self.windows.setdefault(resource, RateLimitWindow())

    @property
    def masked(self) -> str:
        return f"...{self.token[-4:]}"


class SearchConfig(BaseModel):
    """
    Immutable settings for repository discovery.
    """
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    min_number_of_stars: int = Field(..., ge=0, alias="minNumberOfStars")
    earliest_creation_date: date = Field(..., alias="earliestCreationDate")
    min_number_of_commits: int = Field(..., ge=0, alias="minNumberOfCommits")
    min_number_of_contributors: int = Field(..., ge=0, alias="minNumberOfContributors")
    language: str = "JavaScript"
    ecosystems: Tuple[str, ...] = ("npm",)

    @classmethod
    def from_json(cls, json_file: Path) -> "SearchConfig":
        with open(json_file, "r", encoding="utf-8") as f:
            return cls.model_validate(json.load(f))
