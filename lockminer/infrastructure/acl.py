from datetime import datetime
from typing import Any, Dict
from lockminer.domain.models import PullRequest, Repository

class GitHubTranslator:
    """
    Anti-corruption layer that translates raw GitHub REST JSON payloads into domain models.
    """

    @staticmethod
    def to_repository(raw_item: Dict[str, Any]) -> Repository:
        """
        Transforms a repository item from the search endpoint into a Repository.

        Args:
            raw_item (Dict[str, Any]): One element of the search response's `items`.

        Returns:
            Repository: The domain model instance representing the repository.
        """
        full_name = raw_item.get('full_name')
        if not full_name:
            raise ValueError("full_name is required to build Repository.")

        return Repository(
            full_name=full_name,
            url=raw_item.get('url') or f"https://api.github.com/repos/{full_name}",
            html_url=raw_item.get('html_url', ''),
            created_at=_parse_timestamp(raw_item.get('created_at'), 'created_at'),
            stars=raw_item.get('stargazers_count', 0),
            default_branch=raw_item.get('default_branch') or 'main',
        )

    @staticmethod
    def to_pull_request(raw_item: Dict[str, Any], full_name: str) -> PullRequest:
        """
        Transforms a pull request item from the pulls listing into a PullRequest.

        Args:
            raw_item (Dict[str, Any]): One element of the pulls listing.
            full_name (str): The repository the listing was requested for.

        Returns:
            PullRequest: The domain model instance representing the pull request.
        """
        return PullRequest(
            id=raw_item['id'],
            number=raw_item['number'],
            repository=full_name,
            url=raw_item.get('url', ''),
            html_url=raw_item.get('html_url', ''),
            created_at=_parse_timestamp(raw_item.get('created_at'), 'created_at'),
        )


def _parse_timestamp(raw_date: str, field: str) -> datetime:
    if not raw_date:
        raise ValueError(f"{field} is required.")
    return datetime.fromisoformat(raw_date.replace("Z", "+00:00"))
