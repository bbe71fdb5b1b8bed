import aiohttp
import asyncio
import logging
import random
import re
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Tuple

from lockminer.domain.exceptions import MinerException
from lockminer.domain.models import Credential
from lockminer.infrastructure.rate_limit import CORE, SEARCH, RateLimitGuard

logger = logging.getLogger(__name__)

API_URL = "https://api.github.com"
DIFF_MEDIA_TYPE = "application/vnd.github.v3.diff"

# The REST API never returns more than 100 items per page.
MAX_PAGE_SIZE = 100
REQUEST_TIMEOUT = aiohttp.ClientTimeout(total=120, connect=60, sock_read=60)
MAX_RETRIES = 5
# Statuses GitHub uses when a diff cannot be produced (missing, too large, unprocessable)
NO_DIFF_STATUSES = frozenset({404, 406, 422})

_NEXT_LINK_RE = re.compile(r'<([^>]+)>;\s*rel="next"')
_LAST_PAGE_RE = re.compile(r'<[^>]*[?&]page=(\d+)[^>]*>;\s*rel="last"')


class GitHubRequestError(MinerException, aiohttp.ClientError):
    """
    Raised when a GitHub request still fails after all retries.
    It is also an aiohttp.ClientError, so callers that recover from I/O errors recover from it too.
    """
    def __init__(self, url: str, status: Optional[int] = None):
        self.url = url
        self.status = status
        super().__init__(f"Request to {url} failed (status: {status}).")


class GitHubRestClient:
    """
    Client for the GitHub REST API bound to a single credential.
    Every request passes through the rate-limit guard first and feeds the
    response's quota headers back into the credential.
    """

    def __init__(self, credential: Credential, guard: RateLimitGuard, api_url: str = API_URL):
        self.credential = credential
        self.guard = guard
        self.api_url = api_url.rstrip("/")
        self.headers = {
            "Authorization": f"Bearer {credential.token}",
            "Accept": "application/vnd.github+json",
            "User-Agent": "lockminer",
            "X-GitHub-Api-Version": "2022-11-28",
        }

    async def search_repositories(
        self,
        session: aiohttp.ClientSession,
        query: str,
        page: int = 1,
        per_page: int = MAX_PAGE_SIZE,
    ) -> Tuple[List[Dict[str, Any]], bool]:
        """
        Fetches one page of repository search results, sorted by stars, descending.

        Returns:
            Tuple of (items, has_next_page).
        """
        params = {"q": query, "sort": "stars", "order": "desc", "per_page": per_page, "page": page}
        data, headers = await self._request(session, "/search/repositories", params, resource=SEARCH)
        return data.get("items", []), _next_link(headers) is not None

    async def count_commits(self, session: aiohttp.ClientSession, full_name: str) -> int:
        return await self._count(session, f"/repos/{full_name}/commits")

    async def count_contributors(self, session: aiohttp.ClientSession, full_name: str) -> int:
        return await self._count(session, f"/repos/{full_name}/contributors")

    async def latest_commit_date(self, session: aiohttp.ClientSession, full_name: str) -> Optional[datetime]:
        """Committer date of the newest commit on the default branch, or None for an empty repository."""
        data, _ = await self._request(session, f"/repos/{full_name}/commits", {"per_page": 1})
        if not data:
            return None
        raw_date = data[0].get("commit", {}).get("committer", {}).get("date")
        if not raw_date:
            return None
        return datetime.fromisoformat(raw_date.replace("Z", "+00:00"))

    async def get_tree(
        self,
        session: aiohttp.ClientSession,
        full_name: str,
        branch: str,
        recursive: bool = False,
    ) -> List[str]:
        """Returns the paths in the tree of the given branch."""
        params = {"recursive": "1"} if recursive else None
        data, _ = await self._request(session, f"/repos/{full_name}/git/trees/{branch}", params)
        if data.get("truncated"):
            logger.warning(f"Tree for {full_name}@{branch} was truncated by GitHub.")
        return [entry["path"] for entry in data.get("tree", []) if "path" in entry]

    async def list_pull_requests(
        self,
        session: aiohttp.ClientSession,
        full_name: str,
        page: int = 1,
        per_page: int = MAX_PAGE_SIZE,
    ) -> Tuple[List[Dict[str, Any]], bool]:
        """
        Fetches one page of pull requests in any state, newest first.

        Returns:
            Tuple of (items, has_next_page).
        """
        params = {
            "state": "all",
            "sort": "created",
            "direction": "desc",
            "per_page": per_page,
            "page": page,
        }
        data, headers = await self._request(session, f"/repos/{full_name}/pulls", params)
        return data, _next_link(headers) is not None

    async def get_pull_request_diff(
        self,
        session: aiohttp.ClientSession,
        full_name: str,
        number: int,
    ) -> Optional[str]:
        """Returns the unified diff of a pull request, or None if GitHub cannot produce one."""
        data, _ = await self._request(
            session,
            f"/repos/{full_name}/pulls/{number}",
            accept=DIFF_MEDIA_TYPE,
            allow_statuses=NO_DIFF_STATUSES,
        )
        return data

    async def _count(self, session: aiohttp.ClientSession, path: str) -> int:
        # With one item per page, the number of the last page is the item count.
        data, headers = await self._request(session, path, {"per_page": 1})
        last_page = _last_page(headers)
        if last_page is not None:
            return last_page
        return len(data or [])

    async def _request(
        self,
        session: aiohttp.ClientSession,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        resource: str = CORE,
        accept: Optional[str] = None,
        allow_statuses: frozenset = frozenset(),
    ) -> Tuple[Any, Mapping[str, str]]:
        """
        Performs a GET request, retrying on abuse limits, server errors and timeouts.

        Returns:
            Tuple of (parsed body, response headers). The body is text when a custom
            media type is requested, None when the status is in `allow_statuses`.
        """
        url = f"{self.api_url}{path}"
        headers = dict(self.headers)
        if accept:
            headers["Accept"] = accept
        last_status = None

        for attempt in range(MAX_RETRIES):
            await self.guard.before_call(self.credential, resource)
            try:
                async with session.get(url, params=params, headers=headers, timeout=REQUEST_TIMEOUT) as response:
                    self.guard.observe(self.credential, resource, response.headers)
                    last_status = response.status

                    if response.status in (403, 429):
                        if response.headers.get("X-RateLimit-Remaining") == "0":
                            # Primary quota exhausted; the guard waits for the reset on the next attempt.
                            logger.warning(f"Primary rate limit hit on {path} ({resource}).")
                            continue
                        body = await response.text()
                        if _is_abuse_limit(response.headers, body):
                            await self.guard.on_abuse(self.credential, _parse_float(response.headers.get("Retry-After")))
                            continue

                    if response.status in allow_statuses:
                        return None, response.headers

                    if response.status >= 500:
                        sleep_time = (2 ** attempt) + random.uniform(0, 2)
                        logger.warning(
                            f"Server error ({response.status}) on {path}, "
                            f"retrying in {sleep_time:.1f}s (attempt {attempt + 1}/{MAX_RETRIES})..."
                        )
                        await asyncio.sleep(sleep_time)
                        continue

                    response.raise_for_status()
                    if accept:
                        return await response.text(), response.headers
                    return await response.json(), response.headers

            except (aiohttp.ClientConnectionError, aiohttp.ClientPayloadError, asyncio.TimeoutError) as e:
                sleep_time = (2 ** attempt) + random.uniform(0, 2)
                logger.warning(
                    f"Request to {path} failed (attempt {attempt + 1}/{MAX_RETRIES}): {e!r}. "
                    f"Retrying in {sleep_time:.1f}s..."
                )
                await asyncio.sleep(sleep_time)

        raise GitHubRequestError(url, last_status)


def _is_abuse_limit(headers: Mapping[str, str], body: str) -> bool:
    if "Retry-After" in headers:
        return True
    body = body.lower()
    return "secondary rate limit" in body or "abuse" in body


def _next_link(headers: Mapping[str, str]) -> Optional[str]:
    match = _NEXT_LINK_RE.search(headers.get("Link", ""))
    return match.group(1) if match else None


def _last_page(headers: Mapping[str, str]) -> Optional[int]:
    match = _LAST_PAGE_RE.search(headers.get("Link", ""))
    return int(match.group(1)) if match else None


def _parse_float(value: Optional[str]) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None
