import asyncio
import logging
from datetime import datetime, timezone
from typing import List, Optional, Protocol, Sequence

import aiohttp

from lockminer.application.pull_request_filters import LockfileChangeFilter, created_before
from lockminer.domain.models import BreakingUpdate, ProjectType
from lockminer.infrastructure.acl import GitHubTranslator
from lockminer.infrastructure.checkpoint_store import CheckpointStore
from lockminer.infrastructure.credentials import CredentialQueue
from lockminer.infrastructure.github_client import GitHubRestClient

logger = logging.getLogger(__name__)

FAILURE_COOLDOWN = 60.0
EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class BreakingUpdateSink(Protocol):
    async def write(self, update: BreakingUpdate) -> object: ...


class MiningScheduler:
    """
    Scans the pull requests of every repository in the checkpoint store for
    lockfile-only changes.

    One worker runs per API token and keeps that token for its whole life, so no
    token ever serves two repositories at once. This keeps each token's observed
    quota accurate and follows GitHub's guidance on secondary rate limits.
    """

    def __init__(
            self,
            credentials: CredentialQueue,
            store: CheckpointStore,
            sink: BreakingUpdateSink,
            diff_filter: Optional[LockfileChangeFilter] = None,
            failure_cooldown: float = FAILURE_COOLDOWN,
            retry_budget: int = 0,
    ):
        if retry_budget < 0:
            raise ValueError("retry_budget must not be negative")
        self.credentials = credentials
        self.store = store
        self.sink = sink
        self.diff_filter = diff_filter or LockfileChangeFilter()
        self.failure_cooldown = failure_cooldown
        self.retry_budget = retry_budget

    async def mine(self, session: aiohttp.ClientSession) -> None:
        """Mines never-checked repositories first, then the ones checked in earlier runs."""
        unchecked, checked = self.store.partition()
        logger.info(f"Mining {len(unchecked)} unchecked and {len(checked)} previously checked repositories.")
        await self.mine_group(session, unchecked)
        await self.mine_group(session, checked)

    async def mine_group(self, session: aiohttp.ClientSession, repos: Sequence[str]) -> None:
        if not repos:
            return
        queue: asyncio.Queue[str] = asyncio.Queue()
        for repo in repos:
            queue.put_nowait(repo)

        workers = [
            self._worker(session, queue, self.credentials.acquire())
            for _ in range(min(len(self.credentials), len(repos)))
        ]
        await asyncio.gather(*workers)

    async def _worker(self, session: aiohttp.ClientSession, queue: "asyncio.Queue[str]", client: GitHubRestClient) -> None:
        while True:
            try:
                repo = queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            await self.mine_repository(session, client, repo)

    async def mine_repository(self, session: aiohttp.ClientSession, client: GitHubRestClient, full_name: str) -> int:
        """
        Scans one repository and advances its checkpoint, even if the scan failed.
        A failed scan is retried up to `retry_budget` times, each after the cooldown.

        Returns:
            int: Number of breaking updates found.
        """
        started = datetime.now(timezone.utc)
        record = self.store.get(full_name)
        cutoff = _as_utc(record.last_checked_at) if record.last_checked_at else EPOCH
        found = 0

        for attempt in range(self.retry_budget + 1):
            try:
                found = await self.scan_pull_requests(session, client, full_name, cutoff, record.project_type)
                break
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                logger.error(f"Got I/O error while mining {full_name} (attempt {attempt + 1}/{self.retry_budget + 1}): {e!r}")
                logger.info(f"Sleeping for {self.failure_cooldown:.0f} seconds")
                await asyncio.sleep(self.failure_cooldown)

        await self.store.mark_checked(full_name, started)
        return found

    async def scan_pull_requests(
        self,
        session: aiohttp.ClientSession,
        client: GitHubRestClient,
        full_name: str,
        cutoff: datetime,
        kinds: List[ProjectType],
    ) -> int:
        """
        Walks the pull requests newest-first and stops at the first page whose
        oldest entry predates `cutoff`.
        """
        logger.info(f"Checking {full_name}")
        is_old = created_before(cutoff)
        found = 0
        page = 1

        while True:
            items, has_next_page = await client.list_pull_requests(session, full_name, page)
            if not items:
                break
            pull_requests = [GitHubTranslator.to_pull_request(item, full_name) for item in items]

            for pr in pull_requests:
                if is_old(pr):
                    break
                diff = await self.diff_filter.matching_diff(session, client, pr, kinds)
                if diff is None:
                    continue
                await self.sink.write(BreakingUpdate(
                    url=pr.html_url or pr.url,
                    repository=full_name,
                    number=pr.number,
                    created_at=pr.created_at,
                    project_types=tuple(kinds),
                    diff=diff,
                ))
                found += 1

            if is_old(pull_requests[-1]):
                logger.info(f"Checked all PRs for {full_name} created after {cutoff}")
                break
            if not has_next_page:
                break
            page += 1

        return found


def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
