import asyncio
import logging
from datetime import date, timedelta
from typing import List, Optional

import aiohttp

from lockminer.application.classifier import LockfileClassifier
from lockminer.application.repository_filters import passes_filters
from lockminer.domain.models import ProjectInfo, Repository, SearchConfig
from lockminer.infrastructure.acl import GitHubTranslator
from lockminer.infrastructure.checkpoint_store import CheckpointStore
from lockminer.infrastructure.credentials import CredentialQueue
from lockminer.infrastructure.github_client import MAX_PAGE_SIZE, GitHubRestClient
from lockminer.infrastructure.rate_limit import CORE
from lockminer.infrastructure.storage import DiscoveryLog

logger = logging.getLogger(__name__)

# GitHub search returns at most 1,000 results per query
MAX_SEARCH_RESULTS = 1_000
# The search quota is far tighter than the core one; reactive throttling alone still trips abuse detection.
DAY_DELAY = 60.0
PAGE_DELAY = 1.0
CANDIDATE_TIMEOUT = 30.0
MAX_DAY_ATTEMPTS = 3


class RepositoryDiscoveryService:
    """
    Finds repositories to mine by searching one creation day at a time,
    walking backwards from the start date to the configured earliest date.

    Because a single search query is capped at 1,000 results, partitioning by
    creation day keeps every query under the cap for realistic star thresholds.
    """

    def __init__(
            self,
            credentials: CredentialQueue,
            store: CheckpointStore,
            config: SearchConfig,
            classifier: Optional[LockfileClassifier] = None,
            discovery_log: Optional[DiscoveryLog] = None,
            candidate_timeout: float = CANDIDATE_TIMEOUT,
            day_delay: float = DAY_DELAY,
            page_delay: float = PAGE_DELAY,
    ):
        self.credentials = credentials
        self.store = store
        self.config = config
        self.classifier = classifier or LockfileClassifier(config.ecosystems)
        self.discovery_log = discovery_log
        self.candidate_timeout = candidate_timeout
        self.day_delay = day_delay
        self.page_delay = page_delay
        self.skipped_days: List[date] = []

    def build_search_query(self, creation_date: date) -> str:
        return (
            f"language:{self.config.language} fork:false "
            f"stars:>={self.config.min_number_of_stars} created:{creation_date.isoformat()}"
        )

    async def discover(self, session: aiohttp.ClientSession, last_date: Optional[date] = None) -> int:
        """
        Scans every creation day from `last_date` (default: today) back to the
        earliest creation date, persisting the store after each day.

        Returns:
            int: Number of repositories added to the store.
        """
        logger.info("Finding valid repositories")
        previous_size = len(self.store)
        creation_date = last_date or date.today()

        while creation_date > self.config.earliest_creation_date:
            await self._scan_day_with_retries(session, creation_date)
            creation_date -= timedelta(days=1)
            await self.store.flush()
            await asyncio.sleep(self.day_delay)

        if self.skipped_days:
            logger.error(f"Search failed for {len(self.skipped_days)} day(s): {', '.join(d.isoformat() for d in self.skipped_days)}")
        added = len(self.store) - previous_size
        logger.info(f"Found {added} valid repositories")
        return added

    async def _scan_day_with_retries(self, session: aiohttp.ClientSession, creation_date: date) -> None:
        for attempt in range(1, MAX_DAY_ATTEMPTS + 1):
            try:
                await self.scan_day(session, creation_date)
                return
            except aiohttp.ClientError as e:
                if attempt == MAX_DAY_ATTEMPTS:
                    logger.error(
                        f"Skipping repos created on {creation_date} after {MAX_DAY_ATTEMPTS} failed searches: {e!r}. "
                        f"Set DISCOVERY_START_DATE={creation_date.isoformat()} to search it again."
                    )
                    self.skipped_days.append(creation_date)
                    return
                logger.error(
                    f"Search for {creation_date} failed: {e!r}. "
                    f"Retrying in {self.day_delay:.0f}s ({attempt}/{MAX_DAY_ATTEMPTS})..."
                )
                await asyncio.sleep(self.day_delay)

    async def scan_day(self, session: aiohttp.ClientSession, creation_date: date) -> int:
        """Checks every search result created on `creation_date` that is not yet in the store."""
        logger.info(f"Checking repos created on {creation_date}")
        query = self.build_search_query(creation_date)
        added = 0
        page = 1

        while True:
            items, has_next_page = await self.credentials.acquire().search_repositories(session, query, page)

            for item in items:
                try:
                    repository = GitHubTranslator.to_repository(item)
                except ValueError as e:
                    logger.warning(f"  Skipping malformed search result: {e}")
                    continue
                if repository.full_name in self.store:
                    continue

                logger.info(f"  Checking {repository.full_name}")
                project_info = await self._check_with_timeout(session, repository)
                if project_info is not None:
                    self.store.add(project_info)
                    if self.discovery_log is not None:
                        await self.discovery_log.record(project_info)
                    added += 1
                    logger.info(f"  Found {project_info.repository.url}")

            if not has_next_page or page * MAX_PAGE_SIZE >= MAX_SEARCH_RESULTS:
                break
            page += 1
            await asyncio.sleep(self.page_delay)

        return added

    async def check_candidate(
        self,
        session: aiohttp.ClientSession,
        client: GitHubRestClient,
        repository: Repository,
    ) -> Optional[ProjectInfo]:
        if not await passes_filters(session, client, repository.full_name, self.config):
            return None
        return await self.classifier.classify(session, client, repository)

    async def _check_with_timeout(self, session: aiohttp.ClientSession, repository: Repository) -> Optional[ProjectInfo]:
        client = self.credentials.acquire()
        # Wait for quota outside the timeout so a quota pause does not count as a slow candidate.
        await client.guard.before_call(client.credential, CORE)
        try:
            return await asyncio.wait_for(
                self.check_candidate(session, client, repository), timeout=self.candidate_timeout
            )
        except asyncio.TimeoutError:
            logger.warning(f"  Skipping repository {repository.full_name} due to timeout")
        except aiohttp.ClientError as e:
            logger.error(f"  Error while checking repository {repository.full_name}: {e!r}")
        return None
