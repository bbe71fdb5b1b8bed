"""
Predicates over GitHub repositories used to decide whether a search result is
worth classifying. Each one costs a single API call.
"""

import calendar
import logging
from datetime import date, datetime, timezone
from typing import Optional

import aiohttp

from lockminer.domain.models import SearchConfig
from lockminer.infrastructure.github_client import GitHubRestClient

logger = logging.getLogger(__name__)

RECENT_COMMIT_MONTHS = 3


async def has_sufficient_number_of_commits(
    session: aiohttp.ClientSession, client: GitHubRestClient, full_name: str, min_number_of_commits: int
) -> bool:
    return await client.count_commits(session, full_name) >= min_number_of_commits


async def has_sufficient_number_of_contributors(
    session: aiohttp.ClientSession, client: GitHubRestClient, full_name: str, min_number_of_contributors: int
) -> bool:
    return await client.count_contributors(session, full_name) >= min_number_of_contributors


async def is_last_commit_within_three_months(
    session: aiohttp.ClientSession, client: GitHubRestClient, full_name: str, today: Optional[date] = None
) -> bool:
    last_commit = await client.latest_commit_date(session, full_name)
    if last_commit is None:
        return False
    today = today or datetime.now(timezone.utc).date()
    return last_commit.date() > months_before(today, RECENT_COMMIT_MONTHS)


async def passes_filters(
    session: aiohttp.ClientSession, client: GitHubRestClient, full_name: str, config: SearchConfig
) -> bool:
    """Runs the commit, contributor and recency checks, stopping at the first failure."""
    if not await has_sufficient_number_of_commits(session, client, full_name, config.min_number_of_commits):
        logger.debug(f"  {full_name}: too few commits")
        return False
    if not await has_sufficient_number_of_contributors(session, client, full_name, config.min_number_of_contributors):
        logger.debug(f"  {full_name}: too few contributors")
        return False
    if not await is_last_commit_within_three_months(session, client, full_name):
        logger.debug(f"  {full_name}: no recent commits")
        return False
    return True


def months_before(day: date, months: int) -> date:
    """Same day of the month `months` earlier, clamped to the end of shorter months."""
    month_index = day.year * 12 + day.month - 1 - months
    year, month = divmod(month_index, 12)
    month += 1
    return date(year, month, min(day.day, calendar.monthrange(year, month)[1]))
