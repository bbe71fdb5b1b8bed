import asyncio
import json
import tempfile
import unittest
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import AsyncMock, patch

import aiohttp

from lockminer.application.discovery_service import RepositoryDiscoveryService
from lockminer.domain.models import Credential, ProjectInfo, ProjectType, Repository, SearchConfig
from lockminer.infrastructure.checkpoint_store import CheckpointStore
from lockminer.infrastructure.rate_limit import RateLimitGuard
from lockminer.infrastructure.storage import DiscoveryLog


def _item(full_name):
    return {
        "full_name": full_name,
        "url": f"https://api.github.com/repos/{full_name}",
        "html_url": f"https://github.com/{full_name}",
        "created_at": "2024-03-01T10:00:00Z",
        "stargazers_count": 50,
        "default_branch": "main",
    }


class _FakeGitHubClient:
    def __init__(self, search_pages=None, commits=None, trees=None, failing_days=()) -> None:
        self.credential = Credential(token="fake")
        self.guard = RateLimitGuard()
        self.search_pages = search_pages or {}
        self.commits = commits or {}
        self.trees = trees or {}
        self.failing_days = set(failing_days)
        self.queries = []
        self.calls = []

    async def search_repositories(self, session, query, page=1, per_page=100):
        self.queries.append((query, page))
        day = query.rsplit("created:", 1)[1]
        if day in self.failing_days:
            raise aiohttp.ClientConnectionError("connection reset")
        pages = self.search_pages.get(day, [])
        if page > len(pages):
            return [], False
        return pages[page - 1], page < len(pages)

    async def count_commits(self, session, full_name):
        self.calls.append(("commits", full_name))
        result = self.commits.get(full_name, 100)
        if isinstance(result, BaseException):
            raise result
        if result == "hang":
            await asyncio.Event().wait()
        return result

    async def count_contributors(self, session, full_name):
        self.calls.append(("contributors", full_name))
        return 10

    async def latest_commit_date(self, session, full_name):
        self.calls.append(("latest", full_name))
        return datetime.now(timezone.utc) - timedelta(days=3)

    async def get_tree(self, session, full_name, branch, recursive=False):
        self.calls.append(("tree", full_name))
        return self.trees.get(full_name, [])


class _FakeCredentials:
    def __init__(self, client) -> None:
        self.client = client

    def __len__(self) -> int:
        return 1

    def acquire(self):
        return self.client


class TestRepositoryDiscoveryService(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.output_dir = Path(self._tmp.name)
        self.store = CheckpointStore(self.output_dir / "repositories.json")

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def _service(self, client, earliest, **kwargs) -> RepositoryDiscoveryService:
        config = SearchConfig(
            min_number_of_stars=10,
            earliest_creation_date=earliest,
            min_number_of_commits=50,
            min_number_of_contributors=2,
        )
        return RepositoryDiscoveryService(
            credentials=_FakeCredentials(client),
            store=self.store,
            config=config,
            discovery_log=DiscoveryLog(self.output_dir),
            **kwargs,
        )

    async def test_empty_day_advances_date_and_persists_store(self) -> None:
        client = _FakeGitHubClient()
        day = date(2024, 3, 10)
        service = self._service(client, earliest=day - timedelta(days=2))

        with patch("lockminer.application.discovery_service.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
            added = await service.discover(None, last_date=day)

        self.assertEqual(added, 0)
        self.assertEqual(
            [q for q, _ in client.queries],
            [
                "language:JavaScript fork:false stars:>=10 created:2024-03-10",
                "language:JavaScript fork:false stars:>=10 created:2024-03-09",
            ],
        )
        self.assertEqual(json.loads(self.store.path.read_text(encoding="utf-8")), {})
        self.assertEqual(mock_sleep.await_count, 2)
        mock_sleep.assert_awaited_with(60.0)

    async def test_discovery_stops_at_earliest_creation_date(self) -> None:
        client = _FakeGitHubClient()
        day = date(2024, 3, 10)
        service = self._service(client, earliest=day)

        with patch("lockminer.application.discovery_service.asyncio.sleep", new_callable=AsyncMock):
            await service.discover(None, last_date=day)

        self.assertEqual(client.queries, [])

    async def test_candidates_run_filter_chain_and_are_classified(self) -> None:
        day = "2024-03-10"
        client = _FakeGitHubClient(
            search_pages={day: [[_item("octocat/known"), _item("octocat/small"), _item("octocat/good")]]},
            commits={"octocat/small": 3},
            trees={"octocat/good": ["package.json", "yarn.lock", "package-lock.json"]},
        )
        self.store.add(ProjectInfo(
            repository=Repository(
                full_name="octocat/known",
                url="https://api.github.com/repos/octocat/known",
                created_at=datetime(2024, 3, 10, tzinfo=timezone.utc),
            ),
            project_types=(ProjectType.NPM,),
            lockfile_exists=True,
        ))
        service = self._service(client, earliest=date(2024, 3, 9))

        with patch("lockminer.application.discovery_service.asyncio.sleep", new_callable=AsyncMock):
            added = await service.discover(None, last_date=date(2024, 3, 10))

        self.assertEqual(added, 1)
        # Known repositories are skipped without any call; the chain stops at the first failing check.
        self.assertNotIn("octocat/known", {name for _, name in client.calls})
        self.assertEqual([c for c in client.calls if c[1] == "octocat/small"], [("commits", "octocat/small")])
        self.assertIn(("tree", "octocat/good"), client.calls)

        record = self.store.get("octocat/good")
        self.assertIsNone(record.last_checked_at)
        self.assertEqual(record.project_type, [ProjectType.YARN, ProjectType.NPM])
        self.assertTrue(record.lockfile_exists)

        persisted = json.loads(self.store.path.read_text(encoding="utf-8"))
        self.assertIn("octocat/good", persisted)
        found_lines = service.discovery_log.found_file.read_text(encoding="utf-8").splitlines()
        self.assertEqual(json.loads(found_lines[0])["fullName"], "octocat/good")

    async def test_unclassifiable_repository_is_not_added(self) -> None:
        day = "2024-03-10"
        client = _FakeGitHubClient(
            search_pages={day: [[_item("octocat/docs")]]},
            trees={"octocat/docs": ["README.md"]},
        )
        service = self._service(client, earliest=date(2024, 3, 9))

        with patch("lockminer.application.discovery_service.asyncio.sleep", new_callable=AsyncMock):
            added = await service.discover(None, last_date=date(2024, 3, 10))

        self.assertEqual(added, 0)
        self.assertNotIn("octocat/docs", self.store)

    async def test_timeout_skips_only_that_candidate(self) -> None:
        day = "2024-03-10"
        client = _FakeGitHubClient(
            search_pages={day: [[_item("octocat/slow"), _item("octocat/good")]]},
            commits={"octocat/slow": "hang"},
            trees={"octocat/good": ["package.json"]},
        )
        service = self._service(client, earliest=date(2024, 3, 9), candidate_timeout=0.05)

        with patch("lockminer.application.discovery_service.asyncio.sleep", new_callable=AsyncMock):
            added = await service.discover(None, last_date=date(2024, 3, 10))

        self.assertEqual(added, 1)
        self.assertNotIn("octocat/slow", self.store)
        self.assertEqual(self.store.get("octocat/good").project_type, [ProjectType.NPM_NO_LOCKFILE])
        not_found = service.discovery_log.not_found_file.read_text(encoding="utf-8").splitlines()
        self.assertEqual(len(not_found), 1)

    async def test_io_error_skips_only_that_candidate(self) -> None:
        day = "2024-03-10"
        client = _FakeGitHubClient(
            search_pages={day: [[_item("octocat/broken"), _item("octocat/good")]]},
            commits={"octocat/broken": aiohttp.ClientConnectionError("connection reset")},
            trees={"octocat/good": ["package.json", "pnpm-lock.yaml"]},
        )
        service = self._service(client, earliest=date(2024, 3, 9))

        with patch("lockminer.application.discovery_service.asyncio.sleep", new_callable=AsyncMock):
            added = await service.discover(None, last_date=date(2024, 3, 10))

        self.assertEqual(added, 1)
        self.assertIn("octocat/good", self.store)

    async def test_search_pages_are_followed(self) -> None:
        day = "2024-03-10"
        client = _FakeGitHubClient(
            search_pages={day: [[_item("octocat/a")], [_item("octocat/b")]]},
            trees={"octocat/a": ["package.json"], "octocat/b": ["package.json"]},
        )
        service = self._service(client, earliest=date(2024, 3, 9), page_delay=1.0)

        with patch("lockminer.application.discovery_service.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
            added = await service.discover(None, last_date=date(2024, 3, 10))

        self.assertEqual(added, 2)
        self.assertEqual([page for _, page in client.queries], [1, 2])
        mock_sleep.assert_any_await(1.0)

    async def test_day_whose_search_keeps_failing_is_skipped(self) -> None:
        client = _FakeGitHubClient(
            search_pages={"2024-03-08": [[_item("octocat/a")]]},
            trees={"octocat/a": ["package.json", "package-lock.json"]},
            failing_days={"2024-03-09"},
        )
        service = self._service(client, earliest=date(2024, 3, 7))

        with patch("lockminer.application.discovery_service.asyncio.sleep", new_callable=AsyncMock):
            added = await service.discover(None, last_date=date(2024, 3, 10))

        self.assertEqual(added, 1)
        self.assertIn("octocat/a", self.store)
        days = [q.rsplit("created:", 1)[1] for q, _ in client.queries]
        self.assertEqual(days, ["2024-03-10", "2024-03-09", "2024-03-09", "2024-03-09", "2024-03-08"])
        self.assertEqual(service.skipped_days, [date(2024, 3, 9)])
