import time
import unittest
from unittest.mock import AsyncMock, patch

from lockminer.domain.exceptions import RateLimitExceededException
from lockminer.domain.models import Credential
from lockminer.infrastructure.rate_limit import CORE, EXIT, SEARCH, RateLimitGuard


def _credential(remaining=None, reset_in=60.0, limit=5000, resource=CORE) -> Credential:
    credential = Credential(token="ghp_abcd1234")
    window = credential.window(resource)
    window.remaining = remaining
    window.reset_at = time.time() + reset_in
    window.limit = limit
    return credential


class TestRateLimitGuard(unittest.IsolatedAsyncioTestCase):
    async def test_unknown_quota_does_not_wait(self) -> None:
        guard = RateLimitGuard()

        with patch("lockminer.infrastructure.rate_limit.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
            await guard.before_call(_credential(remaining=None))

        mock_sleep.assert_not_awaited()

    async def test_comfortable_quota_does_not_wait(self) -> None:
        guard = RateLimitGuard()

        with patch("lockminer.infrastructure.rate_limit.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
            for remaining in (5, 6, 4999):
                await guard.before_call(_credential(remaining=remaining))

        mock_sleep.assert_not_awaited()

    async def test_waits_until_reset_below_cutoff(self) -> None:
        guard = RateLimitGuard()

        for remaining in range(0, 5):
            credential = _credential(remaining=remaining, reset_in=120)
            with patch("lockminer.infrastructure.rate_limit.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
                await guard.before_call(credential)

            mock_sleep.assert_awaited_once()
            waited = mock_sleep.await_args.args[0]
            self.assertGreater(waited, 110)
            self.assertLessEqual(waited, 120)
            # The next call after the wait sees a quota at or above the cutoff.
            self.assertGreaterEqual(credential.window(CORE).remaining, guard.cutoff)
            self.assertFalse(guard.must_wait(credential))

    async def test_reset_in_the_past_does_not_sleep_negative(self) -> None:
        guard = RateLimitGuard()
        credential = _credential(remaining=0, reset_in=-30)

        with patch("lockminer.infrastructure.rate_limit.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
            await guard.before_call(credential)

        mock_sleep.assert_awaited_once_with(0)

    async def test_windows_are_tracked_per_resource(self) -> None:
        guard = RateLimitGuard()
        credential = _credential(remaining=1, resource=SEARCH)

        with patch("lockminer.infrastructure.rate_limit.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
            await guard.before_call(credential, CORE)
            mock_sleep.assert_not_awaited()
            await guard.before_call(credential, SEARCH)
            mock_sleep.assert_awaited_once()

    async def test_exit_policy_raises_instead_of_sleeping(self) -> None:
        guard = RateLimitGuard(on_exhausted=EXIT)
        credential = _credential(remaining=2)

        with patch("lockminer.infrastructure.rate_limit.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
            with self.assertRaises(RateLimitExceededException) as ctx:
                await guard.before_call(credential)

        mock_sleep.assert_not_awaited()
        self.assertEqual(ctx.exception.reset_at, credential.window(CORE).reset_at)

    async def test_abuse_cooldown_is_fixed_unless_longer_requested(self) -> None:
        guard = RateLimitGuard()
        credential = _credential()

        with patch("lockminer.infrastructure.rate_limit.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
            await guard.on_abuse(credential, retry_after=5)
            await guard.on_abuse(credential, retry_after=300)
            await guard.on_abuse(credential)

        self.assertEqual([c.args[0] for c in mock_sleep.await_args_list], [60.0, 300, 60.0])


class TestObserve(unittest.TestCase):
    def test_observe_updates_window_from_headers(self) -> None:
        guard = RateLimitGuard()
        credential = Credential(token="t")

        guard.observe(credential, CORE, {
            "X-RateLimit-Limit": "5000",
            "X-RateLimit-Remaining": "4321",
            "X-RateLimit-Reset": "1700000000",
        })

        window = credential.window(CORE)
        self.assertEqual(window.remaining, 4321)
        self.assertEqual(window.limit, 5000)
        self.assertEqual(window.reset_at, 1700000000.0)

    def test_resource_header_overrides_requested_resource(self) -> None:
        guard = RateLimitGuard()
        credential = Credential(token="t")

        guard.observe(credential, CORE, {"X-RateLimit-Remaining": "3", "X-RateLimit-Resource": "search"})

        self.assertEqual(credential.window(SEARCH).remaining, 3)
        self.assertIsNone(credential.window(CORE).remaining)

    def test_missing_headers_leave_window_untouched(self) -> None:
        guard = RateLimitGuard()
        credential = Credential(token="t")

        guard.observe(credential, CORE, {"X-RateLimit-Remaining": "not-a-number"})

        self.assertIsNone(credential.window(CORE).remaining)

    def test_invalid_policy_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            RateLimitGuard(on_exhausted="explode")
