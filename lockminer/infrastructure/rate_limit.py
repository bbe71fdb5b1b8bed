import asyncio
import logging
import time
from typing import Mapping, Optional

from lockminer.domain.exceptions import RateLimitExceededException
from lockminer.domain.models import Credential

logger = logging.getLogger(__name__)

# GitHub reports stale counts right at zero, so stop a few calls early
REMAINING_CALLS_CUTOFF = 5
ABUSE_COOLDOWN = 60.0

CORE = "core"
SEARCH = "search"

SLEEP = "sleep"
EXIT = "exit"


class RateLimitGuard:
    """
    Decides whether a call on a credential must wait, based on the quota
    headers of the last response seen for that credential.

    Each credential carries its own windows, so the guard itself holds no
    per-token state and one instance can be shared by every client.
    """

    def __init__(
            self,
            cutoff: int = REMAINING_CALLS_CUTOFF,
            abuse_cooldown: float = ABUSE_COOLDOWN,
            on_exhausted: str = SLEEP,
    ):
        if on_exhausted not in (SLEEP, EXIT):
            raise ValueError(f"on_exhausted must be '{SLEEP}' or '{EXIT}', got '{on_exhausted}'")
        self.cutoff = cutoff
        self.abuse_cooldown = abuse_cooldown
        self.on_exhausted = on_exhausted

    def must_wait(self, credential: Credential, resource: str = CORE) -> bool:
        remaining = credential.window(resource).remaining
        return remaining is not None and remaining < self.cutoff

    async def before_call(self, credential: Credential, resource: str = CORE) -> None:
        """
        Suspends the caller until the credential's quota resets, if it is below the cutoff.

        Raises:
            RateLimitExceededException: If the quota is exhausted and the policy is to exit.
        """
        if not self.must_wait(credential, resource):
            return

        window = credential.window(resource)
        if self.on_exhausted == EXIT:
            raise RateLimitExceededException(reset_at=window.reset_at)

        wait_seconds = max(window.reset_at - time.time(), 0)
        logger.warning(
            f"Rate limit ({resource}) nearly exhausted for token {credential.masked}: "
            f"{window.remaining} calls left. Sleeping {wait_seconds:.0f}s."
        )
        await asyncio.sleep(wait_seconds)
        # The window has rolled over; assume a full quota until the next response says otherwise.
        window.remaining = window.limit

    def observe(self, credential: Credential, resource: str, headers: Mapping[str, str]) -> None:
        """Updates the credential's window from the X-RateLimit-* headers of a response."""
        remaining = _parse_int(headers.get("X-RateLimit-Remaining"))
        if remaining is None:
            return

        resource = headers.get("X-RateLimit-Resource") or resource
        window = credential.window(resource)
        window.remaining = remaining
        limit = _parse_int(headers.get("X-RateLimit-Limit"))
        if limit is not None:
            window.limit = limit
        reset_at = _parse_int(headers.get("X-RateLimit-Reset"))
        if reset_at is not None:
            window.reset_at = float(reset_at)

    async def on_abuse(self, credential: Credential, retry_after: Optional[float] = None) -> None:
        """Sleeps the fixed abuse cooldown, or longer if GitHub asked for it."""
        wait_seconds = max(self.abuse_cooldown, retry_after or 0)
        logger.warning(f"Abuse limit reached for token {credential.masked}. Sleeping {wait_seconds:.0f}s.")
        await asyncio.sleep(wait_seconds)


def _parse_int(value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None
