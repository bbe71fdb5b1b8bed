import logging
from typing import Callable, Iterable, List

from lockminer.domain.exceptions import CredentialConfigurationError
from lockminer.domain.models import Credential
from lockminer.infrastructure.github_client import GitHubRestClient
from lockminer.infrastructure.rate_limit import RateLimitGuard

logger = logging.getLogger(__name__)

ClientFactory = Callable[[Credential, RateLimitGuard], GitHubRestClient]


class CredentialQueue:
    """
    Round-robin over a fixed set of API tokens.

    `acquire` never blocks: waiting for quota happens inside the guard when a
    call is made on the returned client. All callers share one event loop, so
    advancing the rotation needs no lock.
    """

    def __init__(
            self,
            tokens: Iterable[str],
            guard: RateLimitGuard,
            client_factory: ClientFactory = GitHubRestClient,
    ):
        self.guard = guard
        self._clients: List[GitHubRestClient] = [
            client_factory(Credential(token=token), guard) for token in tokens
        ]
        if not self._clients:
            raise CredentialConfigurationError("At least one GitHub API token is required.")
        self._position = 0
        logger.info(f"Loaded {len(self._clients)} GitHub API token(s).")

    def __len__(self) -> int:
        return len(self._clients)

    def acquire(self) -> GitHubRestClient:
        """Returns the next client in the rotation."""
        client = self._clients[self._position]
        self._position = (self._position + 1) % len(self._clients)
        return client
