import logging
from typing import Awaitable, Callable, Dict, Optional, Union

logger = logging.getLogger(__name__)


class _Absent:
    def __repr__(self) -> str:
        return "<absent>"


ABSENT = _Absent()


class DiffCache:
    """
    In-memory cache of pull request diffs keyed by pull request id.

    A pull request known to have no usable diff is stored as ABSENT so that
    repeated lookups do not hit the API again.
    """

    def __init__(self):
        self._entries: Dict[int, Union[str, _Absent]] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def contains(self, pr_id: int) -> bool:
        return pr_id in self._entries

    def get(self, pr_id: int) -> Optional[str]:
        entry = self._entries.get(pr_id)
        if entry is None or entry is ABSENT:
            return None
        return entry

    def put(self, pr_id: int, diff: Optional[str]) -> None:
        self._entries[pr_id] = ABSENT if diff is None else diff

    def remove(self, pr_id: int) -> None:
        self._entries.pop(pr_id, None)

    async def get_or_fetch(self, pr_id: int, loader: Callable[[], Awaitable[Optional[str]]]) -> Optional[str]:
        """
        Returns the cached diff, calling `loader` only on the first lookup.
        Errors raised by the loader propagate and leave the cache untouched.
        """
        if pr_id in self._entries:
            return self.get(pr_id)
        diff = await loader()
        self.put(pr_id, diff)
        if diff is None:
            logger.debug(f"No diff available for pull request {pr_id}.")
        return diff
