import asyncio
import contextlib
import json
import logging
import os
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from pydantic import TypeAdapter

from lockminer.domain.exceptions import CheckpointWriteError
from lockminer.domain.models import CheckpointRecord, ProjectInfo

logger = logging.getLogger(__name__)

_RECORDS = TypeAdapter(Dict[str, CheckpointRecord])


class CheckpointStore:
    """
    Durable map from repository full name to its checkpoint record.

    This is the only writer of the checkpoint file. Discovery and mining share
    one instance; every write replaces the whole file atomically, so a crash
    leaves either the previous or the new version on disk.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self._records: Dict[str, CheckpointRecord] = self._read() if self.path.exists() else {}
        self._lock = asyncio.Lock()

    def __contains__(self, full_name: str) -> bool:
        return full_name in self._records

    def __len__(self) -> int:
        return len(self._records)

    def names(self) -> List[str]:
        return list(self._records)

    def get(self, full_name: str) -> CheckpointRecord:
        return self._records[full_name]

    def records(self) -> Dict[str, CheckpointRecord]:
        return {name: record.model_copy() for name, record in self._records.items()}

    def checked_time(self, full_name: str) -> Optional[datetime]:
        return self._records[full_name].last_checked_at

    def add(self, project_info: ProjectInfo) -> bool:
        """
        Adds a newly discovered repository with no checked time.
        An existing record is left alone so its progress is not lost.

        Returns:
            bool: True if the repository was not present before.
        """
        full_name = project_info.repository.full_name
        if full_name in self._records:
            return False
        self._records[full_name] = CheckpointRecord(
            url=project_info.repository.url,
            last_checked_at=None,
            project_type=list(project_info.project_types),
            lockfile_exists=project_info.lockfile_exists,
        )
        return True

    def partition(self) -> Tuple[List[str], List[str]]:
        """
        Splits the repositories into those never checked and those checked before.

        Returns:
            Tuple of (unchecked, checked) full names, each in insertion order.
        """
        unchecked, checked = [], []
        for name, record in self._records.items():
            (unchecked if record.last_checked_at is None else checked).append(name)
        return unchecked, checked

    async def mark_checked(self, full_name: str, checked_at: datetime) -> None:
        """
        Records that a repository was scanned up to `checked_at` and persists the store.
        The checked time never moves backwards.
        """
        async with self._lock:
            record = self._records[full_name]
            if record.last_checked_at is None or checked_at > record.last_checked_at:
                record.last_checked_at = checked_at
            payload = self.to_json()
            await asyncio.to_thread(self._write, payload)

    async def flush(self) -> None:
        """Writes the whole store to disk."""
        async with self._lock:
            payload = self.to_json()
            await asyncio.to_thread(self._write, payload)

    def to_json(self) -> str:
        data = _RECORDS.dump_python(self._records, mode="json", by_alias=True)
        return json.dumps(data, indent=2, sort_keys=True)

    def _read(self) -> Dict[str, CheckpointRecord]:
        with open(self.path, "r", encoding="utf-8") as f:
            records = _RECORDS.validate_json(f.read())
        logger.info(f"Loaded {len(records)} repositories from {self.path}.")
        return records

    def _write(self, payload: str) -> None:
        directory = self.path.parent
        tmp_name = None
        try:
            directory.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                "w", encoding="utf-8", dir=directory, prefix=f".{self.path.name}.", suffix=".tmp", delete=False
            ) as tmp:
                tmp_name = tmp.name
                tmp.write(payload)
                tmp.flush()
                os.fsync(tmp.fileno())
            os.replace(tmp_name, self.path)
        except OSError as e:
            if tmp_name is not None:
                with contextlib.suppress(OSError):
                    os.unlink(tmp_name)
            raise CheckpointWriteError(f"Failed to write checkpoint file {self.path}: {e}") from e
