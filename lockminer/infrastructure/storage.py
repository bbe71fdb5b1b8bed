"""
Append-only output files written next to the checkpoint store.
File writes run in a worker thread, like the checkpoint writes, so they do not block the event loop.
"""

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Dict

from lockminer.domain.models import BreakingUpdate, ProjectInfo

logger = logging.getLogger(__name__)

FOUND_REPOS_FILE = "jsts_repositories_with_lockfiles.json"
NOT_FOUND_REPOS_FILE = "repositories_no_lockfiles.json"
BREAKING_UPDATES_DIR = "breaking_updates"


class DiscoveryLog:
    """
    Accumulates every classification result produced by discovery, one JSON
    object per line, split by whether a lockfile was found.
    """

    def __init__(self, output_dir: Path):
        self.output_dir = Path(output_dir)
        self.output_dir.mkdir(parents=True, exist_ok=True)
        self.found_file = self.output_dir / FOUND_REPOS_FILE
        self.not_found_file = self.output_dir / NOT_FOUND_REPOS_FILE

    async def record(self, project_info: ProjectInfo) -> None:
        data = {
            "fullName": project_info.repository.full_name,
            "url": project_info.repository.url,
            "lastCheckedAt": None,
            "projectType": [t.value for t in project_info.project_types],
            "lockfileExists": project_info.lockfile_exists,
        }
        target = self.found_file if project_info.lockfile_exists else self.not_found_file
        await asyncio.to_thread(_append_jsonl, target, data)


class JsonBreakingUpdateSink:
    """
    Persists each breaking update as its own JSON file.
    """

    def __init__(self, output_dir: Path):
        self.directory = Path(output_dir) / BREAKING_UPDATES_DIR
        self.directory.mkdir(parents=True, exist_ok=True)

    def path_for(self, update: BreakingUpdate) -> Path:
        owner, _, name = update.repository.partition("/")
        return self.directory / f"{owner}__{name}__{update.number}.json"

    async def write(self, update: BreakingUpdate) -> Path:
        path = self.path_for(update)
        await asyncio.to_thread(path.write_text, update.model_dump_json(indent=2), encoding="utf-8")
        logger.info(f"    Found {update.url}")
        return path


def _append_jsonl(path: Path, data: Dict[str, Any]) -> None:
    with open(path, "a", encoding="utf-8") as f:
        json.dump(data, f, ensure_ascii=False)
        f.write("\n")
