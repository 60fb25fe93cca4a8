"""
Write-once JSON checkpoint store.

Each checkpoint is one file ``<name>.json`` in the store directory.
Writing an existing name fails; restoring never merges.
"""

import json
import logging
import os
import re
import time
from pathlib import Path
from typing import Optional

from .errors import CheckpointNotFound, InvalidInput, PersistenceError

logger = logging.getLogger(__name__)

_NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$")


def validate_name(name: str) -> str:
    if not isinstance(name, str) or not _NAME_PATTERN.match(name) or ".." in name:
        raise InvalidInput(f"Invalid checkpoint name: {name!r}")
    return name


class CheckpointStore:
    """Directory of named, write-once JSON snapshots."""

    def __init__(self, directory: Path):
        self.directory = Path(directory)

    def _path(self, name: str) -> Path:
        return self.directory / f"{validate_name(name)}.json"

    def exists(self, name: str) -> bool:
        return self._path(name).exists()

    def write(self, name: str, payload: dict) -> Path:
        """Write a new checkpoint; an existing name is an error."""
        path = self._path(name)
        if path.exists():
            raise PersistenceError(f"Checkpoint already exists: {name}")
        record = {"name": name, "written_at": time.time(), **payload}
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            tmp = path.with_suffix(".json.tmp")
            tmp.write_text(json.dumps(record, indent=2, ensure_ascii=False), encoding="utf-8")
            os.replace(tmp, path)
        except (OSError, TypeError, ValueError) as e:
            raise PersistenceError(f"Failed to write checkpoint {name}: {e}") from e
        logger.debug("Wrote checkpoint %s", path)
        return path

    def read(self, name: str) -> dict:
        path = self._path(name)
        if not path.exists():
            raise CheckpointNotFound(name)
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise PersistenceError(f"Failed to read checkpoint {name}: {e}") from e
        if not isinstance(data, dict):
            raise PersistenceError(f"Checkpoint {name} is not a JSON object")
        return data

    def list_names(self, prefix: str = "") -> list[str]:
        """Checkpoint names, oldest first."""
        if not self.directory.exists():
            return []
        paths = [
            p for p in self.directory.glob("*.json")
            if p.stem.startswith(prefix)
        ]
        paths.sort(key=lambda p: (p.stat().st_mtime_ns, p.stem))
        return [p.stem for p in paths]

    def latest(self, prefix: str = "") -> Optional[str]:
        names = self.list_names(prefix)
        return names[-1] if names else None

    def delete(self, name: str) -> bool:
        path = self._path(name)
        if not path.exists():
            return False
        try:
            path.unlink()
        except OSError as e:
            raise PersistenceError(f"Failed to delete checkpoint {name}: {e}") from e
        return True

    def prune(self, prefix: str, keep: int) -> int:
        """Delete all but the newest ``keep`` checkpoints with ``prefix``."""
        names = self.list_names(prefix)
        removed = 0
        for name in names[: max(len(names) - keep, 0)]:
            if self.delete(name):
                removed += 1
        if removed:
            logger.debug("Pruned %d old %s checkpoints", removed, prefix or "all")
        return removed
