"""
File-backed snapshots of shared memory.

Snapshots are JSON documents stored one per file. Writes go to a temp file
in the same directory and are moved into place with os.replace, all under a
cross-process file lock.
"""

import json
import logging
import os
import re
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import filelock

from meeting_coord.errors import NotFoundError, PersistenceError, ValidationError

logger = logging.getLogger("meeting_coord.memory.snapshots")

STATE_FILE = "current_state.json"
SNAPSHOT_PREFIX = "snapshot-"

_SAFE_ID = re.compile(r"^[A-Za-z0-9_.-]+$")


class SnapshotStore:
    """Reads and writes snapshot files in one directory."""

    def __init__(self, directory: Union[str, Path]):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)
        self._lock = filelock.FileLock(str(self.directory / ".snapshots.lock"))

    def _snapshot_path(self, snapshot_id: str) -> Path:
        if not snapshot_id:
            raise ValidationError("Snapshot id is required")
        if not _SAFE_ID.match(snapshot_id):
            raise ValidationError(f"Invalid snapshot id: {snapshot_id}")
        return self.directory / f"{SNAPSHOT_PREFIX}{snapshot_id}.json"

    def _write_json(self, path: Path, data: Dict[str, Any]) -> None:
        temp_fd, temp_path = tempfile.mkstemp(dir=self.directory, suffix=".json.tmp")
        try:
            with os.fdopen(temp_fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, ensure_ascii=False, default=str)
            os.replace(temp_path, path)
        except Exception as e:
            if os.path.exists(temp_path):
                os.unlink(temp_path)
            raise PersistenceError(f"Failed to write {path.name}: {e}") from e

    def _read_json(self, path: Path) -> Dict[str, Any]:
        try:
            with open(path, "r", encoding="utf-8") as f:
                return json.load(f)
        except json.JSONDecodeError as e:
            raise PersistenceError(f"Corrupt snapshot file {path.name}: {e}") from e

    def save(self, snapshot_id: str, data: Dict[str, Any]) -> Path:
        path = self._snapshot_path(snapshot_id)
        with self._lock:
            self._write_json(path, data)
        logger.debug(f"Saved snapshot {snapshot_id}")
        return path

    def load(self, snapshot_id: str) -> Dict[str, Any]:
        path = self._snapshot_path(snapshot_id)
        with self._lock:
            if not path.exists():
                raise NotFoundError(
                    f"Snapshot {snapshot_id} not found",
                    resource="snapshot",
                    resource_id=snapshot_id,
                )
            return self._read_json(path)

    def delete(self, snapshot_id: str) -> bool:
        """Remove a snapshot. Returns False if it did not exist."""
        path = self._snapshot_path(snapshot_id)
        with self._lock:
            try:
                path.unlink()
            except FileNotFoundError:
                return False
        logger.debug(f"Deleted snapshot {snapshot_id}")
        return True

    def list(self) -> List[str]:
        """Snapshot ids, oldest file first."""
        paths = sorted(
            self.directory.glob(f"{SNAPSHOT_PREFIX}*.json"),
            key=lambda p: p.stat().st_mtime,
        )
        return [p.stem[len(SNAPSHOT_PREFIX):] for p in paths]

    def save_state(self, data: Dict[str, Any]) -> None:
        with self._lock:
            self._write_json(self.directory / STATE_FILE, data)

    def load_state(self) -> Optional[Dict[str, Any]]:
        path = self.directory / STATE_FILE
        with self._lock:
            if not path.exists():
                return None
            return self._read_json(path)
