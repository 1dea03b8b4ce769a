"""Cursor stores for the last acknowledged replication position."""

from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from threading import Lock
from typing import Protocol, runtime_checkable

import structlog

logger = structlog.get_logger()


@runtime_checkable
class CursorStore(Protocol):
    """Persists the last acknowledged LSN per slot."""

    def load(self, slot_name: str) -> int | None:
        """Return the stored position, or None if the slot has none."""
        ...

    def save(self, slot_name: str, lsn: int) -> None:
        """Record *lsn*; positions never move backwards."""
        ...


class InMemoryCursorStore:
    """Volatile store; positions are lost when the process exits."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._positions: dict[str, int] = {}

    def load(self, slot_name: str) -> int | None:
        with self._lock:
            return self._positions.get(slot_name)

    def save(self, slot_name: str, lsn: int) -> None:
        with self._lock:
            current = self._positions.get(slot_name)
            if current is None or lsn > current:
                self._positions[slot_name] = lsn


class FileCursorStore:
    """JSON file mapping slot name to LSN, rewritten atomically on each save."""

    def __init__(self, path: Path | str, *, fsync: bool = False) -> None:
        self._path = Path(path)
        self._fsync = fsync
        self._lock = Lock()
        self._positions: dict[str, int] = {}
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._load_from_disk()

    @property
    def path(self) -> Path:
        return self._path

    def load(self, slot_name: str) -> int | None:
        with self._lock:
            return self._positions.get(slot_name)

    def save(self, slot_name: str, lsn: int) -> None:
        with self._lock:
            current = self._positions.get(slot_name)
            if current is not None and lsn <= current:
                return
            self._positions[slot_name] = lsn
            self._write_locked()

    def _load_from_disk(self) -> None:
        if not self._path.exists():
            return
        try:
            raw = self._path.read_text(encoding="utf-8")
            data = json.loads(raw) if raw else {}
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("cursor.load_failed", path=str(self._path), error=str(exc))
            return
        if not isinstance(data, dict):
            logger.warning("cursor.invalid_format", path=str(self._path))
            return
        self._positions = {
            key: value
            for key, value in data.items()
            if isinstance(key, str) and isinstance(value, int) and value >= 0
        }

    def _write_locked(self) -> None:
        fd, temp_path = tempfile.mkstemp(
            prefix=f".{self._path.name}.", dir=str(self._path.parent)
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as tmp:
                json.dump(self._positions, tmp, sort_keys=True)
                tmp.flush()
                if self._fsync:
                    os.fsync(tmp.fileno())
            os.replace(temp_path, self._path)
        except OSError:
            logger.error("cursor.write_failed", path=str(self._path))
            if os.path.exists(temp_path):
                os.unlink(temp_path)
            raise
