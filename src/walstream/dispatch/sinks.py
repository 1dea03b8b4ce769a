"""Demo change-event sinks."""

from __future__ import annotations

import json
import sys
from typing import TextIO

import structlog

from walstream.wal.events import ChangeEvent

logger = structlog.get_logger()


class LogSink:
    """Emits one log line per change event."""

    def __init__(self, *, include_columns: bool = True) -> None:
        self._include_columns = include_columns
        self.count = 0

    async def __call__(self, event: ChangeEvent) -> None:
        self.count += 1
        fields = {
            "schema": event.schema,
            "table": event.table,
            "kind": event.kind.value,
            "lsn": event.lsn,
        }
        if self._include_columns:
            fields["columns"] = dict(event.columns)
            if event.old_keys:
                fields["old_keys"] = dict(event.old_keys)
        logger.info("change.detected", **fields)


class JsonLinesSink:
    """Writes each change event as one JSON document per line."""

    def __init__(self, stream: TextIO | None = None) -> None:
        self._stream = stream or sys.stdout
        self.count = 0

    async def __call__(self, event: ChangeEvent) -> None:
        self._stream.write(json.dumps(event.to_dict(), default=str) + "\n")
        self._stream.flush()
        self.count += 1
