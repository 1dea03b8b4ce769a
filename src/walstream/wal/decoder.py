"""wal2json (format version 1) payload decoder.

Each XLogData chunk carries one JSON document per transaction::

    {"change": [{"kind": "insert", "schema": "public", "table": "users",
                 "columnnames": ["id", "name"], "columntypes": ["integer", "text"],
                 "columnvalues": [1, "Ann"]}]}

Updates and deletes may also carry
``"oldkeys": {"keynames": [...], "keytypes": [...], "keyvalues": [...]}``.
"""

from __future__ import annotations

import json
from typing import Any

from walstream.wal.envelope import XLogData, parse_frame
from walstream.wal.errors import DecodeError
from walstream.wal.events import ChangeEvent, ChangeKind


class Wal2JsonDecoder:
    """Turns wal2json payloads into ChangeEvent records, preserving order."""

    def decode(self, frame: bytes) -> list[ChangeEvent]:
        """Strip the CopyData envelope and decode the payload it carries.

        Non-data frames decode to an empty list. Raises EnvelopeError for a
        malformed envelope and DecodeError for a malformed payload.
        """
        parsed = parse_frame(frame)
        if not isinstance(parsed, XLogData):
            return []
        return self.decode_xlog(parsed)

    def decode_xlog(self, xlog: XLogData) -> list[ChangeEvent]:
        return self.decode_payload(xlog.data, lsn=xlog.data_start)

    def decode_payload(self, data: bytes, *, lsn: int = 0) -> list[ChangeEvent]:
        try:
            payload = json.loads(data.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            msg = f"payload is not valid JSON: {exc}"
            raise DecodeError(msg) from exc

        if not isinstance(payload, dict):
            msg = f"expected a JSON object, got {type(payload).__name__}"
            raise DecodeError(msg)
        changes = payload.get("change")
        if not isinstance(changes, list):
            raise DecodeError("payload has no 'change' array")

        return [self._to_event(entry, index, lsn) for index, entry in enumerate(changes)]

    def _to_event(self, entry: Any, index: int, lsn: int) -> ChangeEvent:
        if not isinstance(entry, dict):
            msg = f"change[{index}] is not an object"
            raise DecodeError(msg)

        raw_kind = self._require_str(entry, "kind", index)
        schema = self._require_str(entry, "schema", index)
        table = self._require_str(entry, "table", index)

        columns = self._pairs(
            entry.get("columnnames", []),
            entry.get("columnvalues", []),
            where=f"change[{index}] columns",
        )
        old_keys: tuple[tuple[str, Any], ...] = ()
        oldkeys = entry.get("oldkeys")
        if oldkeys is not None:
            if not isinstance(oldkeys, dict):
                msg = f"change[{index}].oldkeys is not an object"
                raise DecodeError(msg)
            old_keys = self._pairs(
                oldkeys.get("keynames", []),
                oldkeys.get("keyvalues", []),
                where=f"change[{index}] oldkeys",
            )

        column_types = entry.get("columntypes", [])
        if not isinstance(column_types, list):
            msg = f"change[{index}].columntypes is not an array"
            raise DecodeError(msg)

        return ChangeEvent(
            kind=ChangeKind.from_wal2json(raw_kind),
            schema=schema,
            table=table,
            columns=columns,
            old_keys=old_keys,
            column_types=tuple(str(t) for t in column_types),
            lsn=lsn,
            raw_kind=raw_kind,
        )

    @staticmethod
    def _require_str(entry: dict[str, Any], key: str, index: int) -> str:
        value = entry.get(key)
        if not isinstance(value, str):
            msg = f"change[{index}].{key} must be a string"
            raise DecodeError(msg)
        return value

    @staticmethod
    def _pairs(names: Any, values: Any, *, where: str) -> tuple[tuple[str, Any], ...]:
        """Zip parallel name/value arrays, enforcing equal length and unique names."""
        if not isinstance(names, list) or not isinstance(values, list):
            msg = f"{where}: names and values must be arrays"
            raise DecodeError(msg)
        if len(names) != len(values):
            msg = f"{where}: {len(names)} names but {len(values)} values"
            raise DecodeError(msg)
        seen: set[str] = set()
        for name in names:
            if not isinstance(name, str):
                msg = f"{where}: column name {name!r} is not a string"
                raise DecodeError(msg)
            if name in seen:
                msg = f"{where}: duplicate column name {name!r}"
                raise DecodeError(msg)
            seen.add(name)
        return tuple(zip(names, values, strict=True))
