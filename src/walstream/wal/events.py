"""Typed change events produced by the WAL payload decoder."""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import Any


class ChangeKind(StrEnum):
    """Semantic operation type of a row-level change."""

    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"
    OTHER = "other"

    @classmethod
    def from_wal2json(cls, raw: str) -> ChangeKind:
        try:
            kind = cls(raw.lower())
        except ValueError:
            return cls.OTHER
        return kind


@dataclass(frozen=True, slots=True)
class ChangeEvent:
    """A single decoded row-level change.

    ``columns`` keeps source column order; names are unique within an event.
    Deletes usually carry no columns, only ``old_keys`` (the replica identity).
    """

    kind: ChangeKind
    schema: str
    table: str
    columns: tuple[tuple[str, Any], ...] = ()
    old_keys: tuple[tuple[str, Any], ...] = ()
    column_types: tuple[str, ...] = ()
    lsn: int = 0
    raw_kind: str = ""

    @property
    def relation(self) -> str:
        return f"{self.schema}.{self.table}"

    @property
    def column_names(self) -> list[str]:
        return [name for name, _ in self.columns]

    def column(self, name: str, default: Any = None) -> Any:
        """Return the value of column *name*, or *default* if absent."""
        for col_name, value in self.columns:
            if col_name == name:
                return value
        return default

    def to_dict(self) -> dict[str, Any]:
        """JSON-ready representation; column order is preserved."""
        payload: dict[str, Any] = {
            "kind": self.kind.value,
            "schema": self.schema,
            "table": self.table,
            "columns": dict(self.columns),
            "lsn": self.lsn,
        }
        if self.old_keys:
            payload["old_keys"] = dict(self.old_keys)
        if self.kind is ChangeKind.OTHER and self.raw_kind:
            payload["raw_kind"] = self.raw_kind
        return payload
