"""Replication slot lifecycle management."""

from __future__ import annotations

import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any

import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_fixed,
)

from walstream.config.models import SlotConfig
from walstream.wal.errors import SlotCreationError
from walstream.wal.lsn import parse_lsn

logger = structlog.get_logger()

_SLOT_NAME_MAX = 63
_DROP_ATTEMPTS = 5
_DROP_WAIT_SECONDS = 0.5


def generate_slot_name(prefix: str) -> str:
    """Return ``<prefix>_<12 hex chars>`` (48 random bits, no coordination)."""
    suffix = uuid.uuid4().hex[:12]
    name = f"{prefix}_{suffix}"
    if len(name) > _SLOT_NAME_MAX:
        msg = f"slot prefix '{prefix}' is too long"
        raise ValueError(msg)
    return name


@dataclass(frozen=True, slots=True)
class SlotInfo:
    """Row of ``pg_replication_slots`` for a logical slot."""

    slot_name: str
    plugin: str | None
    database: str | None
    active: bool
    confirmed_flush_lsn: int | None


def _slot_in_use(exc: BaseException) -> bool:
    import psycopg

    return isinstance(exc, psycopg.errors.ObjectInUse)


class SlotManager:
    """Creates and drops logical replication slots over a regular SQL session.

    Uses psycopg3 async connections; the streaming session itself lives on a
    separate replication connection, so a slot can only be dropped once that
    connection is closed.
    """

    def __init__(self, dsn: str, config: SlotConfig) -> None:
        self._dsn = dsn
        self._config = config

    @property
    def config(self) -> SlotConfig:
        return self._config

    async def create_slot(self, name: str | None = None) -> tuple[str, int]:
        """Create a logical slot with the configured plugin.

        Returns ``(slot_name, consistent_point_lsn)``.
        """
        import psycopg

        slot_name = name or self._config.name or generate_slot_name(self._config.prefix)
        try:
            async with await psycopg.AsyncConnection.connect(
                self._dsn, autocommit=True
            ) as conn:
                row = await (
                    await conn.execute(
                        "SELECT slot_name, lsn "
                        "FROM pg_create_logical_replication_slot(%s, %s)",
                        (slot_name, self._config.plugin),
                    )
                ).fetchone()
        except psycopg.Error as exc:
            logger.error(
                "wal.slot_create_failed",
                name=slot_name,
                plugin=self._config.plugin,
                error=str(exc),
            )
            msg = f"Failed to create replication slot '{slot_name}': {exc}"
            raise SlotCreationError(msg) from exc

        lsn = parse_lsn(str(row[1])) if row and row[1] is not None else 0
        logger.info(
            "wal.slot_created", name=slot_name, plugin=self._config.plugin, lsn=lsn
        )
        return slot_name, lsn

    async def drop_slot(self, name: str) -> bool:
        """Drop slot *name*; failures are logged, never raised.

        A slot still marked active by an exiting walsender is retried briefly.
        """
        import psycopg

        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception(_slot_in_use),
                stop=stop_after_attempt(_DROP_ATTEMPTS),
                wait=wait_fixed(_DROP_WAIT_SECONDS),
                reraise=True,
            ):
                with attempt:
                    async with await psycopg.AsyncConnection.connect(
                        self._dsn, autocommit=True
                    ) as conn:
                        await conn.execute(
                            "SELECT pg_drop_replication_slot(%s)", (name,)
                        )
        except psycopg.Error as exc:
            logger.error(
                "wal.slot_drop_failed",
                name=name,
                error=str(exc),
                hint=f"SELECT pg_drop_replication_slot('{name}')",
            )
            return False
        logger.info("wal.slot_dropped", name=name)
        return True

    async def list_slots(self, prefix: str | None = None) -> list[SlotInfo]:
        """List logical replication slots, optionally filtered by name prefix."""
        import psycopg

        query = (
            "SELECT slot_name, plugin, database, active, confirmed_flush_lsn "
            "FROM pg_replication_slots WHERE slot_type = 'logical'"
        )
        params: tuple[Any, ...] = ()
        if prefix:
            query += " AND starts_with(slot_name, %s)"
            params = (prefix,)
        query += " ORDER BY slot_name"

        async with await psycopg.AsyncConnection.connect(
            self._dsn, autocommit=True
        ) as conn:
            rows = await (await conn.execute(query, params)).fetchall()

        return [
            SlotInfo(
                slot_name=row[0],
                plugin=row[1],
                database=row[2],
                active=bool(row[3]),
                confirmed_flush_lsn=parse_lsn(str(row[4])) if row[4] else None,
            )
            for row in rows
        ]

    @asynccontextmanager
    async def acquire(self) -> AsyncIterator[str]:
        """Yield a slot name for the duration of a streaming session.

        Managed slots are created on entry and dropped on every exit path,
        including errors and cancellation. Externally managed slots are
        neither created nor dropped.
        """
        if not self._config.create:
            if self._config.name is None:
                msg = "an externally managed slot needs a name"
                raise ValueError(msg)
            logger.info("wal.slot_attached", name=self._config.name)
            yield self._config.name
            return

        slot_name, _ = await self.create_slot()
        try:
            yield slot_name
        finally:
            await self.drop_slot(slot_name)
