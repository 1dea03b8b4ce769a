"""Replication transport: the streaming connection the receive loop talks to.

The receive loop only depends on the :class:`ReplicationTransport` protocol.
:class:`Psycopg2ReplicationTransport` backs it with psycopg2's
``LogicalReplicationConnection``, which handles COPY framing and answers
server keepalives on its own.
"""

from __future__ import annotations

import asyncio
from typing import Any, Protocol, runtime_checkable

import structlog

from walstream.wal.envelope import pack_xlog_data, pg_timestamp
from walstream.wal.errors import (
    ConnectionFailedError,
    ReceiveError,
    StartReplicationError,
)
from walstream.wal.lsn import format_lsn

logger = structlog.get_logger()


@runtime_checkable
class ReplicationTransport(Protocol):
    """One logical replication session on the wire."""

    async def connect(self) -> None:
        """Open the replication-mode connection."""
        ...

    async def start_replication(
        self, slot_name: str, start_lsn: int, options: dict[str, str]
    ) -> None:
        """Issue START_REPLICATION for *slot_name*."""
        ...

    async def receive(self, timeout: float) -> bytes:
        """Return the next raw CopyData frame.

        Raises ReceiveError tagged TIMEOUT when nothing arrives within
        *timeout*, FATAL when the session is gone and OTHER otherwise.
        """
        ...

    async def send_standby_status(
        self, write_lsn: int, flush_lsn: int, apply_lsn: int
    ) -> None:
        """Report positions to the server."""
        ...

    async def close(self) -> None:
        """Close the connection; safe to call more than once."""
        ...


class Psycopg2ReplicationTransport:
    """psycopg2-backed transport.

    psycopg2 strips the XLogData header before handing out a
    ``ReplicationMessage``; :meth:`receive` rebuilds the ``w`` frame from the
    message attributes so the envelope codec sees the same bytes the server
    sent.
    """

    def __init__(self, dsn: str) -> None:
        self._dsn = dsn
        self._conn: Any = None
        self._cursor: Any = None

    @property
    def connected(self) -> bool:
        return self._conn is not None and not self._conn.closed

    async def connect(self) -> None:
        import psycopg2
        from psycopg2.extras import LogicalReplicationConnection

        try:
            self._conn = await asyncio.to_thread(
                psycopg2.connect,
                self._dsn,
                connection_factory=LogicalReplicationConnection,
            )
        except psycopg2.Error as exc:
            msg = f"Failed to open replication connection: {exc}"
            raise ConnectionFailedError(msg) from exc
        self._cursor = self._conn.cursor()
        logger.info("transport.connected")

    async def start_replication(
        self, slot_name: str, start_lsn: int, options: dict[str, str]
    ) -> None:
        import psycopg2

        if self._cursor is None:
            msg = "Transport not connected, call connect() first"
            raise StartReplicationError(msg)
        try:
            await asyncio.to_thread(
                self._cursor.start_replication,
                slot_name=slot_name,
                decode=False,
                start_lsn=start_lsn,
                options=options or None,
            )
        except psycopg2.Error as exc:
            msg = f"Failed to start replication on slot '{slot_name}': {exc}"
            raise StartReplicationError(msg) from exc
        logger.info(
            "transport.replication_started",
            slot=slot_name,
            start_lsn=format_lsn(start_lsn),
            options=options,
        )

    async def receive(self, timeout: float) -> bytes:
        message = self._read_message()
        if message is None:
            await self._wait_readable(timeout)
            message = self._read_message()
            if message is None:
                # Socket woke up for a server keepalive psycopg2 consumed itself.
                raise ReceiveError.timeout()
        return pack_xlog_data(
            bytes(message.payload),
            data_start=message.data_start,
            wal_end=message.wal_end,
            send_time=pg_timestamp(message.send_time),
        )

    async def send_standby_status(
        self, write_lsn: int, flush_lsn: int, apply_lsn: int
    ) -> None:
        if self._cursor is None:
            raise ReceiveError.fatal("transport not connected")
        self._cursor.send_feedback(
            write_lsn=write_lsn,
            flush_lsn=flush_lsn,
            apply_lsn=apply_lsn,
            force=True,
        )

    async def close(self) -> None:
        if self._conn is None:
            return
        conn, self._conn, self._cursor = self._conn, None, None
        if not conn.closed:
            conn.close()
        logger.info("transport.closed")

    def _read_message(self) -> Any:
        import psycopg2

        if self._conn is None or self._conn.closed:
            raise ReceiveError.fatal("replication connection is closed")
        try:
            return self._cursor.read_message()
        except (psycopg2.OperationalError, psycopg2.InterfaceError) as exc:
            raise ReceiveError.fatal(str(exc)) from exc
        except psycopg2.Error as exc:
            if self._conn.closed:
                raise ReceiveError.fatal(str(exc)) from exc
            raise ReceiveError.other(str(exc)) from exc

    async def _wait_readable(self, timeout: float) -> None:
        loop = asyncio.get_running_loop()
        ready: asyncio.Future[None] = loop.create_future()

        def _on_readable() -> None:
            if not ready.done():
                ready.set_result(None)

        fd = self._conn.fileno()
        loop.add_reader(fd, _on_readable)
        try:
            await asyncio.wait_for(ready, timeout)
        except TimeoutError:
            raise ReceiveError.timeout() from None
        finally:
            loop.remove_reader(fd)
