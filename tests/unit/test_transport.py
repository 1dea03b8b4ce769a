"""Unit tests for the psycopg2-backed replication transport."""

from __future__ import annotations

import socket
from datetime import UTC, datetime
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import psycopg2
import pytest

from walstream.wal.envelope import XLogData, parse_frame
from walstream.wal.errors import (
    ConnectionFailedError,
    ReceiveError,
    ReceiveErrorKind,
    StartReplicationError,
)
from walstream.wal.transport import Psycopg2ReplicationTransport, ReplicationTransport


def _connected(read_message=None) -> Psycopg2ReplicationTransport:
    transport = Psycopg2ReplicationTransport("dbname=test")
    conn = MagicMock()
    conn.closed = 0
    cursor = MagicMock()
    if read_message is not None:
        cursor.read_message = read_message
    transport._conn = conn
    transport._cursor = cursor
    return transport


def _message(payload: bytes, data_start: int = 0x100, wal_end: int = 0x200):
    return SimpleNamespace(
        payload=payload,
        data_start=data_start,
        wal_end=wal_end,
        send_time=datetime(2000, 1, 1, 0, 0, 1, tzinfo=UTC),
    )


def test_satisfies_protocol():
    assert isinstance(Psycopg2ReplicationTransport("dbname=x"), ReplicationTransport)


@pytest.mark.asyncio
class TestConnect:
    async def test_connection_failure_raises_connection_failed(self):
        with (
            patch("psycopg2.connect", side_effect=psycopg2.OperationalError("refused")),
            pytest.raises(ConnectionFailedError, match="refused"),
        ):
            await Psycopg2ReplicationTransport("host=nowhere").connect()

    async def test_connect_uses_replication_connection(self):
        from psycopg2.extras import LogicalReplicationConnection

        conn = MagicMock()
        with patch("psycopg2.connect", return_value=conn) as connect:
            transport = Psycopg2ReplicationTransport("dbname=test")
            await transport.connect()

        assert connect.call_args.kwargs["connection_factory"] is LogicalReplicationConnection
        conn.cursor.assert_called_once()

    async def test_start_before_connect_fails(self):
        with pytest.raises(StartReplicationError):
            await Psycopg2ReplicationTransport("dbname=x").start_replication("s", 0, {})

    async def test_start_replication_failure(self):
        transport = _connected()
        transport._cursor.start_replication.side_effect = psycopg2.ProgrammingError(
            'replication slot "missing" does not exist'
        )
        with pytest.raises(StartReplicationError, match="missing"):
            await transport.start_replication("missing", 0, {})

    async def test_start_replication_passes_options(self):
        transport = _connected()
        await transport.start_replication("slot_a", 0x10, {"pretty-print": "0"})
        transport._cursor.start_replication.assert_called_once_with(
            slot_name="slot_a",
            decode=False,
            start_lsn=0x10,
            options={"pretty-print": "0"},
        )


@pytest.mark.asyncio
class TestReceive:
    async def test_rebuilds_xlog_frame(self):
        payload = b'{"change":[]}'
        transport = _connected(MagicMock(return_value=_message(payload)))

        frame = await transport.receive(1.0)

        parsed = parse_frame(frame)
        assert isinstance(parsed, XLogData)
        assert parsed.data == payload
        assert parsed.data_start == 0x100
        assert parsed.wal_end == 0x200
        assert parsed.send_time == 1_000_000

    async def test_waits_then_reads(self):
        payload = b'{"change":[]}'
        transport = _connected(MagicMock(side_effect=[None, _message(payload)]))
        transport._wait_readable = AsyncMock()  # type: ignore[method-assign]

        frame = await transport.receive(1.0)
        assert frame.endswith(payload)
        transport._wait_readable.assert_awaited_once_with(1.0)

    async def test_readable_without_message_is_timeout(self):
        transport = _connected(MagicMock(return_value=None))
        transport._wait_readable = AsyncMock()  # type: ignore[method-assign]

        with pytest.raises(ReceiveError) as excinfo:
            await transport.receive(1.0)
        assert excinfo.value.kind is ReceiveErrorKind.TIMEOUT

    async def test_operational_error_is_fatal(self):
        transport = _connected(
            MagicMock(side_effect=psycopg2.OperationalError("server closed"))
        )
        with pytest.raises(ReceiveError) as excinfo:
            await transport.receive(1.0)
        assert excinfo.value.kind is ReceiveErrorKind.FATAL

    async def test_other_driver_error_is_other(self):
        transport = _connected(
            MagicMock(side_effect=psycopg2.DatabaseError("transient"))
        )
        with pytest.raises(ReceiveError) as excinfo:
            await transport.receive(1.0)
        assert excinfo.value.kind is ReceiveErrorKind.OTHER

    async def test_closed_connection_is_fatal(self):
        transport = _connected()
        transport._conn.closed = 1
        with pytest.raises(ReceiveError) as excinfo:
            await transport.receive(1.0)
        assert excinfo.value.kind is ReceiveErrorKind.FATAL


@pytest.mark.asyncio
class TestWaitReadable:
    async def test_times_out_when_idle(self):
        left, right = socket.socketpair()
        try:
            transport = _connected()
            transport._conn.fileno.return_value = left.fileno()
            with pytest.raises(ReceiveError) as excinfo:
                await transport._wait_readable(0.01)
            assert excinfo.value.kind is ReceiveErrorKind.TIMEOUT
        finally:
            left.close()
            right.close()

    async def test_returns_when_data_arrives(self):
        left, right = socket.socketpair()
        try:
            transport = _connected()
            transport._conn.fileno.return_value = left.fileno()
            right.send(b"x")
            await transport._wait_readable(1.0)
        finally:
            left.close()
            right.close()


@pytest.mark.asyncio
class TestStatusAndClose:
    async def test_send_standby_status_forces_feedback(self):
        transport = _connected()
        await transport.send_standby_status(30, 20, 10)
        transport._cursor.send_feedback.assert_called_once_with(
            write_lsn=30, flush_lsn=20, apply_lsn=10, force=True
        )

    async def test_close_is_idempotent(self):
        transport = _connected()
        conn = transport._conn
        await transport.close()
        await transport.close()
        conn.close.assert_called_once()
        assert transport.connected is False
