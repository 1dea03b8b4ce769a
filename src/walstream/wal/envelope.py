"""Streaming replication CopyData envelope codec.

Frames sent by the walsender inside CopyBoth mode:

- w (XLogData):          Int64 data start, Int64 WAL end, Int64 send time, payload
- k (Primary keepalive): Int64 WAL end, Int64 send time, Byte1 reply requested

Send times are microseconds since the PostgreSQL epoch (2000-01-01 UTC).

Reference: https://www.postgresql.org/docs/current/protocol-replication.html
"""

from __future__ import annotations

import struct
from dataclasses import dataclass
from datetime import UTC, datetime

from walstream.wal.errors import EnvelopeError

XLOG_DATA_ID = ord("w")
PRIMARY_KEEPALIVE_ID = ord("k")

_XLOG_HEADER = struct.Struct("!QQq")
_KEEPALIVE_BODY = struct.Struct("!Qq?")

_PG_EPOCH = datetime(2000, 1, 1, tzinfo=UTC)
_PG_EPOCH_TS = _PG_EPOCH.timestamp()


@dataclass(frozen=True, slots=True)
class XLogData:
    """WAL data chunk carrying one decoding-plugin payload."""

    data_start: int
    wal_end: int
    send_time: int
    data: bytes

    @property
    def end_position(self) -> int:
        """WAL position this chunk may be acknowledged at once delivered.

        The payload is plugin output, not WAL bytes, so its length says
        nothing about positions.
        """
        return max(self.data_start, self.wal_end)


@dataclass(frozen=True, slots=True)
class PrimaryKeepalive:
    """Server heartbeat; ``reply_requested`` asks for an immediate status update."""

    wal_end: int
    send_time: int
    reply_requested: bool


def pg_timestamp(moment: datetime | int | None) -> int:
    """Convert *moment* to microseconds since the PostgreSQL epoch."""
    if moment is None:
        return 0
    if isinstance(moment, int):
        return moment
    return round((moment.timestamp() - _PG_EPOCH_TS) * 1_000_000)


def parse_frame(frame: bytes) -> XLogData | PrimaryKeepalive | None:
    """Parse a CopyData payload; unknown frame types return None."""
    if not frame:
        raise EnvelopeError("empty CopyData frame")

    marker = frame[0]
    body = memoryview(frame)[1:]

    if marker == XLOG_DATA_ID:
        if len(body) < _XLOG_HEADER.size:
            msg = f"XLogData header truncated: {len(body)} of {_XLOG_HEADER.size} bytes"
            raise EnvelopeError(msg)
        data_start, wal_end, send_time = _XLOG_HEADER.unpack_from(body, 0)
        return XLogData(
            data_start=data_start,
            wal_end=wal_end,
            send_time=send_time,
            data=bytes(body[_XLOG_HEADER.size :]),
        )

    if marker == PRIMARY_KEEPALIVE_ID:
        if len(body) < _KEEPALIVE_BODY.size:
            msg = (
                f"keepalive frame truncated: {len(body)} of "
                f"{_KEEPALIVE_BODY.size} bytes"
            )
            raise EnvelopeError(msg)
        wal_end, send_time, reply = _KEEPALIVE_BODY.unpack_from(body, 0)
        return PrimaryKeepalive(
            wal_end=wal_end, send_time=send_time, reply_requested=reply
        )

    return None


def pack_xlog_data(
    data: bytes, *, data_start: int = 0, wal_end: int = 0, send_time: int = 0
) -> bytes:
    """Build a ``w`` frame around *data*."""
    return bytes([XLOG_DATA_ID]) + _XLOG_HEADER.pack(data_start, wal_end, send_time) + data


def pack_keepalive(wal_end: int, *, send_time: int = 0, reply: bool = False) -> bytes:
    """Build a ``k`` frame."""
    return bytes([PRIMARY_KEEPALIVE_ID]) + _KEEPALIVE_BODY.pack(wal_end, send_time, reply)
