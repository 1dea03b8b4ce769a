"""Core WAL reader: logical replication receive loop.

Lifecycle:
    1. Open the replication connection (fatal on failure)
    2. Acquire the replication slot (created now, dropped on every exit path)
    3. START_REPLICATION from the stored cursor position
    4. Loop: keepalive check → bounded receive → decode → dispatch
    5. On stop, cancellation or a session-fatal error: close the connection,
       drop the slot, drain the dispatcher

The loop is a single cooperative task. The bounded receive timeout only
caps how long a due keepalive can be delayed.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from contextlib import suppress
from dataclasses import dataclass
from enum import StrEnum

import structlog

from walstream.config.models import EngineConfig
from walstream.dispatch.dispatcher import ChangeHandler, EventDispatcher, create_dispatcher
from walstream.dispatch.sinks import LogSink
from walstream.wal.cursor import CursorStore, FileCursorStore, InMemoryCursorStore
from walstream.wal.decoder import Wal2JsonDecoder
from walstream.wal.envelope import PrimaryKeepalive, XLogData, parse_frame
from walstream.wal.errors import DecodeError, EnvelopeError, ReceiveError, ReceiveErrorKind
from walstream.wal.events import ChangeEvent
from walstream.wal.keepalive import KeepaliveScheduler
from walstream.wal.lsn import format_lsn
from walstream.wal.slot_manager import SlotManager
from walstream.wal.transport import Psycopg2ReplicationTransport, ReplicationTransport

logger = structlog.get_logger()


class StreamState(StrEnum):
    IDLE = "idle"
    WAITING_FOR_MESSAGE = "waiting_for_message"
    DECODING = "decoding"
    SHUTTING_DOWN = "shutting_down"


@dataclass
class ReplicationSession:
    """State of the one live replication stream."""

    slot_name: str
    start_lsn: int = 0
    received_lsn: int = 0
    acknowledged_lsn: int = 0
    last_keepalive_deadline: float = 0.0
    state: StreamState = StreamState.IDLE


def build_cursor_store(config: EngineConfig) -> CursorStore:
    if config.cursor.path is None:
        return InMemoryCursorStore()
    return FileCursorStore(config.cursor.path, fsync=config.cursor.fsync)


class WalReader:
    """Streams wal2json changes from a logical replication slot to a handler."""

    def __init__(
        self,
        config: EngineConfig,
        handler: ChangeHandler | None = None,
        *,
        transport: ReplicationTransport | None = None,
        slot_manager: SlotManager | None = None,
        dispatcher: EventDispatcher | None = None,
        cursor_store: CursorStore | None = None,
        decoder: Wal2JsonDecoder | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config
        dsn = config.connection.conninfo()
        self._transport = transport or Psycopg2ReplicationTransport(dsn)
        self._slot_manager = slot_manager or SlotManager(dsn, config.slot)
        self._dispatcher = dispatcher or create_dispatcher(
            handler or LogSink(), config.dispatch
        )
        self._cursor_store = cursor_store or build_cursor_store(config)
        self._decoder = decoder or Wal2JsonDecoder()
        self._clock = clock
        self._stop = asyncio.Event()
        self._session: ReplicationSession | None = None
        self._keepalive: KeepaliveScheduler | None = None

        self.frames_received = 0
        self.events_dispatched = 0
        self.messages_skipped = 0

    @property
    def session(self) -> ReplicationSession | None:
        return self._session

    @property
    def keepalive(self) -> KeepaliveScheduler | None:
        return self._keepalive

    def stop(self) -> None:
        """Ask the loop to exit after the current iteration."""
        self._stop.set()

    async def run(self) -> None:
        """Run the stream until stopped, cancelled or the session dies."""
        await self._dispatcher.start()
        try:
            await self._transport.connect()
            async with self._slot_manager.acquire() as slot_name:
                start_lsn = self._cursor_store.load(slot_name) or 0
                session = ReplicationSession(slot_name=slot_name, start_lsn=start_lsn)
                self._session = session
                try:
                    await self._transport.start_replication(
                        slot_name, start_lsn, self._config.stream.plugin_options
                    )
                    logger.info(
                        "wal_reader.started",
                        slot=slot_name,
                        start_lsn=format_lsn(start_lsn),
                    )
                    await self._stream(session)
                finally:
                    session.state = StreamState.SHUTTING_DOWN
                    await self._transport.close()
        finally:
            await self._transport.close()
            await self._dispatcher.close()
            logger.info(
                "wal_reader.stopped",
                frames=self.frames_received,
                events=self.events_dispatched,
                skipped=self.messages_skipped,
            )

    async def _stream(self, session: ReplicationSession) -> None:
        stream_cfg = self._config.stream
        keepalive = KeepaliveScheduler(
            stream_cfg.keepalive_interval_seconds,
            self._send_status,
            clock=self._clock,
        )
        self._keepalive = keepalive
        consecutive_errors = 0

        while not self._stop.is_set():
            session.state = StreamState.IDLE
            await keepalive.tick()
            session.last_keepalive_deadline = keepalive.deadline

            session.state = StreamState.WAITING_FOR_MESSAGE
            try:
                frame = await self._transport.receive(stream_cfg.receive_timeout_seconds)
            except ReceiveError as exc:
                if exc.kind is ReceiveErrorKind.TIMEOUT:
                    continue
                if exc.kind is ReceiveErrorKind.FATAL:
                    logger.error("wal_reader.session_lost", error=str(exc))
                    raise
                consecutive_errors += 1
                limit = stream_cfg.max_consecutive_errors
                if limit and consecutive_errors >= limit:
                    logger.error(
                        "wal_reader.max_errors_exceeded",
                        attempts=consecutive_errors,
                        error=str(exc),
                    )
                    msg = f"{consecutive_errors} consecutive receive errors: {exc}"
                    raise ReceiveError.fatal(msg) from exc
                delay = min(
                    stream_cfg.error_backoff_base_seconds * 2 ** (consecutive_errors - 1),
                    stream_cfg.error_backoff_cap_seconds,
                )
                logger.warning(
                    "wal_reader.receive_error",
                    attempt=consecutive_errors,
                    backoff_seconds=delay,
                    error=str(exc),
                )
                await self._backoff(delay, keepalive)
                continue

            consecutive_errors = 0
            self.frames_received += 1
            await self._handle_frame(session, frame)

        # Clean stop: drain buffered events, then report everything delivered
        # before the slot goes away.
        await self._dispatcher.close()
        if session.received_lsn > session.acknowledged_lsn:
            await keepalive.send_now()

    async def _handle_frame(self, session: ReplicationSession, frame: bytes) -> None:
        try:
            message = parse_frame(frame)
        except EnvelopeError as exc:
            self.messages_skipped += 1
            logger.warning("wal_reader.bad_envelope", error=str(exc))
            return

        if isinstance(message, PrimaryKeepalive):
            await self._dispatcher.dispatch((), position=message.wal_end)
            session.received_lsn = max(session.received_lsn, message.wal_end)
            if message.reply_requested and self._keepalive is not None:
                await self._keepalive.send_now()
            return
        if not isinstance(message, XLogData):
            return

        session.state = StreamState.DECODING
        events: list[ChangeEvent] = []
        try:
            events = self._decoder.decode_xlog(message)
        except DecodeError as exc:
            self.messages_skipped += 1
            logger.warning(
                "wal_reader.bad_payload",
                lsn=format_lsn(message.data_start),
                size=len(message.data),
                error=str(exc),
            )
        await self._dispatcher.dispatch(events, position=message.end_position)
        self.events_dispatched += len(events)
        session.received_lsn = max(session.received_lsn, message.end_position)

    async def _send_status(self) -> None:
        session = self._session
        if session is None:
            return
        # Never past what the consumer has actually been handed.
        lsn = min(session.received_lsn, self._dispatcher.delivered_position)
        await self._transport.send_standby_status(lsn, lsn, lsn)
        session.acknowledged_lsn = lsn
        if lsn:
            try:
                self._cursor_store.save(session.slot_name, lsn)
            except OSError as exc:
                logger.error("wal_reader.cursor_save_failed", error=str(exc))

    async def _backoff(self, delay: float, keepalive: KeepaliveScheduler) -> None:
        """Wait out *delay* in slices that never overrun the keepalive deadline."""
        remaining = delay
        while remaining > 0 and not self._stop.is_set():
            step = min(remaining, max(keepalive.deadline - self._clock(), 0.0))
            if step > 0:
                await self._pause(step)
                remaining -= step
            await keepalive.tick()

    async def _pause(self, delay: float) -> None:
        """Sleep for *delay* seconds, returning early if stop() is called."""
        with suppress(TimeoutError):
            await asyncio.wait_for(self._stop.wait(), delay)
