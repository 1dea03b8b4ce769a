"""Delivery of decoded change events to the consumer.

Every dispatcher tracks ``delivered_position``: the highest WAL position
whose events have all been handed to the handler. The receive loop never
acknowledges past it.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from contextlib import suppress
from typing import Protocol, runtime_checkable

import structlog

from walstream.config.models import DispatchConfig, DispatchMode, OverflowPolicy
from walstream.wal.errors import DispatchOverflowError
from walstream.wal.events import ChangeEvent

logger = structlog.get_logger()

ChangeHandler = Callable[[ChangeEvent], Awaitable[None]]


@runtime_checkable
class EventDispatcher(Protocol):
    """What the receive loop hands decoded events to."""

    @property
    def delivered_position(self) -> int: ...

    async def start(self) -> None: ...

    async def dispatch(
        self, events: Sequence[ChangeEvent], *, position: int = 0
    ) -> None:
        """Hand over *events*; *position* is where they end in the WAL.

        An empty *events* still records *position*, so frames without
        changes (keepalives, skipped payloads) move the watermark too.
        """
        ...

    async def close(self) -> None: ...


class Dispatcher:
    """Synchronous dispatch: the loop waits for the handler on every event.

    A slow handler stalls the receive loop (and its keepalives). Handler
    exceptions propagate so the position is never acknowledged past them.
    """

    def __init__(self, handler: ChangeHandler) -> None:
        self._handler = handler
        self._delivered_position = 0
        self.delivered = 0

    @property
    def delivered_position(self) -> int:
        return self._delivered_position

    async def start(self) -> None:
        return None

    async def dispatch(
        self, events: Sequence[ChangeEvent], *, position: int = 0
    ) -> None:
        for event in events:
            await self._handler(event)
            self.delivered += 1
        self._delivered_position = max(self._delivered_position, position)

    async def close(self) -> None:
        return None


class QueueDispatcher:
    """Bounded queue between the receive loop and a single consumer worker.

    One worker preserves decode order. When the queue is full the
    :class:`OverflowPolicy` decides: wait up to *block_timeout* (BLOCK),
    evict the oldest buffered event (DROP_OLDEST) or refuse (REJECT).

    Only the last event of a frame carries the frame's position, so
    ``delivered_position`` moves once the whole frame has been handled.
    Once nothing is buffered or in flight it catches up with the highest
    position dispatched.
    """

    def __init__(
        self,
        handler: ChangeHandler,
        *,
        max_buffered: int = 1000,
        overflow: OverflowPolicy = OverflowPolicy.BLOCK,
        block_timeout: float = 30.0,
    ) -> None:
        self._handler = handler
        self._queue: asyncio.Queue[tuple[ChangeEvent, int | None]] = asyncio.Queue(
            maxsize=max_buffered
        )
        self._overflow = overflow
        self._block_timeout = block_timeout
        self._worker: asyncio.Task[None] | None = None
        self._outstanding = 0
        self._dispatched_position = 0
        self._delivered_position = 0
        self.delivered = 0
        self.dropped = 0
        self.failed = 0

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    @property
    def delivered_position(self) -> int:
        return self._delivered_position

    async def start(self) -> None:
        if self._worker is None:
            self._worker = asyncio.create_task(self._run(), name="walstream-dispatch")
            logger.info(
                "dispatcher.started",
                max_buffered=self._queue.maxsize,
                overflow=self._overflow.value,
            )

    async def dispatch(
        self, events: Sequence[ChangeEvent], *, position: int = 0
    ) -> None:
        last = len(events) - 1
        for index, event in enumerate(events):
            await self._put(event, position if index == last else None)
        self._dispatched_position = max(self._dispatched_position, position)
        self._catch_up()

    def _catch_up(self) -> None:
        if self._outstanding == 0:
            self._delivered_position = max(
                self._delivered_position, self._dispatched_position
            )

    def _finish(self, position: int | None) -> None:
        self._outstanding -= 1
        if position is not None:
            self._delivered_position = max(self._delivered_position, position)
        self._catch_up()

    async def _put(self, event: ChangeEvent, position: int | None) -> None:
        item = (event, position)
        if not self._queue.full():
            self._queue.put_nowait(item)
            self._outstanding += 1
            return

        if self._overflow is OverflowPolicy.BLOCK:
            # Counted before the wait: the worker may take the item before
            # this coroutine resumes.
            self._outstanding += 1
            try:
                await asyncio.wait_for(self._queue.put(item), self._block_timeout)
            except TimeoutError:
                self._outstanding -= 1
                msg = (
                    f"dispatch queue full for {self._block_timeout}s "
                    f"({self._queue.maxsize} events buffered)"
                )
                raise DispatchOverflowError(msg) from None
            except asyncio.CancelledError:
                self._outstanding -= 1
                raise
        elif self._overflow is OverflowPolicy.DROP_OLDEST:
            with suppress(asyncio.QueueEmpty):
                evicted, evicted_position = self._queue.get_nowait()
                self._queue.task_done()
                self.dropped += 1
                # Evicted events count as handled, but their position must
                # wait for whatever is still in flight ahead of them.
                self._finish(None)
                logger.warning(
                    "dispatcher.dropped_oldest",
                    relation=evicted.relation,
                    lsn=evicted.lsn,
                    position=evicted_position,
                    dropped=self.dropped,
                )
            self._queue.put_nowait(item)
            self._outstanding += 1
        else:
            msg = f"dispatch queue full ({self._queue.maxsize} events buffered)"
            raise DispatchOverflowError(msg)

    async def _run(self) -> None:
        while True:
            event, position = await self._queue.get()
            try:
                await self._handler(event)
                self.delivered += 1
            except Exception as exc:
                self.failed += 1
                logger.error(
                    "dispatcher.handler_error",
                    relation=event.relation,
                    kind=event.kind.value,
                    lsn=event.lsn,
                    error=str(exc),
                )
            finally:
                self._finish(position)
                self._queue.task_done()

    async def close(self) -> None:
        """Drain buffered events, then stop the worker."""
        if self._worker is None:
            return
        if not self._worker.done():
            await self._queue.join()
        self._worker.cancel()
        with suppress(asyncio.CancelledError):
            await self._worker
        self._worker = None
        logger.info(
            "dispatcher.stopped",
            delivered=self.delivered,
            dropped=self.dropped,
            failed=self.failed,
        )


def create_dispatcher(handler: ChangeHandler, config: DispatchConfig) -> EventDispatcher:
    """Build the dispatcher selected by *config*."""
    if config.mode is DispatchMode.QUEUE:
        return QueueDispatcher(
            handler,
            max_buffered=config.max_buffered_events,
            overflow=config.overflow,
            block_timeout=config.block_timeout_seconds,
        )
    return Dispatcher(handler)
