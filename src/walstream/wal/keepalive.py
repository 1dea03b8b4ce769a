"""Standby status update scheduling."""

from __future__ import annotations

import time
from collections.abc import Awaitable, Callable

import structlog

logger = structlog.get_logger()


class KeepaliveScheduler:
    """Sends a standby status update whenever a rolling deadline elapses.

    The walsender terminates sessions that stay silent longer than
    ``wal_sender_timeout``, so *interval* must be shorter than that.
    Checking happens cooperatively: the receive loop calls :meth:`tick`
    once per iteration.
    """

    def __init__(
        self,
        interval: float,
        send: Callable[[], Awaitable[None]],
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if interval <= 0:
            msg = "keepalive interval must be positive"
            raise ValueError(msg)
        self._interval = interval
        self._send = send
        self._clock = clock
        self._deadline = clock() + interval
        self.sent = 0
        self.failed = 0

    @property
    def deadline(self) -> float:
        return self._deadline

    @property
    def interval(self) -> float:
        return self._interval

    async def tick(self) -> bool:
        """Send an update if the deadline has passed; return whether one was attempted."""
        if self._clock() < self._deadline:
            return False
        await self.send_now()
        return True

    async def send_now(self) -> None:
        """Send an update immediately and restart the interval."""
        now = self._clock()
        try:
            await self._send()
        except Exception as exc:
            # The next receive surfaces the connection failure if the session is dead.
            self.failed += 1
            logger.warning("keepalive.send_failed", error=str(exc))
        else:
            self.sent += 1
            logger.debug("keepalive.sent", count=self.sent)
        finally:
            self._deadline = now + self._interval
