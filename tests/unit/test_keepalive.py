"""Unit tests for the keepalive scheduler."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from walstream.wal.keepalive import KeepaliveScheduler


class FakeClock:
    def __init__(self, now: float = 0.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.mark.asyncio
class TestKeepaliveScheduler:
    async def test_no_send_before_deadline(self):
        clock = FakeClock()
        send = AsyncMock()
        scheduler = KeepaliveScheduler(10.0, send, clock=clock)

        clock.advance(9.9)
        assert await scheduler.tick() is False
        send.assert_not_awaited()

    async def test_sends_at_deadline_and_resets(self):
        clock = FakeClock()
        send = AsyncMock()
        scheduler = KeepaliveScheduler(10.0, send, clock=clock)

        clock.advance(10.0)
        assert await scheduler.tick() is True
        assert send.await_count == 1
        assert scheduler.deadline == 20.0

        # Same window: no second update.
        clock.advance(5.0)
        assert await scheduler.tick() is False
        assert send.await_count == 1

    async def test_late_tick_resets_from_now(self):
        clock = FakeClock()
        send = AsyncMock()
        scheduler = KeepaliveScheduler(10.0, send, clock=clock)

        clock.advance(14.0)
        await scheduler.tick()
        assert scheduler.deadline == 24.0

    async def test_at_most_one_per_window_at_least_one_per_interval_plus_timeout(self):
        """Ticking every receive timeout (5s) over 100s sends within the bounds."""
        clock = FakeClock()
        send_times: list[float] = []

        async def send() -> None:
            send_times.append(clock.now)

        scheduler = KeepaliveScheduler(10.0, send, clock=clock)
        while clock.now < 100.0:
            await scheduler.tick()
            clock.advance(5.0)

        gaps = [b - a for a, b in zip([0.0, *send_times], send_times, strict=False)]
        assert all(gap >= 10.0 for gap in gaps)
        assert all(gap <= 15.0 for gap in gaps)
        assert send_times == [10.0, 20.0, 30.0, 40.0, 50.0, 60.0, 70.0, 80.0, 90.0]

    async def test_failed_send_is_logged_not_raised(self):
        clock = FakeClock()
        send = AsyncMock(side_effect=ConnectionError("socket closed"))
        scheduler = KeepaliveScheduler(10.0, send, clock=clock)

        clock.advance(10.0)
        assert await scheduler.tick() is True
        assert scheduler.failed == 1
        assert scheduler.sent == 0
        # Deadline still moves so a dead socket is not hammered every iteration.
        assert scheduler.deadline == 20.0

    async def test_send_now_bypasses_deadline(self):
        clock = FakeClock()
        send = AsyncMock()
        scheduler = KeepaliveScheduler(10.0, send, clock=clock)

        clock.advance(3.0)
        await scheduler.send_now()
        assert send.await_count == 1
        assert scheduler.deadline == 13.0


def test_rejects_non_positive_interval():
    with pytest.raises(ValueError):
        KeepaliveScheduler(0, AsyncMock())
