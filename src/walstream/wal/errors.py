"""Error taxonomy for the replication streaming engine.

- StartupError and subclasses: fatal before the receive loop starts.
- ReceiveError: tagged with a ReceiveErrorKind so the loop can tell an
  empty bounded wait from a dead session.
- EnvelopeError / DecodeError: a single message is skipped.
- DispatchOverflowError: the consumer cannot keep up; session-fatal.
"""

from __future__ import annotations

from enum import StrEnum


class WalStreamError(Exception):
    """Base class for all walstream errors."""


class StartupError(WalStreamError):
    """The engine cannot enter the receive loop."""


class ConnectionFailedError(StartupError):
    """The replication connection could not be opened."""


class SlotCreationError(StartupError):
    """The server rejected the replication slot (name collision, bad plugin)."""


class StartReplicationError(StartupError):
    """START_REPLICATION was refused (e.g. the slot does not exist)."""


class ReceiveErrorKind(StrEnum):
    TIMEOUT = "timeout"
    FATAL = "fatal"
    OTHER = "other"


class ReceiveError(WalStreamError):
    """A failed receive attempt, classified by *kind*."""

    def __init__(self, kind: ReceiveErrorKind, message: str = "") -> None:
        super().__init__(message or kind.value)
        self.kind = kind

    @classmethod
    def timeout(cls) -> ReceiveError:
        return cls(ReceiveErrorKind.TIMEOUT, "no message within receive timeout")

    @classmethod
    def fatal(cls, message: str) -> ReceiveError:
        return cls(ReceiveErrorKind.FATAL, message)

    @classmethod
    def other(cls, message: str) -> ReceiveError:
        return cls(ReceiveErrorKind.OTHER, message)


class EnvelopeError(WalStreamError):
    """A CopyData frame is truncated or otherwise malformed."""


class DecodeError(WalStreamError):
    """A wal2json payload is structurally invalid."""


class DispatchOverflowError(WalStreamError):
    """The dispatch queue is full and the overflow policy refused the event."""
