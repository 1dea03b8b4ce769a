"""Pydantic configuration models for the replication streaming engine."""

from __future__ import annotations

from enum import StrEnum
from pathlib import Path
from typing import Self

from pydantic import BaseModel, Field, SecretStr, model_validator


class DispatchMode(StrEnum):
    """How decoded events reach the consumer."""

    DIRECT = "direct"
    QUEUE = "queue"


class OverflowPolicy(StrEnum):
    """What the queue dispatcher does when its buffer is full."""

    BLOCK = "block"
    DROP_OLDEST = "drop_oldest"
    REJECT = "reject"


class ConnectionConfig(BaseModel):
    """Source database connection.

    ``dsn`` takes precedence over the individual fields when set.
    """

    host: str = "localhost"
    port: int = Field(default=5432, ge=1, le=65535)
    database: str = "postgres"
    username: str = "postgres"
    password: SecretStr = SecretStr("")
    application_name: str = "walstream"
    connect_timeout_seconds: int = Field(default=10, ge=1)
    dsn: SecretStr | None = None

    def conninfo(self) -> str:
        """Build a libpq connection string."""
        if self.dsn is not None:
            return self.dsn.get_secret_value()
        from psycopg.conninfo import make_conninfo

        params: dict[str, str | int] = {
            "host": self.host,
            "port": self.port,
            "dbname": self.database,
            "user": self.username,
            "application_name": self.application_name,
            "connect_timeout": self.connect_timeout_seconds,
        }
        password = self.password.get_secret_value()
        if password:
            params["password"] = password
        return make_conninfo(**params)


class SlotConfig(BaseModel):
    """Replication slot naming and ownership.

    With ``create`` enabled (the default) a fresh ``<prefix>_<random>`` slot
    is created at startup and dropped on shutdown. With ``create`` disabled
    the engine attaches to the existing slot ``name`` and leaves it in place.
    """

    prefix: str = Field(
        default="walstream", pattern=r"^[a-z_][a-z0-9_]*$", max_length=50
    )
    name: str | None = Field(
        default=None, pattern=r"^[a-z0-9_]+$", max_length=63
    )
    create: bool = True
    plugin: str = "wal2json"

    @model_validator(mode="after")
    def check_external_slot(self) -> Self:
        """An externally managed slot must be named."""
        if not self.create and self.name is None:
            msg = "slot.name is required when slot.create is false"
            raise ValueError(msg)
        return self


class StreamConfig(BaseModel):
    """Receive loop timing, plugin options and receive-error policy."""

    keepalive_interval_seconds: float = Field(default=10.0, gt=0)
    receive_timeout_seconds: float = Field(default=5.0, gt=0)
    plugin_options: dict[str, str] = Field(
        default_factory=lambda: {"pretty-print": "0"}
    )
    # 0 retries forever.
    max_consecutive_errors: int = Field(default=10, ge=0)
    error_backoff_base_seconds: float = Field(default=0.5, gt=0)
    error_backoff_cap_seconds: float = Field(default=30.0, gt=0)

    @model_validator(mode="after")
    def check_timeouts(self) -> Self:
        """The bounded wait must be shorter than the keepalive interval."""
        if self.receive_timeout_seconds >= self.keepalive_interval_seconds:
            msg = (
                "receive_timeout_seconds must be less than "
                "keepalive_interval_seconds"
            )
            raise ValueError(msg)
        if self.error_backoff_cap_seconds < self.error_backoff_base_seconds:
            msg = "error_backoff_cap_seconds must be >= error_backoff_base_seconds"
            raise ValueError(msg)
        return self


class DispatchConfig(BaseModel):
    """Dispatcher selection and queue backpressure policy."""

    mode: DispatchMode = DispatchMode.DIRECT
    max_buffered_events: int = Field(default=1000, ge=1)
    overflow: OverflowPolicy = OverflowPolicy.BLOCK
    block_timeout_seconds: float = Field(default=30.0, gt=0)


class CursorConfig(BaseModel):
    """Where the last acknowledged position is persisted (in memory if unset)."""

    path: Path | None = None
    fsync: bool = False


class EngineConfig(BaseModel, extra="forbid"):
    """Top-level engine configuration."""

    connection: ConnectionConfig = ConnectionConfig()
    slot: SlotConfig = SlotConfig()
    stream: StreamConfig = StreamConfig()
    dispatch: DispatchConfig = DispatchConfig()
    cursor: CursorConfig = CursorConfig()
