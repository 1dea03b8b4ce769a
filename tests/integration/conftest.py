"""Fixtures for tests against a live PostgreSQL with wal2json installed.

Set ``WALSTREAM_TEST_DSN`` (for example
``host=localhost user=postgres password=postgres dbname=postgres``) to run
them; the server needs ``wal_level=logical``.
"""

from __future__ import annotations

import os
import uuid

import pytest

from walstream.config.models import EngineConfig


@pytest.fixture(scope="session")
def dsn() -> str:
    value = os.environ.get("WALSTREAM_TEST_DSN")
    if not value:
        pytest.skip("WALSTREAM_TEST_DSN not set")
    return value


@pytest.fixture
def engine_config(dsn: str) -> EngineConfig:
    return EngineConfig.model_validate(
        {
            "connection": {"dsn": dsn},
            "slot": {"prefix": "walstream_it"},
            "stream": {
                "keepalive_interval_seconds": 2.0,
                "receive_timeout_seconds": 0.5,
            },
        }
    )


@pytest.fixture
def table_name(dsn: str):
    """Create a scratch table and drop it afterwards."""
    import psycopg

    name = f"walstream_it_{uuid.uuid4().hex[:8]}"
    with psycopg.connect(dsn, autocommit=True) as conn:
        conn.execute(
            f"CREATE TABLE public.{name} (id int PRIMARY KEY, label text, payload jsonb)"
        )
    yield name
    with psycopg.connect(dsn, autocommit=True) as conn:
        conn.execute(f"DROP TABLE IF EXISTS public.{name}")
