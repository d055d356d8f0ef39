"""Fixtures for tests that need a running PostgreSQL server.

Set ``EVENTS_TO_DB_IT_PG_HOST`` (plus optionally ``_PORT``, ``_DB``,
``_USER`` and ``_PASSWORD``) to enable them; otherwise they are skipped.
"""

from __future__ import annotations

import os
import uuid
from collections.abc import Iterator

import pytest

from events_to_db.config.models import PostgresSinkConfig, SinkConfig, SinkType

_PREFIX = "EVENTS_TO_DB_IT_PG_"


def pytest_collection_modifyitems(config, items):
    if os.environ.get(f"{_PREFIX}HOST"):
        return
    skip = pytest.mark.skip(reason=f"{_PREFIX}HOST not set")
    for item in items:
        if "integration" in item.keywords:
            item.add_marker(skip)


@pytest.fixture
def pg_sink_config() -> Iterator[SinkConfig]:
    """A sink config pointing at a fresh, uniquely named table."""
    psycopg2 = pytest.importorskip("psycopg2")
    pg = PostgresSinkConfig(
        host=os.environ[f"{_PREFIX}HOST"],
        port=int(os.environ.get(f"{_PREFIX}PORT", "5432")),
        database=os.environ.get(f"{_PREFIX}DB", "postgres"),
        username=os.environ.get(f"{_PREFIX}USER", "postgres"),
        password=os.environ.get(f"{_PREFIX}PASSWORD", "postgres"),
        table=f"events_it_{uuid.uuid4().hex[:8]}",
    )
    yield SinkConfig(sink_id="it-pg", sink_type=SinkType.POSTGRES, postgres=pg)

    conn = psycopg2.connect(
        host=pg.host,
        port=pg.port,
        dbname=pg.database,
        user=pg.username,
        password=pg.password.get_secret_value(),
    )
    try:
        with conn, conn.cursor() as cur:
            cur.execute(f"DROP TABLE IF EXISTS {pg.table}")
    finally:
        conn.close()
