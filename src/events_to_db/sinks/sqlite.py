"""SQLite destination sink.

The whole batch is bound as a single JSON array parameter and expanded with
``json_each`` so each batch is still one statement and one transaction.
Requires SQLite 3.24+ for ``ON CONFLICT ... DO NOTHING``.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import sqlite3
import time
from pathlib import Path
from typing import Any

import structlog

from events_to_db.config.models import SinkConfig
from events_to_db.errors import SinkConnectionError, SinkWriteError
from events_to_db.pipeline.transform import RowBatch
from events_to_db.sinks.base import COLUMNS
from events_to_db.sources.offsets import OffsetMap

logger = structlog.get_logger()


class SqliteSink:
    """Writes row batches to a SQLite database file."""

    def __init__(self, config: SinkConfig) -> None:
        self._config = config
        if config.sqlite is None:
            msg = "SqliteSink requires a sqlite sub-config"
            raise ValueError(msg)
        self._path = config.sqlite.path
        self._table = config.sqlite.table
        self._conn: sqlite3.Connection | None = None

    @property
    def sink_id(self) -> str:
        return self._config.sink_id

    @property
    def create_table_sql(self) -> str:
        return (
            f"CREATE TABLE IF NOT EXISTS {self._table} ("
            "source TEXT NOT NULL, "
            "semantics TEXT NOT NULL, "
            "name TEXT NOT NULL, "
            "seq INTEGER NOT NULL, "
            "psn INTEGER NOT NULL, "
            "timestamp INTEGER NOT NULL, "
            "payload TEXT, "
            "PRIMARY KEY (source, psn))"
        )

    @property
    def insert_sql(self) -> str:
        # "WHERE true" disambiguates ON CONFLICT from a join constraint.
        selects = ", ".join(f"json_extract(value, '$[{i}]')" for i in range(len(COLUMNS)))
        return (
            f"INSERT INTO {self._table} ({', '.join(COLUMNS)}) "  # noqa: S608
            f"SELECT {selects} FROM json_each(?) WHERE true "
            "ON CONFLICT (source, psn) DO NOTHING"
        )

    def _require_conn(self) -> sqlite3.Connection:
        if self._conn is None:
            msg = "SqliteSink not started, call start() first"
            raise RuntimeError(msg)
        return self._conn

    async def start(self) -> None:
        def _connect() -> sqlite3.Connection:
            if self._path != ":memory:":
                Path(self._path).parent.mkdir(parents=True, exist_ok=True)
            # Accessed from executor threads, one call at a time.
            conn = sqlite3.connect(self._path, check_same_thread=False)
            try:
                conn.execute(self.create_table_sql)
                conn.commit()
            except sqlite3.Error:
                conn.close()
                raise
            return conn

        loop = asyncio.get_running_loop()
        try:
            self._conn = await loop.run_in_executor(None, _connect)
        except (sqlite3.Error, OSError) as exc:
            msg = f"Cannot open SQLite database {self._path}: {exc}"
            raise SinkConnectionError(msg) from exc
        logger.info(
            "sqlite_sink.started",
            sink_id=self.sink_id,
            path=self._path,
            table=self._table,
        )

    async def fetch_offsets(self) -> OffsetMap:
        conn = self._require_conn()

        def _query() -> list[tuple[str, int]]:
            cur = conn.execute(
                f"SELECT source, MAX(psn) FROM {self._table} GROUP BY source"  # noqa: S608
            )
            return cur.fetchall()

        loop = asyncio.get_running_loop()
        rows = await loop.run_in_executor(None, _query)
        offsets = OffsetMap({source: int(psn) for source, psn in rows})
        logger.info("sqlite_sink.offsets", sink_id=self.sink_id, sources=len(offsets))
        return offsets

    async def insert(self, batch: RowBatch) -> None:
        if not len(batch):
            return
        conn = self._require_conn()
        # Payloads travel pre-serialised so json_extract returns them as text.
        document = json.dumps(
            [
                [source, semantics, name, seq, psn, ts, json.dumps(payload)]
                for source, semantics, name, seq, psn, ts, payload in batch.rows()
            ]
        )

        def _insert() -> int:
            try:
                cur = conn.execute(self.insert_sql, (document,))
                conn.commit()
                return cur.rowcount
            except Exception:
                with contextlib.suppress(Exception):
                    conn.rollback()
                raise

        sources = batch.distinct_sources()
        loop = asyncio.get_running_loop()
        t0 = time.monotonic()
        try:
            inserted = await loop.run_in_executor(None, _insert)
        except Exception as exc:
            logger.error(
                "sqlite_sink.insert_failed",
                sink_id=self.sink_id,
                rows=len(batch),
                sources=sources,
                error=str(exc),
            )
            msg = f"Insert of {len(batch)} rows into {self._table} failed: {exc}"
            raise SinkWriteError(msg) from exc
        elapsed_ms = (time.monotonic() - t0) * 1000

        logger.info(
            "sqlite_sink.inserted",
            sink_id=self.sink_id,
            rows=len(batch),
            inserted=inserted,
            latency_ms=round(elapsed_ms, 2),
            rows_per_sec=round(len(batch) * 1000 / elapsed_ms) if elapsed_ms else None,
            sources=sources,
        )

    async def stop(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None
        logger.info("sqlite_sink.stopped", sink_id=self.sink_id)

    async def health(self) -> dict[str, Any]:
        return {
            "sink_id": self.sink_id,
            "type": "sqlite",
            "status": "running" if self._conn is not None else "stopped",
            "path": self._path,
            "table": self._table,
        }
