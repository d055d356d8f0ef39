"""PostgreSQL destination sink."""

from __future__ import annotations

import asyncio
import contextlib
import json
import time
from typing import Any

import structlog

from events_to_db.config.models import SinkConfig
from events_to_db.errors import SinkConnectionError, SinkWriteError
from events_to_db.pipeline.transform import RowBatch
from events_to_db.sinks.base import COLUMNS
from events_to_db.sources.offsets import OffsetMap

logger = structlog.get_logger()


class PostgresSink:
    """Writes row batches to PostgreSQL with one ``unnest`` insert per batch."""

    def __init__(self, config: SinkConfig) -> None:
        from events_to_db.config.models import PostgresSinkConfig

        self._config = config
        if config.postgres is None:
            msg = "PostgresSink requires a postgres sub-config"
            raise ValueError(msg)
        self._pg_config: PostgresSinkConfig = config.postgres
        self._conn: Any = None
        self._table = self._pg_config.table

    @property
    def sink_id(self) -> str:
        return self._config.sink_id

    @property
    def create_table_sql(self) -> str:
        return (
            f"CREATE TABLE IF NOT EXISTS {self._table} ("  # noqa: S608
            "source text NOT NULL, "
            "semantics text NOT NULL, "
            "name text NOT NULL, "
            "seq bigint NOT NULL, "
            "psn bigint NOT NULL, "
            "timestamp bigint NOT NULL, "
            "payload jsonb, "
            "PRIMARY KEY (source, psn))"
        )

    @property
    def insert_sql(self) -> str:
        # Parameter order must match RowBatch columns.
        return (
            f"INSERT INTO {self._table} ({', '.join(COLUMNS)}) "  # noqa: S608
            "SELECT * FROM unnest("
            "%s::text[], %s::text[], %s::text[], "
            "%s::bigint[], %s::bigint[], %s::bigint[], %s::jsonb[]) "
            "ON CONFLICT DO NOTHING"
        )

    async def start(self) -> None:
        try:
            import psycopg2
        except ImportError:
            msg = (
                "psycopg2 is required for the PostgreSQL sink. "
                "Install it with: pip install events-to-db[postgres]"
            )
            raise ImportError(msg) from None

        def _connect() -> Any:
            conn = psycopg2.connect(
                host=self._pg_config.host,
                port=self._pg_config.port,
                dbname=self._pg_config.database,
                user=self._pg_config.username,
                password=self._pg_config.password.get_secret_value(),
            )
            conn.autocommit = False
            try:
                cur = conn.cursor()
                cur.execute(self.create_table_sql)
                conn.commit()
                cur.close()
            except Exception:
                conn.close()
                raise
            return conn

        loop = asyncio.get_running_loop()
        try:
            self._conn = await loop.run_in_executor(None, _connect)
        except Exception as exc:
            msg = (
                f"Cannot connect to PostgreSQL at "
                f"{self._pg_config.host}:{self._pg_config.port}/"
                f"{self._pg_config.database}: {exc}"
            )
            raise SinkConnectionError(msg) from exc
        logger.info(
            "postgres_sink.started",
            sink_id=self.sink_id,
            host=self._pg_config.host,
            database=self._pg_config.database,
            table=self._table,
        )

    async def fetch_offsets(self) -> OffsetMap:
        if self._conn is None:
            msg = "PostgresSink not started, call start() first"
            raise RuntimeError(msg)

        def _query() -> list[tuple[str, int]]:
            cur = self._conn.cursor()
            try:
                cur.execute(
                    f"SELECT source, MAX(psn) FROM {self._table} GROUP BY source"  # noqa: S608
                )
                rows = cur.fetchall()
                # Close the read transaction so it does not pin a snapshot.
                self._conn.commit()
                return rows  # type: ignore[no-any-return]
            finally:
                cur.close()

        loop = asyncio.get_running_loop()
        rows = await loop.run_in_executor(None, _query)
        offsets = OffsetMap({source: int(psn) for source, psn in rows})
        logger.info("postgres_sink.offsets", sink_id=self.sink_id, sources=len(offsets))
        return offsets

    async def insert(self, batch: RowBatch) -> None:
        if not len(batch):
            return
        if self._conn is None:
            msg = "PostgresSink not started, call start() first"
            raise RuntimeError(msg)

        params = (
            batch.sources,
            batch.semantics,
            batch.names,
            batch.lamports,
            batch.offsets,
            batch.timestamps,
            [json.dumps(p) for p in batch.payloads],
        )

        def _insert() -> int:
            assert self._conn is not None
            try:
                cur = self._conn.cursor()
                cur.execute(self.insert_sql, params)
                inserted = cur.rowcount
                self._conn.commit()
                cur.close()
                return inserted  # type: ignore[no-any-return]
            except Exception:
                with contextlib.suppress(Exception):
                    self._conn.rollback()
                raise

        sources = batch.distinct_sources()
        logger.debug(
            "postgres_sink.writing",
            sink_id=self.sink_id,
            rows=len(batch),
            sources=sources,
        )
        loop = asyncio.get_running_loop()
        t0 = time.monotonic()
        try:
            inserted = await loop.run_in_executor(None, _insert)
        except Exception as exc:
            logger.error(
                "postgres_sink.insert_failed",
                sink_id=self.sink_id,
                rows=len(batch),
                sources=sources,
                error=str(exc),
            )
            msg = f"Insert of {len(batch)} rows into {self._table} failed: {exc}"
            raise SinkWriteError(msg) from exc
        elapsed_ms = (time.monotonic() - t0) * 1000

        logger.info(
            "postgres_sink.inserted",
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
        logger.info("postgres_sink.stopped", sink_id=self.sink_id)

    async def health(self) -> dict[str, Any]:
        connected = False
        if self._conn is not None:

            def _ping() -> bool:
                try:
                    assert self._conn is not None
                    cur = self._conn.cursor()
                    cur.execute("SELECT 1")
                    cur.close()
                    self._conn.commit()
                    return True
                except Exception:
                    return False

            loop = asyncio.get_running_loop()
            connected = await loop.run_in_executor(None, _ping)
        return {
            "sink_id": self.sink_id,
            "type": "postgres",
            "status": "running" if connected else "stopped",
            "table": self._table,
        }
