"""Unit tests for the PostgreSQL sink connector."""

from __future__ import annotations

import json
from unittest.mock import MagicMock, patch

import pytest

from events_to_db.config.models import PostgresSinkConfig, SinkConfig, SinkType
from events_to_db.errors import SinkConnectionError, SinkWriteError
from events_to_db.pipeline.transform import RowBatch, to_row_batch
from events_to_db.sinks.postgres import PostgresSink
from events_to_db.sources.base import Event


def _make_sink(table: str = "public.events") -> PostgresSink:
    cfg = SinkConfig(
        sink_id="test-pg",
        sink_type=SinkType.POSTGRES,
        postgres=PostgresSinkConfig(
            host="db",
            port=5433,
            database="testdb",
            username="ax",
            password="secret",
            table=table,
        ),
    )
    return PostgresSink(cfg)


def _batch() -> RowBatch:
    return to_row_batch(
        [
            Event("A", "orders", "o-1", 7, 0, 1000, {"x": 1}),
            Event("B", "orders", "o-2", 8, 3, 1001, [1, "two"]),
        ]
    )


def _mock_psycopg2() -> tuple[MagicMock, MagicMock, MagicMock]:
    mock_pg = MagicMock()
    mock_conn = MagicMock()
    mock_cur = MagicMock()
    mock_pg.connect.return_value = mock_conn
    mock_conn.cursor.return_value = mock_cur
    return mock_pg, mock_conn, mock_cur


class TestPostgresSinkSql:
    def test_create_table_sql(self):
        sql = _make_sink().create_table_sql
        assert sql.startswith("CREATE TABLE IF NOT EXISTS public.events (")
        assert "payload jsonb" in sql
        assert "PRIMARY KEY (source, psn)" in sql

    def test_insert_sql_is_single_unnest_statement(self):
        sql = _make_sink().insert_sql
        assert sql.startswith(
            "INSERT INTO public.events "
            "(source, semantics, name, seq, psn, timestamp, payload)"
        )
        assert "unnest(" in sql
        assert sql.count("%s") == 7
        assert sql.endswith("ON CONFLICT DO NOTHING")

    def test_requires_postgres_sub_config(self):
        cfg = SinkConfig.model_construct(sink_id="x", sink_type=SinkType.POSTGRES)
        with pytest.raises(ValueError, match="postgres sub-config"):
            PostgresSink(cfg)


@pytest.mark.asyncio
class TestPostgresSink:
    async def test_start_connects_and_creates_table(self):
        sink = _make_sink()
        mock_pg, mock_conn, mock_cur = _mock_psycopg2()
        with patch.dict("sys.modules", {"psycopg2": mock_pg}):
            await sink.start()

        mock_pg.connect.assert_called_once_with(
            host="db",
            port=5433,
            dbname="testdb",
            user="ax",
            password="secret",
        )
        assert mock_conn.autocommit is False
        mock_cur.execute.assert_called_once_with(sink.create_table_sql)
        mock_conn.commit.assert_called_once()

    async def test_connect_failure_raises_connection_error(self):
        sink = _make_sink()
        mock_pg = MagicMock()
        mock_pg.connect.side_effect = RuntimeError("connection refused")
        with (
            patch.dict("sys.modules", {"psycopg2": mock_pg}),
            pytest.raises(SinkConnectionError, match="db:5433/testdb"),
        ):
            await sink.start()

    async def test_ddl_failure_closes_connection(self):
        sink = _make_sink()
        mock_pg, mock_conn, mock_cur = _mock_psycopg2()
        mock_cur.execute.side_effect = RuntimeError("permission denied")
        with (
            patch.dict("sys.modules", {"psycopg2": mock_pg}),
            pytest.raises(SinkConnectionError),
        ):
            await sink.start()
        mock_conn.close.assert_called_once()

    async def test_fetch_offsets(self):
        sink = _make_sink()
        sink._conn = MagicMock()
        cur = sink._conn.cursor.return_value
        cur.fetchall.return_value = [("A", 10), ("B", 5)]

        offsets = await sink.fetch_offsets()

        assert offsets == {"A": 10, "B": 5}
        sql = cur.execute.call_args[0][0]
        assert sql == "SELECT source, MAX(psn) FROM public.events GROUP BY source"
        sink._conn.commit.assert_called_once()

    async def test_fetch_offsets_empty_table(self):
        sink = _make_sink()
        sink._conn = MagicMock()
        sink._conn.cursor.return_value.fetchall.return_value = []
        offsets = await sink.fetch_offsets()
        assert offsets == {}
        assert offsets.size == 0

    async def test_insert_binds_column_arrays(self):
        sink = _make_sink()
        sink._conn = MagicMock()
        cur = sink._conn.cursor.return_value
        cur.rowcount = 2

        await sink.insert(_batch())

        cur.execute.assert_called_once()
        sql, params = cur.execute.call_args[0]
        assert sql == sink.insert_sql
        assert params[0] == ["A", "B"]
        assert params[1] == ["orders", "orders"]
        assert params[2] == ["o-1", "o-2"]
        assert params[3] == [7, 8]
        assert params[4] == [0, 3]
        assert params[5] == [1000, 1001]
        assert [json.loads(p) for p in params[6]] == [{"x": 1}, [1, "two"]]
        sink._conn.commit.assert_called_once()

    async def test_insert_failure_rolls_back(self):
        sink = _make_sink()
        sink._conn = MagicMock()
        sink._conn.cursor.return_value.execute.side_effect = RuntimeError("disk full")

        with pytest.raises(SinkWriteError, match="2 rows into public.events"):
            await sink.insert(_batch())

        sink._conn.rollback.assert_called_once()
        sink._conn.commit.assert_not_called()

    async def test_empty_batch_is_noop(self):
        sink = _make_sink()
        sink._conn = MagicMock()
        await sink.insert(RowBatch())
        sink._conn.cursor.assert_not_called()

    async def test_insert_before_start_raises(self):
        with pytest.raises(RuntimeError, match="not started"):
            await _make_sink().insert(_batch())

    async def test_stop_closes_connection(self):
        sink = _make_sink()
        conn = MagicMock()
        sink._conn = conn
        await sink.stop()
        conn.close.assert_called_once()
        assert sink._conn is None

    async def test_health(self):
        sink = _make_sink()
        assert (await sink.health())["status"] == "stopped"

        sink._conn = MagicMock()
        health = await sink.health()
        assert health == {
            "sink_id": "test-pg",
            "type": "postgres",
            "status": "running",
            "table": "public.events",
        }

    async def test_health_reports_broken_connection(self):
        sink = _make_sink()
        sink._conn = MagicMock()
        sink._conn.cursor.return_value.execute.side_effect = RuntimeError("gone")
        assert (await sink.health())["status"] == "stopped"
