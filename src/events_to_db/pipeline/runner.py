"""Pipeline orchestrator: event source → batcher → row transform → sink."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import aclosing
from enum import StrEnum
from typing import Any

import structlog

from events_to_db.config.models import PipelineConfig
from events_to_db.pipeline.batcher import batch_events
from events_to_db.pipeline.transform import to_row_batch
from events_to_db.sinks.base import EventSink
from events_to_db.sinks.factory import create_sink
from events_to_db.sources.base import Event, EventSource
from events_to_db.sources.factory import create_event_source
from events_to_db.sources.offsets import OffsetMap

logger = structlog.get_logger()


class PipelineState(StrEnum):
    INIT = "init"
    FETCH_OFFSETS = "fetch_offsets"
    SUBSCRIBING = "subscribing"
    STREAMING = "streaming"
    TERMINATED = "terminated"
    FATAL = "fatal"


class Pipeline:
    """Copies events from the event store into the destination table.

    Resume protocol: the subscription starts just after the highest offset
    per source already stored in the destination, and the destination's
    insert ignores existing ``(source, psn)`` keys. Together a crash at any
    point neither loses nor duplicates rows.

    Exactly one insert is in flight at a time; the next batch is not pulled
    until the previous one has committed. Errors are not retried: the run
    ends in ``FATAL`` and the exception propagates to the caller.
    """

    def __init__(
        self,
        config: PipelineConfig,
        *,
        source: EventSource | None = None,
        sink: EventSink | None = None,
    ) -> None:
        self._config = config
        self._source = source if source is not None else create_event_source(config)
        self._sink = sink if sink is not None else create_sink(config.sink)
        self._state = PipelineState.INIT
        self._written = OffsetMap.empty()
        self._batches = 0

    @property
    def state(self) -> PipelineState:
        return self._state

    @property
    def written_offsets(self) -> OffsetMap:
        """Highest offset per source committed during this run."""
        return self._written

    def _transition(self, state: PipelineState) -> None:
        logger.debug("pipeline.state", previous=self._state.value, state=state.value)
        self._state = state

    def start(self) -> None:
        """Run the pipeline to completion (blocking)."""
        asyncio.run(self.run())

    async def run(self) -> None:
        """Run until the subscription ends; raise on any fatal error."""
        try:
            self._transition(PipelineState.FETCH_OFFSETS)
            await self._source.start()
            await self._sink.start()
            resume = await self._fetch_offsets()

            self._transition(PipelineState.SUBSCRIBING)
            events = await self._source.subscribe_from(
                resume, self._config.subscriptions
            )

            self._transition(PipelineState.STREAMING)
            await self._stream(events)
        except Exception as exc:
            failed_in = self._state
            self._transition(PipelineState.FATAL)
            logger.error(
                "pipeline.fatal",
                pipeline_id=self._config.pipeline_id,
                failed_in=failed_in.value,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise
        finally:
            await self._close()

        self._transition(PipelineState.TERMINATED)
        logger.info(
            "pipeline.terminated",
            pipeline_id=self._config.pipeline_id,
            batches=self._batches,
            written=self._written.to_dict(),
        )

    async def _fetch_offsets(self) -> OffsetMap:
        """Fetch both offset maps, log the lag, return the resume point."""
        store_offsets = await self._source.fetch_offsets()
        db_offsets = await self._sink.fetch_offsets()
        logger.info("pipeline.db_offsets", offsets=db_offsets.to_dict())
        logger.info("pipeline.store_offsets", offsets=store_offsets.to_dict())
        logger.info(
            "pipeline.catch_up",
            db_events=db_offsets.size,
            store_events=store_offsets.size,
            events_behind=store_offsets.size_delta(db_offsets),
        )
        if self._config.from_start:
            logger.info("pipeline.from_start", ignored_sources=len(db_offsets))
            return OffsetMap.empty()
        return db_offsets

    async def _stream(self, events: AsyncIterator[Event]) -> None:
        batch_cfg = self._config.batch
        logger.info(
            "pipeline.streaming",
            pipeline_id=self._config.pipeline_id,
            sink_id=self._sink.sink_id,
            max_records=batch_cfg.max_records,
            max_seconds=batch_cfg.max_seconds,
        )
        async with aclosing(
            batch_events(events, batch_cfg.max_records, batch_cfg.max_seconds)
        ) as batches:
            async for chunk in batches:
                await self._write(chunk)

    async def _write(self, chunk: list[Event]) -> None:
        rows = to_row_batch(chunk)
        if not len(rows):
            logger.warning("pipeline.batch_empty", dropped=len(chunk))
            return
        await self._sink.insert(rows)
        self._written = self._written.merge(rows.max_offsets())
        self._batches += 1

    async def _close(self) -> None:
        for name, closer in (("sink", self._sink.stop), ("source", self._source.close)):
            try:
                await closer()
            except Exception as exc:
                logger.error("pipeline.close_error", component=name, error=str(exc))

    async def health(self) -> dict[str, Any]:
        """Aggregate health from source and sink."""
        return {
            "pipeline_id": self._config.pipeline_id,
            "state": self._state.value,
            "source": await self._source.health(),
            "sink": await self._sink.health(),
            "written": self._written.to_dict(),
        }
