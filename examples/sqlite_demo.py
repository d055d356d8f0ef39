#!/usr/bin/env python3
"""Runnable demo: copy every event from a local Event Service into SQLite.

Prerequisites:
    an Event Service listening on http://localhost:4454/api/
    uv run python examples/sqlite_demo.py [path/to/events.db]
"""

from __future__ import annotations

import asyncio
import sys

from rich.console import Console

from events_to_db.config.defaults import build_pipeline_config
from events_to_db.errors import EventsToDbError
from events_to_db.observability.log import configure_logging
from events_to_db.pipeline.runner import Pipeline
from events_to_db.sinks.factory import create_sink
from events_to_db.sources.factory import create_event_source

console = Console()


def main() -> None:
    db_path = sys.argv[1] if len(sys.argv) > 1 else "events.db"
    configure_logging("info")

    # 1. Build config from defaults + minimal overrides
    pipeline = build_pipeline_config(
        {
            "pipeline_id": "demo",
            "batch": {"max_records": 256, "max_seconds": 0.5},
            "sink": {"sink_type": "sqlite", "sqlite": {"path": db_path}},
        },
    )
    console.print("[bold]Pipeline config built[/bold]", pipeline.pipeline_id)

    # 2. Show how far behind the database is
    async def lag() -> int:
        source = create_event_source(pipeline)
        sink = create_sink(pipeline.sink)
        await source.start()
        await sink.start()
        try:
            store, db = await source.fetch_offsets(), await sink.fetch_offsets()
        finally:
            await sink.stop()
            await source.close()
        return store.size_delta(db)

    try:
        behind = asyncio.run(lag())
    except EventsToDbError as exc:
        console.print("[red]Event Service not reachable:[/red]", exc)
        sys.exit(1)
    console.print(f"[yellow]{behind} events to catch up[/yellow]")

    # 3. Stream into the database
    console.print("[dim]Press Ctrl+C to stop[/dim]\n")
    try:
        Pipeline(pipeline).start()
    except KeyboardInterrupt:
        console.print("[yellow]Stopped[/yellow]")


if __name__ == "__main__":
    main()
