"""Typer CLI for the events-to-db connector."""

from __future__ import annotations

import asyncio
from typing import Any

import structlog
import typer
from rich.console import Console
from rich.table import Table

from events_to_db.config.defaults import merge_configs
from events_to_db.config.loader import (
    dump_subscriptions,
    load_pipeline_config,
    load_yaml,
    parse_subscriptions,
)
from events_to_db.config.models import PipelineConfig, SinkType
from events_to_db.errors import EventsToDbError
from events_to_db.observability.fault import (
    FAULT_EXIT_CODE,
    install_fault_handler,
    report_fault,
)
from events_to_db.observability.log import configure_logging
from events_to_db.sinks.factory import create_sink
from events_to_db.sources.factory import create_event_source
from events_to_db.sources.offsets import OffsetMap

logger = structlog.get_logger()
console = Console()
err_console = Console(stderr=True)
app = typer.Typer(
    name="events-to-db",
    help="Insert events from the Event Service into a database table.",
)


def _cli_overrides(
    file_data: dict[str, Any],
    *,
    event_service_uri: str | None,
    subscriptions: str | None,
    max_batch_records: int | None,
    max_batch_seconds: float | None,
    from_start: bool | None,
    host: str | None,
    port: int | None,
    db_name: str | None,
    username: str | None,
    password: str | None,
    table: str | None,
    sqlite_path: str | None,
) -> dict[str, Any]:
    """Translate command-line options into a config override mapping."""
    overrides: dict[str, Any] = {}
    if event_service_uri is not None:
        overrides["event_service"] = {"uri": event_service_uri}
    if subscriptions is not None:
        overrides["subscriptions"] = [
            f.to_wire() for f in parse_subscriptions(subscriptions)
        ]
    batch: dict[str, Any] = {}
    if max_batch_records is not None:
        batch["max_records"] = max_batch_records
    if max_batch_seconds is not None:
        batch["max_seconds"] = max_batch_seconds
    if batch:
        overrides["batch"] = batch
    if from_start is not None:
        overrides["from_start"] = from_start

    sink: dict[str, Any] = {}
    if sqlite_path is not None:
        sink["sink_type"] = SinkType.SQLITE.value
        sink["sqlite"] = {"path": sqlite_path}
    pg = {
        key: value
        for key, value in (
            ("host", host),
            ("port", port),
            ("database", db_name),
            ("username", username),
            ("password", password),
        )
        if value is not None
    }
    if pg and sqlite_path is None:
        sink["sink_type"] = SinkType.POSTGRES.value
        sink["postgres"] = pg
    if table is not None:
        file_type = file_data.get("sink", {}).get("sink_type", SinkType.POSTGRES.value)
        target = sink.get("sink_type", file_type)
        sink.setdefault(target, {})["table"] = table
    if sink:
        overrides["sink"] = sink
    return overrides


def _load(config_path: str | None, **options: Any) -> PipelineConfig:
    try:
        file_data = load_yaml(config_path) if config_path else {}
        overrides = _cli_overrides(file_data, **options)
        return load_pipeline_config(None, merge_configs(file_data, overrides))
    except EventsToDbError as exc:
        err_console.print(f"[red]Configuration error:[/red] {exc}")
        raise typer.Exit(1) from exc


# Shared option definitions; env var names match the container interface.
_CONFIG = typer.Option(None, "--config", "-c", help="Pipeline YAML")
_URI = typer.Option(
    None, "--event-service-uri", envvar="AX_EVENT_SERVICE_URI", help="Event Service API URL"
)
_SUBSCRIPTIONS = typer.Option(
    None,
    "--subscriptions",
    envvar="SUBSCRIPTIONS",
    help='JSON list of filters, e.g. \'[{"semantics": "orders"}]\'',
)
_MAX_RECORDS = typer.Option(
    None, "--max-batch-records", "-r", envvar="MAX_BATCH_RECORDS", help="Rows per insert"
)
_MAX_SECONDS = typer.Option(
    None, "--max-batch-seconds", "-s", envvar="MAX_BATCH_SECONDS", help="Max batch age"
)
_FROM_START = typer.Option(
    None,
    "--from-start/--resume",
    "-f",
    envvar="FROM_START",
    help="Replay from the beginning instead of the database's offsets",
)
_HOST = typer.Option(None, "--host", "-h", envvar="DB_HOST", help="PostgreSQL host")
_PORT = typer.Option(None, "--port", "-p", envvar="DB_PORT", help="PostgreSQL port")
_DB_NAME = typer.Option(None, "--db-name", "-d", envvar="DB_NAME", help="Database name")
_USER = typer.Option(None, "--username", "-u", envvar="DB_USER", help="Database user")
_PASSWORD = typer.Option(
    None,
    "--password",
    "-w",
    envvar="PGPASSWORD",
    show_envvar=True,
    help="Database password",
)
_TABLE = typer.Option(None, "--table", "-t", envvar="DB_TABLE", help="Destination table")
_SQLITE = typer.Option(
    None, "--sqlite-path", envvar="SQLITE_PATH", help="Write to this SQLite file instead"
)
_LOG_LEVEL = typer.Option("info", "--log-level", envvar="LOG_LEVEL", help="Log level")
_JSON_LOGS = typer.Option(False, "--json-logs", help="Emit JSON log lines")


@app.command()
def run(
    config_path: str | None = _CONFIG,
    event_service_uri: str | None = _URI,
    subscriptions: str | None = _SUBSCRIPTIONS,
    max_batch_records: int | None = _MAX_RECORDS,
    max_batch_seconds: float | None = _MAX_SECONDS,
    from_start: bool | None = _FROM_START,
    host: str | None = _HOST,
    port: int | None = _PORT,
    db_name: str | None = _DB_NAME,
    username: str | None = _USER,
    password: str | None = _PASSWORD,
    table: str | None = _TABLE,
    sqlite_path: str | None = _SQLITE,
    log_level: str = _LOG_LEVEL,
    json_logs: bool = _JSON_LOGS,
) -> None:
    """Copy events into the database until the event stream ends."""
    try:
        configure_logging(log_level, json_output=json_logs)
    except ValueError as exc:
        err_console.print(f"[red]{exc}[/red]")
        raise typer.Exit(1) from exc
    install_fault_handler()

    pipeline = _load(
        config_path,
        event_service_uri=event_service_uri,
        subscriptions=subscriptions,
        max_batch_records=max_batch_records,
        max_batch_seconds=max_batch_seconds,
        from_start=from_start,
        host=host,
        port=port,
        db_name=db_name,
        username=username,
        password=password,
        table=table,
        sqlite_path=sqlite_path,
    )

    from events_to_db.pipeline.runner import Pipeline

    logger.info(
        "cli.starting",
        pipeline_id=pipeline.pipeline_id,
        sink_type=pipeline.sink.sink_type.value,
        table=pipeline.sink.table,
        subscriptions=[s.to_wire() for s in pipeline.subscriptions],
    )
    runner = Pipeline(pipeline)
    try:
        runner.start()
    except KeyboardInterrupt:
        err_console.print("[yellow]Interrupted[/yellow]")
        raise typer.Exit(130) from None
    except (EventsToDbError, ImportError) as exc:
        err_console.print(f"[red]Fatal:[/red] {exc}")
        raise typer.Exit(1) from exc
    except Exception as exc:
        report_fault(exc)
        raise typer.Exit(FAULT_EXIT_CODE) from exc


@app.command()
def validate(
    config_path: str | None = _CONFIG,
    event_service_uri: str | None = _URI,
    subscriptions: str | None = _SUBSCRIPTIONS,
    max_batch_records: int | None = _MAX_RECORDS,
    max_batch_seconds: float | None = _MAX_SECONDS,
    from_start: bool | None = _FROM_START,
    host: str | None = _HOST,
    port: int | None = _PORT,
    db_name: str | None = _DB_NAME,
    username: str | None = _USER,
    password: str | None = _PASSWORD,
    table: str | None = _TABLE,
    sqlite_path: str | None = _SQLITE,
) -> None:
    """Validate the configuration without connecting to anything."""
    pipeline = _load(
        config_path,
        event_service_uri=event_service_uri,
        subscriptions=subscriptions,
        max_batch_records=max_batch_records,
        max_batch_seconds=max_batch_seconds,
        from_start=from_start,
        host=host,
        port=port,
        db_name=db_name,
        username=username,
        password=password,
        table=table,
        sqlite_path=sqlite_path,
    )
    console.print(f"[green]Valid[/green]: pipeline_id={pipeline.pipeline_id}")
    console.print(f"  event service: {pipeline.event_service.uri}")
    console.print(f"  subscriptions: {dump_subscriptions(pipeline.subscriptions)}")
    console.print(
        f"  batch:         {pipeline.batch.max_records} records / "
        f"{pipeline.batch.max_seconds}s"
    )
    console.print(
        f"  sink:          {pipeline.sink.sink_id} ({pipeline.sink.sink_type}) "
        f"table={pipeline.sink.table}"
    )
    if pipeline.from_start:
        console.print("  [yellow]from_start: database offsets will be ignored[/yellow]")


@app.command()
def offsets(
    config_path: str | None = _CONFIG,
    event_service_uri: str | None = _URI,
    host: str | None = _HOST,
    port: int | None = _PORT,
    db_name: str | None = _DB_NAME,
    username: str | None = _USER,
    password: str | None = _PASSWORD,
    table: str | None = _TABLE,
    sqlite_path: str | None = _SQLITE,
) -> None:
    """Compare the Event Service's offsets with the database's."""
    pipeline = _load(
        config_path,
        event_service_uri=event_service_uri,
        subscriptions=None,
        max_batch_records=None,
        max_batch_seconds=None,
        from_start=None,
        host=host,
        port=port,
        db_name=db_name,
        username=username,
        password=password,
        table=table,
        sqlite_path=sqlite_path,
    )

    async def _fetch() -> tuple[OffsetMap, OffsetMap]:
        source = create_event_source(pipeline)
        sink = create_sink(pipeline.sink)
        await source.start()
        try:
            await sink.start()
            try:
                return await source.fetch_offsets(), await sink.fetch_offsets()
            finally:
                await sink.stop()
        finally:
            await source.close()

    try:
        store, db = asyncio.run(_fetch())
    except (EventsToDbError, ImportError) as exc:
        err_console.print(f"[red]Error:[/red] {exc}")
        raise typer.Exit(1) from exc

    behind = store.behind(db)
    table_view = Table(title="Offsets")
    table_view.add_column("Source", style="cyan")
    table_view.add_column("Event Service", justify="right")
    table_view.add_column("Database", justify="right")
    table_view.add_column("Behind", justify="right")
    for src in sorted(set(store) | set(db)):
        lag = behind.get(src, 0)
        style = "red" if lag else "green"
        table_view.add_row(
            src,
            str(store[src]) if src in store else "-",
            str(db[src]) if src in db else "-",
            f"[{style}]{lag}[/{style}]",
        )
    console.print(table_view)
    console.print(
        f"Database has {db.size} events. Event Service has {store.size} events. "
        f"{store.size_delta(db)} to catch up."
    )


def main() -> None:
    app()
