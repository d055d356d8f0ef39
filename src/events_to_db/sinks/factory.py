"""Sink factory: maps SinkType to concrete sink classes."""

from __future__ import annotations

from events_to_db.config.models import SinkConfig, SinkType
from events_to_db.sinks.base import EventSink
from events_to_db.sinks.postgres import PostgresSink
from events_to_db.sinks.sqlite import SqliteSink

_SINK_REGISTRY: dict[SinkType, type] = {
    SinkType.POSTGRES: PostgresSink,
    SinkType.SQLITE: SqliteSink,
}


def create_sink(config: SinkConfig) -> EventSink:
    """Create a sink from configuration.

    Adding a new destination = one class + one dict entry in ``_SINK_REGISTRY``.
    """
    cls = _SINK_REGISTRY.get(config.sink_type)
    if cls is None:
        msg = f"Unknown sink type: {config.sink_type}"
        raise ValueError(msg)
    return cls(config)  # type: ignore[no-any-return]
