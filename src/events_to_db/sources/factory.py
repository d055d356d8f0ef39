"""Factory for the event-store source."""

from __future__ import annotations

from events_to_db.config.models import PipelineConfig
from events_to_db.sources.base import EventSource
from events_to_db.sources.event_service import EventServiceSource


def create_event_source(pipeline: PipelineConfig) -> EventSource:
    """Create the EventSource for *pipeline*."""
    return EventServiceSource(pipeline.event_service)
