"""Destination database protocol.

New destinations implement this protocol to plug into the pipeline
without modifying core code.
"""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

from events_to_db.pipeline.transform import RowBatch
from events_to_db.sources.offsets import OffsetMap

# Column order shared by every destination table and INSERT statement.
COLUMNS = ("source", "semantics", "name", "seq", "psn", "timestamp", "payload")


@runtime_checkable
class EventSink(Protocol):
    """Protocol that every destination database must satisfy.

    The destination table is keyed by ``(source, psn)``; inserting a row whose
    key already exists is a silent no-op, so redelivered events are absorbed.
    """

    @property
    def sink_id(self) -> str:
        """Unique identifier for this sink instance."""
        ...

    async def start(self) -> None:
        """Connect and create the destination table if it is missing."""
        ...

    async def fetch_offsets(self) -> OffsetMap:
        """Max offset stored per source: the pipeline's resume point."""
        ...

    async def insert(self, batch: RowBatch) -> None:
        """Write the whole batch in one statement and one transaction."""
        ...

    async def stop(self) -> None:
        """Close the connection."""
        ...

    async def health(self) -> dict[str, Any]:
        """Return a health-check status dict."""
        ...
