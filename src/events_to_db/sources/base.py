"""Event envelope and the event-store source protocol.

Defines Event (one immutable record from the event store) and EventSource
(the protocol the pipeline uses to read offsets and subscribe).
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from events_to_db.sources.offsets import OffsetMap

if TYPE_CHECKING:
    from events_to_db.config.models import SubscriptionFilter


@dataclass(frozen=True, slots=True)
class Event:
    """One event as delivered by the event store.

    ``lamport`` is the per-source logical clock (audit and tie-breaking);
    ``offset`` is the store-assigned position used as the resume cursor.
    ``timestamp`` is the producer wall clock in microseconds and only advisory.
    """

    source: str
    semantics: str
    name: str
    lamport: int
    offset: int
    timestamp: int
    payload: Any


@runtime_checkable
class EventSource(Protocol):
    """Protocol every event-store client must satisfy."""

    async def start(self) -> None:
        """Open the connection to the event store."""
        ...

    async def fetch_offsets(self) -> OffsetMap:
        """Return the offsets currently known to the event store."""
        ...

    async def subscribe_from(
        self,
        offsets: OffsetMap,
        subscriptions: Sequence[SubscriptionFilter],
    ) -> AsyncIterator[Event]:
        """Open a subscription to events strictly after *offsets*.

        The returned iterator yields events matching *subscriptions* and
        releases the subscription on ``aclose()``.
        """
        ...

    async def close(self) -> None:
        """Release the connection."""
        ...

    async def health(self) -> dict[str, Any]:
        """Return a health-check status dict."""
        ...
