"""Exception hierarchy for the events-to-db connector.

Fatal conditions surface as one of these types and terminate the run; the
process supervisor restarts it and the resume protocol picks up from the
last committed offset.
"""

from __future__ import annotations


class EventsToDbError(Exception):
    """Base class for all connector errors."""


class ConfigError(EventsToDbError):
    """Raised for invalid configuration (filters, batch parameters, tables)."""


class SourceError(EventsToDbError):
    """Raised when the event store cannot be used."""


class SourceConnectionError(SourceError):
    """The Event Service is unreachable or dropped the subscription."""


class SourceProtocolError(SourceError):
    """The Event Service sent something that is not a valid event envelope."""


class SinkError(EventsToDbError):
    """Raised when the destination database cannot be used."""


class SinkConnectionError(SinkError):
    """Connecting to the destination or creating its table failed."""


class SinkWriteError(SinkError):
    """A batch insert failed and was rolled back."""
