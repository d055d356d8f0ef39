"""Pydantic configuration models for the events-to-db connector."""

from __future__ import annotations

import re
from enum import StrEnum
from typing import Any, Self

from pydantic import BaseModel, Field, SecretStr, field_validator, model_validator

_IDENTIFIER = re.compile(r"^[a-zA-Z_]\w*$")
_QUALIFIED_IDENTIFIER = re.compile(r"^[a-zA-Z_]\w*(\.[a-zA-Z_]\w*)?$")


class EventServiceConfig(BaseModel):
    """Event Service HTTP API settings."""

    uri: str = "http://localhost:4454/api/"
    timeout_seconds: float = Field(default=30.0, gt=0)
    # 1 means a single attempt: an unreachable Event Service is fatal.
    connect_attempts: int = Field(default=1, ge=1)
    connect_wait_seconds: float = Field(default=2.0, gt=0)

    @field_validator("uri")
    @classmethod
    def normalize_uri(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            msg = f"Event Service URI '{v}' must start with http:// or https://"
            raise ValueError(msg)
        return v if v.endswith("/") else f"{v}/"


class SubscriptionFilter(BaseModel, extra="forbid"):
    """Selects events by semantics, stream name and/or source.

    Unset fields match everything, so ``SubscriptionFilter()`` subscribes
    to every stream.
    """

    semantics: str | None = None
    name: str | None = None
    source: str | None = None

    @field_validator("semantics", "name", "source")
    @classmethod
    def reject_blank(cls, v: str | None) -> str | None:
        if v is not None and not v.strip():
            msg = "subscription fields must be omitted rather than blank"
            raise ValueError(msg)
        return v

    def to_wire(self) -> dict[str, str]:
        return self.model_dump(exclude_none=True)


class BatchConfig(BaseModel):
    """Batch flush triggers: whichever of count or interval fires first."""

    max_records: int = Field(default=1024, ge=1)
    max_seconds: float = Field(default=1.0, gt=0)


class SinkType(StrEnum):
    """Supported destination databases."""

    POSTGRES = "postgres"
    SQLITE = "sqlite"


class PostgresSinkConfig(BaseModel):
    """Configuration for a PostgreSQL destination."""

    host: str = "localhost"
    port: int = Field(default=5432, ge=1, le=65535)
    database: str
    username: str
    password: SecretStr
    table: str = "events"

    @field_validator("table")
    @classmethod
    def validate_table(cls, v: str) -> str:
        if not _QUALIFIED_IDENTIFIER.match(v):
            msg = (
                f"table '{v}' must be a plain or schema-qualified identifier "
                f"(e.g. 'events' or 'public.events')"
            )
            raise ValueError(msg)
        return v


class SqliteSinkConfig(BaseModel):
    """Configuration for a SQLite destination file."""

    path: str
    table: str = "events"

    @field_validator("table")
    @classmethod
    def validate_table(cls, v: str) -> str:
        if not _IDENTIFIER.match(v):
            msg = f"table '{v}' must be a plain identifier (e.g. 'events')"
            raise ValueError(msg)
        return v


class SinkConfig(BaseModel):
    """Configuration for the destination database."""

    sink_id: str = "events-db"
    sink_type: SinkType = SinkType.POSTGRES
    postgres: PostgresSinkConfig | None = None
    sqlite: SqliteSinkConfig | None = None

    @model_validator(mode="after")
    def check_matching_sub_config(self) -> Self:
        """Ensure the sub-config matching sink_type is provided."""
        if self.sink_type == SinkType.POSTGRES and self.postgres is None:
            msg = "postgres config is required when sink_type is 'postgres'"
            raise ValueError(msg)
        if self.sink_type == SinkType.SQLITE and self.sqlite is None:
            msg = "sqlite config is required when sink_type is 'sqlite'"
            raise ValueError(msg)
        return self

    @property
    def table(self) -> str:
        sub: Any = self.postgres if self.sink_type == SinkType.POSTGRES else self.sqlite
        return sub.table  # type: ignore[no-any-return]


class PipelineConfig(BaseModel, extra="forbid"):
    """Full connector configuration: source, subscriptions, batching, sink."""

    pipeline_id: str = "events-to-db"
    event_service: EventServiceConfig = EventServiceConfig()
    subscriptions: list[SubscriptionFilter] = Field(
        default_factory=lambda: [SubscriptionFilter()], min_length=1
    )
    batch: BatchConfig = BatchConfig()
    sink: SinkConfig
    # Ignore the destination's offsets and replay from the beginning;
    # rows that already exist are skipped by the idempotent insert.
    from_start: bool = False
