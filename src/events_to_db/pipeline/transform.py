"""Event → columnar row batch conversion for bulk inserts."""

from __future__ import annotations

import json
import math
from collections.abc import Iterator, Sequence
from dataclasses import dataclass, field
from typing import Any

import structlog

from events_to_db.sources.base import Event
from events_to_db.sources.offsets import OFFSET_ZERO, OffsetMap

logger = structlog.get_logger()

Row = tuple[str, str, str, int, int, int, Any]


class PayloadError(ValueError):
    """An event payload or envelope string cannot be stored as JSON text."""


@dataclass
class RowBatch:
    """One list per destination column, all of equal length, in batch order.

    Column order matches the INSERT statements of the sinks:
    source, semantics, name, seq (lamport), psn (offset), timestamp, payload.
    """

    sources: list[str] = field(default_factory=list)
    semantics: list[str] = field(default_factory=list)
    names: list[str] = field(default_factory=list)
    lamports: list[int] = field(default_factory=list)
    offsets: list[int] = field(default_factory=list)
    timestamps: list[int] = field(default_factory=list)
    payloads: list[Any] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.offsets)

    def append(self, event: Event, payload: Any) -> None:
        self.sources.append(event.source)
        self.semantics.append(event.semantics)
        self.names.append(event.name)
        self.lamports.append(event.lamport)
        self.offsets.append(event.offset - OFFSET_ZERO)
        self.timestamps.append(event.timestamp)
        self.payloads.append(payload)

    def rows(self) -> Iterator[Row]:
        return zip(
            self.sources,
            self.semantics,
            self.names,
            self.lamports,
            self.offsets,
            self.timestamps,
            self.payloads,
            strict=True,
        )

    def distinct_sources(self) -> list[str]:
        return sorted(set(self.sources))

    def max_offsets(self) -> OffsetMap:
        """Highest offset per source contained in this batch."""
        highest: dict[str, int] = {}
        for source, offset in zip(self.sources, self.offsets, strict=True):
            if offset > highest.get(source, OFFSET_ZERO - 1):
                highest[source] = offset
        return OffsetMap(highest)


def _check_text(value: str) -> None:
    # PostgreSQL text and jsonb accept neither NUL nor unpaired surrogates.
    if "\x00" in value:
        msg = f"string contains NUL: {value[:40]!r}"
        raise PayloadError(msg)
    try:
        value.encode("utf-8")
    except UnicodeEncodeError as exc:
        msg = f"string is not valid UTF-8: {value[:40]!r}"
        raise PayloadError(msg) from exc


def _check_json(value: Any) -> None:
    if value is None or isinstance(value, (bool, int)):
        return
    if isinstance(value, str):
        _check_text(value)
        return
    if isinstance(value, float):
        if not math.isfinite(value):
            msg = f"non-finite number {value!r}"
            raise PayloadError(msg)
        return
    if isinstance(value, dict):
        for key, item in value.items():
            if not isinstance(key, str):
                msg = f"object key {key!r} is not a string"
                raise PayloadError(msg)
            _check_text(key)
            _check_json(item)
        return
    if isinstance(value, (list, tuple)):
        for item in value:
            _check_json(item)
        return
    msg = f"unsupported value of type {type(value).__name__}"
    raise PayloadError(msg)


def to_json_value(payload: Any) -> Any:
    """Return *payload* as a JSON-compatible value or raise PayloadError.

    Raw ``bytes`` are decoded as UTF-8 JSON text; every other value must
    already be a tree of dicts, lists and JSON scalars.
    """
    if isinstance(payload, (bytes, bytearray)):
        try:
            payload = json.loads(payload.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            msg = f"payload bytes are not JSON: {exc}"
            raise PayloadError(msg) from exc
    _check_json(payload)
    return payload


def to_row_batch(events: Sequence[Event]) -> RowBatch:
    """Convert *events* into a RowBatch, dropping events that cannot be stored.

    Pure apart from logging: an event whose payload is not JSON, or whose
    envelope strings hold NUL or unpaired surrogates, is logged and skipped
    so it cannot block the rest of the batch.
    """
    rows = RowBatch()
    for event in events:
        try:
            for text in (event.source, event.semantics, event.name):
                _check_text(text)
            payload = to_json_value(event.payload)
        except PayloadError as exc:
            logger.error(
                "transform.payload_invalid",
                source=event.source,
                offset=event.offset,
                semantics=event.semantics,
                name=event.name,
                error=str(exc),
            )
            continue
        rows.append(event, payload)
    return rows
