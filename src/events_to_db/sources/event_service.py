"""Async HTTP client for the Event Service API.

Offsets come from ``GET v1/events/offsets``; live subscriptions are opened
with ``POST v1/events/subscribe_from`` and read as newline-delimited JSON,
one event envelope per line.
"""

from __future__ import annotations

import json
from collections.abc import AsyncIterator, Sequence
from typing import Any

import httpx
import structlog
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_fixed,
)

from events_to_db.config.models import EventServiceConfig, SubscriptionFilter
from events_to_db.errors import SourceConnectionError, SourceProtocolError
from events_to_db.sources.base import Event
from events_to_db.sources.offsets import OffsetMap

logger = structlog.get_logger()

_OFFSETS_PATH = "v1/events/offsets"
_SUBSCRIBE_FROM_PATH = "v1/events/subscribe_from"


def parse_event(line: str) -> Event:
    """Decode one NDJSON line into an Event.

    The payload is taken as-is; whether it can be stored as JSON is decided
    by the row transform, so a bad payload only drops that one event.
    """
    try:
        data = json.loads(line)
    except json.JSONDecodeError as exc:
        msg = f"Event Service sent a line that is not JSON: {line[:200]!r}"
        raise SourceProtocolError(msg) from exc
    try:
        stream = data["stream"]
        return Event(
            source=str(stream["source"]),
            semantics=str(stream["semantics"]),
            name=str(stream["name"]),
            lamport=int(data["lamport"]),
            offset=int(data["offset"]),
            timestamp=int(data["timestamp"]),
            payload=data.get("payload"),
        )
    except (KeyError, TypeError, ValueError) as exc:
        msg = f"Malformed event envelope ({exc!r}): {line[:200]!r}"
        raise SourceProtocolError(msg) from exc


class EventServiceSource:
    """Reads offsets and live event streams from the Event Service."""

    def __init__(self, config: EventServiceConfig | None = None) -> None:
        self._config = config or EventServiceConfig()
        self._client: httpx.AsyncClient | None = None

    async def start(self) -> None:
        self._client = httpx.AsyncClient(
            base_url=self._config.uri,
            timeout=self._config.timeout_seconds,
        )
        logger.debug("event_service.client_created", uri=self._config.uri)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> EventServiceSource:
        await self.start()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    def _require_client(self) -> httpx.AsyncClient:
        if self._client is None:
            msg = "EventServiceSource not started, call start() first"
            raise RuntimeError(msg)
        return self._client

    # -- Offsets ---------------------------------------------------------------

    async def fetch_offsets(self) -> OffsetMap:
        """Return the Event Service's current offset map."""
        cfg = self._config

        @retry(
            retry=retry_if_exception_type(SourceConnectionError),
            stop=stop_after_attempt(cfg.connect_attempts),
            wait=wait_fixed(cfg.connect_wait_seconds),
            reraise=True,
        )
        async def _fetch() -> OffsetMap:
            client = self._require_client()
            try:
                resp = await client.get(_OFFSETS_PATH)
                resp.raise_for_status()
            except httpx.HTTPError as exc:
                logger.warning(
                    "event_service.offsets_failed", uri=cfg.uri, error=str(exc)
                )
                msg = f"Cannot fetch offsets from {cfg.uri}: {exc}"
                raise SourceConnectionError(msg) from exc
            try:
                return OffsetMap.from_dict(resp.json())
            except (ValueError, TypeError, AttributeError) as exc:
                msg = f"Event Service returned an invalid offset map: {resp.text[:200]!r}"
                raise SourceProtocolError(msg) from exc

        offsets = await _fetch()
        logger.info("event_service.connected", uri=cfg.uri)
        return offsets

    # -- Subscription ----------------------------------------------------------

    async def subscribe_from(
        self,
        offsets: OffsetMap,
        subscriptions: Sequence[SubscriptionFilter],
    ) -> EventStream:
        """Open a subscription for events strictly after *offsets*.

        The request is sent and its status checked before this returns, so a
        rejected or unreachable subscription raises here rather than on the
        first read.
        """
        client = self._require_client()
        body: dict[str, Any] = {
            "offsets": offsets.to_dict(),
            "subscriptions": [s.to_wire() for s in subscriptions],
        }
        logger.info(
            "event_service.subscribing",
            subscriptions=body["subscriptions"],
            resume_sources=len(offsets),
        )
        request = client.build_request(
            "POST",
            _SUBSCRIBE_FROM_PATH,
            json=body,
            headers={"Accept": "application/x-ndjson"},
            # A live subscription may be idle indefinitely.
            timeout=httpx.Timeout(self._config.timeout_seconds, read=None),
        )
        try:
            resp = await client.send(request, stream=True)
        except httpx.HTTPError as exc:
            msg = f"Subscription to {self._config.uri} failed: {exc}"
            raise SourceConnectionError(msg) from exc
        if resp.status_code != 200:
            try:
                await resp.aread()
            finally:
                await resp.aclose()
            msg = f"Subscription rejected: {resp.status_code} {resp.text[:200]}"
            raise SourceConnectionError(msg)
        logger.info("event_service.subscribed", status=resp.status_code)
        return EventStream(resp, offsets, self._config.uri)

    async def health(self) -> dict[str, Any]:
        status = "stopped"
        if self._client is not None:
            try:
                resp = await self._client.get(_OFFSETS_PATH)
                status = "running" if resp.status_code == 200 else "error"
            except httpx.HTTPError:
                status = "error"
        return {"type": "event_service", "uri": self._config.uri, "status": status}


class EventStream:
    """An open subscription response, iterated as Events.

    Events the server delivers at or below the resume offset are dropped
    here as well; the idempotent insert would absorb them anyway.
    """

    def __init__(self, response: httpx.Response, offsets: OffsetMap, uri: str) -> None:
        self._response = response
        self._offsets = offsets
        self._uri = uri
        self._events = self._read()

    def __aiter__(self) -> EventStream:
        return self

    async def __anext__(self) -> Event:
        return await self._events.__anext__()

    async def aclose(self) -> None:
        await self._events.aclose()
        await self._response.aclose()

    async def _read(self) -> AsyncIterator[Event]:
        try:
            async for line in self._response.aiter_lines():
                if not line.strip():
                    continue
                event = parse_event(line)
                if self._offsets.contains(event.source, event.offset):
                    logger.debug(
                        "event_service.skip_redelivered",
                        source=event.source,
                        offset=event.offset,
                    )
                    continue
                yield event
        except httpx.HTTPError as exc:
            msg = f"Subscription to {self._uri} failed: {exc}"
            raise SourceConnectionError(msg) from exc
        finally:
            await self._response.aclose()
        logger.info("event_service.stream_closed")
