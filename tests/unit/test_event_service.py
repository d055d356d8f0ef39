"""Unit tests for the Event Service HTTP client."""

from __future__ import annotations

import json

import httpx
import pytest
import respx

from events_to_db.config.models import EventServiceConfig, SubscriptionFilter
from events_to_db.errors import SourceConnectionError, SourceProtocolError
from events_to_db.sources.event_service import EventServiceSource, parse_event
from events_to_db.sources.offsets import OffsetMap

BASE = "http://es:4454/api/"


def _envelope(source: str, offset: int, payload: object = None) -> dict:
    return {
        "stream": {"source": source, "semantics": "orders", "name": "o-1"},
        "lamport": 100 + offset,
        "offset": offset,
        "timestamp": 1_600_000_000_000_000 + offset,
        "payload": payload if payload is not None else {"n": offset},
    }


def _ndjson(*envelopes: dict, blank_lines: bool = False) -> bytes:
    sep = "\n\n" if blank_lines else "\n"
    return (sep.join(json.dumps(e) for e in envelopes) + "\n").encode()


def _source(**kwargs: object) -> EventServiceSource:
    return EventServiceSource(EventServiceConfig(uri=BASE, **kwargs))


async def _collect(source: EventServiceSource, offsets: OffsetMap, subs=None) -> list:
    subs = subs or [SubscriptionFilter()]
    stream = await source.subscribe_from(offsets, subs)
    return [e async for e in stream]


class TestParseEvent:
    def test_parses_envelope(self):
        event = parse_event(json.dumps(_envelope("A", 4, {"k": [1, 2]})))
        assert event.source == "A"
        assert event.semantics == "orders"
        assert event.name == "o-1"
        assert event.lamport == 104
        assert event.offset == 4
        assert event.timestamp == 1_600_000_000_000_004
        assert event.payload == {"k": [1, 2]}

    def test_missing_payload_is_none(self):
        data = _envelope("A", 0)
        del data["payload"]
        assert parse_event(json.dumps(data)).payload is None

    def test_not_json(self):
        with pytest.raises(SourceProtocolError, match="not JSON"):
            parse_event("{oops")

    def test_missing_stream_field(self):
        data = _envelope("A", 0)
        del data["stream"]["semantics"]
        with pytest.raises(SourceProtocolError, match="Malformed event envelope"):
            parse_event(json.dumps(data))

    def test_non_integer_offset(self):
        data = _envelope("A", 0)
        data["offset"] = "later"
        with pytest.raises(SourceProtocolError):
            parse_event(json.dumps(data))


@pytest.mark.asyncio
class TestFetchOffsets:
    async def test_returns_offset_map(self, respx_mock: respx.MockRouter):
        respx_mock.get(f"{BASE}v1/events/offsets").mock(
            return_value=httpx.Response(200, json={"A": 11, "B": 3})
        )
        async with _source() as source:
            offsets = await source.fetch_offsets()
        assert offsets == OffsetMap({"A": 11, "B": 3})

    async def test_uri_without_trailing_slash(self, respx_mock: respx.MockRouter):
        route = respx_mock.get(f"{BASE}v1/events/offsets").mock(
            return_value=httpx.Response(200, json={})
        )
        source = EventServiceSource(EventServiceConfig(uri=BASE.rstrip("/")))
        async with source:
            assert await source.fetch_offsets() == {}
        assert route.called

    async def test_server_error_is_connection_error(self, respx_mock: respx.MockRouter):
        respx_mock.get(f"{BASE}v1/events/offsets").mock(
            return_value=httpx.Response(500)
        )
        async with _source() as source:
            with pytest.raises(SourceConnectionError):
                await source.fetch_offsets()

    async def test_unreachable_is_connection_error(self, respx_mock: respx.MockRouter):
        route = respx_mock.get(f"{BASE}v1/events/offsets").mock(
            side_effect=httpx.ConnectError("refused")
        )
        async with _source() as source:
            with pytest.raises(SourceConnectionError, match="refused"):
                await source.fetch_offsets()
        assert route.call_count == 1

    async def test_opt_in_retry(self, respx_mock: respx.MockRouter):
        route = respx_mock.get(f"{BASE}v1/events/offsets").mock(
            side_effect=[
                httpx.ConnectError("refused"),
                httpx.ConnectError("refused"),
                httpx.Response(200, json={"A": 1}),
            ]
        )
        async with _source(connect_attempts=3, connect_wait_seconds=0.01) as source:
            offsets = await source.fetch_offsets()
        assert offsets == {"A": 1}
        assert route.call_count == 3

    async def test_invalid_body_is_protocol_error(self, respx_mock: respx.MockRouter):
        respx_mock.get(f"{BASE}v1/events/offsets").mock(
            return_value=httpx.Response(200, json={"A": -4})
        )
        async with _source() as source:
            with pytest.raises(SourceProtocolError):
                await source.fetch_offsets()

    async def test_requires_start(self):
        with pytest.raises(RuntimeError, match="not started"):
            await _source().fetch_offsets()


@pytest.mark.asyncio
class TestSubscribeFrom:
    async def test_sends_offsets_and_subscriptions(self, respx_mock: respx.MockRouter):
        route = respx_mock.post(f"{BASE}v1/events/subscribe_from").mock(
            return_value=httpx.Response(200, content=_ndjson(_envelope("A", 6)))
        )
        subs = [SubscriptionFilter(semantics="orders"), SubscriptionFilter(source="B")]
        async with _source() as source:
            events = await _collect(source, OffsetMap({"A": 5}), subs)

        assert [e.offset for e in events] == [6]
        body = json.loads(route.calls[0].request.content)
        assert body == {
            "offsets": {"A": 5},
            "subscriptions": [{"semantics": "orders"}, {"source": "B"}],
        }

    async def test_skips_redelivered_and_blank_lines(self, respx_mock: respx.MockRouter):
        content = _ndjson(
            _envelope("A", 4),
            _envelope("A", 5),
            _envelope("A", 6),
            _envelope("B", 0),
            blank_lines=True,
        )
        respx_mock.post(f"{BASE}v1/events/subscribe_from").mock(
            return_value=httpx.Response(200, content=content)
        )
        async with _source() as source:
            events = await _collect(source, OffsetMap({"A": 5}))

        assert [(e.source, e.offset) for e in events] == [("A", 6), ("B", 0)]

    async def test_empty_stream_ends(self, respx_mock: respx.MockRouter):
        respx_mock.post(f"{BASE}v1/events/subscribe_from").mock(
            return_value=httpx.Response(200, content=b"")
        )
        async with _source() as source:
            assert await _collect(source, OffsetMap.empty()) == []

    async def test_rejected_subscription_raises_on_open(
        self, respx_mock: respx.MockRouter
    ):
        respx_mock.post(f"{BASE}v1/events/subscribe_from").mock(
            return_value=httpx.Response(400, text="bad subscription")
        )
        async with _source() as source:
            with pytest.raises(SourceConnectionError, match="400 bad subscription"):
                await source.subscribe_from(OffsetMap.empty(), [SubscriptionFilter()])

    async def test_request_sent_before_first_read(self, respx_mock: respx.MockRouter):
        route = respx_mock.post(f"{BASE}v1/events/subscribe_from").mock(
            return_value=httpx.Response(200, content=_ndjson(_envelope("A", 0)))
        )
        async with _source() as source:
            stream = await source.subscribe_from(OffsetMap.empty(), [SubscriptionFilter()])
            assert route.call_count == 1
            await stream.aclose()

    async def test_malformed_line_is_protocol_error(self, respx_mock: respx.MockRouter):
        content = _ndjson(_envelope("A", 0)) + b"not json\n"
        respx_mock.post(f"{BASE}v1/events/subscribe_from").mock(
            return_value=httpx.Response(200, content=content)
        )
        received = []
        async with _source() as source:
            stream = await source.subscribe_from(OffsetMap.empty(), [SubscriptionFilter()])
            with pytest.raises(SourceProtocolError):
                async for event in stream:
                    received.append(event)
        assert [e.offset for e in received] == [0]

    async def test_connection_failure_raises_on_open(self, respx_mock: respx.MockRouter):
        respx_mock.post(f"{BASE}v1/events/subscribe_from").mock(
            side_effect=httpx.ConnectError("refused")
        )
        async with _source() as source:
            with pytest.raises(SourceConnectionError, match="Subscription"):
                await source.subscribe_from(OffsetMap.empty(), [SubscriptionFilter()])


@pytest.mark.asyncio
class TestHealth:
    async def test_stopped_before_start(self):
        assert (await _source().health())["status"] == "stopped"

    async def test_running(self, respx_mock: respx.MockRouter):
        respx_mock.get(f"{BASE}v1/events/offsets").mock(
            return_value=httpx.Response(200, json={})
        )
        async with _source() as source:
            health = await source.health()
        assert health == {"type": "event_service", "uri": BASE, "status": "running"}
