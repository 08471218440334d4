"""
Unit tests for live progress stream coordination.

Events are injected through a fake transport; correlation, terminal
handling and late-event dropping are checked on the broker registry.
"""

import asyncio
import re

import httpx
import pytest

from dab.models.stream import StreamEventKind, StreamState, classify_event_type
from dab.provider.events import EventHub
from dab.services.interfaces.human_interface import RenderKind
from dab.services.stream_broker import HubEventTransport, SSEEventTransport, StreamBroker, new_correlation_id

from fakes import FakeInterface, FakeTransport


class TestCorrelationId:
    """Test correlation id minting."""

    def test_format(self):
        assert re.fullmatch(r"session_\d+_[0-9a-f]{9}", new_correlation_id())

    def test_unique(self):
        assert len({new_correlation_id() for _ in range(200)}) == 200


class TestClassifyEventType:
    """Test event type classification."""

    def test_known_types(self):
        assert classify_event_type("connected") == (None, StreamEventKind.CONNECTED)
        assert classify_event_type("ping_output") == ("ping", StreamEventKind.OUTPUT)
        assert classify_event_type("traceroute_complete") == ("traceroute", StreamEventKind.COMPLETE)
        assert classify_event_type("ping_cancelled") == ("ping", StreamEventKind.CANCELLED)

    def test_unknown_types(self):
        assert classify_event_type("ping_progress") is None
        assert classify_event_type("output") is None
        assert classify_event_type("_start") is None


class TestStreamBroker:
    """Test StreamBroker correlation and lifecycle."""

    @pytest.mark.asyncio
    async def test_open_stream_waits_for_handshake(self):
        broker = StreamBroker(FakeTransport(), connect_timeout=1.0)

        session = await broker.open_stream("session_1")

        assert session.state == StreamState.OPEN
        assert broker.active_ids == ["session_1"]
        await broker.close_all()

    @pytest.mark.asyncio
    async def test_handshake_timeout_does_not_raise(self):
        broker = StreamBroker(FakeTransport(send_connected=False), connect_timeout=0.05)

        session = await broker.open_stream("session_1")

        assert session.state == StreamState.PENDING
        await broker.close_all()

    @pytest.mark.asyncio
    async def test_interleaved_events_are_correlated(self):
        transport = FakeTransport()
        interface = FakeInterface()
        broker = StreamBroker(transport, interface=interface, connect_timeout=1.0)
        first = await broker.open_stream("session_a")
        second = await broker.open_stream("session_b")

        await transport.push("session_a", {"type": "ping_start", "command": "ping -c 2 a"})
        await transport.push("session_b", {"type": "traceroute_start", "command": "traceroute b"})
        await transport.push("session_a", {"type": "ping_output", "output": "a1"})
        await transport.push("session_b", {"type": "traceroute_output", "output": "b1"})
        await transport.push("session_a", {"type": "ping_output", "output": "a2"})

        assert first.outputs == ["a1", "a2"]
        assert second.outputs == ["b1"]
        assert first.state == StreamState.ACTIVE
        rendered = interface.of_kind(RenderKind.STREAM_EVENT)
        assert [p["correlation_id"] for p in rendered if p["kind"] == "output"] == [
            "session_a", "session_b", "session_a"
        ]
        await broker.close_all()

    @pytest.mark.asyncio
    async def test_terminal_event_closes_stream(self):
        transport = FakeTransport()
        broker = StreamBroker(transport, connect_timeout=1.0)
        session = await broker.open_stream("session_1")

        await transport.push("session_1", {"type": "ping_start"})
        await transport.push("session_1", {"type": "ping_output", "output": "x"})
        await transport.push("session_1", {"type": "ping_complete"})
        await asyncio.wait_for(session.wait_closed(), timeout=1.0)

        assert session.is_closed
        assert session.last_event_type == "ping_complete"
        assert len(session.terminal_events) == 1
        assert broker.get("session_1") is None

    @pytest.mark.asyncio
    async def test_events_after_close_are_dropped(self):
        transport = FakeTransport()
        broker = StreamBroker(transport, connect_timeout=1.0)
        session = await broker.open_stream("session_1")
        handler = transport.handlers["session_1"]

        await transport.push("session_1", {"type": "ping_cancelled"})
        await asyncio.wait_for(session.wait_closed(), timeout=1.0)
        events_before = len(session.events)

        assert broker.handle_event("session_1", {"type": "ping_output", "output": "late"}) is None
        with pytest.raises(Exception):
            await handler({"type": "ping_output", "output": "late"})
        assert len(session.events) == events_before

    @pytest.mark.asyncio
    async def test_unknown_type_is_dropped(self):
        transport = FakeTransport()
        broker = StreamBroker(transport, connect_timeout=1.0)
        session = await broker.open_stream("session_1")

        assert broker.handle_event("session_1", {"type": "ping_progress"}) is None
        assert broker.handle_event("session_1", {"output": "no type"}) is None
        assert all(event.type == "connected" for event in session.events)
        assert not session.is_closed
        await broker.close_all()

    @pytest.mark.asyncio
    async def test_unknown_correlation_id_is_dropped(self):
        broker = StreamBroker(FakeTransport())
        assert broker.handle_event("session_unknown", {"type": "ping_output"}) is None

    @pytest.mark.asyncio
    async def test_transport_failure_is_rendered(self):
        class FailingTransport(FakeTransport):
            async def subscribe(self, correlation_id, on_event):
                raise httpx.ConnectError("connection refused")

        interface = FakeInterface()
        broker = StreamBroker(FailingTransport(), interface=interface, connect_timeout=1.0)

        session = await broker.open_stream("session_1")

        assert session.is_closed
        rendered = interface.of_kind(RenderKind.STREAM_EVENT)
        assert rendered[0]["type"] == "connection_error"
        assert "connection refused" in rendered[0]["error"]

    @pytest.mark.asyncio
    async def test_close_all_closes_transport(self):
        transport = FakeTransport()
        broker = StreamBroker(transport, connect_timeout=1.0)
        first = await broker.open_stream("session_a")
        second = await broker.open_stream("session_b")

        await broker.close_all()

        assert first.is_closed and second.is_closed
        assert broker.active_ids == []
        assert transport.closed is True


class TestSSEEventTransport:
    """Test SSE frame parsing against a mocked HTTP endpoint."""

    @pytest.mark.asyncio
    async def test_data_frames_parsed(self):
        body = (
            b": keep-alive\n\n"
            b'data: {"type": "connected", "sessionId": "session_1"}\n\n'
            b'data: {"type": "ping_output", "output": "64 bytes"}\n\n'
            b"data: not json\n\n"
            b'data: {"type": "ping_complete"}\n\n'
        )
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, content=body, headers={"content-type": "text/event-stream"})

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        transport = SSEEventTransport("http://localhost:3001/", client=client)
        received = []

        async def on_event(event):
            received.append(event)

        await transport.subscribe("session_1", on_event)

        assert [event["type"] for event in received] == ["connected", "ping_output", "ping_complete"]
        assert str(requests[0].url) == "http://localhost:3001/sse/session_1"
        await transport.aclose()
        assert not client.is_closed
        await client.aclose()


class TestHubEventTransport:
    """Test the in-process transport against a real event hub."""

    @pytest.mark.asyncio
    async def test_broker_over_hub(self):
        hub = EventHub()
        broker = StreamBroker(HubEventTransport(hub), connect_timeout=1.0)

        session = await broker.open_stream("session_1")
        assert session.state == StreamState.OPEN
        assert hub.is_subscribed("session_1")

        hub.publish("session_1", {"type": "traceroute_start", "command": "traceroute a"})
        hub.publish("session_1", {"type": "traceroute_output", "output": "1 hop"})
        hub.publish("session_1", {"type": "traceroute_complete", "exitCode": 0})
        await asyncio.wait_for(session.wait_closed(), timeout=1.0)

        assert session.outputs == ["1 hop"]
        assert session.last_event_type == "traceroute_complete"
        assert not hub.is_subscribed("session_1")
        assert hub.publish("session_1", {"type": "traceroute_output", "output": "late"}) is False
        await broker.close_all()

    @pytest.mark.asyncio
    async def test_close_stream_unregisters(self):
        hub = EventHub()
        broker = StreamBroker(HubEventTransport(hub), connect_timeout=1.0)
        await broker.open_stream("session_1")

        await broker.close_stream("session_1")

        assert not hub.is_subscribed("session_1")
