"""
Tests for the live channel hub and its reconnecting client.
"""

import asyncio
import json
from unittest.mock import AsyncMock

import pytest
import websockets

from spanguard_ai.live import client as client_module
from spanguard_ai.live.client import LiveChannelClient
from spanguard_ai.live.hub import EventType, LiveChannelHub, LiveEvent


class FakeSocket:
    """Server-side websocket double. A blocking socket never finishes a send."""

    def __init__(self, block: bool = False):
        self.sent = []
        self.block = block
        self.gate = asyncio.Event()
        self.close = AsyncMock()

    async def send_json(self, message):
        if self.block:
            await self.gate.wait()
        self.sent.append(message)


async def settle(rounds: int = 5):
    for _ in range(rounds):
        await asyncio.sleep(0)


class TestLiveEvent:
    """Tests for event serialization."""

    def test_omits_empty_fields(self):
        """Serialized events leave out unset fields."""
        data = LiveEvent(type=EventType.ANALYSIS_START, anomaly_ids=["a-1"]).to_json()

        assert data["type"] == "analysis-start"
        assert data["anomaly_ids"] == ["a-1"]
        assert "data" not in data
        assert isinstance(data["timestamp"], str)


class TestLiveChannelHub:
    """Tests for LiveChannelHub."""

    @pytest.mark.asyncio
    async def test_welcome_heartbeat(self):
        """Registering sends a heartbeat first."""
        hub = LiveChannelHub()
        socket = FakeSocket()

        hub.register(socket)
        await settle()

        welcome = socket.sent[0]
        assert welcome["type"] == "heartbeat"
        assert welcome["data"]["retry_ms"] == 3000
        await hub.stop()

    @pytest.mark.asyncio
    async def test_publish_reaches_every_subscriber(self):
        """Every subscriber gets each event."""
        hub = LiveChannelHub()
        sockets = [FakeSocket() for _ in range(3)]
        for socket in sockets:
            hub.register(socket)

        delivered = hub.alert("critical", "Payment gateway down", {"service": "payments"})
        await settle()

        assert delivered == 3
        for socket in sockets:
            alert = socket.sent[-1]
            assert alert["type"] == "alert"
            assert alert["data"] == {
                "severity": "critical",
                "message": "Payment gateway down",
                "context": {"service": "payments"},
            }
        await hub.stop()

    @pytest.mark.asyncio
    async def test_analysis_events_in_order(self):
        """Start, chunks and complete arrive in order."""
        hub = LiveChannelHub()
        socket = FakeSocket()
        hub.register(socket)

        hub.analysis_start(["a-1", "a-2"])
        for chunk in ["The ", "database ", "is slow"]:
            hub.analysis_chunk(chunk, ["a-1", "a-2"])
        hub.analysis_complete("The database is slow", ["a-1", "a-2"])
        await settle()

        types = [m["type"] for m in socket.sent[1:]]
        assert types == [
            "analysis-start",
            "analysis-chunk", "analysis-chunk", "analysis-chunk",
            "analysis-complete",
        ]
        chunks = "".join(m["data"] for m in socket.sent if m["type"] == "analysis-chunk")
        assert chunks == socket.sent[-1]["data"]
        await hub.stop()

    @pytest.mark.asyncio
    async def test_slow_subscriber_is_disconnected(self):
        """A full subscriber queue closes that socket with 1008."""
        hub = LiveChannelHub(queue_size=2)
        slow, fast = FakeSocket(block=True), FakeSocket()
        slow_sub = hub.register(slow)
        hub.register(fast)
        await settle()

        for i in range(3):
            hub.alert("medium", f"alert {i}")
            await settle()

        assert hub.subscriber_count == 1
        assert slow_sub.id not in hub._subscribers
        slow.close.assert_awaited_once()
        assert slow.close.call_args.kwargs["code"] == 1008
        assert [m["data"]["message"] for m in fast.sent[1:]] == ["alert 0", "alert 1", "alert 2"]
        await hub.stop()

    @pytest.mark.asyncio
    async def test_unregister_is_idempotent(self):
        """Unregistering twice is harmless."""
        hub = LiveChannelHub()
        subscriber = hub.register(FakeSocket())

        hub.unregister(subscriber.id)
        hub.unregister(subscriber.id)

        assert hub.subscriber_count == 0
        assert hub.heartbeat() == 0

    @pytest.mark.asyncio
    async def test_failed_send_unregisters(self):
        """A send error drops the subscriber."""
        hub = LiveChannelHub()
        socket = FakeSocket()
        socket.send_json = AsyncMock(side_effect=RuntimeError("socket closed"))

        hub.register(socket)
        await settle()

        assert hub.subscriber_count == 0

    @pytest.mark.asyncio
    async def test_periodic_heartbeat(self):
        """Heartbeats keep flowing while idle."""
        hub = LiveChannelHub(heartbeat_interval=0.01)
        socket = FakeSocket()
        hub.register(socket)
        await hub.start()

        await asyncio.sleep(0.05)
        await hub.stop()

        heartbeats = [m for m in socket.sent if m["type"] == "heartbeat"]
        assert len(heartbeats) >= 2


class FakeConnection:
    """Client-side connection double yielding canned messages, then dropping."""

    def __init__(self, messages):
        self.messages = messages

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for message in self.messages:
            yield message


def scripted_connect(monkeypatch, attempts):
    attempts = iter(attempts)
    urls = []

    def connect(url):
        urls.append(url)
        attempt = next(attempts)
        if isinstance(attempt, Exception):
            raise attempt
        return FakeConnection([json.dumps(m) if isinstance(m, dict) else m for m in attempt])

    monkeypatch.setattr(client_module.websockets, "connect", connect)
    return urls


class TestLiveChannelClient:
    """Tests for LiveChannelClient."""

    def test_default_url(self, monkeypatch):
        """The client targets the local server by default."""
        monkeypatch.delenv("SPANGUARD_WS_URL", raising=False)
        client = LiveChannelClient()
        assert client.url == "ws://localhost:8081/ws/monitor"
        assert client.reconnect_delay == 3.0

    @pytest.mark.asyncio
    async def test_reconnects_and_discards_partial_analysis(self, monkeypatch):
        """A dropped connection is retried and partial text discarded."""
        urls = scripted_connect(monkeypatch, [
            OSError("connection refused"),
            [
                {"type": "heartbeat", "data": {"retry_ms": 3000}},
                {"type": "analysis-start", "anomaly_ids": ["a-1"]},
                {"type": "analysis-chunk", "data": "The data"},
            ],
            [{"type": "heartbeat", "data": {"retry_ms": 3000}}],
        ])
        client = LiveChannelClient("ws://test/ws/monitor", reconnect_delay=0)
        seen = []

        async for event in client.events():
            seen.append(event["type"])
            if event["type"] == "analysis-chunk":
                assert client.partial_analysis == ["The data"]
            if len(seen) == 4:
                # Interrupted analysis is not resumed
                assert client.partial_analysis == []
                client.stop()

        assert seen == ["heartbeat", "analysis-start", "analysis-chunk", "heartbeat"]
        assert urls == ["ws://test/ws/monitor"] * 3

    @pytest.mark.asyncio
    async def test_skips_malformed_messages(self, monkeypatch):
        """Non-JSON messages are skipped."""
        scripted_connect(monkeypatch, [[
            "not json",
            {"type": "alert", "data": {"severity": "critical"}},
        ]])
        client = LiveChannelClient("ws://test/ws/monitor", reconnect_delay=0)

        async def handler(event):
            assert event["type"] == "alert"
            client.stop()

        await client.run(handler)

        assert not client.connected

    @pytest.mark.asyncio
    async def test_retries_after_rejected_handshake(self, monkeypatch):
        """A refused upgrade or a connect timeout is retried like a drop."""
        urls = scripted_connect(monkeypatch, [
            websockets.exceptions.InvalidHandshake("server rejected WebSocket connection: HTTP 502"),
            asyncio.TimeoutError(),
            [{"type": "heartbeat", "data": {"retry_ms": 3000}}],
        ])
        client = LiveChannelClient("ws://test/ws/monitor", reconnect_delay=0)

        async for event in client.events():
            assert event["type"] == "heartbeat"
            client.stop()

        assert len(urls) == 3
