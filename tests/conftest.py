"""
Shared fixtures: in-memory stand-ins for the two WebSockets a call uses.

FakeRealtimeConnection replaces the client connection returned by
websockets.connect; FakeTwilioWebSocket replaces the FastAPI WebSocket
Twilio opens. Both record what the relay sends as parsed JSON.
"""

import asyncio
import json
import os

os.environ.setdefault("OPENAI_API_KEY", "test-key-for-import-only")

import pytest
from fastapi import WebSocketDisconnect
from starlette.websockets import WebSocketState

from gridvoice.utils.config import Settings
from gridvoice.voice import openai_realtime
from gridvoice.voice.session import SessionController
from gridvoice.voice.twilio_stream import TwilioMediaChannel


# ============================================================================
# Fakes
# ============================================================================


class FakeRealtimeConnection:
    """Scriptable OpenAI Realtime connection."""

    def __init__(self):
        self.inbound: asyncio.Queue = asyncio.Queue()
        self.sent: list[dict] = []
        self.closed = False

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        while True:
            item = await self.inbound.get()
            if item is None:
                return
            if isinstance(item, BaseException):
                raise item
            yield item

    async def send(self, text: str) -> None:
        self.sent.append(json.loads(text))

    async def close(self) -> None:
        self.closed = True
        self.inbound.put_nowait(None)

    def push(self, message: dict) -> None:
        self.inbound.put_nowait(json.dumps(message))

    def push_raw(self, text: str) -> None:
        self.inbound.put_nowait(text)

    def drop(self, error: BaseException = None) -> None:
        """Simulate the remote side going away."""
        self.inbound.put_nowait(error)

    def sent_types(self) -> list[str]:
        return [message["type"] for message in self.sent]


class FakeTwilioWebSocket:
    """Scriptable FastAPI WebSocket carrying a Twilio Media Stream."""

    def __init__(self):
        self.inbound: asyncio.Queue = asyncio.Queue()
        self.sent: list[dict] = []
        self.application_state = WebSocketState.CONNECTING
        self.close_code = None

    async def accept(self) -> None:
        self.application_state = WebSocketState.CONNECTED

    async def receive_text(self) -> str:
        item = await self.inbound.get()
        if item is None:
            self.application_state = WebSocketState.DISCONNECTED
            raise WebSocketDisconnect(code=1000)
        return item

    async def send_text(self, text: str) -> None:
        if self.application_state != WebSocketState.CONNECTED:
            raise RuntimeError("WebSocket is not connected")
        self.sent.append(json.loads(text))

    async def close(self, code: int = 1000) -> None:
        self.application_state = WebSocketState.DISCONNECTED
        self.close_code = code
        self.inbound.put_nowait(None)

    def push(self, message: dict) -> None:
        self.inbound.put_nowait(json.dumps(message))

    def hang_up(self) -> None:
        self.inbound.put_nowait(None)

    def sent_events(self) -> list[str]:
        return [message["event"] for message in self.sent]


async def drain(rounds: int = 25) -> None:
    """Let reader tasks and handlers run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def test_settings():
    return Settings(
        openai_api_key="test-key",
        hostname="voice.example.com",
        greeting="Hello from the test utility.",
        tool_response_delay_ms=0,
        tool_timeout_seconds=1.0,
        session_ready_timeout_seconds=1.0,
    )


@pytest.fixture
def realtime(monkeypatch):
    """Route websockets.connect in the OpenAI channel to a fake connection."""
    connection = FakeRealtimeConnection()
    connection.connect_calls = []

    async def fake_connect(url, **kwargs):
        connection.connect_calls.append((url, kwargs))
        return connection

    monkeypatch.setattr(openai_realtime.websockets, "connect", fake_connect)
    return connection


@pytest.fixture
def twilio_ws():
    return FakeTwilioWebSocket()


@pytest.fixture
def start_call(realtime, test_settings):
    """Factory: a SessionController whose OpenAI session is ready."""

    async def _start(registry=None, call_sid="CA123"):
        controller = SessionController(call_sid, registry=registry, config=test_settings)
        realtime.push({"type": "session.created", "session": {"id": "sess_1"}})
        await controller.start()
        return controller

    return _start


@pytest.fixture
def bind_stream(twilio_ws):
    """Factory: bind the fake Twilio stream and deliver its start event."""

    async def _bind(controller, stream_sid="MZ123"):
        channel = TwilioMediaChannel(twilio_ws)
        await controller.bind_telephony(channel)
        twilio_ws.push({
            "event": "start",
            "streamSid": stream_sid,
            "start": {"streamSid": stream_sid, "callSid": controller.call_sid},
        })
        await drain()
        return channel

    return _bind
