"""
Tests for the transport channel lifecycle and typed dispatch.

Exercised through OpenAIRealtimeChannel and TwilioMediaChannel backed by
the in-memory connections from conftest.
"""

import asyncio

import pytest

from gridvoice.voice import openai_realtime
from gridvoice.voice.channel import ChannelState
from gridvoice.voice.errors import (
    ChannelClosedUnexpectedly,
    ChannelConnectionError,
    DuplicateConnectionError,
    NotConnectedError,
)
from gridvoice.voice.openai_realtime import OpenAIRealtimeChannel
from gridvoice.voice.twilio_stream import TwilioMediaChannel

from conftest import drain


# ============================================================================
# Lifecycle
# ============================================================================


class TestLifecycle:

    @pytest.mark.asyncio
    async def test_connect_opens_channel(self, realtime):
        channel = OpenAIRealtimeChannel(api_key="k", url="wss://example.test/realtime")
        assert channel.state is ChannelState.IDLE

        await channel.connect()

        assert channel.is_open
        url, kwargs = realtime.connect_calls[0]
        assert url == "wss://example.test/realtime"
        assert kwargs["additional_headers"]["Authorization"] == "Bearer k"
        assert kwargs["additional_headers"]["OpenAI-Beta"] == "realtime=v1"
        await channel.close()

    @pytest.mark.asyncio
    async def test_second_connect_is_rejected(self, realtime):
        channel = OpenAIRealtimeChannel()
        await channel.connect()

        with pytest.raises(DuplicateConnectionError):
            await channel.connect()
        await channel.close()

    @pytest.mark.asyncio
    async def test_handshake_failure_raises_connection_error(self, monkeypatch):
        async def refuse(url, **kwargs):
            raise OSError("connection refused")

        monkeypatch.setattr(openai_realtime.websockets, "connect", refuse)
        channel = OpenAIRealtimeChannel()

        with pytest.raises(ChannelConnectionError):
            await channel.connect()
        assert channel.state is ChannelState.CLOSED

    @pytest.mark.asyncio
    async def test_connection_error_is_builtin_connection_error(self, monkeypatch):
        async def refuse(url, **kwargs):
            raise OSError("connection refused")

        monkeypatch.setattr(openai_realtime.websockets, "connect", refuse)

        with pytest.raises(ConnectionError):
            await OpenAIRealtimeChannel().connect()

    @pytest.mark.asyncio
    async def test_send_before_connect_raises(self):
        channel = OpenAIRealtimeChannel()
        with pytest.raises(NotConnectedError):
            await channel.append_audio("AAAA")

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, realtime):
        channel = OpenAIRealtimeChannel()
        await channel.connect()
        calls = []
        channel.on_close(lambda ch, err: calls.append(err))

        first = channel.close()
        second = channel.close()
        await first

        assert first is second
        assert channel.state is ChannelState.CLOSED
        assert realtime.closed
        assert calls == [None]

    @pytest.mark.asyncio
    async def test_close_moves_to_closing_synchronously(self, realtime):
        channel = OpenAIRealtimeChannel()
        await channel.connect()

        task = channel.close()
        assert channel.state is ChannelState.CLOSING
        await task

    @pytest.mark.asyncio
    async def test_send_after_close_raises(self, realtime):
        channel = OpenAIRealtimeChannel()
        await channel.connect()
        await channel.close()

        with pytest.raises(NotConnectedError):
            await channel.append_audio("AAAA")

    @pytest.mark.asyncio
    async def test_state_never_moves_backwards(self, realtime):
        channel = OpenAIRealtimeChannel()
        await channel.connect()
        await channel.close()

        assert channel._transition(ChannelState.OPEN) is False
        assert channel.state is ChannelState.CLOSED

    @pytest.mark.asyncio
    async def test_remote_drop_reports_unexpected_close(self, realtime):
        channel = OpenAIRealtimeChannel()
        await channel.connect()
        errors = []
        channel.on_close(lambda ch, err: errors.append(err))

        realtime.drop()
        await channel.wait_closed()

        assert len(errors) == 1
        assert isinstance(errors[0], ChannelClosedUnexpectedly)
        assert channel.state is ChannelState.CLOSED

    @pytest.mark.asyncio
    async def test_receive_error_reports_unexpected_close(self, realtime):
        channel = OpenAIRealtimeChannel()
        await channel.connect()
        errors = []
        channel.on_close(lambda ch, err: errors.append(err))

        realtime.drop(RuntimeError("socket reset"))
        await channel.wait_closed()

        assert isinstance(errors[0], ChannelClosedUnexpectedly)
        assert "socket reset" in errors[0].detail


# ============================================================================
# Dispatch
# ============================================================================


class TestDispatch:

    @pytest.mark.asyncio
    async def test_handlers_run_in_registration_order(self, realtime):
        channel = OpenAIRealtimeChannel()
        order = []
        channel.on_event("response.created", lambda e: order.append("first"))

        async def second(event):
            order.append("second")

        channel.on_event("response.created", second)
        channel.on_event("response.created", lambda e: order.append("third"))
        await channel.connect()

        realtime.push({"type": "response.created"})
        await drain()

        assert order == ["first", "second", "third"]
        await channel.close()

    @pytest.mark.asyncio
    async def test_failing_handler_is_isolated(self, realtime):
        channel = OpenAIRealtimeChannel()
        seen = []

        def broken(event):
            raise ValueError("boom")

        channel.on_event("response.created", broken)
        channel.on_event("response.created", lambda e: seen.append(e.type))
        await channel.connect()

        realtime.push({"type": "response.created"})
        realtime.push({"type": "response.created"})
        await drain()

        assert seen == ["response.created", "response.created"]
        assert channel.is_open
        await channel.close()

    @pytest.mark.asyncio
    async def test_only_matching_type_is_dispatched(self, realtime):
        channel = OpenAIRealtimeChannel()
        seen = []
        channel.on_event("response.audio.delta", lambda e: seen.append(e.audio_delta))
        await channel.connect()

        realtime.push({"type": "response.created"})
        realtime.push({"type": "response.audio.delta", "delta": "QUJD"})
        await drain()

        assert seen == ["QUJD"]
        await channel.close()

    @pytest.mark.asyncio
    async def test_malformed_message_is_skipped(self, realtime):
        channel = OpenAIRealtimeChannel()
        seen = []
        channel.on_event("response.created", lambda e: seen.append(e.type))
        await channel.connect()

        realtime.push_raw("{not json")
        realtime.push({"type": "response.created"})
        await drain()

        assert seen == ["response.created"]
        assert channel.is_open
        await channel.close()

    @pytest.mark.asyncio
    async def test_no_events_after_close(self, realtime):
        channel = OpenAIRealtimeChannel()
        seen = []
        channel.on_event("response.created", lambda e: seen.append(e.type))
        await channel.connect()

        channel.close()
        realtime.push({"type": "response.created"})
        await drain()

        assert seen == []

    @pytest.mark.asyncio
    async def test_session_created_records_session_id(self, realtime):
        channel = OpenAIRealtimeChannel()
        await channel.connect()

        realtime.push({"type": "session.created", "session": {"id": "sess_42"}})
        await drain()

        assert channel.session_id == "sess_42"
        await channel.close()


# ============================================================================
# Commands
# ============================================================================


class TestRealtimeCommands:

    @pytest.mark.asyncio
    async def test_command_payloads(self, realtime):
        channel = OpenAIRealtimeChannel()
        await channel.connect()

        await channel.append_audio("AAAA")
        await channel.clear_audio_buffer()
        await channel.create_response()
        await channel.speak("Hi there")
        await channel.submit_function_output("call_1", '{"ok": true}')

        assert realtime.sent[0] == {"type": "input_audio_buffer.append", "audio": "AAAA"}
        assert realtime.sent[1] == {"type": "input_audio_buffer.clear"}
        assert realtime.sent[2] == {"type": "response.create", "response": {"modalities": ["text", "audio"]}}
        assert realtime.sent[3]["response"]["instructions"] == "Say this verbatim:\nHi there"
        assert realtime.sent[4] == {
            "type": "conversation.item.create",
            "item": {"type": "function_call_output", "call_id": "call_1", "output": '{"ok": true}'},
        }
        await channel.close()


class TestTwilioChannel:

    @pytest.mark.asyncio
    async def test_start_records_stream_sid(self, twilio_ws):
        channel = TwilioMediaChannel(twilio_ws)
        await channel.connect()

        twilio_ws.push({"event": "start", "streamSid": "MZ1", "start": {"streamSid": "MZ1", "callSid": "CA1"}})
        await drain()

        assert channel.stream_sid == "MZ1"
        await channel.send_audio("QUJD")
        await channel.clear_audio()
        await channel.send_mark("greeting")
        assert twilio_ws.sent == [
            {"event": "media", "streamSid": "MZ1", "media": {"payload": "QUJD"}},
            {"event": "clear", "streamSid": "MZ1"},
            {"event": "mark", "streamSid": "MZ1", "mark": {"name": "greeting"}},
        ]
        await channel.close()

    @pytest.mark.asyncio
    async def test_stop_event_is_a_requested_close(self, twilio_ws):
        channel = TwilioMediaChannel(twilio_ws)
        await channel.connect()
        errors = []
        channel.on_close(lambda ch, err: errors.append(err))

        twilio_ws.push({"event": "stop", "streamSid": "MZ1"})
        await channel.wait_closed()

        assert errors == [None]
        assert twilio_ws.application_state.name == "DISCONNECTED"

    @pytest.mark.asyncio
    async def test_hang_up_without_stop_is_unexpected(self, twilio_ws):
        channel = TwilioMediaChannel(twilio_ws)
        await channel.connect()
        errors = []
        channel.on_close(lambda ch, err: errors.append(err))

        twilio_ws.hang_up()
        await asyncio.wait_for(channel.wait_closed(), timeout=1)

        assert isinstance(errors[0], ChannelClosedUnexpectedly)
