"""
Session Controller: lifecycle of one phone call.

initializing -> awaiting-media -> active -> ended

The controller opens the OpenAI channel, waits for the Realtime session to
be ready, binds the Twilio Media Stream once Twilio connects, configures the
Realtime session and greets the caller when the stream starts, and tears
both channels down together when either side goes away.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional

from ..utils.config import Settings, settings as default_settings
from .bridge import AudioBridge
from .channel import ChannelState, TransportChannel
from .errors import ChannelConnectionError, DuplicateConnectionError, NotConnectedError
from .openai_realtime import OpenAIRealtimeChannel, RealtimeEventType
from .prompts import get_instructions
from .tools import PendingToolCall, ToolCallCoordinator, ToolRegistry
from .twilio_stream import TwilioEvent, TwilioMediaChannel

logger = logging.getLogger(__name__)


# Twilio CallStatus values that mean the call is over
ENDING_CALL_STATUSES = frozenset({"error", "completed", "failed", "busy", "no-answer", "canceled"})


class SessionState(str, Enum):
    INITIALIZING = "initializing"
    AWAITING_MEDIA = "awaiting-media"
    ACTIVE = "active"
    ENDED = "ended"


class TurnState(str, Enum):
    IDLE = "idle"
    AI_SPEAKING = "ai-speaking"
    HUMAN_SPEAKING = "human-speaking"


@dataclass
class CallSession:
    """Per-call state shared by the bridge and the tool coordinator."""
    call_sid: str
    ai: OpenAIRealtimeChannel
    telephony: Optional[TwilioMediaChannel] = None
    stream_sid: Optional[str] = None
    state: SessionState = SessionState.INITIALIZING
    turn: TurnState = TurnState.IDLE
    audio_enabled: bool = True
    pending_tool_call: Optional[PendingToolCall] = None
    transcript: list[dict] = field(default_factory=list)
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def set_turn_ai_speaking(self) -> None:
        self.turn = TurnState.AI_SPEAKING

    def set_turn_human_speaking(self) -> None:
        self.turn = TurnState.HUMAN_SPEAKING

    def set_turn_idle(self, from_ai: bool) -> None:
        """Return to idle when the party that held the turn stops."""
        holder = TurnState.AI_SPEAKING if from_ai else TurnState.HUMAN_SPEAKING
        if self.turn is holder:
            self.turn = TurnState.IDLE

    def add_transcript_entry(self, role: str, text: str) -> None:
        self.transcript.append({
            "role": role,
            "text": text,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        })

    def to_dict(self) -> dict:
        return {
            "call_sid": self.call_sid,
            "stream_sid": self.stream_sid,
            "state": self.state.value,
            "turn": self.turn.value,
            "audio_enabled": self.audio_enabled,
            "tool_call_pending": self.pending_tool_call is not None,
            "started_at": self.started_at.isoformat(),
        }


class SessionController:
    """
    Owns one CallSession and wires the bridge and the tool coordinator to it.

    All callbacks run on the event loop that owns the channels, so session
    state is never touched concurrently.
    """

    def __init__(
        self,
        call_sid: str,
        registry: Optional[ToolRegistry] = None,
        ai_channel: Optional[OpenAIRealtimeChannel] = None,
        config: Optional[Settings] = None,
    ):
        self.config = config or default_settings
        self.registry = registry if registry is not None else ToolRegistry()
        self.session = CallSession(call_sid=call_sid, ai=ai_channel or OpenAIRealtimeChannel())

        self.bridge = AudioBridge(self.session)
        self.tools = ToolCallCoordinator(
            self.session,
            self.registry,
            response_delay_ms=self.config.tool_response_delay_ms,
            timeout_seconds=self.config.tool_timeout_seconds,
        )

        self._ready = asyncio.Event()
        self._ended = asyncio.Event()
        self._ended_callbacks: list[Callable[["SessionController"], None]] = []
        self._close_tasks: list[asyncio.Task] = []
        self.end_reason: Optional[str] = None

        ai = self.session.ai
        ai.on_event(RealtimeEventType.SESSION_CREATED, self._handle_session_ready)
        self.bridge.attach_ai(ai)
        self.tools.attach(ai)
        ai.on_close(self._handle_channel_closed)

    @property
    def call_sid(self) -> str:
        return self.session.call_sid

    @property
    def state(self) -> SessionState:
        return self.session.state

    @property
    def is_ended(self) -> bool:
        return self.session.state is SessionState.ENDED

    def on_ended(self, callback: Callable[["SessionController"], None]) -> None:
        self._ended_callbacks.append(callback)

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """
        Open the OpenAI channel and wait until the Realtime session is ready.

        The caller (the incoming-call webhook) holds its TwiML response until
        this returns, so Twilio never streams audio before OpenAI can take it.

        Raises:
            ChannelConnectionError: OpenAI could not be reached, or closed
                before the session became ready

        The call is ended on any failure, so the CallSid can be retried.
        """
        ai = self.session.ai
        try:
            await ai.connect()
            ready = asyncio.create_task(self._ready.wait())
            closed = asyncio.create_task(ai.wait_closed())
            try:
                await asyncio.wait(
                    {ready, closed},
                    timeout=self.config.session_ready_timeout_seconds,
                    return_when=asyncio.FIRST_COMPLETED,
                )
            finally:
                ready.cancel()
                closed.cancel()
            if not self._ready.is_set():
                raise ChannelConnectionError(
                    f"OpenAI session for call {self.call_sid} never became ready"
                )
        except BaseException:
            self.end("openai connection failed")
            raise

        self.session.state = SessionState.AWAITING_MEDIA
        logger.info(f"Call {self.call_sid} awaiting media stream")

    def _handle_session_ready(self, event) -> None:
        self._ready.set()

    async def bind_telephony(self, channel: TwilioMediaChannel) -> None:
        """
        Attach the Twilio Media Stream for this call and start reading it.

        Raises:
            NotConnectedError: the call has already ended
            DuplicateConnectionError: a live Twilio stream is already bound
        """
        if self.is_ended:
            raise NotConnectedError(f"Call {self.call_sid} has ended")
        current = self.session.telephony
        if current is not None and current.state is not ChannelState.CLOSED:
            raise DuplicateConnectionError(
                f"Call {self.call_sid} already has a Twilio stream ({current.state.value})"
            )

        self.session.telephony = channel
        self.bridge.attach_telephony(channel)
        channel.on_event("start", self._handle_stream_start)
        channel.on_close(self._handle_channel_closed)
        await channel.connect()
        logger.info(f"Twilio stream bound to call {self.call_sid}")

    def session_config(self) -> dict:
        """Realtime session parameters sent once media starts."""
        return {
            "input_audio_format": "g711_ulaw",
            "output_audio_format": "g711_ulaw",
            "modalities": ["text", "audio"],
            # Server VAD produces the speech_started events barge-in relies on
            "turn_detection": {"type": "server_vad"},
            "input_audio_transcription": {"model": "whisper-1"},
            "tools": self.registry.definitions(),
            "instructions": get_instructions(),
            "temperature": self.config.openai_temperature,
            "voice": self.config.openai_realtime_voice,
        }

    async def _handle_stream_start(self, event: TwilioEvent) -> None:
        if self.session.state is not SessionState.AWAITING_MEDIA:
            logger.warning(f"Ignoring stream start for call {self.call_sid} in state {self.state.value}")
            return
        self.session.stream_sid = event.stream_sid
        logger.info(f"Media stream started for call {self.call_sid}: {self.session.stream_sid}")

        ai = self.session.ai
        await ai.update_session(self.session_config())
        await ai.speak(self.config.greeting)
        if not self.is_ended:
            self.session.state = SessionState.ACTIVE

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    def handle_call_status(self, status: str) -> None:
        """React to a Twilio call status callback."""
        if status == "error":
            logger.error(f"call-status-update {self.call_sid}: {status}")
        else:
            logger.info(f"call-status-update {self.call_sid}: {status}")

        if status in ENDING_CALL_STATUSES:
            self.end(f"call {status}")

    def _handle_channel_closed(self, channel: TransportChannel, error: Optional[Exception]) -> None:
        if error is not None:
            logger.error(f"{channel.role} channel for call {self.call_sid} failed: {error}")
        else:
            logger.info(f"{channel.role} channel for call {self.call_sid} closed")
        self.end(f"{channel.role} channel closed")

    def end(self, reason: str = "ended") -> None:
        """
        End the call: close both channels and cancel pending tool work.

        Idempotent. Close requests are issued before this returns.
        """
        if self.is_ended:
            return
        self.session.state = SessionState.ENDED
        self.end_reason = reason
        logger.info(f"Ending call {self.call_sid}: {reason}")

        self._close_tasks.append(self.session.ai.close())
        if self.session.telephony is not None:
            self._close_tasks.append(self.session.telephony.close())
        self.tools.cancel()
        self.session.pending_tool_call = None
        self._ended.set()

        for callback in self._ended_callbacks:
            try:
                callback(self)
            except Exception:
                logger.exception(f"on_ended callback for call {self.call_sid} failed")

    async def shutdown(self, reason: str = "shutdown") -> None:
        """End the call and wait for both channels to finish closing."""
        self.end(reason)
        await asyncio.gather(*self._close_tasks, return_exceptions=True)

    async def wait_ended(self) -> None:
        await self._ended.wait()
