"""
Audio Bridge: Coordinates audio flow between Twilio and OpenAI Realtime API.

This module handles:
- Caller audio forwarding (Twilio -> OpenAI), always on
- Agent audio forwarding (OpenAI -> Twilio), gated for barge-in
- Barge-in: when the caller starts talking, both sides are told to drop
  buffered audio and agent audio stops until the next response begins
- Turn state and transcript bookkeeping for the call
"""

import logging
from typing import TYPE_CHECKING, Optional

from .channel import TransportChannel
from .errors import NotConnectedError
from .openai_realtime import OpenAIRealtimeChannel, RealtimeEvent, RealtimeEventType
from .twilio_stream import TwilioEvent, TwilioMediaChannel

if TYPE_CHECKING:
    from .session import CallSession

logger = logging.getLogger(__name__)


class AudioBridge:
    """
    Bridges audio between Twilio Media Streams and OpenAI Realtime API.

    All state lives on the CallSession; the bridge only holds a reference
    to it, so each call gets its own independent bridge.
    """

    def __init__(self, session: "CallSession"):
        self.session = session

    def attach_ai(self, ai: OpenAIRealtimeChannel) -> None:
        """Register listeners on the OpenAI channel."""
        ai.on_event(RealtimeEventType.RESPONSE_CREATED, self._handle_response_created)
        ai.on_event(RealtimeEventType.RESPONSE_AUDIO_DELTA, self._handle_audio_delta)
        ai.on_event(RealtimeEventType.RESPONSE_DONE, self._handle_response_done)
        ai.on_event(RealtimeEventType.INPUT_AUDIO_BUFFER_SPEECH_STARTED, self._handle_speech_started)
        ai.on_event(RealtimeEventType.INPUT_AUDIO_BUFFER_SPEECH_STOPPED, self._handle_speech_stopped)
        ai.on_event(RealtimeEventType.RESPONSE_AUDIO_TRANSCRIPT_DONE, self._handle_agent_transcript)
        ai.on_event(
            RealtimeEventType.CONVERSATION_ITEM_INPUT_AUDIO_TRANSCRIPTION_COMPLETED,
            self._handle_caller_transcript,
        )

    def attach_telephony(self, telephony: TwilioMediaChannel) -> None:
        """Register listeners on the Twilio channel."""
        telephony.on_event("media", self._handle_media)

    @staticmethod
    def _usable(channel: Optional[TransportChannel]) -> bool:
        # A closed side means the call is ending; forwarding becomes a no-op
        return channel is not None and channel.is_open

    # ------------------------------------------------------------------
    # Twilio -> OpenAI
    # ------------------------------------------------------------------

    async def _handle_media(self, event: TwilioEvent) -> None:
        payload = event.payload
        if not payload or not self._usable(self.session.ai):
            return
        try:
            await self.session.ai.append_audio(payload)
        except NotConnectedError:
            pass

    # ------------------------------------------------------------------
    # OpenAI -> Twilio
    # ------------------------------------------------------------------

    def _handle_response_created(self, event: RealtimeEvent) -> None:
        if not self.session.audio_enabled:
            logger.debug("New response created - agent audio re-enabled")
        self.session.audio_enabled = True

    async def _handle_audio_delta(self, event: RealtimeEvent) -> None:
        delta = event.audio_delta
        if not delta or not self.session.audio_enabled:
            return
        telephony = self.session.telephony
        if not self._usable(telephony) or not telephony.stream_sid:
            return
        self.session.set_turn_ai_speaking()
        try:
            await telephony.send_audio(delta)
        except NotConnectedError:
            pass

    def _handle_response_done(self, event: RealtimeEvent) -> None:
        # The agent keeps the turn while a function call is being answered
        calls_function = any(item.get("type") == "function_call" for item in event.output_items)
        if calls_function or self.session.pending_tool_call is not None:
            return
        self.session.set_turn_idle(from_ai=True)

    async def _handle_speech_started(self, event: RealtimeEvent) -> None:
        logger.info("User started speaking - stopping agent audio")
        self.session.audio_enabled = False
        self.session.set_turn_human_speaking()

        ai = self.session.ai
        telephony = self.session.telephony
        try:
            if self._usable(ai):
                # Tell OpenAI to drop the audio it has buffered
                await ai.clear_audio_buffer()
            if self._usable(telephony):
                # Tell Twilio to stop playing what it already received
                await telephony.clear_audio()
        except NotConnectedError:
            pass

    def _handle_speech_stopped(self, event: RealtimeEvent) -> None:
        self.session.set_turn_idle(from_ai=False)

    # ------------------------------------------------------------------
    # Transcripts
    # ------------------------------------------------------------------

    def _handle_agent_transcript(self, event: RealtimeEvent) -> None:
        transcript = event.transcript
        if transcript:
            logger.info(f"bot transcript (final): {transcript}")
            self.session.add_transcript_entry("assistant", transcript)

    def _handle_caller_transcript(self, event: RealtimeEvent) -> None:
        transcript = event.transcript
        if transcript:
            logger.info(f"User said: {transcript[:100]}")
            self.session.add_transcript_entry("user", transcript)
