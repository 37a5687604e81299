"""
OpenAI Realtime API channel for speech-to-speech processing.

Handles bidirectional audio streaming with the OpenAI Realtime API,
supporting PCMU audio format for direct Twilio integration.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import AsyncIterator, Optional

import websockets
from websockets.asyncio.client import ClientConnection
from websockets.exceptions import ConnectionClosedError, WebSocketException

from ..utils.config import settings
from .channel import TransportChannel
from .errors import ChannelConnectionError

logger = logging.getLogger(__name__)


class RealtimeEventType(str, Enum):
    """OpenAI Realtime API event types."""
    # Session events
    SESSION_CREATED = "session.created"

    # Input audio events
    INPUT_AUDIO_BUFFER_SPEECH_STARTED = "input_audio_buffer.speech_started"
    INPUT_AUDIO_BUFFER_SPEECH_STOPPED = "input_audio_buffer.speech_stopped"

    # Response events
    RESPONSE_CREATED = "response.created"
    RESPONSE_DONE = "response.done"
    RESPONSE_OUTPUT_ITEM_ADDED = "response.output_item.added"
    RESPONSE_AUDIO_DELTA = "response.audio.delta"
    RESPONSE_AUDIO_TRANSCRIPT_DONE = "response.audio_transcript.done"
    RESPONSE_FUNCTION_CALL_ARGUMENTS_DELTA = "response.function_call_arguments.delta"

    # Transcription events
    CONVERSATION_ITEM_INPUT_AUDIO_TRANSCRIPTION_COMPLETED = (
        "conversation.item.input_audio_transcription.completed"
    )

    # Error events
    ERROR = "error"


@dataclass
class RealtimeEvent:
    """Represents an event from the OpenAI Realtime API."""
    type: str
    data: dict = field(default_factory=dict)

    @property
    def is_audio_delta(self) -> bool:
        return self.type == RealtimeEventType.RESPONSE_AUDIO_DELTA

    @property
    def is_error(self) -> bool:
        return self.type == RealtimeEventType.ERROR

    @property
    def audio_delta(self) -> Optional[str]:
        """Get the base64-encoded audio delta if present."""
        if self.is_audio_delta:
            return self.data.get("delta")
        return None

    @property
    def transcript(self) -> Optional[str]:
        """Get the transcript text carried by a transcript event."""
        return self.data.get("transcript")

    @property
    def output_items(self) -> list[dict]:
        """Output items of a response.done event."""
        response = self.data.get("response") or {}
        return list(response.get("output") or [])

    @property
    def error_message(self) -> Optional[str]:
        """Get the error message if this is an error event."""
        if self.is_error:
            error = self.data.get("error", {})
            return error.get("message", str(error))
        return None


class OpenAIRealtimeChannel(TransportChannel):
    """
    Channel to the OpenAI Realtime API.

    Owns the client WebSocket and exposes the outbound commands the relay
    needs as typed helpers.
    """

    role = "openai"

    def __init__(
        self,
        api_key: Optional[str] = None,
        url: Optional[str] = None,
    ):
        """
        Initialize the Realtime channel.

        Args:
            api_key: OpenAI API key (defaults to settings)
            url: Realtime WebSocket URL including the model (defaults to settings)
        """
        super().__init__()
        self.api_key = api_key or settings.openai_api_key
        self.url = url or settings.openai_realtime_url
        self._ws: Optional[ClientConnection] = None
        self.session_id: Optional[str] = None

        self.on_event(RealtimeEventType.SESSION_CREATED, self._handle_session_created)
        self.on_event(RealtimeEventType.ERROR, self._handle_error)

    # ------------------------------------------------------------------
    # Transport hooks
    # ------------------------------------------------------------------

    async def _open(self) -> None:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "OpenAI-Beta": "realtime=v1",
        }

        logger.info(f"Connecting to OpenAI Realtime API: {self.url}")
        try:
            self._ws = await websockets.connect(
                self.url,
                additional_headers=headers,
                ping_interval=20,
                ping_timeout=20,
            )
        except (WebSocketException, OSError, asyncio.TimeoutError) as e:
            logger.error(f"Failed to connect to OpenAI Realtime API: {e}")
            raise ChannelConnectionError(f"OpenAI Realtime handshake failed: {e}") from e

    async def _receive(self) -> AsyncIterator[str]:
        try:
            async for message in self._ws:
                yield message
        except ConnectionClosedError as e:
            logger.info(f"Realtime connection closed: {e}")

    async def _transmit(self, text: str) -> None:
        await self._ws.send(text)

    async def _close_transport(self) -> None:
        if self._ws is not None:
            await self._ws.close()

    def _parse(self, raw: str) -> RealtimeEvent:
        data = json.loads(raw)
        return RealtimeEvent(type=data.get("type", "unknown"), data=data)

    def _event_key(self, event: RealtimeEvent) -> str:
        return event.type

    # ------------------------------------------------------------------
    # Built-in listeners
    # ------------------------------------------------------------------

    def _handle_session_created(self, event: RealtimeEvent) -> None:
        session = event.data.get("session") or {}
        self.session_id = session.get("id")
        logger.info(f"OpenAI Realtime session created: {self.session_id}")

    def _handle_error(self, event: RealtimeEvent) -> None:
        logger.error(f"Realtime API error: {event.error_message}")

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def update_session(self, config: dict) -> None:
        """Send a session.update with the given session parameters."""
        await self.send({"type": "session.update", "session": config})

    async def append_audio(self, audio_b64: str) -> None:
        """
        Send audio data to the Realtime API.

        Args:
            audio_b64: Base64-encoded audio data (PCMU from Twilio)
        """
        await self.send({"type": "input_audio_buffer.append", "audio": audio_b64})

    async def clear_audio_buffer(self) -> None:
        """Discard audio buffered on the OpenAI side (for barge-in)."""
        await self.send({"type": "input_audio_buffer.clear"})

    async def create_response(
        self,
        modalities: tuple[str, ...] = ("text", "audio"),
        instructions: Optional[str] = None,
    ) -> None:
        """Ask the model to generate a response, optionally with override instructions."""
        response: dict = {"modalities": list(modalities)}
        if instructions is not None:
            response["instructions"] = instructions
        await self.send({"type": "response.create", "response": response})

    async def speak(self, text: str) -> None:
        """Have the agent say text verbatim."""
        await self.create_response(instructions=f"Say this verbatim:\n{text}")

    async def submit_function_output(self, call_id: str, output: str) -> None:
        """
        Attach a tool result to the conversation, tied to its call_id.

        Args:
            call_id: The function call being answered
            output: The result, already serialized as JSON text
        """
        await self.send({
            "type": "conversation.item.create",
            "item": {
                "type": "function_call_output",
                "call_id": call_id,
                "output": output,
            },
        })
