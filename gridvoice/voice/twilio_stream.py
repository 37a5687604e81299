"""
Twilio Media Streams channel.

Wraps the WebSocket Twilio opens to our /media-stream endpoint. Inbound
messages are the Media Stream events (connected, start, media, mark, stop);
outbound commands are media, clear and mark.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import AsyncIterator, Optional

from fastapi import WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from .channel import TransportChannel

logger = logging.getLogger(__name__)


@dataclass
class TwilioEvent:
    """One inbound Media Stream message."""
    event: str
    data: dict = field(default_factory=dict)

    @property
    def stream_sid(self) -> Optional[str]:
        start = self.data.get("start") or {}
        return self.data.get("streamSid") or start.get("streamSid")

    @property
    def payload(self) -> Optional[str]:
        """Base64 audio of a media event."""
        return (self.data.get("media") or {}).get("payload")


class TwilioMediaChannel(TransportChannel):
    """Channel to one Twilio Media Stream."""

    role = "twilio"

    def __init__(self, websocket: WebSocket):
        super().__init__()
        self._ws = websocket
        self.stream_sid: Optional[str] = None
        self._stopped = False

        self.on_event("start", self._handle_start)
        self.on_event("mark", self._handle_mark)
        self.on_event("stop", self._handle_stop)

    # ------------------------------------------------------------------
    # Transport hooks
    # ------------------------------------------------------------------

    async def _open(self) -> None:
        await self._ws.accept()

    async def _receive(self) -> AsyncIterator[str]:
        while True:
            try:
                message = await self._ws.receive_text()
            except WebSocketDisconnect as e:
                logger.info(f"Twilio WebSocket closed: code={e.code}")
                return
            yield message

    async def _transmit(self, text: str) -> None:
        await self._ws.send_text(text)

    async def _close_transport(self) -> None:
        if self._ws.application_state != WebSocketState.DISCONNECTED:
            await self._ws.close()

    def _parse(self, raw: str) -> TwilioEvent:
        data = json.loads(raw)
        return TwilioEvent(event=data.get("event", "unknown"), data=data)

    def _event_key(self, event: TwilioEvent) -> str:
        return event.event

    def _remote_close_expected(self) -> bool:
        return self._stopped

    # ------------------------------------------------------------------
    # Built-in listeners
    # ------------------------------------------------------------------

    def _handle_start(self, event: TwilioEvent) -> None:
        self.stream_sid = event.stream_sid
        logger.info(f"Twilio stream started: {self.stream_sid}")

    def _handle_mark(self, event: TwilioEvent) -> None:
        logger.debug(f"Playback mark: {event.data.get('mark', {}).get('name')}")

    def _handle_stop(self, event: TwilioEvent) -> None:
        logger.info("Twilio stream stopped")
        self._stopped = True
        self.close()

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def send_audio(self, audio_b64: str) -> None:
        """Play base64 PCMU audio to the caller."""
        await self.send({
            "event": "media",
            "streamSid": self.stream_sid,
            "media": {"payload": audio_b64},
        })

    async def clear_audio(self) -> None:
        """Clear Twilio's playback buffer (for barge-in)."""
        await self.send({"event": "clear", "streamSid": self.stream_sid})

    async def send_mark(self, name: str) -> None:
        await self.send({
            "event": "mark",
            "streamSid": self.stream_sid,
            "mark": {"name": name},
        })
