"""Live calls, keyed by Twilio CallSid."""

import logging
from typing import Callable, Iterator, Optional

from .errors import DuplicateConnectionError
from .session import SessionController
from .tools import ToolRegistry

logger = logging.getLogger(__name__)


class SessionRegistry:
    """
    Tracks one SessionController per live call.

    Sessions remove themselves when they end. Nothing is shared between
    sessions except the (read-only) tool registry.
    """

    def __init__(
        self,
        tools: Optional[ToolRegistry] = None,
        factory: Optional[Callable[..., SessionController]] = None,
    ):
        self.tools = tools if tools is not None else ToolRegistry()
        self._factory = factory or SessionController
        self._sessions: dict[str, SessionController] = {}

    def create(self, call_sid: str) -> SessionController:
        """
        Create the session for a new call.

        Raises:
            DuplicateConnectionError: a live session already exists for call_sid
        """
        existing = self._sessions.get(call_sid)
        if existing is not None and not existing.is_ended:
            raise DuplicateConnectionError(f"Call {call_sid} already has a live session")

        controller = self._factory(call_sid, registry=self.tools)
        self._sessions[call_sid] = controller
        controller.on_ended(self._remove)
        logger.info(f"Call {call_sid} registered")
        return controller

    def _remove(self, controller: SessionController) -> None:
        if self._sessions.get(controller.call_sid) is controller:
            del self._sessions[controller.call_sid]
            logger.info(f"Call {controller.call_sid} removed")

    def get(self, call_sid: str) -> Optional[SessionController]:
        return self._sessions.get(call_sid)

    def __contains__(self, call_sid: object) -> bool:
        return call_sid in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def __iter__(self) -> Iterator[SessionController]:
        return iter(list(self._sessions.values()))

    async def shutdown(self) -> None:
        """End every live call (server shutdown)."""
        for controller in list(self):
            await controller.shutdown("server shutdown")
