"""
Transport channel: a duplex, typed message channel over one streaming connection.

Both peers of a call (the Twilio Media Stream and the OpenAI Realtime API)
are wrapped in a TransportChannel subclass. The base class owns everything
the two have in common:

- A forward-only lifecycle (idle -> connecting -> open -> closing -> closed)
- A typed dispatch table: each inbound message is parsed once and fanned out
  to the handlers registered for its event type, in registration order
- Handler isolation: a failing handler is logged, the channel keeps reading
- Close notification, fired once when the channel stops being open
"""

import asyncio
import inspect
import json
import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

from .errors import (
    ChannelClosedUnexpectedly,
    DuplicateConnectionError,
    NotConnectedError,
)

logger = logging.getLogger(__name__)


class ChannelState(str, Enum):
    """Lifecycle states of a transport channel."""
    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"


_STATE_ORDER = list(ChannelState)

EventHandler = Callable[[Any], Optional[Awaitable[None]]]
CloseCallback = Callable[["TransportChannel", Optional[Exception]], None]


class TransportChannel(ABC):
    """
    Base class for one side of the relay.

    Subclasses implement the transport hooks (_open, _receive, _transmit,
    _close_transport) and the parse step; the base class drives the reader
    loop and dispatch.
    """

    role: str = "channel"

    def __init__(self) -> None:
        self._state = ChannelState.IDLE
        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)
        self._close_callbacks: list[CloseCallback] = []
        self._reader_task: Optional[asyncio.Task] = None
        self._close_task: Optional[asyncio.Task] = None
        self._closed = asyncio.Event()
        self.close_error: Optional[Exception] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def state(self) -> ChannelState:
        return self._state

    @property
    def is_open(self) -> bool:
        return self._state is ChannelState.OPEN

    def _transition(self, new_state: ChannelState) -> bool:
        """Move forward to new_state. Returns False if that would go backwards."""
        if _STATE_ORDER.index(new_state) <= _STATE_ORDER.index(self._state):
            return False
        logger.debug(f"{self.role} channel: {self._state.value} -> {new_state.value}")
        self._state = new_state
        return True

    async def connect(self) -> None:
        """
        Open the underlying connection and start reading.

        Raises:
            DuplicateConnectionError: connect() was already called on this channel
            ChannelConnectionError: the remote side rejected the handshake
        """
        if self._state is not ChannelState.IDLE:
            raise DuplicateConnectionError(
                f"{self.role} channel is already {self._state.value}"
            )
        self._transition(ChannelState.CONNECTING)

        try:
            await self._open()
        except BaseException:
            self._transition(ChannelState.CLOSED)
            self._closed.set()
            raise

        if not self._transition(ChannelState.OPEN):
            # close() was requested while the handshake was in flight
            await self._close_transport()
            return

        logger.info(f"{self.role} channel open")
        self._reader_task = asyncio.create_task(self._read_loop())

    def close(self) -> asyncio.Task:
        """
        Request the channel to close. Idempotent.

        The state moves to closing before this returns, so no further inbound
        events are dispatched. The returned task resolves once the transport
        reports closed.
        """
        if self._close_task is None:
            self._begin_close(None)
            self._close_task = asyncio.create_task(self._shutdown())
        return self._close_task

    async def wait_closed(self) -> None:
        await self._closed.wait()

    def _begin_close(self, error: Optional[Exception]) -> None:
        was_open = self._state is ChannelState.OPEN
        if not self._transition(ChannelState.CLOSING):
            return
        if error is not None:
            self.close_error = error
        if was_open:
            self._notify_closed(error)

    def _notify_closed(self, error: Optional[Exception]) -> None:
        callbacks, self._close_callbacks = self._close_callbacks, []
        for callback in callbacks:
            try:
                callback(self, error)
            except Exception:
                logger.exception(f"{self.role} close callback failed")

    async def _shutdown(self) -> None:
        try:
            await self._close_transport()
        except Exception as e:
            logger.debug(f"{self.role} transport close raised: {e}")

        reader = self._reader_task
        if reader is not None and reader is not asyncio.current_task() and not reader.done():
            reader.cancel()
            try:
                await reader
            except asyncio.CancelledError:
                pass

        self._transition(ChannelState.CLOSED)
        self._handlers.clear()
        self._closed.set()
        logger.info(f"{self.role} channel closed")

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    async def send(self, message: dict) -> None:
        """
        Serialize and transmit one message.

        Raises:
            NotConnectedError: the channel is not open (before connect or after close)
        """
        if not self.is_open:
            raise NotConnectedError(
                f"Cannot send on {self.role} channel: {self._state.value}"
            )
        await self._transmit(json.dumps(message))

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    def on_event(self, event_type: str, handler: EventHandler) -> None:
        """Register a handler for every inbound event of event_type."""
        key = event_type.value if isinstance(event_type, Enum) else event_type
        self._handlers[key].append(handler)

    def on_close(self, callback: CloseCallback) -> None:
        """
        Register a callback fired once when the channel stops being open.

        The callback receives the channel and None for a requested close, or
        ChannelClosedUnexpectedly when the remote side dropped the connection.
        """
        self._close_callbacks.append(callback)

    async def _read_loop(self) -> None:
        error: Optional[Exception] = None
        try:
            async for raw in self._receive():
                if not self.is_open:
                    break
                try:
                    event = self._parse(raw)
                except ValueError as e:
                    logger.warning(f"Failed to parse {self.role} message: {e}")
                    continue
                if event is None:
                    continue
                await self.dispatch(event)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Error receiving {self.role} messages: {e}")
            error = e

        if self.is_open:
            if not self._remote_close_expected():
                error = ChannelClosedUnexpectedly(
                    f"{self.role} connection closed by remote"
                    + (f": {error}" if error else "")
                )
                logger.warning(error.detail)
            else:
                error = None
            self._begin_close(error)
            if self._close_task is None:
                self._close_task = asyncio.create_task(self._shutdown())

    async def dispatch(self, event: Any) -> None:
        """Fan an already-parsed event out to its handlers, in order."""
        handlers = self._handlers.get(self._event_key(event))
        if not handlers:
            return
        for handler in list(handlers):
            if not self.is_open:
                return
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(
                    f"{self.role} handler for {self._event_key(event)!r} failed"
                )

    def _remote_close_expected(self) -> bool:
        """Whether the remote ending the stream is a normal end of call."""
        return False

    # ------------------------------------------------------------------
    # Transport hooks
    # ------------------------------------------------------------------

    @abstractmethod
    async def _open(self) -> None:
        """Establish the connection."""

    @abstractmethod
    def _receive(self) -> AsyncIterator[str]:
        """Yield raw inbound messages until the connection ends."""

    @abstractmethod
    async def _transmit(self, text: str) -> None:
        """Write one raw message."""

    @abstractmethod
    async def _close_transport(self) -> None:
        """Close the connection."""

    @abstractmethod
    def _parse(self, raw: str) -> Any:
        """Parse a raw message into a typed event (or None to skip it)."""

    @abstractmethod
    def _event_key(self, event: Any) -> str:
        """Dispatch key for a parsed event."""
