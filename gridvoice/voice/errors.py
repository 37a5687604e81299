"""Exceptions raised by the relay.

Channel errors end the call; tool errors are recovered inside the turn.
"""

from __future__ import annotations


class RelayError(Exception):
    default_detail: str = "Relay error"

    def __init__(self, detail: str | None = None) -> None:
        super().__init__(detail or self.default_detail)
        self.detail = detail or self.default_detail


class ChannelConnectionError(RelayError, ConnectionError):
    default_detail = "Channel could not be opened."


class NotConnectedError(RelayError):
    default_detail = "Channel is not open."


class DuplicateConnectionError(RelayError):
    default_detail = "A live connection already exists for this channel role."


class ChannelClosedUnexpectedly(RelayError):
    default_detail = "Channel closed by the remote side."


class MalformedToolArguments(RelayError):
    default_detail = "Tool call arguments are not valid JSON."


class UnknownFunction(RelayError):
    default_detail = "No handler registered for this function."


class ToolHandlerFailure(RelayError):
    default_detail = "Tool handler failed."
