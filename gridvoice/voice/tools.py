"""
Tool-call coordination for the OpenAI Realtime API.

The model streams a function call as a series of argument deltas and only
names the function in the final response.done. The coordinator:

- Accumulates argument fragments into one PendingToolCall per session
- On response.done, parses the arguments (leniently) and dispatches the
  registered handler in the background, so audio keeps flowing
- Sends the handler's result back as a function_call_output and asks the
  model for a new response
- Speaks an apology instead when the handler fails
"""

import asyncio
import inspect
import json
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional, Union

from .errors import (
    MalformedToolArguments,
    NotConnectedError,
    ToolHandlerFailure,
    UnknownFunction,
)
from .openai_realtime import RealtimeEvent, RealtimeEventType

if TYPE_CHECKING:
    from .session import CallSession

logger = logging.getLogger(__name__)


ToolHandler = Callable[[dict], Union[Awaitable[Any], Any]]

APOLOGY = (
    "I apologize, but I encountered an error while processing your request. "
    "Please try again."
)


@dataclass
class PendingToolCall:
    """A function call whose arguments are still streaming in."""
    call_id: Optional[str] = None
    name: Optional[str] = None
    fragments: list[str] = field(default_factory=list)
    complete: bool = False

    @property
    def arguments(self) -> str:
        return "".join(self.fragments)

    def parse_arguments(self) -> dict:
        """
        Parse the accumulated fragments as a JSON object.

        Raises:
            MalformedToolArguments: the text is not a JSON object
        """
        text = self.arguments.strip()
        if not text:
            return {}
        try:
            parsed = json.loads(text)
        except json.JSONDecodeError as e:
            raise MalformedToolArguments(f"{self.name}: {e}") from e
        if not isinstance(parsed, dict):
            raise MalformedToolArguments(f"{self.name}: expected an object, got {type(parsed).__name__}")
        return parsed


class ToolRegistry:
    """Maps function names to handlers and their JSON schema definitions."""

    def __init__(self) -> None:
        self._handlers: dict[str, ToolHandler] = {}
        self._definitions: dict[str, dict] = {}

    def register(self, name: str, handler: ToolHandler, definition: Optional[dict] = None) -> None:
        """
        Register a handler.

        Args:
            name: Function name as the model will call it
            handler: Callable taking the argument dict; may be sync or async
            definition: Tool schema advertised to the model in session.update
        """
        self._handlers[name] = handler
        if definition is not None:
            self._definitions[name] = definition
        logger.info(f"Registered function: {name}")

    def unregister(self, name: str) -> bool:
        self._definitions.pop(name, None)
        if self._handlers.pop(name, None) is None:
            return False
        logger.info(f"Unregistered function: {name}")
        return True

    def get(self, name: Optional[str]) -> ToolHandler:
        """
        Look up a handler.

        Raises:
            UnknownFunction: nothing is registered under name
        """
        try:
            return self._handlers[name]
        except KeyError:
            raise UnknownFunction(f"Unknown function {name}") from None

    def names(self) -> list[str]:
        return list(self._handlers)

    def definitions(self) -> list[dict]:
        return list(self._definitions.values())

    def __contains__(self, name: object) -> bool:
        return name in self._handlers

    def __len__(self) -> int:
        return len(self._handlers)


class ToolCallCoordinator:
    """Turns streamed function-call events into handler invocations for one session."""

    def __init__(
        self,
        session: "CallSession",
        registry: ToolRegistry,
        response_delay_ms: int = 100,
        timeout_seconds: Optional[float] = None,
    ):
        self.session = session
        self.registry = registry
        self.response_delay_ms = response_delay_ms
        self.timeout_seconds = timeout_seconds
        self._tasks: set[asyncio.Task] = set()

    def attach(self, ai) -> None:
        """Register listeners on the OpenAI channel."""
        ai.on_event(RealtimeEventType.RESPONSE_OUTPUT_ITEM_ADDED, self._handle_output_item_added)
        ai.on_event(RealtimeEventType.RESPONSE_FUNCTION_CALL_ARGUMENTS_DELTA, self._handle_arguments_delta)
        ai.on_event(RealtimeEventType.RESPONSE_DONE, self._handle_response_done)

    @property
    def pending(self) -> Optional[PendingToolCall]:
        return self.session.pending_tool_call

    @property
    def in_flight(self) -> int:
        """Number of dispatched handlers that have not finished."""
        return len(self._tasks)

    def _start(self, call_id: Optional[str], name: Optional[str]) -> PendingToolCall:
        previous = self.session.pending_tool_call
        if previous is not None and not previous.complete:
            logger.warning(
                f"Tool call {previous.call_id} ({previous.name}) replaced by {call_id} before completion"
            )
        pending = PendingToolCall(call_id=call_id, name=name)
        self.session.pending_tool_call = pending
        return pending

    # ------------------------------------------------------------------
    # Event handlers
    # ------------------------------------------------------------------

    def _handle_output_item_added(self, event: RealtimeEvent) -> None:
        item = event.data.get("item") or {}
        if item.get("type") != "function_call":
            return
        self._start(item.get("call_id"), item.get("name"))
        logger.debug(f"Function call started: {item.get('name')} ({item.get('call_id')})")

    def _handle_arguments_delta(self, event: RealtimeEvent) -> None:
        call_id = event.data.get("call_id")
        pending = self.session.pending_tool_call
        if pending is None or (call_id and pending.call_id and pending.call_id != call_id):
            pending = self._start(call_id, None)
        if call_id:
            pending.call_id = call_id
        pending.fragments.append(event.data.get("delta", ""))

    def _handle_response_done(self, event: RealtimeEvent) -> None:
        item = next(
            (output for output in event.output_items if output.get("type") == "function_call"),
            None,
        )
        pending = self.session.pending_tool_call
        if item is None:
            if pending is not None:
                logger.debug(f"Response finished without a function call; dropping {pending.call_id}")
                self.session.pending_tool_call = None
            return

        self.session.pending_tool_call = None
        call_id = item.get("call_id") or (pending.call_id if pending else None)
        if pending is None or (pending.call_id and call_id and pending.call_id != call_id):
            pending = PendingToolCall(call_id=call_id)
        pending.call_id = call_id
        pending.name = item.get("name") or pending.name
        if not pending.fragments and item.get("arguments"):
            pending.fragments.append(item["arguments"])
        pending.complete = True

        logger.info(f"Function call received - Name: {pending.name}")
        try:
            handler = self.registry.get(pending.name)
        except UnknownFunction as e:
            logger.warning(e.detail)
            return

        try:
            arguments = pending.parse_arguments()
        except MalformedToolArguments as e:
            logger.error(f"Error parsing function parameters: {e.detail}")
            arguments = {}

        task = asyncio.create_task(self._run(pending, handler, arguments))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def _invoke(self, handler: ToolHandler, arguments: dict) -> Any:
        result = handler(arguments)
        if inspect.isawaitable(result):
            result = await result
        return result

    async def _run(self, call: PendingToolCall, handler: ToolHandler, arguments: dict) -> None:
        logger.info(f"Calling {call.name} with parameters: {arguments}")
        try:
            result = await asyncio.wait_for(
                self._invoke(handler, arguments), timeout=self.timeout_seconds
            )
            if result is None:
                raise ToolHandlerFailure(f"{call.name} returned no result")
            output = json.dumps(result)
        except asyncio.TimeoutError:
            failure = ToolHandlerFailure(f"{call.name} timed out after {self.timeout_seconds}s")
            logger.error(f"Error executing function {call.name}: {failure.detail}")
            await self._apologize()
            return
        except Exception as e:
            logger.error(f"Error executing function {call.name}: {e}", exc_info=True)
            await self._apologize()
            return

        logger.info(f"{call.name} result: {result}")
        ai = self.session.ai
        try:
            await ai.submit_function_output(call.call_id, output)
            # Best-effort ordering hint; the model does not acknowledge the output item
            await asyncio.sleep(self.response_delay_ms / 1000)
            await ai.create_response()
        except NotConnectedError:
            logger.info(f"Call ended before the {call.name} result was delivered")
            return
        logger.info("Function result sent and new response triggered")

    async def _apologize(self) -> None:
        try:
            await self.session.ai.speak(APOLOGY)
        except NotConnectedError:
            logger.info("Call ended before the apology could be spoken")

    def cancel(self) -> None:
        """Cancel handlers still running, e.g. when the call ends."""
        for task in list(self._tasks):
            task.cancel()
