"""Stream processor: consumes normalized chunks and drives the tool loop.

States::

    RECEIVING -> (TOOL_CALL_PENDING -> TOOL_EXECUTING -> RECEIVING)*
              -> COMPLETED | FAILED | CANCELLED | INTERRUPTED

One processor run handles one chat turn.  Each provider call of the turn
is consumed by :meth:`StreamProcessor.consume`; :meth:`StreamProcessor.run`
loops over calls while the model keeps asking for tools.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, AsyncGenerator, Awaitable, Callable

from chat_gateway.core.operations import uncancel_current_task
from chat_gateway.errors import GatewayError, ToolRoundLimitError
from chat_gateway.types import (
    AiRequestContext,
    ChatMessage,
    EventType,
    FinishKind,
    FinishReason,
    PluginResult,
    StreamChunk,
    TextDelta,
    ThinkingDelta,
    TokenCounts,
    ToolCall,
    ToolCallDelta,
    TurnResult,
    TurnStatus,
    UsageReport,
)
from chat_gateway.usage import CallUsage

if TYPE_CHECKING:
    from chat_gateway.events.bus import EventBus
    from chat_gateway.tools.base import ToolExecutor

_logger = logging.getLogger(__name__)


class ProcessorState(enum.Enum):
    RECEIVING = "receiving"
    TOOL_CALL_PENDING = "tool_call_pending"
    TOOL_EXECUTING = "tool_executing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    INTERRUPTED = "interrupted"


# ---------------------------------------------------------------------------
# Tool call accumulation
# ---------------------------------------------------------------------------

class ToolCallAccumulator:
    """Accumulate streamed tool-call fragments by call index.

    The first fragment of a call usually carries its id and name; later
    fragments carry pieces of the JSON arguments that must be concatenated.
    """

    def __init__(self) -> None:
        self._calls: dict[int, dict[str, Any]] = {}

    def feed(self, delta: ToolCallDelta) -> None:
        entry = self._calls.setdefault(
            delta.index, {"call_id": "", "name": "", "arguments": "", "complete": False},
        )
        if delta.call_id:
            entry["call_id"] = delta.call_id
        if delta.name:
            entry["name"] = delta.name
        if delta.arguments:
            entry["arguments"] += delta.arguments
        if delta.complete:
            entry["complete"] = True

    def has_calls(self) -> bool:
        return bool(self._calls)

    def finalize(self, truncated: bool = False) -> list[ToolCall]:
        """Return the accumulated calls in index order.

        Nameless calls are dropped.  When the output was *truncated* (the
        model hit its token limit), calls never marked complete are dropped
        too, since their arguments were cut off.
        """
        calls: list[ToolCall] = []
        for idx in sorted(self._calls):
            entry = self._calls[idx]
            if not entry["name"]:
                _logger.warning("Dropping tool call %d without a name", idx)
                continue
            if truncated and not entry["complete"]:
                _logger.warning(
                    "Dropping tool call %d (%s) cut off by the output limit", idx, entry["name"],
                )
                continue
            calls.append(ToolCall(
                call_id=entry["call_id"] or f"call_{idx}",
                name=entry["name"],
                arguments=entry["arguments"] or "{}",
            ))
        return calls


# ---------------------------------------------------------------------------
# Turn / round state
# ---------------------------------------------------------------------------

@dataclass
class RoundResult:
    """What one provider call produced."""

    text: str = ""
    thinking: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    finish: FinishReason | None = None
    usage: TokenCounts = field(default_factory=TokenCounts)
    cancelled: bool = False


@dataclass
class TurnState:
    """Accumulated output of a turn across all its provider calls.

    ``delivered`` is reset at the start of each provider call and set once
    any text of that call has been forwarded to the UI.
    """

    session_id: str
    thinking_enabled: bool = False
    text: list[str] = field(default_factory=list)
    thinking: list[str] = field(default_factory=list)
    usage: TokenCounts = field(default_factory=TokenCounts)
    tool_rounds: int = 0
    delivered: bool = False

    def result(self, status: TurnStatus, error: str = "", finish: FinishKind | None = None) -> TurnResult:
        return TurnResult(
            session_id=self.session_id,
            status=status,
            text="".join(self.text),
            thinking="".join(self.thinking),
            usage=self.usage,
            tool_rounds=self.tool_rounds,
            error=error,
            finish=finish,
        )


ProviderCall = Callable[[AiRequestContext, TurnState], Awaitable[RoundResult]]


# ---------------------------------------------------------------------------
# StreamProcessor
# ---------------------------------------------------------------------------

class StreamProcessor:
    """Per-turn state machine over stream chunks.

    Parameters
    ----------
    tools:
        Executes tool calls requested by the model (optional).
    event_bus:
        Receives chunk, thinking and tool notifications (optional).
    max_tool_rounds:
        Tool round-trips allowed per turn; one more request fails the turn.
    """

    def __init__(
        self,
        tools: ToolExecutor | None = None,
        event_bus: EventBus | None = None,
        max_tool_rounds: int = 5,
    ) -> None:
        self._tools = tools
        self._event_bus = event_bus
        self._max_tool_rounds = max_tool_rounds
        self.state = ProcessorState.RECEIVING

    # ------------------------------------------------------------------
    # One provider call
    # ------------------------------------------------------------------

    async def consume(
        self,
        chunks: AsyncGenerator[StreamChunk, None],
        turn: TurnState,
        cancel: asyncio.Event | None = None,
    ) -> RoundResult:
        """Consume one provider response.

        Text and thinking are appended to *turn* and published as they
        arrive.  If *cancel* gets set, consumption stops before the next
        chunk and the stream is closed.  Usage reported by the call is
        added to *turn* on success and on cancellation, not when the call
        fails with an error.
        """
        usage = CallUsage()
        try:
            result = await self._receive(chunks, turn, cancel, usage)
        except asyncio.CancelledError:
            turn.usage = turn.usage + usage.resolve()
            raise
        turn.usage = turn.usage + result.usage
        return result

    async def _receive(
        self,
        chunks: AsyncGenerator[StreamChunk, None],
        turn: TurnState,
        cancel: asyncio.Event | None,
        usage: CallUsage,
    ) -> RoundResult:
        self.state = ProcessorState.RECEIVING
        turn.delivered = False
        text: list[str] = []
        thinking: list[str] = []
        tool_calls = ToolCallAccumulator()
        finish: FinishReason | None = None

        async with aclosing(chunks):
            async for chunk in chunks:
                if cancel is not None and cancel.is_set():
                    _logger.info("Session %s: stream cancelled", turn.session_id)
                    return RoundResult(
                        "".join(text), "".join(thinking), finish=finish,
                        usage=usage.resolve(), cancelled=True,
                    )

                if isinstance(chunk, TextDelta):
                    text.append(chunk.text)
                    turn.text.append(chunk.text)
                    turn.delivered = True
                    await self._publish(EventType.CHUNK_RECEIVED, turn.session_id, text=chunk.text)
                elif isinstance(chunk, ThinkingDelta):
                    if not turn.thinking_enabled:
                        continue
                    thinking.append(chunk.text)
                    turn.thinking.append(chunk.text)
                    turn.delivered = True
                    await self._publish(EventType.THINKING_RECEIVED, turn.session_id, text=chunk.text)
                elif isinstance(chunk, ToolCallDelta):
                    tool_calls.feed(chunk)
                    self.state = ProcessorState.TOOL_CALL_PENDING
                elif isinstance(chunk, UsageReport):
                    usage.feed(chunk)
                elif isinstance(chunk, FinishReason):
                    if finish is None:
                        finish = chunk
                    else:
                        _logger.debug("Ignoring extra finish reason %s", chunk.kind.value)

        truncated = finish is not None and finish.kind is FinishKind.LENGTH
        calls = tool_calls.finalize(truncated) if tool_calls.has_calls() else []
        if calls and finish is not None and finish.kind is FinishKind.STOP:
            finish = FinishReason(FinishKind.TOOL_CALLS, finish.detail)
        return RoundResult("".join(text), "".join(thinking), calls, finish, usage.resolve())

    # ------------------------------------------------------------------
    # Whole turn
    # ------------------------------------------------------------------

    async def run(
        self,
        context: AiRequestContext,
        call_provider: ProviderCall,
        cancel: asyncio.Event | None = None,
    ) -> TurnResult:
        """Run a turn to its terminal state.

        *call_provider* performs one complete provider call for a context
        (building, sending and consuming via :meth:`consume`).  Gateway
        errors end the turn as ``FAILED``.  Setting *cancel* ends it as
        ``CANCELLED``, also when the task was cancelled along with it.
        Partial text is kept in both cases.  Task cancellation without
        *cancel* set propagates to the caller.
        """
        turn = TurnState(context.session_id, thinking_enabled=context.thinking_enabled)
        ctx = context

        try:
            while True:
                if cancel is not None and cancel.is_set():
                    return self._cancelled(turn)

                round_ = await call_provider(ctx, turn)
                if round_.cancelled:
                    return self._cancelled(turn)

                if round_.finish is None:
                    self.state = ProcessorState.INTERRUPTED
                    _logger.warning(
                        "Session %s: stream ended without a finish reason", turn.session_id,
                    )
                    return turn.result(
                        TurnStatus.INTERRUPTED, "The response stream ended unexpectedly.",
                    )

                if round_.finish.kind is FinishKind.ERROR:
                    self.state = ProcessorState.FAILED
                    return turn.result(
                        TurnStatus.FAILED,
                        round_.finish.detail or "The provider reported an error.",
                        FinishKind.ERROR,
                    )

                if not round_.tool_calls:
                    self.state = ProcessorState.COMPLETED
                    return turn.result(TurnStatus.COMPLETED, finish=round_.finish.kind)

                if turn.tool_rounds >= self._max_tool_rounds:
                    raise ToolRoundLimitError(self._max_tool_rounds)
                turn.tool_rounds += 1

                messages = await self._run_tools(round_, turn, cancel)
                if messages is None:
                    return self._cancelled(turn)
                ctx = ctx.with_messages(*messages)
                self.state = ProcessorState.RECEIVING

        except asyncio.CancelledError:
            if cancel is None or not cancel.is_set():
                raise
            uncancel_current_task()
            _logger.info("Session %s: turn task cancelled", turn.session_id)
            return self._cancelled(turn)
        except GatewayError as exc:
            self.state = ProcessorState.FAILED
            _logger.error("Session %s: turn failed: %s", turn.session_id, exc)
            return turn.result(TurnStatus.FAILED, str(exc))

    async def _run_tools(
        self,
        round_: RoundResult,
        turn: TurnState,
        cancel: asyncio.Event | None,
    ) -> list[ChatMessage] | None:
        """Execute the round's tool calls in order; ``None`` if cancelled."""
        self.state = ProcessorState.TOOL_EXECUTING
        messages = [ChatMessage.assistant(round_.text, tuple(round_.tool_calls))]
        for call in round_.tool_calls:
            if cancel is not None and cancel.is_set():
                return None
            await self._publish(
                EventType.TOOL_CALL_STARTED, turn.session_id,
                call_id=call.call_id, name=call.name, arguments=call.arguments,
            )
            result = await self._execute_tool(call)
            await self._publish(
                EventType.TOOL_CALL_FINISHED, turn.session_id,
                call_id=call.call_id, name=call.name,
                success=result.success, output=result.to_message(),
            )
            messages.append(ChatMessage.tool(call, result))
        return messages

    async def _execute_tool(self, call: ToolCall) -> PluginResult:
        try:
            call.parse_arguments()
        except ValueError:
            _logger.warning("Invalid arguments for tool %s: %s", call.name, call.arguments)
            return PluginResult.failure(f"Invalid arguments provided for tool '{call.name}'.")

        if self._tools is None:
            return PluginResult.failure(f"Plugin '{call.name}' not found.")

        try:
            return await self._tools.execute(call.name, call.arguments)
        except Exception as e:
            _logger.exception("Tool executor raised for %s", call.name)
            return PluginResult.failure(f"Plugin '{call.name}' execution failed: {e}")

    def _cancelled(self, turn: TurnState) -> TurnResult:
        self.state = ProcessorState.CANCELLED
        return turn.result(TurnStatus.CANCELLED)

    async def _publish(self, event_type: EventType, session_id: str, **data: Any) -> None:
        if self._event_bus is not None:
            await self._event_bus.publish(event_type, session_id, **data)
