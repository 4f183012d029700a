"""Orchestrator: entry point that runs one chat turn end to end.

    context -> builder -> resilience(key -> http -> parser -> processor) -> usage

The orchestrator owns no protocol logic; it wires builders, parsers, the
HTTP client, the key pool, the resilience handler and the stream processor
together, and turns every outcome into a :class:`TurnResult`.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Sequence

from chat_gateway.builders.base import PayloadBuilder
from chat_gateway.builders.registry import BuilderRegistry, resolve_provider_type
from chat_gateway.config import GatewayConfig
from chat_gateway.core.operations import (
    StreamingOperation,
    StreamingOperationManager,
    uncancel_current_task,
)
from chat_gateway.core.processor import RoundResult, StreamProcessor, TurnState
from chat_gateway.core.resilience import ResilienceHandler
from chat_gateway.errors import ConfigurationError
from chat_gateway.events.bus import EventBus
from chat_gateway.keys import ProviderApiKey, ProviderKeyManager
from chat_gateway.llm.client import ProviderHttpClient
from chat_gateway.parsers.framing import parse_stream
from chat_gateway.parsers.registry import ParserRegistry
from chat_gateway.store import ChatRepository
from chat_gateway.tools.base import ToolExecutor
from chat_gateway.types import (
    AiRequestContext,
    EventType,
    PluginDefinition,
    TurnResult,
    TurnStatus,
)
from chat_gateway.usage import TokenUsageAccountant

_logger = logging.getLogger(__name__)


class ChatTurnOrchestrator:
    """Runs chat turns against the configured providers.

    Parameters
    ----------
    config:
        Providers, models, retry policy and streaming limits.
    key_manager:
        Key pool; built from *config* if omitted.
    client:
        HTTP transport; a default :class:`ProviderHttpClient` if omitted.
    tools:
        Tool executor offered to tool-capable models (optional).
    event_bus:
        Notification channel; a private bus if omitted.
    accountant:
        Token usage accountant; one on *event_bus* if omitted.
    chat_repository:
        Persists turn start and turn end (optional).
    operations:
        Per-session cancellation registry; a private one if omitted.
    sleep:
        Backoff sleep handed to the resilience handler.
    """

    def __init__(
        self,
        config: GatewayConfig,
        *,
        key_manager: ProviderKeyManager | None = None,
        client: ProviderHttpClient | None = None,
        tools: ToolExecutor | None = None,
        event_bus: EventBus | None = None,
        accountant: TokenUsageAccountant | None = None,
        chat_repository: ChatRepository | None = None,
        operations: StreamingOperationManager | None = None,
        builders: BuilderRegistry | None = None,
        parsers: ParserRegistry | None = None,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ) -> None:
        self._config = config
        self._keys = key_manager or ProviderKeyManager.from_config(config)
        self._client = client or ProviderHttpClient()
        self._tools = tools
        self._event_bus = event_bus or EventBus()
        self._accountant = accountant or TokenUsageAccountant(self._event_bus)
        self._chats = chat_repository
        self._operations = operations or StreamingOperationManager()
        self._builders = builders or BuilderRegistry.default()
        self._parsers = parsers or ParserRegistry.default()
        self._resilience = ResilienceHandler(
            config.retry, self._keys, self._event_bus, sleep=sleep,
        )
        self._builder_cache: dict[str, PayloadBuilder] = {}

    @property
    def event_bus(self) -> EventBus:
        return self._event_bus

    @property
    def operations(self) -> StreamingOperationManager:
        return self._operations

    @property
    def accountant(self) -> TokenUsageAccountant:
        return self._accountant

    @property
    def key_manager(self) -> ProviderKeyManager:
        return self._keys

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def start_turn(
        self,
        context: AiRequestContext,
        tools: Sequence[PluginDefinition] | None = None,
    ) -> asyncio.Task[TurnResult]:
        """Run :meth:`run_turn` as a background task.

        The session's stop handle is registered before this returns, so
        :meth:`stop_streaming` works even before the task first runs.
        """
        operation = self._operations.register(context.session_id, started=False)
        operation.task = asyncio.create_task(
            self.run_turn(context, tools, operation=operation),
            name=f"chat-turn-{context.session_id}",
        )
        return operation.task

    def stop_streaming(self, session_id: str) -> bool:
        """Cancel the running turn of *session_id*, if any."""
        return self._operations.stop_streaming(session_id)

    async def run_turn(
        self,
        context: AiRequestContext,
        tools: Sequence[PluginDefinition] | None = None,
        *,
        operation: StreamingOperation | None = None,
    ) -> TurnResult:
        """Run one chat turn and return its terminal result.

        Never raises for provider, configuration or tool failures; they
        come back as ``TurnResult(status=FAILED)``.  A stop requested
        through :meth:`stop_streaming` comes back as ``CANCELLED``; any
        other cancellation of the calling task propagates.
        """
        session_id = context.session_id
        if operation is None:
            operation = self._operations.register(session_id, asyncio.current_task())
        operation.started = True
        message_id = ""

        try:
            message_id = await self._start_persisted(context)
            await self._event_bus.publish(
                EventType.TURN_STARTED, session_id,
                model=context.model.name, message_id=message_id,
            )
            if operation.cancelled:
                result = TurnResult(session_id, TurnStatus.CANCELLED)
            else:
                result = await self._run(context, tools, operation)
        except asyncio.CancelledError:
            if not operation.cancelled:
                raise
            uncancel_current_task()
            _logger.info("Session %s: turn stopped", session_id)
            result = TurnResult(session_id, TurnStatus.CANCELLED)
        except Exception as e:
            _logger.exception("Session %s: unexpected failure", session_id)
            result = TurnResult(session_id, TurnStatus.FAILED, error=f"Unexpected error: {e}")
        finally:
            self._operations.unregister(session_id, operation)

        result.message_id = message_id
        await self._record_usage(context, result)
        await self._finish_persisted(result)
        await self._publish_outcome(result)
        return result

    async def close(self) -> None:
        self._operations.cleanup_all()
        await self._client.close()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _run(
        self,
        context: AiRequestContext,
        tools: Sequence[PluginDefinition] | None,
        operation: StreamingOperation,
    ) -> TurnResult:
        provider_name = context.model.provider
        try:
            spec = self._config.provider(provider_name)
            provider_type = resolve_provider_type(spec.type)
            builder = self._builder(provider_name)
        except ConfigurationError as exc:
            _logger.error("Session %s: %s", context.session_id, exc)
            return TurnResult(context.session_id, TurnStatus.FAILED, error=str(exc))

        if tools is None and self._tools is not None:
            tools = self._tools.definitions()

        processor = StreamProcessor(
            tools=self._tools,
            event_bus=self._event_bus,
            max_tool_rounds=self._config.streaming.max_tool_rounds,
        )
        cancel = operation.cancel_event

        async def call_provider(ctx: AiRequestContext, turn: TurnState) -> RoundResult:
            payload = builder.build(ctx, tools)

            async def attempt(key: ProviderApiKey) -> RoundResult:
                authorised = payload.with_credentials(key.id, key.secret)
                chunks = parse_stream(
                    self._client.stream(authorised, timeout=spec.timeout),
                    self._parsers.create(provider_type),
                    payload.framing,
                )
                return await processor.consume(chunks, turn, cancel)

            return await self._resilience.execute(
                attempt, ctx.session_id, provider_name, delivered=lambda: turn.delivered,
            )

        return await processor.run(context, call_provider, cancel)

    def _builder(self, provider_name: str) -> PayloadBuilder:
        builder = self._builder_cache.get(provider_name)
        if builder is None:
            builder = self._builders.create(self._config.provider(provider_name))
            self._builder_cache[provider_name] = builder
        return builder

    async def _record_usage(self, context: AiRequestContext, result: TurnResult) -> None:
        if result.usage.total <= 0:
            return
        cost = context.model.cost(result.usage.input_tokens, result.usage.output_tokens)
        await self._accountant.add_delta(
            result.session_id, result.usage.input_tokens, result.usage.output_tokens, cost,
        )

    async def _start_persisted(self, context: AiRequestContext) -> str:
        if self._chats is None:
            return ""
        try:
            return await self._chats.start_turn(context)
        except Exception:
            _logger.exception("Session %s: failed to persist turn start", context.session_id)
            return ""

    async def _finish_persisted(self, result: TurnResult) -> None:
        if self._chats is None:
            return
        try:
            await self._chats.finish_turn(result)
        except Exception:
            _logger.exception("Session %s: failed to persist turn result", result.session_id)

    async def _publish_outcome(self, result: TurnResult) -> None:
        data = {
            "status": result.status.value,
            "message_id": result.message_id,
            "tool_rounds": result.tool_rounds,
        }
        if result.status is TurnStatus.CANCELLED:
            await self._event_bus.publish(EventType.TURN_CANCELLED, result.session_id, **data)
        elif result.status in (TurnStatus.FAILED, TurnStatus.INTERRUPTED):
            await self._event_bus.publish(
                EventType.STREAM_FAILED, result.session_id, error=result.error, **data,
            )
        else:
            await self._event_bus.publish(EventType.TURN_COMPLETED, result.session_id, **data)
