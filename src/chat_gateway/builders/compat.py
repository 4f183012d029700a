"""Payloads for OpenAI chat-completions compatible providers: DeepSeek, Grok, Qwen."""

from __future__ import annotations

import logging
from typing import Any, Sequence

from chat_gateway.builders.base import (
    chat_completion_messages,
    chat_completion_tools,
    conversation,
    merge_consecutive,
    sampling_parameters,
    tools_enabled,
)
from chat_gateway.types import (
    AiRequestContext,
    AiRequestPayload,
    ChatMessage,
    PluginDefinition,
    ProviderType,
    Role,
)

_logger = logging.getLogger(__name__)

_COMMON = {"temperature", "top_p", "max_tokens", "stop"}


def _endpoint(base_url: str) -> str:
    return f"{base_url.rstrip('/')}/chat/completions"


class DeepSeekPayloadBuilder:
    """DeepSeek: merged roles, attachments as placeholders.

    Reasoner models reject a history ending on an assistant turn, so a
    ``"Proceed."`` user turn is appended in that case.
    """

    provider = ProviderType.DEEPSEEK

    def __init__(self, base_url: str, extra_headers: dict[str, str] | None = None) -> None:
        self._url = _endpoint(base_url)
        self._headers = dict(extra_headers or {})

    def build(
        self,
        context: AiRequestContext,
        tools: Sequence[PluginDefinition] | None = None,
    ) -> AiRequestPayload:
        history = merge_consecutive(conversation(context))
        is_reasoner = "reasoner" in context.model.name.lower()
        if is_reasoner and history[-1].role is Role.ASSISTANT and not history[-1].tool_calls:
            _logger.debug("Appending 'Proceed.' turn for reasoner model %s", context.model.name)
            history.append(ChatMessage.user("Proceed."))

        body: dict[str, Any] = {
            "model": context.model.name,
            "messages": chat_completion_messages(context, history, inline_images=False),
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        body.update(sampling_parameters(context, _COMMON))
        if context.thinking_enabled:
            body["enable_cot"] = True
            body["enable_reasoning"] = True
        if tools_enabled(context, tools):
            body["tools"] = chat_completion_tools(tools or ())
            body["tool_choice"] = "auto"

        return AiRequestPayload(self.provider, self._url, body, self._headers)


class GrokPayloadBuilder:
    provider = ProviderType.GROK

    def __init__(self, base_url: str, extra_headers: dict[str, str] | None = None) -> None:
        self._url = _endpoint(base_url)
        self._headers = dict(extra_headers or {})

    def build(
        self,
        context: AiRequestContext,
        tools: Sequence[PluginDefinition] | None = None,
    ) -> AiRequestPayload:
        vision = context.model.capabilities.supports_vision
        body: dict[str, Any] = {
            "model": context.model.name,
            "messages": chat_completion_messages(
                context, conversation(context), inline_images=vision,
            ),
            "stream": True,
            "stream_options": {"include_usage": True},
            "temperature": 0.0,
        }
        body.update(sampling_parameters(context, _COMMON))
        if context.thinking_enabled:
            body["reasoning_effort"] = "high"
        if tools_enabled(context, tools):
            body["tools"] = chat_completion_tools(tools or ())
            body["tool_choice"] = "auto"

        return AiRequestPayload(self.provider, self._url, body, self._headers)


class QwenPayloadBuilder:
    provider = ProviderType.QWEN

    MIN_THINKING_TEMPERATURE = 0.7

    def __init__(self, base_url: str, extra_headers: dict[str, str] | None = None) -> None:
        self._url = _endpoint(base_url)
        self._headers = dict(extra_headers or {})

    def build(
        self,
        context: AiRequestContext,
        tools: Sequence[PluginDefinition] | None = None,
    ) -> AiRequestPayload:
        vision = context.model.capabilities.supports_vision
        body: dict[str, Any] = {
            "model": context.model.name,
            "messages": chat_completion_messages(
                context, conversation(context), inline_images=vision,
            ),
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        body.update(sampling_parameters(context, _COMMON | {"top_k"}))
        if context.model.capabilities.supports_thinking:
            body["enable_thinking"] = context.thinking_enabled
        if context.thinking_enabled:
            body["temperature"] = max(
                body.get("temperature", self.MIN_THINKING_TEMPERATURE),
                self.MIN_THINKING_TEMPERATURE,
            )
        if tools_enabled(context, tools):
            body["tools"] = chat_completion_tools(tools or ())
            body["tool_choice"] = "auto"

        return AiRequestPayload(self.provider, self._url, body, self._headers)
