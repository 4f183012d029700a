"""Anthropic Messages API payloads.

The API wants a conversation that starts with ``user`` and strictly
alternates roles; tool results travel as ``user`` turns.
"""

from __future__ import annotations

from typing import Any, Sequence

from chat_gateway.builders.base import (
    attachment_placeholder,
    conversation,
    decode_arguments,
    merge_consecutive,
    sampling_parameters,
    system_text,
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

ANTHROPIC_VERSION = "2023-06-01"
THINKING_BUDGET = 1024
DEFAULT_MAX_TOKENS = 4096

_SUPPORTED = {"temperature", "top_p", "top_k", "max_tokens", "stop_sequences"}


def _blocks(msg: ChatMessage, vision: bool) -> list[dict[str, Any]]:
    if msg.role is Role.TOOL:
        return [{
            "type": "tool_result",
            "tool_use_id": msg.tool_call_id,
            "content": msg.content,
        }]

    blocks: list[dict[str, Any]] = []
    if vision:
        for a in msg.attachments:
            if a.is_image:
                kind = "image"
            elif a.content_type == "application/pdf":
                kind = "document"
            else:
                continue
            blocks.append({
                "type": kind,
                "source": {"type": "base64", "media_type": a.content_type, "data": a.data},
            })
        text = msg.content
        skipped = [
            a for a in msg.attachments
            if not a.is_image and a.content_type != "application/pdf"
        ]
        if skipped:
            text = attachment_placeholder(ChatMessage(msg.role, msg.content, tuple(skipped)))
    else:
        text = attachment_placeholder(msg)

    if text:
        blocks.append({"type": "text", "text": text})
    for tc in msg.tool_calls:
        blocks.append({
            "type": "tool_use",
            "id": tc.call_id,
            "name": tc.name,
            "input": decode_arguments(tc.arguments),
        })
    return blocks


def _messages(context: AiRequestContext) -> list[dict[str, Any]]:
    vision = context.model.capabilities.supports_vision
    out: list[dict[str, Any]] = []
    for msg in merge_consecutive(conversation(context)):
        role = "assistant" if msg.role is Role.ASSISTANT else "user"
        blocks = _blocks(msg, vision)
        if not blocks:
            continue
        if out and out[-1]["role"] == role:
            out[-1]["content"].extend(blocks)
        else:
            out.append({"role": role, "content": blocks})
    if not out or out[0]["role"] != "user":
        out.insert(0, {"role": "user", "content": [{"type": "text", "text": "..."}]})
    return out


class AnthropicPayloadBuilder:
    provider = ProviderType.ANTHROPIC

    def __init__(self, base_url: str, extra_headers: dict[str, str] | None = None) -> None:
        self._url = f"{base_url.rstrip('/')}/messages"
        self._headers = {"anthropic-version": ANTHROPIC_VERSION, **(extra_headers or {})}

    def build(
        self,
        context: AiRequestContext,
        tools: Sequence[PluginDefinition] | None = None,
    ) -> AiRequestPayload:
        body: dict[str, Any] = {
            "model": context.model.name,
            "messages": _messages(context),
            "stream": True,
        }
        body.update(sampling_parameters(
            context,
            _SUPPORTED,
            rename={"stop": "stop_sequences"},
            temperature_range=(0.0, 1.0),
        ))
        body.setdefault("max_tokens", DEFAULT_MAX_TOKENS)

        system = system_text(context)
        if system:
            if context.model.capabilities.supports_prompt_caching:
                body["system"] = [{
                    "type": "text",
                    "text": system,
                    "cache_control": {"type": "ephemeral"},
                }]
            else:
                body["system"] = system

        if context.thinking_enabled:
            body["thinking"] = {"type": "enabled", "budget_tokens": THINKING_BUDGET}
            body["temperature"] = 1
            body.pop("top_k", None)
            body.pop("top_p", None)
            # max_tokens must leave room beyond the thinking budget
            if body["max_tokens"] <= THINKING_BUDGET:
                body["max_tokens"] = THINKING_BUDGET + DEFAULT_MAX_TOKENS

        if tools_enabled(context, tools):
            body["tools"] = [
                {"name": t.name, "description": t.description, "input_schema": t.parameters}
                for t in tools or ()
            ]
            body["tool_choice"] = {"type": "auto"}

        return AiRequestPayload(
            provider=self.provider,
            url=self._url,
            body=body,
            headers=self._headers,
            auth_header="x-api-key",
            auth_scheme="",
        )
