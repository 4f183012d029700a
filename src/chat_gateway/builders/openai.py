"""OpenAI Responses API payloads."""

from __future__ import annotations

from typing import Any, Sequence

from chat_gateway.builders.base import (
    conversation,
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

_SUPPORTED = {"temperature", "top_p", "max_output_tokens"}


def _user_content(msg: ChatMessage, vision: bool) -> list[dict[str, Any]]:
    parts: list[dict[str, Any]] = []
    if msg.content:
        parts.append({"type": "input_text", "text": msg.content})
    for a in msg.attachments:
        if a.is_image and vision:
            parts.append({"type": "input_image", "image_url": a.data_url})
        elif a.is_image:
            parts.append({"type": "input_text", "text": f"[Image: {a.file_name}]"})
        else:
            parts.append({
                "type": "input_file",
                "filename": a.file_name,
                "file_data": a.data_url,
            })
    return parts


def _input_items(context: AiRequestContext) -> list[dict[str, Any]]:
    vision = context.model.capabilities.supports_vision
    items: list[dict[str, Any]] = []
    for msg in conversation(context):
        if msg.role is Role.USER:
            items.append({"role": "user", "content": _user_content(msg, vision)})
        elif msg.role is Role.ASSISTANT:
            if msg.content:
                items.append({
                    "role": "assistant",
                    "content": [{"type": "output_text", "text": msg.content}],
                })
            for tc in msg.tool_calls:
                items.append({
                    "type": "function_call",
                    "call_id": tc.call_id,
                    "name": tc.name,
                    "arguments": tc.arguments,
                })
        elif msg.role is Role.TOOL:
            items.append({
                "type": "function_call_output",
                "call_id": msg.tool_call_id,
                "output": msg.content,
            })
    return items


class OpenAiPayloadBuilder:
    provider = ProviderType.OPENAI

    def __init__(self, base_url: str, extra_headers: dict[str, str] | None = None) -> None:
        self._url = f"{base_url.rstrip('/')}/responses"
        self._headers = dict(extra_headers or {})

    def build(
        self,
        context: AiRequestContext,
        tools: Sequence[PluginDefinition] | None = None,
    ) -> AiRequestPayload:
        body: dict[str, Any] = {
            "model": context.model.name,
            "input": _input_items(context),
            "stream": True,
        }
        instructions = system_text(context)
        if instructions:
            body["instructions"] = instructions

        if context.thinking_enabled:
            body["reasoning"] = {"effort": "medium", "summary": "detailed"}
        else:
            body.update(sampling_parameters(
                context, _SUPPORTED, rename={"max_tokens": "max_output_tokens"},
            ))

        if tools_enabled(context, tools):
            body["tools"] = [
                {
                    "type": "function",
                    "name": t.name,
                    "description": t.description,
                    "parameters": t.parameters,
                }
                for t in tools or ()
            ]
            body["tool_choice"] = "auto"

        return AiRequestPayload(
            provider=self.provider,
            url=self._url,
            body=body,
            headers=self._headers,
        )
