"""Gemini ``streamGenerateContent`` payloads."""

from __future__ import annotations

from typing import Any, Sequence

from chat_gateway.builders.base import (
    attachment_placeholder,
    conversation,
    decode_arguments,
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

SAFETY_CATEGORIES = (
    "HARM_CATEGORY_HARASSMENT",
    "HARM_CATEGORY_HATE_SPEECH",
    "HARM_CATEGORY_SEXUALLY_EXPLICIT",
    "HARM_CATEGORY_DANGEROUS_CONTENT",
)

_RENAME = {
    "top_p": "topP",
    "top_k": "topK",
    "max_tokens": "maxOutputTokens",
    "stop": "stopSequences",
}
_SUPPORTED = {"temperature", "topP", "topK", "maxOutputTokens", "stopSequences"}


def _parts(msg: ChatMessage, vision: bool) -> list[dict[str, Any]]:
    if msg.role is Role.TOOL:
        return [{
            "functionResponse": {
                "name": msg.name,
                "response": {"content": msg.content},
            },
        }]

    parts: list[dict[str, Any]] = []
    if vision:
        if msg.content:
            parts.append({"text": msg.content})
        for a in msg.attachments:
            parts.append({"inline_data": {"mime_type": a.content_type, "data": a.data}})
    else:
        text = attachment_placeholder(msg)
        if text:
            parts.append({"text": text})
    for tc in msg.tool_calls:
        parts.append({"functionCall": {"name": tc.name, "args": decode_arguments(tc.arguments)}})
    return parts


def _contents(context: AiRequestContext) -> list[dict[str, Any]]:
    vision = context.model.capabilities.supports_vision
    contents: list[dict[str, Any]] = []
    for msg in conversation(context):
        role = "model" if msg.role is Role.ASSISTANT else "user"
        parts = _parts(msg, vision)
        if not parts:
            continue
        if contents and contents[-1]["role"] == role:
            contents[-1]["parts"].extend(parts)
        else:
            contents.append({"role": role, "parts": parts})
    return contents


class GeminiPayloadBuilder:
    provider = ProviderType.GEMINI

    def __init__(self, base_url: str, extra_headers: dict[str, str] | None = None) -> None:
        self._base_url = base_url.rstrip("/")
        self._headers = dict(extra_headers or {})

    def build(
        self,
        context: AiRequestContext,
        tools: Sequence[PluginDefinition] | None = None,
    ) -> AiRequestPayload:
        generation = sampling_parameters(context, _SUPPORTED, rename=_RENAME)
        if context.thinking_enabled:
            generation["thinkingConfig"] = {"thinkingBudget": -1, "includeThoughts": True}

        thresholds = context.parameters.safety_settings
        body: dict[str, Any] = {
            "contents": _contents(context),
            "generationConfig": generation,
            "safetySettings": [
                {"category": c, "threshold": thresholds.get(c, "BLOCK_NONE")}
                for c in SAFETY_CATEGORIES
            ],
        }
        system = system_text(context)
        if system:
            body["systemInstruction"] = {"parts": [{"text": system}]}

        if tools_enabled(context, tools):
            body["tools"] = [{
                "functionDeclarations": [
                    {"name": t.name, "description": t.description, "parameters": t.parameters}
                    for t in tools or ()
                ],
            }]

        return AiRequestPayload(
            provider=self.provider,
            url=f"{self._base_url}/models/{context.model.name}:streamGenerateContent?alt=sse",
            body=body,
            headers=self._headers,
            auth_header="x-goog-api-key",
            auth_scheme="",
        )
