"""Builder protocol and the helpers provider builders compose.

Builders are pure: same context and tools in, same payload out.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Protocol, Sequence

from chat_gateway.errors import ProviderRequestError
from chat_gateway.types import (
    AiRequestContext,
    AiRequestPayload,
    ChatMessage,
    PluginDefinition,
    ProviderType,
    Role,
)

_logger = logging.getLogger(__name__)


class PayloadBuilder(Protocol):
    """Maps an :class:`AiRequestContext` onto one provider's wire format."""

    provider: ProviderType

    def build(
        self,
        context: AiRequestContext,
        tools: Sequence[PluginDefinition] | None = None,
    ) -> AiRequestPayload:
        ...


# ---------------------------------------------------------------------------
# Parameters
# ---------------------------------------------------------------------------

def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def sampling_parameters(
    context: AiRequestContext,
    supported: set[str],
    rename: dict[str, str] | None = None,
    temperature_range: tuple[float, float] = (0.0, 2.0),
) -> dict[str, Any]:
    """Collect the user's sampling parameters, clamped and renamed.

    Standard names are ``temperature``, ``top_p``, ``top_k``,
    ``max_tokens`` and ``stop``.  Names not in *supported* (after renaming)
    are dropped.
    """
    rename = rename or {}
    p = context.parameters
    params: dict[str, Any] = {}
    if p.temperature is not None:
        params["temperature"] = _clamp(p.temperature, *temperature_range)
    if p.top_p is not None:
        params["top_p"] = _clamp(p.top_p, 0.0, 1.0)
    if p.top_k is not None:
        params["top_k"] = max(1, p.top_k)

    max_tokens = p.max_tokens or context.model.max_output_tokens
    if max_tokens is not None:
        max_tokens = max(1, max_tokens)
        if context.model.max_output_tokens:
            max_tokens = min(max_tokens, context.model.max_output_tokens)
        params["max_tokens"] = max_tokens

    if p.stop_sequences:
        params["stop"] = list(p.stop_sequences)

    result: dict[str, Any] = {}
    for name, value in params.items():
        wire_name = rename.get(name, name)
        if wire_name in supported:
            result[wire_name] = value
        else:
            _logger.debug(
                "Skipping unsupported parameter '%s' (mapped to '%s') for model %s",
                name, wire_name, context.model.name,
            )
    return result


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------

def merge_consecutive(messages: Sequence[ChatMessage]) -> list[ChatMessage]:
    """Join adjacent plain user/assistant messages of the same role.

    Messages carrying tool calls or tool results are never merged.
    """
    merged: list[ChatMessage] = []
    for msg in messages:
        prev = merged[-1] if merged else None
        if (
            prev is not None
            and prev.role is msg.role
            and msg.role in (Role.USER, Role.ASSISTANT)
            and not prev.tool_calls
            and not msg.tool_calls
        ):
            text = "\n\n".join(t for t in (prev.content, msg.content) if t)
            merged[-1] = ChatMessage(
                msg.role, text, prev.attachments + msg.attachments,
            )
        else:
            merged.append(msg)
    return merged


def conversation(context: AiRequestContext) -> list[ChatMessage]:
    """History without system messages; raises if nothing is left."""
    messages = [m for m in context.messages if m.role is not Role.SYSTEM]
    if not messages:
        raise ProviderRequestError("Cannot build a request without messages")
    return messages


def system_text(context: AiRequestContext) -> str:
    """Configured instructions plus any system messages in the history."""
    parts = [context.system_instructions] if context.system_instructions else []
    parts.extend(m.content for m in context.messages if m.role is Role.SYSTEM and m.content)
    return "\n\n".join(parts)


def attachment_placeholder(msg: ChatMessage) -> str:
    """Message text with attachments replaced by placeholders."""
    notes = [
        f"[{'Image' if a.is_image else 'File'}: {a.file_name}]" for a in msg.attachments
    ]
    return "\n".join([msg.content, *notes]) if notes else msg.content


def decode_arguments(arguments: str) -> dict[str, Any]:
    """Best-effort decode of tool-call arguments for providers that want objects."""
    try:
        value = json.loads(arguments or "{}")
    except json.JSONDecodeError:
        _logger.warning("Tool call arguments are not valid JSON: %s", arguments)
        return {}
    return value if isinstance(value, dict) else {}


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------

def tools_enabled(
    context: AiRequestContext,
    tools: Sequence[PluginDefinition] | None,
) -> bool:
    return bool(tools) and context.model.capabilities.supports_tools


def chat_completion_tools(tools: Sequence[PluginDefinition]) -> list[dict[str, Any]]:
    """``{type: function, function: {...}}`` entries used by chat-completions APIs."""
    return [
        {
            "type": "function",
            "function": {
                "name": t.name,
                "description": t.description,
                "parameters": t.parameters,
            },
        }
        for t in tools
    ]


def chat_completion_messages(
    context: AiRequestContext,
    messages: Sequence[ChatMessage],
    inline_images: bool,
) -> list[dict[str, Any]]:
    """OpenAI chat-completions message list with a leading system message."""
    out: list[dict[str, Any]] = []
    system = system_text(context)
    if system:
        out.append({"role": "system", "content": system})

    for msg in messages:
        if msg.role is Role.TOOL:
            out.append({
                "role": "tool",
                "tool_call_id": msg.tool_call_id,
                "content": msg.content,
            })
        elif msg.role is Role.ASSISTANT:
            entry: dict[str, Any] = {"role": "assistant", "content": msg.content}
            if msg.tool_calls:
                entry["tool_calls"] = [
                    {
                        "id": tc.call_id,
                        "type": "function",
                        "function": {"name": tc.name, "arguments": tc.arguments},
                    }
                    for tc in msg.tool_calls
                ]
            out.append(entry)
        elif inline_images and any(a.is_image for a in msg.attachments):
            parts: list[dict[str, Any]] = []
            if msg.content:
                parts.append({"type": "text", "text": msg.content})
            for a in msg.attachments:
                if a.is_image:
                    parts.append({"type": "image_url", "image_url": {"url": a.data_url}})
                else:
                    parts.append({"type": "text", "text": f"[File: {a.file_name}]"})
            out.append({"role": "user", "content": parts})
        else:
            out.append({"role": "user", "content": attachment_placeholder(msg)})
    return out
