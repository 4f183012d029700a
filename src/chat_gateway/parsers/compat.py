"""OpenAI chat-completions compatible stream frames (DeepSeek, Grok, Qwen)."""

from __future__ import annotations

from typing import Any

from chat_gateway.errors import ProviderRateLimitError, TransientProviderError
from chat_gateway.types import (
    FinishKind,
    FinishReason,
    StreamChunk,
    TextDelta,
    ThinkingDelta,
    ToolCallDelta,
    UsageReport,
)

FINISH_REASONS = {
    "stop": FinishKind.STOP,
    "length": FinishKind.LENGTH,
    "tool_calls": FinishKind.TOOL_CALLS,
    "function_call": FinishKind.TOOL_CALLS,
    "content_filter": FinishKind.CONTENT_FILTER,
    "insufficient_system_resource": FinishKind.ERROR,
}


class ChatCompletionChunkParser:
    def __init__(self) -> None:
        self._saw_tool_calls = False

    def parse(self, event: str, data: Any) -> list[StreamChunk]:
        if data.get("error"):
            return self._error(data["error"])

        chunks: list[StreamChunk] = []
        choices = data.get("choices") or []
        choice = choices[0] if choices else {}
        delta = choice.get("delta") or {}

        reasoning = delta.get("reasoning_content") or delta.get("reasoning")
        if reasoning:
            chunks.append(ThinkingDelta(reasoning))
        if delta.get("content"):
            chunks.append(TextDelta(delta["content"]))

        for tc in delta.get("tool_calls") or []:
            self._saw_tool_calls = True
            func = tc.get("function") or {}
            chunks.append(ToolCallDelta(
                index=tc.get("index", 0),
                call_id=tc.get("id"),
                name=func.get("name"),
                arguments=func.get("arguments"),
            ))

        usage = data.get("usage")
        if usage:
            chunks.append(UsageReport(usage.get("prompt_tokens"), usage.get("completion_tokens")))

        reason = choice.get("finish_reason")
        if reason:
            kind = FINISH_REASONS.get(reason, FinishKind.STOP)
            if kind is FinishKind.STOP and self._saw_tool_calls:
                kind = FinishKind.TOOL_CALLS
            chunks.append(FinishReason(kind, reason))
        return chunks

    @staticmethod
    def _error(error: Any) -> list[StreamChunk]:
        if not isinstance(error, dict):
            return [FinishReason(FinishKind.ERROR, str(error))]
        code = str(error.get("code") or error.get("type") or "")
        message = error.get("message", code or "unknown error")
        if code in ("429", "rate_limit_exceeded", "rate_limit_error"):
            raise ProviderRateLimitError(message)
        if code in ("500", "502", "503", "server_error", "overloaded"):
            raise TransientProviderError(message)
        return [FinishReason(FinishKind.ERROR, message)]
