"""Gemini ``streamGenerateContent`` SSE frames."""

from __future__ import annotations

import json
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
    "STOP": FinishKind.STOP,
    "MAX_TOKENS": FinishKind.LENGTH,
    "SAFETY": FinishKind.CONTENT_FILTER,
    "RECITATION": FinishKind.CONTENT_FILTER,
    "PROHIBITED_CONTENT": FinishKind.CONTENT_FILTER,
    "BLOCKLIST": FinishKind.CONTENT_FILTER,
    "SPII": FinishKind.CONTENT_FILTER,
    "MALFORMED_FUNCTION_CALL": FinishKind.ERROR,
}


class GeminiChunkParser:
    """Gemini sends every function call whole, so each is emitted complete."""

    def __init__(self) -> None:
        self._tool_calls = 0

    def parse(self, event: str, data: Any) -> list[StreamChunk]:
        if "error" in data:
            return self._error(data["error"])

        chunks: list[StreamChunk] = []
        candidates = data.get("candidates") or []
        candidate = candidates[0] if candidates else {}
        for part in (candidate.get("content") or {}).get("parts") or []:
            chunks.extend(self._part(part))

        usage = data.get("usageMetadata")
        if usage:
            output = usage.get("candidatesTokenCount")
            thoughts = usage.get("thoughtsTokenCount")
            if output is not None and thoughts:
                output += thoughts
            chunks.append(UsageReport(usage.get("promptTokenCount"), output))

        reason = candidate.get("finishReason")
        if reason and reason != "FINISH_REASON_UNSPECIFIED":
            kind = FINISH_REASONS.get(reason, FinishKind.STOP)
            if kind is FinishKind.STOP and self._tool_calls:
                kind = FinishKind.TOOL_CALLS
            chunks.append(FinishReason(kind, reason))
        elif (data.get("promptFeedback") or {}).get("blockReason"):
            block = data["promptFeedback"]["blockReason"]
            chunks.append(FinishReason(FinishKind.CONTENT_FILTER, block))
        return chunks

    def _part(self, part: dict[str, Any]) -> list[StreamChunk]:
        if "functionCall" in part:
            call = part["functionCall"]
            index = self._tool_calls
            self._tool_calls += 1
            return [ToolCallDelta(
                index,
                call_id=call.get("id") or f"call_{index}",
                name=call["name"],
                arguments=json.dumps(call.get("args") or {}),
                complete=True,
            )]
        text = part.get("text")
        if not text:
            return []
        if part.get("thought"):
            return [ThinkingDelta(text)]
        return [TextDelta(text)]

    @staticmethod
    def _error(error: dict[str, Any]) -> list[StreamChunk]:
        status = error.get("status", "")
        message = error.get("message", status or "unknown error")
        if status == "RESOURCE_EXHAUSTED" or error.get("code") == 429:
            raise ProviderRateLimitError(message)
        if status in ("UNAVAILABLE", "INTERNAL") or error.get("code") in (500, 503):
            raise TransientProviderError(message, status_code=error.get("code"))
        return [FinishReason(FinishKind.ERROR, message)]
