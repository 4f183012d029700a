"""Anthropic Messages API stream events."""

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

STOP_REASONS = {
    "end_turn": FinishKind.STOP,
    "stop_sequence": FinishKind.STOP,
    "pause_turn": FinishKind.STOP,
    "max_tokens": FinishKind.LENGTH,
    "tool_use": FinishKind.TOOL_CALLS,
    "refusal": FinishKind.CONTENT_FILTER,
}


class AnthropicChunkParser:
    def __init__(self) -> None:
        # content block index -> tool call index
        self._tool_blocks: dict[int, int] = {}

    def parse(self, event: str, data: Any) -> list[StreamChunk]:
        kind = data.get("type") or event

        if kind == "message_start":
            usage = data["message"].get("usage") or {}
            return [UsageReport(usage.get("input_tokens"), usage.get("output_tokens"))]

        if kind == "content_block_start":
            return self._block_start(data["index"], data["content_block"])

        if kind == "content_block_delta":
            return self._block_delta(data["index"], data["delta"])

        if kind == "content_block_stop":
            index = self._tool_blocks.get(data["index"])
            return [] if index is None else [ToolCallDelta(index, complete=True)]

        if kind == "message_delta":
            chunks: list[StreamChunk] = []
            usage = data.get("usage")
            if usage:
                chunks.append(UsageReport(usage.get("input_tokens"), usage.get("output_tokens")))
            reason = (data.get("delta") or {}).get("stop_reason")
            if reason:
                chunks.append(FinishReason(STOP_REASONS.get(reason, FinishKind.STOP), reason))
            return chunks

        if kind == "error":
            return self._error(data.get("error") or {})

        # ping, message_stop and unknown events
        return []

    def _block_start(self, block_index: int, block: dict[str, Any]) -> list[StreamChunk]:
        block_type = block.get("type")
        if block_type == "tool_use":
            index = len(self._tool_blocks)
            self._tool_blocks[block_index] = index
            return [ToolCallDelta(index, call_id=block.get("id"), name=block.get("name"))]
        if block_type == "text" and block.get("text"):
            return [TextDelta(block["text"])]
        if block_type == "thinking" and block.get("thinking"):
            return [ThinkingDelta(block["thinking"])]
        return []

    def _block_delta(self, block_index: int, delta: dict[str, Any]) -> list[StreamChunk]:
        delta_type = delta.get("type")
        if delta_type == "text_delta":
            return [TextDelta(delta["text"])] if delta.get("text") else []
        if delta_type == "thinking_delta":
            return [ThinkingDelta(delta["thinking"])] if delta.get("thinking") else []
        if delta_type == "input_json_delta":
            index = self._tool_blocks.get(block_index)
            if index is None or not delta.get("partial_json"):
                return []
            return [ToolCallDelta(index, arguments=delta["partial_json"])]
        return []

    @staticmethod
    def _error(error: dict[str, Any]) -> list[StreamChunk]:
        error_type = error.get("type", "")
        message = error.get("message", error_type or "unknown error")
        if error_type == "rate_limit_error":
            raise ProviderRateLimitError(message)
        if error_type in ("overloaded_error", "api_error"):
            raise TransientProviderError(message, status_code=529)
        return [FinishReason(FinishKind.ERROR, message)]
