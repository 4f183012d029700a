"""OpenAI Responses API stream events."""

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

_INCOMPLETE = {
    "max_output_tokens": FinishKind.LENGTH,
    "content_filter": FinishKind.CONTENT_FILTER,
}


class OpenAiChunkParser:
    def __init__(self) -> None:
        # output_index -> tool call index within this response
        self._tool_index: dict[int, int] = {}
        self._streamed_args: set[int] = set()

    def parse(self, event: str, data: Any) -> list[StreamChunk]:
        kind = data.get("type") or event

        if kind == "response.output_text.delta":
            return [TextDelta(data["delta"])] if data.get("delta") else []

        if kind in (
            "response.reasoning_summary_text.delta",
            "response.reasoning_text.delta",
        ):
            return [ThinkingDelta(data["delta"])] if data.get("delta") else []

        if kind == "response.output_item.added":
            item = data["item"]
            if item.get("type") != "function_call":
                return []
            index = self._tool_index.setdefault(data["output_index"], len(self._tool_index))
            return [ToolCallDelta(index, call_id=item.get("call_id"), name=item.get("name"))]

        if kind == "response.function_call_arguments.delta":
            index = self._tool_index.get(data["output_index"])
            if index is None or not data.get("delta"):
                return []
            self._streamed_args.add(index)
            return [ToolCallDelta(index, arguments=data["delta"])]

        if kind == "response.output_item.done":
            item = data["item"]
            if item.get("type") != "function_call":
                return []
            index = self._tool_index.get(data["output_index"])
            if index is None:
                index = self._tool_index.setdefault(data["output_index"], len(self._tool_index))
                return [ToolCallDelta(
                    index, item.get("call_id"), item.get("name"),
                    item.get("arguments", ""), complete=True,
                )]
            arguments = None if index in self._streamed_args else item.get("arguments")
            return [ToolCallDelta(index, arguments=arguments, complete=True)]

        if kind in ("response.completed", "response.incomplete", "response.failed"):
            return self._finish(data["response"])

        if kind in ("response.error", "error"):
            self._raise_for_error(data.get("error") or data)
            message = (data.get("error") or data).get("message", "unknown error")
            return [FinishReason(FinishKind.ERROR, message)]

        return []

    def _finish(self, response: dict[str, Any]) -> list[StreamChunk]:
        chunks: list[StreamChunk] = []
        usage = response.get("usage")
        if usage:
            chunks.append(UsageReport(usage.get("input_tokens"), usage.get("output_tokens")))

        status = response.get("status", "completed")
        if status == "completed":
            kind = FinishKind.TOOL_CALLS if self._tool_index else FinishKind.STOP
            chunks.append(FinishReason(kind))
        elif status == "incomplete":
            reason = (response.get("incomplete_details") or {}).get("reason", "")
            chunks.append(FinishReason(_INCOMPLETE.get(reason, FinishKind.LENGTH), reason))
        else:
            error = response.get("error") or {}
            chunks.append(FinishReason(FinishKind.ERROR, error.get("message", status)))
        return chunks

    @staticmethod
    def _raise_for_error(error: dict[str, Any]) -> None:
        code = error.get("code") or error.get("type") or ""
        if code in ("rate_limit_exceeded", "rate_limit_error"):
            raise ProviderRateLimitError(error.get("message", ""))
        if code in ("server_error", "server_is_overloaded"):
            raise TransientProviderError(error.get("message", code))
