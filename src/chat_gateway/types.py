"""Shared data types for the chat gateway."""

from __future__ import annotations

import base64
import enum
import json
import time
from dataclasses import dataclass, field, replace
from typing import Any


# ---------------------------------------------------------------------------
# Providers and models
# ---------------------------------------------------------------------------

class ProviderType(enum.Enum):
    """Wire dialects the gateway can talk to."""

    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GEMINI = "gemini"
    DEEPSEEK = "deepseek"
    GROK = "grok"
    QWEN = "qwen"
    AIMLFLUX = "aimlflux"
    IMAGEN = "imagen"


@dataclass(frozen=True)
class ModelCapabilities:
    """Capability flags of a model."""

    supports_vision: bool = False
    supports_thinking: bool = False
    supports_tools: bool = False
    supports_prompt_caching: bool = False


@dataclass(frozen=True)
class ModelInfo:
    """A model as configured for the gateway.

    ``provider`` names an entry of the ``providers`` config section.
    Prices are per 1K tokens.
    """

    name: str
    provider: str
    capabilities: ModelCapabilities = field(default_factory=ModelCapabilities)
    max_output_tokens: int | None = None
    input_price_per_1k: float = 0.0
    output_price_per_1k: float = 0.0

    def cost(self, input_tokens: int, output_tokens: int) -> float:
        return (
            input_tokens / 1000 * self.input_price_per_1k
            + output_tokens / 1000 * self.output_price_per_1k
        )


@dataclass(frozen=True)
class ModelParameters:
    """Per-user sampling parameters.  ``None`` means provider default."""

    temperature: float | None = None
    top_p: float | None = None
    top_k: int | None = None
    max_tokens: int | None = None
    stop_sequences: tuple[str, ...] = ()
    safety_settings: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class GenerationOptions:
    """Options used by image-generation providers."""

    image_size: str | None = None
    output_format: str | None = None
    safety_tolerance: str | None = None
    num_images: int = 1


# ---------------------------------------------------------------------------
# Conversation
# ---------------------------------------------------------------------------

class Role(enum.Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


@dataclass(frozen=True)
class Attachment:
    """A file attached to a message, carried as base64."""

    file_name: str
    content_type: str
    data: str

    @property
    def is_image(self) -> bool:
        return self.content_type.startswith("image/")

    @property
    def data_url(self) -> str:
        return f"data:{self.content_type};base64,{self.data}"

    @classmethod
    def from_bytes(cls, file_name: str, content_type: str, raw: bytes) -> Attachment:
        return cls(file_name, content_type, base64.b64encode(raw).decode("ascii"))


@dataclass(frozen=True)
class ToolCall:
    """A completed tool call requested by the model.

    ``arguments`` is the raw JSON text exactly as streamed.
    """

    call_id: str
    name: str
    arguments: str = "{}"

    def parse_arguments(self) -> dict[str, Any]:
        """Decode the arguments; raises ``ValueError`` if they are not a JSON object."""
        text = self.arguments.strip() or "{}"
        value = json.loads(text)
        if not isinstance(value, dict):
            raise ValueError(f"arguments must be a JSON object, got {type(value).__name__}")
        return value


@dataclass(frozen=True)
class ChatMessage:
    """One entry in the conversation history."""

    role: Role
    content: str = ""
    attachments: tuple[Attachment, ...] = ()
    tool_calls: tuple[ToolCall, ...] = ()
    tool_call_id: str = ""
    name: str = ""

    @classmethod
    def user(cls, content: str, attachments: tuple[Attachment, ...] = ()) -> ChatMessage:
        return cls(Role.USER, content, attachments)

    @classmethod
    def assistant(
        cls, content: str = "", tool_calls: tuple[ToolCall, ...] = (),
    ) -> ChatMessage:
        return cls(Role.ASSISTANT, content, tool_calls=tool_calls)

    @classmethod
    def tool(cls, call: ToolCall, result: PluginResult) -> ChatMessage:
        return cls(
            Role.TOOL,
            result.to_message(),
            tool_call_id=call.call_id,
            name=call.name,
        )


@dataclass(frozen=True)
class AiRequestContext:
    """Everything a payload builder needs for one provider call.

    Immutable; the tool loop derives a new context per round via
    :meth:`with_messages`.
    """

    session_id: str
    model: ModelInfo
    messages: tuple[ChatMessage, ...]
    parameters: ModelParameters = field(default_factory=ModelParameters)
    system_instructions: str = ""
    enable_thinking: bool = False
    generation: GenerationOptions = field(default_factory=GenerationOptions)

    @property
    def thinking_enabled(self) -> bool:
        return self.enable_thinking and self.model.capabilities.supports_thinking

    def with_messages(self, *messages: ChatMessage) -> AiRequestContext:
        return replace(self, messages=self.messages + tuple(messages))

    def latest_user_text(self) -> str:
        for message in reversed(self.messages):
            if message.role is Role.USER and message.content.strip():
                return message.content.strip()
        return ""


@dataclass(frozen=True)
class AiRequestPayload:
    """A provider-specific request, ready to send.

    ``framing`` tells the parser layer how the response body is delimited:
    ``"sse"`` for server-sent events, ``"json"`` for a single JSON document.
    """

    provider: ProviderType
    url: str
    body: dict[str, Any]
    headers: dict[str, str] = field(default_factory=dict)
    stream: bool = True
    framing: str = "sse"
    auth_header: str = "Authorization"
    auth_scheme: str = "Bearer"
    key_id: str | None = None

    def with_credentials(self, key_id: str, secret: str) -> AiRequestPayload:
        """Return a copy authorised with *secret*, remembering *key_id*."""
        headers = dict(self.headers)
        headers[self.auth_header] = (
            f"{self.auth_scheme} {secret}" if self.auth_scheme else secret
        )
        return replace(self, headers=headers, key_id=key_id)


# ---------------------------------------------------------------------------
# Stream chunks
# ---------------------------------------------------------------------------

class FinishKind(enum.Enum):
    STOP = "stop"
    LENGTH = "length"
    TOOL_CALLS = "tool_calls"
    CONTENT_FILTER = "content_filter"
    ERROR = "error"


@dataclass(frozen=True)
class TextDelta:
    text: str


@dataclass(frozen=True)
class ThinkingDelta:
    text: str


@dataclass(frozen=True)
class ToolCallDelta:
    """Fragment of a tool call.  ``index`` identifies the call within one response."""

    index: int
    call_id: str | None = None
    name: str | None = None
    arguments: str | None = None
    complete: bool = False


@dataclass(frozen=True)
class FinishReason:
    kind: FinishKind
    detail: str = ""


@dataclass(frozen=True)
class UsageReport:
    """Token counts reported by the provider.

    ``absolute`` reports are running totals for the call; non-absolute
    reports are increments.
    """

    input_tokens: int | None = None
    output_tokens: int | None = None
    absolute: bool = True


StreamChunk = TextDelta | ThinkingDelta | ToolCallDelta | FinishReason | UsageReport


# ---------------------------------------------------------------------------
# Plugins
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PluginDefinition:
    """A tool offered to the model: name plus JSON schema of its arguments."""

    name: str
    description: str
    parameters: dict[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}},
    )


class PluginStatus(enum.Enum):
    SUCCESS = "success"
    FAILURE = "failure"


@dataclass(frozen=True)
class PluginResult:
    """Outcome of one plugin invocation, tagged by ``status``."""

    status: PluginStatus
    output: str = ""
    error: str = ""

    @classmethod
    def ok(cls, output: str) -> PluginResult:
        return cls(PluginStatus.SUCCESS, output=output)

    @classmethod
    def failure(cls, error: str) -> PluginResult:
        return cls(PluginStatus.FAILURE, error=error)

    @property
    def success(self) -> bool:
        return self.status is PluginStatus.SUCCESS

    def to_message(self) -> str:
        if self.success:
            return self.output
        return f"Error: {self.error}"


# ---------------------------------------------------------------------------
# Turn results and usage
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TokenCounts:
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total(self) -> int:
        return self.input_tokens + self.output_tokens

    def __add__(self, other: TokenCounts) -> TokenCounts:
        return TokenCounts(
            self.input_tokens + other.input_tokens,
            self.output_tokens + other.output_tokens,
        )


class TurnStatus(enum.Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    INTERRUPTED = "interrupted"


@dataclass
class TurnResult:
    """Final state of one chat turn."""

    session_id: str
    status: TurnStatus
    text: str = ""
    thinking: str = ""
    usage: TokenCounts = field(default_factory=TokenCounts)
    tool_rounds: int = 0
    error: str = ""
    message_id: str = ""
    finish: FinishKind | None = None

    @property
    def succeeded(self) -> bool:
        return self.status is TurnStatus.COMPLETED


# ---------------------------------------------------------------------------
# Event types
# ---------------------------------------------------------------------------

class EventType(enum.Enum):
    """UI-facing notifications published by the gateway."""

    TURN_STARTED = "turn.started"
    TURN_COMPLETED = "turn.completed"
    TURN_CANCELLED = "turn.cancelled"

    CHUNK_RECEIVED = "stream.chunk"
    THINKING_RECEIVED = "stream.thinking"
    STREAM_RETRYING = "stream.retrying"
    STREAM_FAILED = "stream.failed"

    TOOL_CALL_STARTED = "tool.started"
    TOOL_CALL_FINISHED = "tool.finished"

    USAGE_UPDATED = "usage.updated"


@dataclass
class GatewayEvent:
    """Event published on the EventBus."""

    type: EventType
    session_id: str = ""
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)
