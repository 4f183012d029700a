"""Configuration for the chat gateway.

Config discovery (first match wins):
  1. ``--config`` flag
  2. ``./chat_gateway.yaml``
  3. ``~/.config/chat-gateway/config.yaml``
  4. Built-in defaults
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from chat_gateway.errors import ConfigurationError
from chat_gateway.types import ModelCapabilities, ModelInfo

_logger = logging.getLogger(__name__)

DEFAULT_BASE_URLS: dict[str, str] = {
    "openai": "https://api.openai.com/v1",
    "anthropic": "https://api.anthropic.com/v1",
    "gemini": "https://generativelanguage.googleapis.com/v1beta",
    "deepseek": "https://api.deepseek.com/v1",
    "grok": "https://api.x.ai/v1",
    "qwen": "https://dashscope-intl.aliyuncs.com/compatible-mode/v1",
    "aimlflux": "https://api.aimlapi.com/v1",
    "imagen": "https://generativelanguage.googleapis.com/v1beta",
}


# ---------------------------------------------------------------------------
# Config data structures
# ---------------------------------------------------------------------------

@dataclass
class KeySpec:
    """One API key in a provider's pool."""

    id: str
    secret: str
    max_requests_per_day: int = 1000
    active: bool = True


@dataclass
class ProviderSpec:
    """A provider endpoint and its key pool.

    ``type`` selects the wire dialect (see ``ProviderType``); ``base_url``
    defaults to the public endpoint for that type.
    """

    type: str = "openai"
    base_url: str = ""
    timeout: float = 150.0
    keys: list[KeySpec] = field(default_factory=list)
    extra_headers: dict[str, str] = field(default_factory=dict)

    @property
    def url(self) -> str:
        return (self.base_url or DEFAULT_BASE_URLS.get(self.type, "")).rstrip("/")


@dataclass
class ModelSpec:
    """A model entry: provider, capability flags and pricing per 1K tokens."""

    name: str
    provider: str
    supports_vision: bool = False
    supports_thinking: bool = False
    supports_tools: bool = False
    supports_prompt_caching: bool = False
    max_output_tokens: int | None = None
    input_price_per_1k: float = 0.0
    output_price_per_1k: float = 0.0

    def to_model_info(self) -> ModelInfo:
        return ModelInfo(
            name=self.name,
            provider=self.provider,
            capabilities=ModelCapabilities(
                supports_vision=self.supports_vision,
                supports_thinking=self.supports_thinking,
                supports_tools=self.supports_tools,
                supports_prompt_caching=self.supports_prompt_caching,
            ),
            max_output_tokens=self.max_output_tokens,
            input_price_per_1k=self.input_price_per_1k,
            output_price_per_1k=self.output_price_per_1k,
        )


@dataclass
class RetryPolicy:
    """Retry settings handed to ``ResilienceHandler``.

    Delay before retry *n* (1-based) is
    ``initial_delay * backoff_factor ** (n - 1)`` capped at ``max_delay``,
    unless the provider sent ``Retry-After``.
    """

    max_retries: int = 3
    initial_delay: float = 2.0
    backoff_factor: float = 2.0
    max_delay: float = 60.0

    def backoff(self, attempt: int) -> float:
        delay = self.initial_delay * (self.backoff_factor ** max(attempt - 1, 0))
        return min(delay, self.max_delay)


@dataclass
class StreamingSpec:
    max_tool_rounds: int = 5


@dataclass
class GatewayConfig:
    """Top-level config for the gateway."""

    providers: dict[str, ProviderSpec] = field(default_factory=dict)
    models: dict[str, ModelSpec] = field(default_factory=dict)
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    streaming: StreamingSpec = field(default_factory=StreamingSpec)

    def model(self, name: str) -> ModelInfo:
        spec = self.models.get(name)
        if spec is None:
            raise ConfigurationError(f"Unknown model: {name}")
        return spec.to_model_info()

    def provider(self, name: str) -> ProviderSpec:
        spec = self.providers.get(name)
        if spec is None:
            raise ConfigurationError(f"Unknown provider: {name}")
        return spec


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

_SEARCH_PATHS = [
    Path("./chat_gateway.yaml"),
    Path.home() / ".config" / "chat-gateway" / "config.yaml",
]

_ENV_REF = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


def _expand_env(value: str) -> str:
    """Replace ``${VAR}`` references with environment values."""

    def _sub(match: re.Match[str]) -> str:
        name = match.group(1)
        if name not in os.environ:
            _logger.warning("Environment variable %s is not set", name)
            return ""
        return os.environ[name]

    return _ENV_REF.sub(_sub, value)


def _parse_key(provider: str, index: int, raw: dict[str, Any] | str) -> KeySpec:
    if isinstance(raw, str):
        raw = {"secret": raw}
    return KeySpec(
        id=str(raw.get("id", f"{provider}-{index}")),
        secret=_expand_env(str(raw.get("secret", ""))),
        max_requests_per_day=int(raw.get("max_requests_per_day", 1000)),
        active=bool(raw.get("active", True)),
    )


def _parse_provider(name: str, raw: dict[str, Any]) -> ProviderSpec:
    return ProviderSpec(
        type=raw.get("type", name),
        base_url=raw.get("base_url", ""),
        timeout=float(raw.get("timeout", 150.0)),
        keys=[_parse_key(name, i, k) for i, k in enumerate(raw.get("keys", []))],
        extra_headers=raw.get("extra_headers", {}),
    )


def _parse_model(name: str, raw: dict[str, Any]) -> ModelSpec:
    known = {k: v for k, v in raw.items() if k in ModelSpec.__dataclass_fields__}
    known.setdefault("name", name)
    if "provider" not in known:
        raise ConfigurationError(f"Model '{name}' has no provider")
    return ModelSpec(**known)


def _parse_dataclass(cls: type, raw: dict[str, Any] | None) -> Any:
    if not raw:
        return cls()
    return cls(**{k: v for k, v in raw.items() if k in cls.__dataclass_fields__})


def parse_config(raw: dict[str, Any]) -> GatewayConfig:
    """Build a :class:`GatewayConfig` from an already-decoded mapping."""
    providers = {
        name: _parse_provider(name, praw or {})
        for name, praw in (raw.get("providers") or {}).items()
    }
    models = {
        name: _parse_model(name, mraw or {})
        for name, mraw in (raw.get("models") or {}).items()
    }
    for model in models.values():
        if model.provider not in providers:
            raise ConfigurationError(
                f"Model '{model.name}' references unknown provider '{model.provider}'",
            )
    return GatewayConfig(
        providers=providers,
        models=models,
        retry=_parse_dataclass(RetryPolicy, raw.get("retry")),
        streaming=_parse_dataclass(StreamingSpec, raw.get("streaming")),
    )


def load_config(path: str | Path | None = None) -> GatewayConfig:
    """Load configuration from YAML.

    Parameters
    ----------
    path:
        Explicit config path.  If *None*, search default locations.

    Returns
    -------
    GatewayConfig
    """
    config_path: Path | None = None

    if path is not None:
        config_path = Path(path)
        if not config_path.exists():
            _logger.warning("Config file not found: %s, using defaults", path)
            return GatewayConfig()
    else:
        for candidate in _SEARCH_PATHS:
            if candidate.exists():
                config_path = candidate
                break

    if config_path is None:
        _logger.info("No config file found, using defaults")
        return GatewayConfig()

    _logger.info("Loading config from %s", config_path)
    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}

    return parse_config(raw)
