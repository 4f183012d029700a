"""Provider type -> payload builder factory."""

from __future__ import annotations

import logging
from typing import Callable

from chat_gateway.builders.anthropic import AnthropicPayloadBuilder
from chat_gateway.builders.base import PayloadBuilder
from chat_gateway.builders.compat import (
    DeepSeekPayloadBuilder,
    GrokPayloadBuilder,
    QwenPayloadBuilder,
)
from chat_gateway.builders.gemini import GeminiPayloadBuilder
from chat_gateway.builders.images import AimlFluxPayloadBuilder, ImagenPayloadBuilder
from chat_gateway.builders.openai import OpenAiPayloadBuilder
from chat_gateway.config import ProviderSpec
from chat_gateway.errors import UnsupportedProviderError
from chat_gateway.types import ProviderType

_logger = logging.getLogger(__name__)

BuilderFactory = Callable[[str, dict], PayloadBuilder]


def resolve_provider_type(name: str) -> ProviderType:
    """Map a config ``type`` string onto :class:`ProviderType`."""
    try:
        return ProviderType(name.strip().lower())
    except ValueError:
        raise UnsupportedProviderError(name) from None


class BuilderRegistry:
    """Keeps one builder factory per provider type.

    A factory takes ``(base_url, extra_headers)`` and returns a builder.
    """

    def __init__(self) -> None:
        self._factories: dict[ProviderType, BuilderFactory] = {}

    def register(self, provider: ProviderType, factory: BuilderFactory) -> None:
        if provider in self._factories:
            _logger.debug("Replacing payload builder for %s", provider.value)
        self._factories[provider] = factory

    def supports(self, provider: ProviderType) -> bool:
        return provider in self._factories

    def create(self, spec: ProviderSpec) -> PayloadBuilder:
        provider = resolve_provider_type(spec.type)
        factory = self._factories.get(provider)
        if factory is None:
            raise UnsupportedProviderError(spec.type)
        return factory(spec.url, spec.extra_headers)

    @classmethod
    def default(cls) -> BuilderRegistry:
        registry = cls()
        registry.register(ProviderType.OPENAI, OpenAiPayloadBuilder)
        registry.register(ProviderType.ANTHROPIC, AnthropicPayloadBuilder)
        registry.register(ProviderType.GEMINI, GeminiPayloadBuilder)
        registry.register(ProviderType.DEEPSEEK, DeepSeekPayloadBuilder)
        registry.register(ProviderType.GROK, GrokPayloadBuilder)
        registry.register(ProviderType.QWEN, QwenPayloadBuilder)
        registry.register(ProviderType.AIMLFLUX, AimlFluxPayloadBuilder)
        registry.register(ProviderType.IMAGEN, ImagenPayloadBuilder)
        return registry
