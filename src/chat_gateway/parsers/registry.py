"""Provider type -> chunk parser factory."""

from __future__ import annotations

from typing import Callable

from chat_gateway.errors import UnsupportedProviderError
from chat_gateway.parsers.anthropic import AnthropicChunkParser
from chat_gateway.parsers.compat import ChatCompletionChunkParser
from chat_gateway.parsers.framing import ChunkParser
from chat_gateway.parsers.gemini import GeminiChunkParser
from chat_gateway.parsers.images import AimlFluxChunkParser, ImagenChunkParser
from chat_gateway.parsers.openai import OpenAiChunkParser
from chat_gateway.types import ProviderType


class ParserRegistry:
    """One parser factory per provider type; :meth:`create` returns a fresh parser."""

    def __init__(self) -> None:
        self._factories: dict[ProviderType, Callable[[], ChunkParser]] = {}

    def register(self, provider: ProviderType, factory: Callable[[], ChunkParser]) -> None:
        self._factories[provider] = factory

    def create(self, provider: ProviderType) -> ChunkParser:
        factory = self._factories.get(provider)
        if factory is None:
            raise UnsupportedProviderError(provider.value)
        return factory()

    @classmethod
    def default(cls) -> ParserRegistry:
        registry = cls()
        registry.register(ProviderType.OPENAI, OpenAiChunkParser)
        registry.register(ProviderType.ANTHROPIC, AnthropicChunkParser)
        registry.register(ProviderType.GEMINI, GeminiChunkParser)
        for provider in (ProviderType.DEEPSEEK, ProviderType.GROK, ProviderType.QWEN):
            registry.register(provider, ChatCompletionChunkParser)
        registry.register(ProviderType.AIMLFLUX, AimlFluxChunkParser)
        registry.register(ProviderType.IMAGEN, ImagenChunkParser)
        return registry
