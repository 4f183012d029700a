"""Shared fixtures for the chat gateway tests."""

from __future__ import annotations

from typing import Callable

import pytest

from chat_gateway.types import (
    AiRequestContext,
    ChatMessage,
    ModelCapabilities,
    ModelInfo,
    ModelParameters,
)


class FakeClock:
    """Manually advanced epoch clock."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_model() -> Callable[..., ModelInfo]:
    def factory(
        name: str = "test-model",
        provider: str = "openai",
        vision: bool = False,
        thinking: bool = False,
        tools: bool = False,
        caching: bool = False,
        **kwargs,
    ) -> ModelInfo:
        return ModelInfo(
            name=name,
            provider=provider,
            capabilities=ModelCapabilities(
                supports_vision=vision,
                supports_thinking=thinking,
                supports_tools=tools,
                supports_prompt_caching=caching,
            ),
            **kwargs,
        )

    return factory


@pytest.fixture
def make_context(make_model) -> Callable[..., AiRequestContext]:
    def factory(
        *messages: ChatMessage,
        model: ModelInfo | None = None,
        parameters: ModelParameters | None = None,
        session_id: str = "session-1",
        **kwargs,
    ) -> AiRequestContext:
        return AiRequestContext(
            session_id=session_id,
            model=model or make_model(),
            messages=messages or (ChatMessage.user("Hello"),),
            parameters=parameters or ModelParameters(),
            **kwargs,
        )

    return factory
