"""Persistence boundaries of the gateway.

The gateway touches storage only at turn start, turn end and usage
updates.  Real deployments supply their own repositories; the in-memory
versions here back the CLI and the tests.
"""

from __future__ import annotations

import uuid
from dataclasses import replace
from typing import TYPE_CHECKING, Protocol

from chat_gateway.types import AiRequestContext, TurnResult

if TYPE_CHECKING:
    from chat_gateway.usage import ChatTokenUsage


class ChatRepository(Protocol):
    async def start_turn(self, context: AiRequestContext) -> str:
        """Create the pending assistant message and return its id."""
        ...

    async def finish_turn(self, result: TurnResult) -> None:
        ...


class UsageRepository(Protocol):
    async def save_usage(self, usage: ChatTokenUsage) -> None:
        ...


class InMemoryChatRepository:
    def __init__(self) -> None:
        self.pending: dict[str, str] = {}
        self.finished: dict[str, TurnResult] = {}

    async def start_turn(self, context: AiRequestContext) -> str:
        message_id = uuid.uuid4().hex
        self.pending[message_id] = context.session_id
        return message_id

    async def finish_turn(self, result: TurnResult) -> None:
        self.pending.pop(result.message_id, None)
        self.finished[result.message_id] = result


class InMemoryUsageRepository:
    def __init__(self) -> None:
        self.records: dict[str, ChatTokenUsage] = {}

    async def save_usage(self, usage: ChatTokenUsage) -> None:
        self.records[usage.session_id] = replace(usage)
