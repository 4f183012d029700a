"""Token usage accounting per chat session.

Precedence rule for provider-reported usage:

* Within one provider call, an absolute (running total) report always wins
  over incremental reports for the same field; increments are summed only
  when no absolute value arrived.  See :class:`CallUsage`.
* A turn's usage is the sum of its provider calls and is folded into the
  session total with :meth:`TokenUsageAccountant.add_delta`.
* :meth:`TokenUsageAccountant.set_absolute` overwrites the session total
  from an authoritative external figure (e.g. a persisted record).
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import defaultdict
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING

from chat_gateway.types import EventType, TokenCounts, UsageReport

if TYPE_CHECKING:
    from chat_gateway.events.bus import EventBus
    from chat_gateway.store import UsageRepository

_logger = logging.getLogger(__name__)


class CallUsage:
    """Collects the usage reports of one provider call."""

    def __init__(self) -> None:
        self._input: int | None = None
        self._output: int | None = None
        self._delta_input = 0
        self._delta_output = 0

    def feed(self, report: UsageReport) -> None:
        if report.absolute:
            if report.input_tokens is not None:
                self._input = report.input_tokens
            if report.output_tokens is not None:
                self._output = report.output_tokens
        else:
            self._delta_input += report.input_tokens or 0
            self._delta_output += report.output_tokens or 0

    def resolve(self) -> TokenCounts:
        return TokenCounts(
            self._input if self._input is not None else self._delta_input,
            self._output if self._output is not None else self._delta_output,
        )


@dataclass
class ChatTokenUsage:
    """Running totals for one chat session."""

    session_id: str
    input_tokens: int = 0
    output_tokens: int = 0
    total_cost: float = 0.0
    updated_at: float = field(default_factory=time.time)

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


class TokenUsageAccountant:
    """Per-session usage totals with one lock per session.

    Parameters
    ----------
    event_bus:
        Receives a ``USAGE_UPDATED`` event after each update (optional).
    repository:
        Persists the updated totals (optional).  Failures are logged.
    """

    def __init__(
        self,
        event_bus: EventBus | None = None,
        repository: UsageRepository | None = None,
    ) -> None:
        self._event_bus = event_bus
        self._repository = repository
        self._usage: dict[str, ChatTokenUsage] = {}
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def get(self, session_id: str) -> ChatTokenUsage | None:
        usage = self._usage.get(session_id)
        return replace(usage) if usage else None

    async def get_or_create(self, session_id: str) -> ChatTokenUsage:
        async with self._locks[session_id]:
            return replace(self._get_or_create_locked(session_id))

    async def add_delta(
        self,
        session_id: str,
        input_tokens: int,
        output_tokens: int,
        cost: float,
    ) -> ChatTokenUsage:
        """Add to the session's totals.  Negative deltas are rejected."""
        if input_tokens < 0 or output_tokens < 0 or cost < 0:
            raise ValueError("usage deltas must be non-negative")
        async with self._locks[session_id]:
            usage = self._get_or_create_locked(session_id)
            usage.input_tokens += input_tokens
            usage.output_tokens += output_tokens
            usage.total_cost += cost
            usage.updated_at = time.time()
            snapshot = replace(usage)
            await self._persist(snapshot)
        _logger.debug(
            "Session %s usage +%d/+%d tokens (total %d/%d)",
            session_id, input_tokens, output_tokens,
            snapshot.input_tokens, snapshot.output_tokens,
        )
        await self._notify(snapshot)
        return snapshot

    async def set_absolute(
        self,
        session_id: str,
        total_input: int,
        total_output: int,
        cost: float,
    ) -> ChatTokenUsage:
        """Overwrite the session's totals."""
        async with self._locks[session_id]:
            usage = self._get_or_create_locked(session_id)
            usage.input_tokens = total_input
            usage.output_tokens = total_output
            usage.total_cost = cost
            usage.updated_at = time.time()
            snapshot = replace(usage)
            await self._persist(snapshot)
        await self._notify(snapshot)
        return snapshot

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _get_or_create_locked(self, session_id: str) -> ChatTokenUsage:
        usage = self._usage.get(session_id)
        if usage is None:
            usage = ChatTokenUsage(session_id)
            self._usage[session_id] = usage
        return usage

    async def _persist(self, usage: ChatTokenUsage) -> None:
        if self._repository is None:
            return
        try:
            await self._repository.save_usage(usage)
        except Exception:
            _logger.exception("Failed to persist token usage for session %s", usage.session_id)

    async def _notify(self, usage: ChatTokenUsage) -> None:
        if self._event_bus is None:
            return
        try:
            await self._event_bus.publish(
                EventType.USAGE_UPDATED,
                usage.session_id,
                input_tokens=usage.input_tokens,
                output_tokens=usage.output_tokens,
                total_cost=usage.total_cost,
            )
        except Exception:
            _logger.exception("Usage notification failed for session %s", usage.session_id)
