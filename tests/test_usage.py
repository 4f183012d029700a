"""Tests for token usage accounting."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest

from chat_gateway.events.bus import EventBus
from chat_gateway.store import InMemoryUsageRepository
from chat_gateway.types import EventType, TokenCounts, UsageReport
from chat_gateway.usage import CallUsage, TokenUsageAccountant


class TestCallUsage:
    def test_absolute_reports_replace(self):
        usage = CallUsage()
        usage.feed(UsageReport(10, 1))
        usage.feed(UsageReport(None, 5))
        usage.feed(UsageReport(None, 12))
        assert usage.resolve() == TokenCounts(10, 12)

    def test_deltas_accumulate(self):
        usage = CallUsage()
        usage.feed(UsageReport(3, 2, absolute=False))
        usage.feed(UsageReport(0, 4, absolute=False))
        assert usage.resolve() == TokenCounts(3, 6)

    def test_absolute_wins_over_deltas(self):
        usage = CallUsage()
        usage.feed(UsageReport(None, 4, absolute=False))
        usage.feed(UsageReport(20, 30))
        usage.feed(UsageReport(None, 7, absolute=False))
        assert usage.resolve() == TokenCounts(20, 30)

    def test_per_field_precedence(self):
        usage = CallUsage()
        usage.feed(UsageReport(100, None))
        usage.feed(UsageReport(5, 8, absolute=False))
        assert usage.resolve() == TokenCounts(100, 8)

    def test_empty(self):
        assert CallUsage().resolve() == TokenCounts(0, 0)


class TestAccountant:
    @pytest.mark.asyncio
    async def test_concurrent_add_delta_loses_nothing(self):
        accountant = TokenUsageAccountant()
        n = 200
        await asyncio.gather(*(accountant.add_delta("s1", 1, 1, 0.5) for _ in range(n)))

        usage = accountant.get("s1")
        assert usage.input_tokens == n
        assert usage.output_tokens == n
        assert usage.total_cost == pytest.approx(n * 0.5)

    @pytest.mark.asyncio
    async def test_sessions_are_independent(self):
        accountant = TokenUsageAccountant()
        await accountant.add_delta("a", 5, 5, 0.0)
        await accountant.add_delta("b", 1, 2, 0.0)
        assert accountant.get("a").total_tokens == 10
        assert accountant.get("b").total_tokens == 3

    @pytest.mark.asyncio
    async def test_negative_delta_rejected(self):
        accountant = TokenUsageAccountant()
        with pytest.raises(ValueError):
            await accountant.add_delta("s1", -1, 0, 0.0)
        assert accountant.get("s1") is None

    @pytest.mark.asyncio
    async def test_set_absolute_overwrites(self):
        accountant = TokenUsageAccountant()
        await accountant.add_delta("s1", 10, 10, 1.0)
        usage = await accountant.set_absolute("s1", 3, 4, 0.25)
        assert (usage.input_tokens, usage.output_tokens, usage.total_cost) == (3, 4, 0.25)

    @pytest.mark.asyncio
    async def test_get_or_create(self):
        accountant = TokenUsageAccountant()
        usage = await accountant.get_or_create("fresh")
        assert usage.total_tokens == 0
        assert accountant.get("fresh") is not None

    @pytest.mark.asyncio
    async def test_returned_snapshot_is_a_copy(self):
        accountant = TokenUsageAccountant()
        snap = await accountant.add_delta("s1", 1, 1, 0.0)
        snap.input_tokens = 999
        assert accountant.get("s1").input_tokens == 1

    @pytest.mark.asyncio
    async def test_notification_published(self):
        bus = EventBus()
        received = []
        bus.subscribe(EventType.USAGE_UPDATED, received.append)
        accountant = TokenUsageAccountant(event_bus=bus)

        await accountant.add_delta("s1", 7, 3, 0.1)

        assert len(received) == 1
        assert received[0].session_id == "s1"
        assert received[0].data["input_tokens"] == 7
        assert received[0].data["output_tokens"] == 3

    @pytest.mark.asyncio
    async def test_notification_failure_keeps_usage(self):
        bus = AsyncMock()
        bus.publish.side_effect = RuntimeError("channel down")
        accountant = TokenUsageAccountant(event_bus=bus)

        usage = await accountant.add_delta("s1", 2, 2, 0.0)

        assert usage.total_tokens == 4
        assert accountant.get("s1").total_tokens == 4

    @pytest.mark.asyncio
    async def test_repository_receives_totals(self):
        repo = InMemoryUsageRepository()
        accountant = TokenUsageAccountant(repository=repo)
        await accountant.add_delta("s1", 2, 3, 0.0)
        await accountant.add_delta("s1", 1, 1, 0.0)
        assert repo.records["s1"].input_tokens == 3
        assert repo.records["s1"].output_tokens == 4

    @pytest.mark.asyncio
    async def test_repository_failure_is_logged(self):
        repo = AsyncMock()
        repo.save_usage.side_effect = OSError("disk full")
        accountant = TokenUsageAccountant(repository=repo)
        usage = await accountant.add_delta("s1", 1, 0, 0.0)
        assert usage.input_tokens == 1
