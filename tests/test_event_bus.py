"""Tests for the async EventBus."""

from __future__ import annotations

import pytest

from chat_gateway.events.bus import ALL_EVENTS, EventBus
from chat_gateway.types import EventType, GatewayEvent


@pytest.fixture
def bus():
    return EventBus()


class TestDelivery:
    @pytest.mark.asyncio
    async def test_async_and_sync_handlers(self, bus: EventBus):
        received = []

        async def async_handler(event: GatewayEvent):
            received.append(("async", event))

        bus.subscribe(EventType.CHUNK_RECEIVED, async_handler)
        bus.subscribe(EventType.CHUNK_RECEIVED, lambda e: received.append(("sync", e)))

        ev = GatewayEvent(EventType.CHUNK_RECEIVED, "s1", {"text": "hi"})
        await bus.emit(ev)

        assert sorted(kind for kind, _ in received) == ["async", "sync"]
        assert all(e is ev for _, e in received)

    @pytest.mark.asyncio
    async def test_publish_builds_event(self, bus: EventBus):
        received = []
        bus.subscribe(EventType.TURN_STARTED, received.append)

        await bus.publish(EventType.TURN_STARTED, "s1", model="m")

        [event] = received
        assert event.session_id == "s1"
        assert event.data == {"model": "m"}

    @pytest.mark.asyncio
    async def test_no_cross_delivery(self, bus: EventBus):
        received = []
        bus.subscribe(EventType.TURN_COMPLETED, received.append)
        await bus.publish(EventType.TURN_CANCELLED, "s1")
        assert received == []

    @pytest.mark.asyncio
    async def test_wildcard_receives_all(self, bus: EventBus):
        received = []
        bus.subscribe("*", lambda e: received.append(e.type))
        bus.subscribe(EventType.STREAM_RETRYING, lambda e: received.append("specific"))

        await bus.publish(EventType.STREAM_RETRYING, "s1")
        await bus.publish(EventType.USAGE_UPDATED, "s1")

        assert received.count("specific") == 1
        assert EventType.STREAM_RETRYING in received
        assert EventType.USAGE_UPDATED in received

    @pytest.mark.asyncio
    async def test_unsubscribe(self, bus: EventBus):
        received = []
        bus.subscribe(EventType.TURN_COMPLETED, received.append)
        await bus.publish(EventType.TURN_COMPLETED, "s1")
        bus.unsubscribe(EventType.TURN_COMPLETED, received.append)
        await bus.publish(EventType.TURN_COMPLETED, "s1")
        assert len(received) == 1

        # unknown handler is ignored
        bus.unsubscribe(EventType.TURN_COMPLETED, received.append)


class TestSessionScope:
    @pytest.mark.asyncio
    async def test_session_subscription_filters_other_sessions(self, bus: EventBus):
        mine, everyone = [], []
        bus.subscribe(ALL_EVENTS, mine.append, session_id="chat-1")
        bus.subscribe(EventType.CHUNK_RECEIVED, everyone.append)

        await bus.publish(EventType.CHUNK_RECEIVED, "chat-1", text="a")
        await bus.publish(EventType.CHUNK_RECEIVED, "chat-2", text="b")
        await bus.publish(EventType.TURN_COMPLETED, "chat-1")

        assert [(e.type, e.session_id) for e in mine] == [
            (EventType.CHUNK_RECEIVED, "chat-1"), (EventType.TURN_COMPLETED, "chat-1"),
        ]
        assert [e.data["text"] for e in everyone] == ["a", "b"]

    @pytest.mark.asyncio
    async def test_drop_session(self, bus: EventBus):
        received = []
        bus.subscribe(EventType.TURN_STARTED, received.append, session_id="chat-1")
        bus.subscribe(EventType.TURN_COMPLETED, received.append, session_id="chat-1")
        bus.subscribe(EventType.TURN_STARTED, received.append, session_id="chat-2")

        assert bus.drop_session("chat-1") == 2
        await bus.publish(EventType.TURN_STARTED, "chat-1")
        await bus.publish(EventType.TURN_STARTED, "chat-2")

        assert [e.session_id for e in received] == ["chat-2"]
        assert bus.subscriber_count == 1

    @pytest.mark.asyncio
    async def test_unsubscribe_by_handle(self, bus: EventBus):
        received = []
        handle = bus.subscribe(EventType.TURN_STARTED, received.append, session_id="chat-1")
        bus.unsubscribe(handle)
        await bus.publish(EventType.TURN_STARTED, "chat-1")
        assert received == []

    @pytest.mark.asyncio
    async def test_session_history(self, bus: EventBus):
        await bus.publish(EventType.TURN_STARTED, "chat-1")
        await bus.publish(EventType.TURN_STARTED, "chat-2")
        await bus.publish(EventType.TURN_CANCELLED, "chat-1")

        assert [e.type for e in bus.session_history("chat-1")] == [
            EventType.TURN_STARTED, EventType.TURN_CANCELLED,
        ]
        assert len(bus.history) == 3


class TestHistory:
    @pytest.mark.asyncio
    async def test_history_bounded(self):
        bus = EventBus(max_history=3)
        for i in range(5):
            await bus.publish(EventType.CHUNK_RECEIVED, "s1", i=i)
        assert [e.data["i"] for e in bus.history] == [2, 3, 4]

    @pytest.mark.asyncio
    async def test_clear(self, bus: EventBus):
        bus.subscribe(EventType.TURN_STARTED, lambda e: None)
        await bus.publish(EventType.TURN_STARTED, "s1")
        bus.clear()
        assert bus.history == []
        assert bus.subscriber_count == 0


class TestErrorHandling:
    @pytest.mark.asyncio
    async def test_failing_handler_isolated(self, bus: EventBus):
        async def bad_handler(event: GatewayEvent):
            raise ValueError("boom")

        received = []
        bus.subscribe(EventType.TOOL_CALL_STARTED, bad_handler)
        bus.subscribe(EventType.TOOL_CALL_STARTED, received.append)

        await bus.publish(EventType.TOOL_CALL_STARTED, "s1")
        assert len(received) == 1
