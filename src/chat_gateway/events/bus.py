"""Async pub/sub EventBus carrying UI notifications out of the gateway.

A chat UI usually cares about one conversation at a time, so every
subscription may be scoped to a session: ``subscribe(..., session_id=sid)``
only sees that session's events, and :meth:`EventBus.drop_session` removes
all of them once the chat is closed.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable

from chat_gateway.types import EventType, GatewayEvent

_logger = logging.getLogger(__name__)

ALL_EVENTS = "*"

Handler = Callable[[GatewayEvent], Any]


@dataclass(frozen=True)
class Subscription:
    """One handler registered for an event type, optionally for one session."""

    event_type: str
    handler: Handler
    session_id: str | None = None

    def accepts(self, event: GatewayEvent) -> bool:
        return self.session_id is None or self.session_id == event.session_id


class EventBus:
    """Fan gateway events out to subscribers.

    Parameters
    ----------
    max_history:
        Number of recent events kept for late subscribers and diagnostics.

    Handlers may be sync or async.  Matching handlers run concurrently; one
    that raises is logged and neither the publisher nor the other handlers
    notice.
    """

    def __init__(self, max_history: int = 200) -> None:
        self._subscriptions: list[Subscription] = []
        self._history: deque[GatewayEvent] = deque(maxlen=max_history)

    def subscribe(
        self,
        event_type: EventType | str,
        handler: Handler,
        *,
        session_id: str | None = None,
    ) -> Subscription:
        """Register *handler* for *event_type* (``"*"`` for every type).

        With *session_id*, only events of that session are delivered.
        """
        subscription = Subscription(_type_key(event_type), handler, session_id)
        self._subscriptions.append(subscription)
        return subscription

    def unsubscribe(
        self,
        event_type: EventType | str | Subscription,
        handler: Handler | None = None,
    ) -> None:
        """Remove a subscription, or every subscription of *handler* to *event_type*."""
        if isinstance(event_type, Subscription):
            self._subscriptions = [s for s in self._subscriptions if s is not event_type]
            return
        key = _type_key(event_type)
        self._subscriptions = [
            s for s in self._subscriptions
            if not (s.event_type == key and s.handler == handler)
        ]

    def drop_session(self, session_id: str) -> int:
        """Remove all subscriptions scoped to *session_id*.  Returns how many."""
        kept = [s for s in self._subscriptions if s.session_id != session_id]
        dropped = len(self._subscriptions) - len(kept)
        self._subscriptions = kept
        return dropped

    async def emit(self, event: GatewayEvent) -> None:
        self._history.append(event)
        key = _type_key(event.type)
        matching = [
            s for s in self._subscriptions
            if s.event_type in (key, ALL_EVENTS) and s.accepts(event)
        ]
        if matching:
            await asyncio.gather(*(self._deliver(s, event) for s in matching))

    async def publish(self, event_type: EventType, session_id: str, **data: Any) -> None:
        """Shorthand for ``emit(GatewayEvent(...))``."""
        await self.emit(GatewayEvent(type=event_type, session_id=session_id, data=data))

    @property
    def history(self) -> list[GatewayEvent]:
        return list(self._history)

    def session_history(self, session_id: str) -> list[GatewayEvent]:
        return [e for e in self._history if e.session_id == session_id]

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def clear(self) -> None:
        self._subscriptions.clear()
        self._history.clear()

    @staticmethod
    async def _deliver(subscription: Subscription, event: GatewayEvent) -> None:
        try:
            result = subscription.handler(event)
            if inspect.isawaitable(result):
                await result
        except Exception:
            _logger.exception(
                "EventBus handler %s raised for %s (session %s)",
                getattr(subscription.handler, "__name__", subscription.handler),
                event.type.value,
                event.session_id,
            )


def _type_key(event_type: EventType | str) -> str:
    if isinstance(event_type, EventType):
        return event_type.value
    return str(event_type)
