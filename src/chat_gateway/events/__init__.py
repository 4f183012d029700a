"""Notification channel for UI-facing gateway events."""

from chat_gateway.events.bus import EventBus

__all__ = ["EventBus"]
