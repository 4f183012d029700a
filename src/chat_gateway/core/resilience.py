"""Retry and key failover around one provider call."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Awaitable, Callable, TypeVar

from chat_gateway.config import RetryPolicy
from chat_gateway.errors import (
    RETRYABLE_ERRORS,
    ProviderRateLimitError,
    StreamInterruptedError,
)
from chat_gateway.types import EventType

if TYPE_CHECKING:
    from chat_gateway.events.bus import EventBus
    from chat_gateway.keys import ProviderApiKey, ProviderKeyManager

_logger = logging.getLogger(__name__)

T = TypeVar("T")


def _never_delivered() -> bool:
    return False


class ResilienceHandler:
    """Runs a provider call with retries, backoff and key rotation.

    Parameters
    ----------
    policy:
        Attempt budget and backoff curve.
    key_manager:
        Pool the key of every attempt is acquired from.
    event_bus:
        Receives ``STREAM_RETRYING`` before each backoff (optional).
    sleep:
        Awaitable sleep, replaceable in tests.
    """

    def __init__(
        self,
        policy: RetryPolicy,
        key_manager: ProviderKeyManager,
        event_bus: EventBus | None = None,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ) -> None:
        self._policy = policy
        self._keys = key_manager
        self._event_bus = event_bus
        self._sleep = sleep

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    async def execute(
        self,
        attempt: Callable[[ProviderApiKey], Awaitable[T]],
        session_id: str,
        provider: str,
        delivered: Callable[[], bool] = _never_delivered,
    ) -> T:
        """Call ``attempt(key)`` until it succeeds or the budget is spent.

        Only rate-limit and transient errors are retried.  A rate limit
        cools the key down and the next attempt takes another key; a
        transient error retries on the same key while it stays usable.
        Once *delivered* reports that content reached the user, a retryable
        error becomes :class:`StreamInterruptedError`.  Anything else
        propagates unchanged.
        """
        max_attempts = max(1, self._policy.max_retries + 1)
        prefer: str | None = None

        for attempt_no in range(1, max_attempts + 1):
            key = await self._keys.acquire_key(provider, prefer=prefer)
            try:
                return await attempt(key)
            except RETRYABLE_ERRORS as exc:
                if delivered():
                    _logger.error(
                        "Session %s: %s failed after content was delivered: %s",
                        session_id, provider, exc,
                    )
                    raise StreamInterruptedError(
                        f"The response was interrupted: {exc}",
                    ) from exc
                if attempt_no >= max_attempts:
                    _logger.error(
                        "Session %s: %s failed after %d attempts: %s",
                        session_id, provider, max_attempts, exc,
                    )
                    raise

                delay = self._delay(exc, attempt_no)
                if isinstance(exc, ProviderRateLimitError):
                    await self._keys.report_rate_limited(exc.key_id or key.id, delay)
                    prefer = None
                else:
                    prefer = key.id

                _logger.warning(
                    "Session %s: %s attempt %d/%d failed (%s), retrying in %.1fs",
                    session_id, provider, attempt_no, max_attempts, exc, delay,
                )
                await self._publish_retry(session_id, provider, attempt_no, delay, exc, key.id)
                await self._sleep(delay)

        raise AssertionError("unreachable")

    def _delay(self, exc: Exception, attempt_no: int) -> float:
        if isinstance(exc, ProviderRateLimitError) and exc.retry_after is not None:
            return exc.retry_after
        return self._policy.backoff(attempt_no)

    async def _publish_retry(
        self,
        session_id: str,
        provider: str,
        attempt_no: int,
        delay: float,
        exc: Exception,
        key_id: str,
    ) -> None:
        if self._event_bus is None:
            return
        await self._event_bus.publish(
            EventType.STREAM_RETRYING,
            session_id,
            provider=provider,
            attempt=attempt_no,
            delay=delay,
            error=str(exc),
            key_id=key_id,
        )
