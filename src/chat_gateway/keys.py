"""Provider API key pool with daily quotas and rate-limit cooldowns.

Every mutation of a key (usage counter, cooldown) happens while holding the
lock of the key's provider, so two concurrent requests can never both
spend the last unit of quota on the same key.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Callable, Iterable

from chat_gateway.config import GatewayConfig
from chat_gateway.errors import QuotaExceededError

_logger = logging.getLogger(__name__)


def _utc_day(ts: float) -> date:
    return datetime.fromtimestamp(ts, tz=timezone.utc).date()


@dataclass
class ProviderApiKey:
    """One managed API key.  Timestamps are epoch seconds."""

    id: str
    provider: str
    secret: str
    max_requests_per_day: int = 1000
    active: bool = True
    usage_count_today: int = 0
    last_used: float = 0.0
    rate_limited_until: float | None = None
    usage_day: date | None = field(default=None, repr=False)

    def has_available_quota(self) -> bool:
        return self.usage_count_today < self.max_requests_per_day

    def is_rate_limited(self, now: float) -> bool:
        return self.rate_limited_until is not None and now < self.rate_limited_until

    def is_available(self, now: float) -> bool:
        return self.active and self.has_available_quota() and not self.is_rate_limited(now)

    def cooldown_remaining(self, now: float) -> float:
        if self.rate_limited_until is None:
            return 0.0
        return max(0.0, self.rate_limited_until - now)

    def reset_daily_usage(self) -> None:
        self.usage_count_today = 0
        self.clear_rate_limit()

    def clear_rate_limit(self) -> None:
        self.rate_limited_until = None

    @property
    def masked_secret(self) -> str:
        if len(self.secret) <= 8:
            return "****"
        return f"{self.secret[:4]}...{self.secret[-4:]}"


@dataclass(frozen=True)
class KeyStatus:
    """Read-only view of a key for diagnostics."""

    id: str
    provider: str
    masked_secret: str
    active: bool
    usage_count_today: int
    max_requests_per_day: int
    cooldown_remaining: float


class ProviderKeyManager:
    """Selects, meters and cools down provider API keys.

    Parameters
    ----------
    keys:
        Initial key pool.
    clock:
        Source of epoch seconds; injectable for tests.
    """

    def __init__(
        self,
        keys: Iterable[ProviderApiKey] = (),
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._clock = clock
        self._keys: dict[str, ProviderApiKey] = {}
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        for key in keys:
            self.add_key(key)

    @classmethod
    def from_config(
        cls,
        config: GatewayConfig,
        clock: Callable[[], float] = time.time,
    ) -> ProviderKeyManager:
        keys = [
            ProviderApiKey(
                id=spec.id,
                provider=provider,
                secret=spec.secret,
                max_requests_per_day=spec.max_requests_per_day,
                active=spec.active,
            )
            for provider, pspec in config.providers.items()
            for spec in pspec.keys
        ]
        return cls(keys, clock=clock)

    def add_key(self, key: ProviderApiKey) -> None:
        if key.usage_day is None:
            key.usage_day = _utc_day(self._clock())
        self._keys[key.id] = key

    def get(self, key_id: str) -> ProviderApiKey | None:
        return self._keys.get(key_id)

    # ------------------------------------------------------------------
    # Selection and metering
    # ------------------------------------------------------------------

    async def select_key(self, provider: str) -> ProviderApiKey:
        """Return the least-recently-used usable key of *provider*.

        Raises
        ------
        QuotaExceededError
            When every key is inactive, exhausted or cooling down.
        """
        async with self._locks[provider]:
            return self._select_locked(provider)

    async def acquire_key(self, provider: str, prefer: str | None = None) -> ProviderApiKey:
        """Select a key and count one request against it, atomically.

        If *prefer* names a key of *provider* that is still usable, that key
        is taken instead of the least-recently-used one.
        """
        async with self._locks[provider]:
            key = self._keys.get(prefer) if prefer else None
            if key is not None and key.provider == provider:
                self._roll_over(key)
            if key is None or key.provider != provider or not key.is_available(self._clock()):
                key = self._select_locked(provider)
            self._record_locked(key)
            return key

    async def record_usage(self, key_id: str) -> bool:
        """Count one request against *key_id*.

        Returns ``False`` (and records nothing) if the key is unknown or
        its daily quota is already spent.
        """
        key = self._keys.get(key_id)
        if key is None:
            _logger.warning("record_usage for unknown API key %s", key_id)
            return False
        async with self._locks[key.provider]:
            self._roll_over(key)
            if not key.has_available_quota():
                _logger.warning("API key %s has no quota left today", key_id)
                return False
            self._record_locked(key)
            return True

    async def report_rate_limited(self, key_id: str, cooldown: float) -> None:
        """Make *key_id* unusable for *cooldown* seconds.

        Repeated reports never shorten an existing cooldown.
        """
        key = self._keys.get(key_id)
        if key is None:
            _logger.warning("report_rate_limited for unknown API key %s", key_id)
            return
        async with self._locks[key.provider]:
            until = self._clock() + max(cooldown, 0.0)
            if key.rate_limited_until is None or until > key.rate_limited_until:
                key.rate_limited_until = until
            _logger.warning(
                "API key %s marked as rate-limited for %.1fs", key_id, cooldown,
            )

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def reset_daily_usage(self) -> None:
        """Zero every counter and clear every cooldown."""
        today = _utc_day(self._clock())
        for provider in {k.provider for k in self._keys.values()}:
            async with self._locks[provider]:
                for key in self._keys.values():
                    if key.provider == provider:
                        key.reset_daily_usage()
                        key.usage_day = today
        _logger.info("Reset daily usage for all provider API keys")

    async def clear_expired_rate_limits(self) -> int:
        """Drop cooldowns that have elapsed.  Returns how many were cleared."""
        now = self._clock()
        cleared = 0
        for provider in {k.provider for k in self._keys.values()}:
            async with self._locks[provider]:
                for key in self._keys.values():
                    if (
                        key.provider == provider
                        and key.rate_limited_until is not None
                        and not key.is_rate_limited(now)
                    ):
                        key.clear_rate_limit()
                        cleared += 1
        return cleared

    async def run_daily_reset(self, stop: asyncio.Event) -> None:
        """Reset usage at every UTC midnight until *stop* is set."""
        while not stop.is_set():
            now = datetime.fromtimestamp(self._clock(), tz=timezone.utc)
            midnight = datetime.combine(
                now.date() + timedelta(days=1), datetime.min.time(), tzinfo=timezone.utc,
            )
            try:
                await asyncio.wait_for(stop.wait(), (midnight - now).total_seconds())
            except asyncio.TimeoutError:
                await self.reset_daily_usage()

    def snapshot(self, provider: str | None = None) -> list[KeyStatus]:
        now = self._clock()
        return [
            KeyStatus(
                id=k.id,
                provider=k.provider,
                masked_secret=k.masked_secret,
                active=k.active,
                usage_count_today=k.usage_count_today,
                max_requests_per_day=k.max_requests_per_day,
                cooldown_remaining=k.cooldown_remaining(now),
            )
            for k in self._keys.values()
            if provider is None or k.provider == provider
        ]

    # ------------------------------------------------------------------
    # Internals (caller holds the provider lock)
    # ------------------------------------------------------------------

    def _select_locked(self, provider: str) -> ProviderApiKey:
        now = self._clock()
        best: ProviderApiKey | None = None
        for key in self._keys.values():
            if key.provider != provider:
                continue
            self._roll_over(key)
            if not key.is_available(now):
                continue
            if best is None or key.last_used < best.last_used:
                best = key
        if best is None:
            _logger.error("No API keys available for provider %s", provider)
            raise QuotaExceededError(provider)
        return best

    def _record_locked(self, key: ProviderApiKey) -> None:
        key.usage_count_today += 1
        key.last_used = self._clock()
        _logger.debug(
            "API key %s usage %d/%d",
            key.id, key.usage_count_today, key.max_requests_per_day,
        )

    def _roll_over(self, key: ProviderApiKey) -> None:
        today = _utc_day(self._clock())
        if key.usage_day != today:
            key.usage_count_today = 0
            key.usage_day = today
