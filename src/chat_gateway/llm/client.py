"""Streaming HTTP transport for provider calls.

Uses one shared ``httpx.AsyncClient``.  Each call is a ``POST`` opened with
``client.stream()``; the body is yielded as decoded text fragments exactly
as they arrive.  HTTP and network failures are mapped onto the gateway's
error taxonomy so the resilience handler can classify them.
"""

from __future__ import annotations

import logging
import time
from email.utils import parsedate_to_datetime
from typing import AsyncGenerator

import httpx

from chat_gateway.errors import (
    ProviderAuthError,
    ProviderError,
    ProviderRateLimitError,
    ProviderRequestError,
    TransientProviderError,
)
from chat_gateway.types import AiRequestPayload

_logger = logging.getLogger(__name__)

_TRANSIENT_STATUS = {500, 502, 503, 504, 529}


def parse_retry_after(value: str | None, now: float | None = None) -> float | None:
    """Seconds to wait from a ``Retry-After`` header (delta-seconds or HTTP-date)."""
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        _logger.warning("Ignoring unparseable Retry-After header: %s", value)
        return None
    now = time.time() if now is None else now
    return max(0.0, when.timestamp() - now)


def _error_message(body: str, status: int) -> str:
    snippet = body.strip()[:300]
    return f"Provider returned HTTP {status}: {snippet}" if snippet else f"Provider returned HTTP {status}"


def status_error(response: httpx.Response, body: str, key_id: str | None = None) -> ProviderError:
    """Map an error response onto the exception the caller should see."""
    status = response.status_code
    message = _error_message(body, status)
    if status == 429:
        return ProviderRateLimitError(
            message,
            status_code=status,
            retry_after=parse_retry_after(response.headers.get("retry-after")),
            key_id=key_id,
        )
    if status in (401, 403):
        return ProviderAuthError(message, status_code=status)
    if status in _TRANSIENT_STATUS or status >= 500:
        return TransientProviderError(message, status_code=status)
    return ProviderRequestError(message, status_code=status)


class ProviderHttpClient:
    """Sends authorised payloads and streams back the response text.

    Parameters
    ----------
    timeout:
        Overall request timeout in seconds; reads between fragments use
        the same bound.
    transport:
        Optional ``httpx`` transport, e.g. ``httpx.MockTransport`` in tests.
    """

    def __init__(
        self,
        timeout: float = 150.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout, connect=30),
            transport=transport,
            headers={"Content-Type": "application/json"},
        )

    async def stream(
        self,
        payload: AiRequestPayload,
        timeout: float | None = None,
    ) -> AsyncGenerator[str, None]:
        """Yield response text fragments for *payload*.

        Raises a :class:`ProviderError` subclass for error statuses and
        :class:`TransientProviderError` for timeouts and transport failures,
        whether they happen before or during the body.
        """
        _logger.debug("POST %s (key=%s)", payload.url, payload.key_id)
        try:
            async with self._client.stream(
                "POST",
                payload.url,
                json=payload.body,
                headers=payload.headers,
                timeout=timeout if timeout is not None else httpx.USE_CLIENT_DEFAULT,
            ) as resp:
                if resp.status_code >= 400:
                    body = (await resp.aread()).decode("utf-8", errors="replace")
                    error = status_error(resp, body, payload.key_id)
                    _logger.warning(
                        "%s call failed with HTTP %d (key=%s)",
                        payload.provider.value, resp.status_code, payload.key_id,
                    )
                    raise error
                async for text in resp.aiter_text():
                    yield text
        except httpx.TimeoutException as exc:
            raise TransientProviderError(f"Provider request timed out: {exc}") from exc
        except httpx.TransportError as exc:
            raise TransientProviderError(f"Provider connection failed: {exc}") from exc

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()
