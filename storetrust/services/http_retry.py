"""Outbound HTTP with bounded retry.

Retry policy:
- 429 and 5xx: retried with exponential backoff (base * 2**attempt, capped),
  honoring a numeric Retry-After header when present
- transport errors (connect/read timeouts): retried the same way
- any other non-2xx status: raised immediately as UpstreamStatusError
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

import httpx

from storetrust.settings import get_settings

logger = logging.getLogger("uvicorn.error")

RETRYABLE_STATUS = {429, 500, 502, 503, 504}


class UpstreamStatusError(RuntimeError):
    """Upstream answered with a status we do not retry (or retries ran out)."""

    def __init__(self, status_code: int, url: str, body: str = ""):
        super().__init__(f"HTTP {status_code} from {url}")
        self.status_code = status_code
        self.url = url
        self.body = body


def _is_retryable(status_code: int) -> bool:
    return status_code in RETRYABLE_STATUS or status_code >= 500


def _retry_after_seconds(response: httpx.Response) -> float | None:
    value = response.headers.get("retry-after")
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


def backoff_delay(attempt: int, base: float, cap: float) -> float:
    """Delay before retry number `attempt` (0-based)."""
    return min(cap, base * (2**attempt))


async def request_with_retry(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    max_attempts: int | None = None,
    backoff_base: float | None = None,
    backoff_max: float | None = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    **kwargs: Any,
) -> httpx.Response:
    """Send a request, retrying 429/5xx and transport errors.

    Args:
        client: Shared AsyncClient.
        method: HTTP method.
        url: Absolute URL.
        max_attempts: Total attempts (default: Settings.http_max_attempts).
        backoff_base: First backoff in seconds.
        backoff_max: Upper bound for any single backoff.
        sleep: Injected for tests.
        **kwargs: Passed through to `client.request`.

    Returns:
        The first 2xx/3xx response.

    Raises:
        UpstreamStatusError: Non-retryable status, or retries exhausted.
        httpx.TransportError: Transport failure on the last attempt.
    """
    settings = get_settings()
    attempts = max_attempts if max_attempts is not None else settings.http_max_attempts
    base = backoff_base if backoff_base is not None else settings.http_backoff_base_seconds
    cap = backoff_max if backoff_max is not None else settings.http_backoff_max_seconds
    attempts = max(1, attempts)

    for attempt in range(attempts):
        last = attempt == attempts - 1
        try:
            response = await client.request(method, url, **kwargs)
        except httpx.TransportError as e:
            if last:
                raise
            delay = backoff_delay(attempt, base, cap)
            logger.warning(f"HTTP transport error on {url}: {e}; retrying in {delay:.1f}s")
            await sleep(delay)
            continue

        if response.status_code < 400:
            return response

        if not _is_retryable(response.status_code) or last:
            raise UpstreamStatusError(response.status_code, url, response.text[:500])

        delay = backoff_delay(attempt, base, cap)
        retry_after = _retry_after_seconds(response)
        if retry_after is not None:
            delay = min(cap, max(delay, retry_after))
        logger.warning(f"HTTP {response.status_code} from {url}; retrying in {delay:.1f}s")
        await sleep(delay)

    # Unreachable: the last attempt either returns or raises.
    raise RuntimeError("request_with_retry exhausted without a result")
