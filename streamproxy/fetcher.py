"""Upstream retrieval with bounded retries and exponential backoff.

Two profiles share one retry loop:

* generic -- any media/CDN URL. Non-2xx responses other than 429 are handed
  back for the caller to inspect.
* provider -- links from the time-limited-URL provider. Adds the browser
  headers the provider insists on, uses a shorter per-attempt timeout,
  refuses already-expired links without touching the network, and fails
  fast on any non-2xx status.

Network failures and 429 responses both consume an attempt slot, so the
total wait is bounded by ``initial_backoff * (2 ** (max_attempts - 1) - 1)``
plus any upstream ``Retry-After`` values.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable

import httpx

from streamproxy.errors import (
    UpstreamRateLimited,
    classify_exception,
    for_upstream_status,
    link_expired,
)
from streamproxy.urls import is_provider_url, link_expiry

logger = logging.getLogger("fetcher")

_PROVIDER_HEADERS = {
    "Referer": "https://www.youtube.com/",
    "Origin": "https://www.youtube.com",
}


@dataclass(frozen=True)
class FetchProfile:
    name: str
    timeout_s: float
    headers: dict[str, str] = field(default_factory=dict)
    fail_on_error_status: bool = False
    check_expiry: bool = False


def _short(url: str, limit: int = 100) -> str:
    return url if len(url) <= limit else url[:limit] + "..."


def _retry_after_ms(response: httpx.Response) -> int | None:
    raw = response.headers.get("retry-after")
    if raw is None:
        return None
    try:
        seconds = int(raw.strip())
    except ValueError:
        return None  # HTTP-date form; fall back to our own backoff
    return max(0, seconds) * 1000


class RetryingFetcher:
    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        max_attempts: int = 3,
        initial_backoff_ms: int = 1000,
        timeout_s: float = 30.0,
        provider_timeout_s: float = 15.0,
        rate_limit_retry_after_s: int = 60,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.time,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._client = client
        self.max_attempts = max_attempts
        self.initial_backoff_ms = initial_backoff_ms
        self.rate_limit_retry_after_s = rate_limit_retry_after_s
        self._sleep = sleep
        self._clock = clock
        self.generic = FetchProfile(name="generic", timeout_s=timeout_s)
        self.provider = FetchProfile(
            name="provider",
            timeout_s=provider_timeout_s,
            headers=dict(_PROVIDER_HEADERS),
            fail_on_error_status=True,
            check_expiry=True,
        )

    def profile_for(self, url: str) -> FetchProfile:
        return self.provider if is_provider_url(url) else self.generic

    def _check_expiry(self, url: str, request_id: str):
        expiry = link_expiry(url)
        if expiry is None:
            return
        remaining = expiry.timestamp() - self._clock()
        if remaining < 0:
            logger.error(
                "[%s] URL has expired: expired=%s, %d minutes ago",
                request_id, expiry.isoformat(), round(-remaining / 60),
            )
            raise link_expired("URL has expired. Request a fresh URL.")
        logger.info("[%s] URL will expire in %d minutes", request_id, round(remaining / 60))

    async def _send(self, url: str, headers: dict[str, str], timeout_s: float) -> httpx.Response:
        request = self._client.build_request("GET", url, headers=headers, timeout=timeout_s)
        return await self._client.send(request, stream=True)

    async def fetch(
        self,
        url: str,
        headers: dict[str, str] | None = None,
        max_attempts: int | None = None,
        *,
        request_id: str = "-",
    ) -> httpx.Response:
        """Return an open streaming response; the caller owns (and closes) it."""
        profile = self.profile_for(url)
        attempts = max_attempts or self.max_attempts
        if profile.check_expiry:
            self._check_expiry(url, request_id)

        merged = {**(headers or {}), **profile.headers}
        delay_ms = self.initial_backoff_ms
        last_error: Exception | None = None

        for attempt in range(1, attempts + 1):
            logger.info(
                "[%s] %s fetch attempt %d/%d for %s",
                request_id, profile.name, attempt, attempts, _short(url),
            )
            try:
                response = await self._send(url, merged, profile.timeout_s)
            except (httpx.UnsupportedProtocol, httpx.InvalidURL) as exc:
                # Malformed or non-http targets cannot succeed on a retry.
                raise classify_exception(exc, attempts=attempt) from exc
            except httpx.TransportError as exc:
                last_error = exc
                logger.warning(
                    "[%s] Fetch attempt %d failed: %s: %s",
                    request_id, attempt, type(exc).__name__, exc,
                )
                if attempt < attempts:
                    logger.info("[%s] Waiting %dms before retry...", request_id, delay_ms)
                    await self._sleep(delay_ms / 1000)
                    delay_ms *= 2
                continue

            status = response.status_code
            if status == 429:
                await response.aclose()
                last_error = None
                if attempt < attempts:
                    wait_ms = _retry_after_ms(response)
                    if wait_ms is None:
                        wait_ms = delay_ms
                    logger.warning(
                        "[%s] Rate limited by source (429). Waiting %dms before retry",
                        request_id, wait_ms,
                    )
                    await self._sleep(wait_ms / 1000)
                    delay_ms *= 2
                continue

            if response.is_success:
                return response

            if profile.fail_on_error_status:
                await response.aclose()
                logger.warning("[%s] Provider responded with %d, not retrying", request_id, status)
                raise for_upstream_status(
                    status, retry_after=self.rate_limit_retry_after_s, attempts=attempt,
                )
            return response

        if last_error is None:
            raise UpstreamRateLimited(
                f"Upstream kept responding 429 after {attempts} attempts",
                retry_after=self.rate_limit_retry_after_s,
                upstream_status=429,
                attempts=attempts,
            )
        logger.error("[%s] Giving up after %d attempts: %s", request_id, attempts, last_error)
        raise classify_exception(last_error, attempts=attempts) from last_error
