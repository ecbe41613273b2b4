"""Relay pipeline: turns an upstream response into a streamed client response.

``RelayPipeline.open`` runs everything that can still fail with a JSON error
(fetch, status checks, declared size, header filtering).  The returned
``RelayResponse`` then owns the upstream body and drives an explicit
transfer loop:

    read chunk -> count it -> check the cap -> write it -> repeat

The response start is deferred until the first chunk is ready, so a stall or
an oversized first chunk can still be reported as 504/413.  After that,
every failure raises ``StreamAborted`` and the server drops the connection.
"""

import asyncio
import logging
from dataclasses import dataclass

import httpx
from starlette.responses import Response
from starlette.types import Receive, Scope, Send

from streamproxy.errors import (
    GatewayTimeout,
    PayloadTooLarge,
    ProxyError,
    StreamAborted,
    StreamSetupFailure,
    classify_exception,
    for_upstream_status,
)
from streamproxy.fetcher import RetryingFetcher
from streamproxy.models import ProxyRequest

logger = logging.getLogger("relay")

# Framing is owned by the ASGI server, never copied from upstream.
_FRAMING_HEADERS = frozenset({"content-encoding", "content-length", "connection", "transfer-encoding"})

_DEFAULT_CONTENT_TYPE = b"application/octet-stream"
_PULSE = b"\n"
_EOF = object()

_MIB = 1024 * 1024


@dataclass
class StreamState:
    """Byte accounting for one response stream."""

    request_id: str
    limit: int
    started_at: float
    bytes_streamed: int = 0
    pulses: int = 0

    def record(self, size: int):
        self.bytes_streamed += size
        if self.bytes_streamed > self.limit:
            raise PayloadTooLarge(
                f"Size limit of {self.limit} bytes exceeded",
                code="STREAM_LIMIT",
                solution="Try a different quality or format",
            )


def relay_headers(
    upstream_headers: httpx.Headers,
    *,
    drop: frozenset[str] = frozenset(),
    request_id: str = "-",
) -> list[tuple[bytes, bytes]]:
    """Copy upstream headers minus framing; default Content-Type if absent.

    A header that cannot be encoded is logged and skipped.
    """
    raw: list[tuple[bytes, bytes]] = []
    has_content_type = False
    for key, value in upstream_headers.multi_items():
        name = key.lower()
        if name in _FRAMING_HEADERS or name in drop:
            continue
        try:
            raw.append((name.encode("latin-1"), value.encode("latin-1")))
        except UnicodeEncodeError as exc:
            logger.error("[%s] Error setting header %s: %s", request_id, key, exc)
            continue
        if name == "content-type":
            has_content_type = True
    if not has_content_type:
        raw.append((b"content-type", _DEFAULT_CONTENT_TYPE))
    return raw


def _declared_length(headers: httpx.Headers) -> int | None:
    raw = headers.get("content-length")
    if raw is None:
        return None
    try:
        return int(raw)
    except ValueError:
        return None


async def _wait_for_disconnect(receive: Receive):
    while True:
        message = await receive()
        if message["type"] == "http.disconnect":
            return


class RelayResponse(Response):
    """Streams an upstream body with a size cap, liveness pulses and a deadline."""

    def __init__(
        self,
        upstream: httpx.Response,
        *,
        status_code: int,
        raw_headers: list[tuple[bytes, bytes]],
        state: StreamState,
        deadline: float,
        keepalive_interval_s: float,
    ):
        self.upstream = upstream
        self.status_code = status_code
        self.raw_headers = raw_headers
        self.state = state
        self.deadline = deadline
        self.keepalive_interval_s = keepalive_interval_s
        self.background = None
        self.started = False

    async def _pump(self, queue: asyncio.Queue):
        # Chunks are forwarded as they arrive, never re-buffered. Bounded
        # queue: the next chunk is read only once the previous one has been
        # taken by the transfer loop.
        try:
            async for chunk in self.upstream.aiter_bytes():
                if chunk:
                    await queue.put(chunk)
        except Exception as exc:
            await queue.put(exc)
            return
        await queue.put(_EOF)

    async def _start(self, send: Send):
        await send({
            "type": "http.response.start",
            "status": self.status_code,
            "headers": self.raw_headers,
        })
        self.started = True

    async def _fail_before_start(self, error: ProxyError, scope: Scope, receive: Receive, send: Send):
        logger.warning(
            "[%s] %s before any byte was sent: %s", self.state.request_id, type(error).__name__, error,
        )
        await error.to_response()(scope, receive, send)

    def _next_wait(self, now: float) -> float:
        wait = self.deadline - now
        if self.started and self.keepalive_interval_s > 0:
            wait = min(wait, self.keepalive_interval_s)
        return max(wait, 0.0)

    async def __call__(self, scope: Scope, receive: Receive, send: Send):
        state = self.state
        rid = state.request_id
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue = asyncio.Queue(maxsize=1)
        reader = asyncio.create_task(self._pump(queue))
        disconnect = asyncio.create_task(_wait_for_disconnect(receive))
        getter: asyncio.Future | None = None

        try:
            while True:
                if getter is None:
                    getter = asyncio.ensure_future(queue.get())
                done, _ = await asyncio.wait(
                    {getter, disconnect},
                    timeout=self._next_wait(loop.time()),
                    return_when=asyncio.FIRST_COMPLETED,
                )

                if disconnect in done:
                    logger.info("[%s] Client disconnected after %d bytes", rid, state.bytes_streamed)
                    return

                if getter not in done:
                    if loop.time() >= self.deadline:
                        logger.error("[%s] Request timed out at the overall deadline", rid)
                        if not self.started:
                            await self._fail_before_start(
                                GatewayTimeout("Request took too long to complete"), scope, receive, send,
                            )
                            return
                        raise StreamAborted("overall deadline reached mid-stream")
                    if self.started:
                        await send({"type": "http.response.body", "body": _PULSE, "more_body": True})
                        state.pulses += 1
                    continue

                item = getter.result()
                getter = None
                if item is _EOF:
                    break
                if isinstance(item, Exception):
                    logger.error("[%s] Source stream error: %s: %s", rid, type(item).__name__, item)
                    if not self.started:
                        await self._fail_before_start(classify_exception(item), scope, receive, send)
                        return
                    raise StreamAborted(f"upstream read failed: {item}") from item

                try:
                    state.record(len(item))
                except PayloadTooLarge as exc:
                    logger.warning(
                        "[%s] Size limit exceeded during streaming. Closing connection after %d bytes",
                        rid, state.bytes_streamed,
                    )
                    if not self.started:
                        await self._fail_before_start(exc, scope, receive, send)
                        return
                    raise StreamAborted(str(exc)) from exc

                if not self.started:
                    await self._start(send)
                await send({"type": "http.response.body", "body": item, "more_body": True})

            if not self.started:
                await self._start(send)
            await send({"type": "http.response.body", "body": b"", "more_body": False})
            logger.info(
                "[%s] Response finished in %dms. Total bytes: %d",
                rid, (loop.time() - state.started_at) * 1000, state.bytes_streamed,
            )
        finally:
            tasks = [t for t in (getter, disconnect, reader) if t is not None]
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            await self.upstream.aclose()

        if self.background is not None:
            await self.background()


class RelayPipeline:
    def __init__(
        self,
        fetcher: RetryingFetcher,
        *,
        max_payload_bytes: int = 25 * _MIB,
        keepalive_interval_s: float = 10.0,
        deadline_s: float = 120.0,
        default_user_agent: str = "Mozilla/5.0",
        rate_limit_retry_after_s: int = 60,
    ):
        self.fetcher = fetcher
        self.max_payload_bytes = max_payload_bytes
        self.keepalive_interval_s = keepalive_interval_s
        self.deadline_s = deadline_s
        self.default_user_agent = default_user_agent
        self.rate_limit_retry_after_s = rate_limit_retry_after_s

    @classmethod
    def from_settings(cls, fetcher: RetryingFetcher, settings) -> "RelayPipeline":
        return cls(
            fetcher,
            max_payload_bytes=settings.max_payload_bytes,
            keepalive_interval_s=settings.keepalive_interval_s,
            deadline_s=settings.request_deadline_s,
            default_user_agent=settings.default_user_agent,
            rate_limit_retry_after_s=settings.upstream_rate_limit_retry_after_s,
        )

    def upstream_headers(self, proxy_request: ProxyRequest) -> dict[str, str]:
        return {
            "User-Agent": proxy_request.user_agent or self.default_user_agent,
            "Accept": "*/*",
            "Accept-Encoding": "identity",
            # Always request from the start unless the client asked otherwise.
            "Range": proxy_request.range_header or "bytes=0-",
        }

    async def open(self, proxy_request: ProxyRequest) -> RelayResponse:
        """Fetch the target and prepare a response; raises ``ProxyError``."""
        loop = asyncio.get_running_loop()
        rid = proxy_request.request_id
        deadline = proxy_request.received_at + self.deadline_s

        try:
            upstream = await asyncio.wait_for(
                self.fetcher.fetch(
                    proxy_request.target_url,
                    self.upstream_headers(proxy_request),
                    request_id=rid,
                ),
                timeout=max(deadline - loop.time(), 0.0),
            )
        except asyncio.TimeoutError as exc:
            logger.error("[%s] Request timed out before upstream responded", rid)
            raise GatewayTimeout("Request took too long to complete") from exc

        logger.info("[%s] Response status: %d", rid, upstream.status_code)
        try:
            return self._prepare(proxy_request, upstream, deadline)
        except ProxyError:
            await upstream.aclose()
            raise
        except Exception as exc:
            await upstream.aclose()
            logger.exception("[%s] Error setting up stream", rid)
            raise StreamSetupFailure(str(exc), code=type(exc).__name__) from exc

    def _prepare(self, proxy_request: ProxyRequest, upstream: httpx.Response, deadline: float) -> RelayResponse:
        rid = proxy_request.request_id

        if upstream.status_code >= 400:
            raise for_upstream_status(upstream.status_code, retry_after=self.rate_limit_retry_after_s)

        declared = _declared_length(upstream.headers)
        if declared is not None and declared > self.max_payload_bytes:
            logger.warning(
                "[%s] Content length (%d bytes) exceeds maximum size limit (%d bytes)",
                rid, declared, self.max_payload_bytes,
            )
            raise PayloadTooLarge(
                f"File size ({round(declared / _MIB)}MB) exceeds maximum size limit "
                f"({round(self.max_payload_bytes / _MIB)}MB)",
                code="DECLARED_LENGTH",
                solution="Try a different quality or format",
            )

        partial = bool(proxy_request.range_header) and upstream.status_code == 206
        status_code = 206 if partial else 200
        drop = frozenset() if partial else frozenset({"content-range"})

        return RelayResponse(
            upstream,
            status_code=status_code,
            raw_headers=relay_headers(upstream.headers, drop=drop, request_id=rid),
            state=StreamState(
                request_id=rid,
                limit=self.max_payload_bytes,
                started_at=proxy_request.received_at,
            ),
            deadline=deadline,
            keepalive_interval_s=self.keepalive_interval_s,
        )
