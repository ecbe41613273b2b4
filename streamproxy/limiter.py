"""Per-client fixed-window admission limiter.

Every request increments its client's counter, admitted or not.  All
counters are cleared together by one recurring task at each window boundary,
so a client blocked late in a window recovers at the same moment as
everybody else.
"""

import asyncio
import ipaddress
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable

from starlette.requests import Request
from starlette.types import ASGIApp, Receive, Scope, Send

from streamproxy.config import settings
from streamproxy.errors import RateLimited

logger = logging.getLogger("limiter")


@dataclass(frozen=True)
class Admission:
    allowed: bool
    count: int
    retry_after: int


class AdmissionLimiter:
    def __init__(
        self,
        window_s: int = 60,
        max_requests: int = 10,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if window_s <= 0:
            raise ValueError("window_s must be positive")
        if max_requests < 0:
            raise ValueError("max_requests must not be negative")
        self.window_s = window_s
        self.max_requests = max_requests
        self._sleep = sleep
        self._counts: dict[str, int] = {}

    def admit(self, identity: str) -> Admission:
        count = self._counts.get(identity, 0) + 1
        self._counts[identity] = count
        allowed = count <= self.max_requests
        if not allowed:
            logger.warning("Rate limit exceeded for client %s (%d requests)", identity, count)
        return Admission(allowed=allowed, count=count, retry_after=self.window_s)

    def count_for(self, identity: str) -> int:
        return self._counts.get(identity, 0)

    @property
    def tracked_clients(self) -> int:
        return len(self._counts)

    def reset(self):
        if self._counts:
            logger.info("Clearing rate limit counts (%d clients)", len(self._counts))
        self._counts.clear()

    async def run(self):
        """Background task: clear every counter once per window."""
        while True:
            await self._sleep(self.window_s)
            self.reset()


def _is_trusted_peer(host: str) -> bool:
    networks = settings.trusted_networks
    if not networks:
        return False
    try:
        addr = ipaddress.ip_address(host)
    except ValueError:
        return False
    return any(addr in net for net in networks)


def get_client_identity(request: Request) -> str:
    """Extract the client IP used as the admission key.

    X-Forwarded-For is only honoured when the direct peer is a trusted
    reverse proxy; otherwise any client could pick its own bucket.
    """
    peer = request.client.host if request.client else None
    forwarded = request.headers.get("X-Forwarded-For", "")
    if forwarded and (peer is None or _is_trusted_peer(peer)):
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return peer or "unknown"


class AdmissionMiddleware:
    """Gate every HTTP request on ``app.state.limiter`` before routing.

    Raw ASGI so relay responses stream through untouched.
    """

    def __init__(self, app: ASGIApp):
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        request = Request(scope)
        limiter: AdmissionLimiter = request.app.state.limiter
        admission = limiter.admit(get_client_identity(request))
        if not admission.allowed:
            response = RateLimited(retry_after=admission.retry_after).to_response()
            await response(scope, receive, send)
            return
        await self.app(scope, receive, send)
