"""Failure taxonomy and classifier.

Every failure the proxy can report before streaming starts is a
``ProxyError`` subclass carrying its HTTP status and structured fields.
``classify_exception`` folds anything else (httpx transport errors, stray
exceptions) into the same closed set so the route never has to inspect
error messages.

Once the response has started, failures surface as ``StreamAborted`` and the
connection is dropped instead of rewritten.
"""

import logging
from datetime import datetime, timezone

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from streamproxy.models import ErrorDetails, ErrorEnvelope

logger = logging.getLogger("errors")


class ProxyError(Exception):
    """Base class for client-visible proxy failures."""

    status_code = 500
    error = "Proxy server error"

    def __init__(
        self,
        message: str | None = None,
        *,
        code: str | None = None,
        solution: str | None = None,
        retry_after: int | None = None,
        upstream_status: int | None = None,
        attempts: int | None = None,
    ):
        super().__init__(message or self.error)
        self.message = message
        self.code = code
        self.solution = solution
        self.retry_after = retry_after
        self.upstream_status = upstream_status
        self.attempts = attempts
        self.timestamp = datetime.now(timezone.utc)

    def details(self) -> ErrorDetails | None:
        return ErrorDetails(
            type=type(self).__name__,
            code=self.code,
            timestamp=self.timestamp.isoformat(),
            message=self.message,
            upstream_status=self.upstream_status,
            attempts=self.attempts,
        )

    def envelope(self) -> ErrorEnvelope:
        return ErrorEnvelope(
            error=self.error,
            message=self.message,
            details=self.details(),
            solution=self.solution,
            retry_after=self.retry_after,
        )

    def to_response(self) -> JSONResponse:
        headers = None
        if self.retry_after is not None:
            headers = {"Retry-After": str(self.retry_after)}
        return JSONResponse(
            self.envelope().to_json(),
            status_code=self.status_code,
            headers=headers,
        )


class MissingParameter(ProxyError):
    status_code = 400
    error = "Missing url parameter"

    def details(self):
        return None


class RateLimited(ProxyError):
    status_code = 429
    error = "Too many requests. Please try again later."

    def details(self):
        return None


class FetchExhausted(ProxyError):
    """Upstream could not be fetched within the attempt budget."""

    error = "Failed to fetch after multiple attempts"


class UpstreamUnreachable(FetchExhausted):
    status_code = 404
    error = "Resource not found or host unreachable"


class UpstreamTimeout(FetchExhausted):
    status_code = 504
    error = "Request timeout"


class UpstreamRateLimited(FetchExhausted):
    status_code = 429
    error = "Too Many Requests from source API"


class UpstreamRejected(ProxyError):
    """Upstream answered with an error status the proxy will not relay."""

    error = "Upstream rejected the request"


class UpstreamForbidden(UpstreamRejected):
    status_code = 403
    error = "Resource access forbidden (403)"


class LinkExpired(ProxyError):
    status_code = 410
    error = "URL has expired"


class PayloadTooLarge(ProxyError):
    status_code = 413
    error = "Payload Too Large"


class GatewayTimeout(ProxyError):
    status_code = 504
    error = "Gateway Timeout"


class StreamSetupFailure(ProxyError):
    error = "Stream setup error"


class Unclassified(FetchExhausted):
    error = "Proxy server error"


class StreamAborted(Exception):
    """Raised once bytes are on the wire; the server closes the connection."""


_FORBIDDEN_SOLUTION = "Try using a different video format or quality"
_EXPIRED_SOLUTION = "Please refresh the page and try again to get a fresh URL"
_UNCLASSIFIED_SOLUTION = "Try refreshing the page to get a fresh URL or try a different video"


def upstream_forbidden(message: str | None = None, **kwargs) -> UpstreamForbidden:
    return UpstreamForbidden(message, solution=_FORBIDDEN_SOLUTION, upstream_status=403, **kwargs)


def link_expired(message: str) -> LinkExpired:
    return LinkExpired(message, solution=_EXPIRED_SOLUTION)


def for_upstream_status(status: int, *, retry_after: int, attempts: int | None = None) -> ProxyError:
    """Map an upstream error status to the matching taxonomy entry."""
    if status == 403:
        return upstream_forbidden(f"Upstream responded with {status}", attempts=attempts)
    if status == 429:
        return UpstreamRateLimited(
            f"Upstream responded with {status}",
            retry_after=retry_after,
            upstream_status=status,
            attempts=attempts,
        )
    return UpstreamRejected(
        f"Upstream responded with {status}",
        upstream_status=status,
        code=str(status),
        attempts=attempts,
        solution=_UNCLASSIFIED_SOLUTION,
    )


def classify_exception(exc: BaseException, *, attempts: int | None = None) -> ProxyError:
    """Return the taxonomy entry for ``exc``. Never raises."""
    if isinstance(exc, ProxyError):
        return exc
    message = str(exc) or type(exc).__name__
    code = type(exc).__name__
    # ConnectTimeout is both a timeout and a connect failure; treat as timeout.
    if isinstance(exc, httpx.TimeoutException):
        return UpstreamTimeout(message, code=code, attempts=attempts)
    if isinstance(exc, httpx.ConnectError):
        return UpstreamUnreachable(message, code=code, attempts=attempts)
    return Unclassified(message, code=code, attempts=attempts, solution=_UNCLASSIFIED_SOLUTION)


def register_error_handlers(app: FastAPI):
    @app.exception_handler(ProxyError)
    async def _proxy_error_handler(request: Request, exc: ProxyError):
        request_id = getattr(request.state, "request_id", "-")
        if isinstance(exc, Unclassified):
            logger.error(
                "[%s] Unclassified proxy error: %s (%s)",
                request_id, exc, exc.code, exc_info=exc.__cause__ or exc,
            )
        else:
            logger.warning(
                "[%s] %s -> %d: %s", request_id, type(exc).__name__, exc.status_code, exc,
            )
        return exc.to_response()
