"""FastAPI application entrypoint: lifespan, middleware, and routes."""

import asyncio
import logging
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI, Request
from fastapi.exception_handlers import http_exception_handler
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from streamproxy.api.routes import router as api_router
from streamproxy.config import settings
from streamproxy.errors import register_error_handlers
from streamproxy.fetcher import RetryingFetcher
from streamproxy.limiter import AdmissionLimiter, AdmissionMiddleware
from streamproxy.relay import RelayPipeline

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger("main")


def _track_background_task(app: FastAPI, task: asyncio.Task):
    app.state.background_tasks.add(task)
    task.add_done_callback(app.state.background_tasks.discard)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown logic."""
    from streamproxy.config import _env_file_path
    env_path = _env_file_path()
    logger.info(
        "Starting stream proxy (env_file=%s, exists=%s)",
        env_path, env_path.exists(),
    )
    settings.warn_insecure_defaults()
    app.state.background_tasks = set()

    limiter = AdmissionLimiter(
        window_s=settings.rate_limit_window_s,
        max_requests=settings.rate_limit_max_requests,
    )
    app.state.limiter = limiter
    _track_background_task(app, asyncio.create_task(limiter.run()))

    # One pooled client for every upstream fetch; redirects from CDNs are
    # followed so only the final response reaches the relay.
    client = httpx.AsyncClient(follow_redirects=True)
    app.state.upstream_client = client
    fetcher = RetryingFetcher(
        client,
        max_attempts=settings.fetch_max_attempts,
        initial_backoff_ms=settings.fetch_initial_backoff_ms,
        timeout_s=settings.upstream_timeout_s,
        provider_timeout_s=settings.provider_timeout_s,
        rate_limit_retry_after_s=settings.upstream_rate_limit_retry_after_s,
    )
    app.state.relay = RelayPipeline.from_settings(fetcher, settings)

    logger.info(
        "Proxy ready (rate limit %d/%ds, max payload %d bytes, deadline %.0fs)",
        limiter.max_requests, limiter.window_s,
        settings.max_payload_bytes, settings.request_deadline_s,
    )
    yield

    # Shutdown
    logger.info("Shutting down")
    tasks = list(app.state.background_tasks)
    for task in tasks:
        task.cancel()
    if tasks:
        await asyncio.gather(*tasks, return_exceptions=True)
    await client.aclose()
    logger.info("Shutdown complete")


app = FastAPI(
    title="Media Stream Proxy",
    lifespan=lifespan,
    docs_url=None,
    redoc_url=None,
)

# Admission runs before routing so every path is rate limited.
app.add_middleware(AdmissionMiddleware)

# CORS (outermost, so 429 answers carry the headers too)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_methods=["GET"],
    allow_headers=["Range", "Content-Type"],
    expose_headers=["Content-Range", "Content-Length", "Accept-Ranges"],
)

register_error_handlers(app)


@app.exception_handler(StarletteHTTPException)
async def _not_found_handler(request: Request, exc: StarletteHTTPException):
    if exc.status_code == 404:
        return PlainTextResponse("Resource not found", status_code=404)
    return await http_exception_handler(request, exc)


app.include_router(api_router)
