"""Public HTTP endpoints: the streaming proxy and the info page."""

import asyncio
import logging
import secrets

from fastapi import APIRouter, Request
from fastapi.responses import HTMLResponse, RedirectResponse, Response

from streamproxy.errors import MissingParameter
from streamproxy.models import ProxyRequest
from streamproxy.urls import is_page_url

router = APIRouter()
logger = logging.getLogger("api.routes")


def new_request_id() -> str:
    return secrets.token_hex(4)


@router.get("/proxy")
async def proxy(request: Request, url: str | None = None) -> Response:
    """Stream ``url`` back to the client, or redirect if it is a web page."""
    if not url:
        raise MissingParameter()

    # Browsable pages are never fetched; send the client there directly.
    if is_page_url(url):
        logger.info("Redirecting user to page URL: %s", url[:100])
        return RedirectResponse(url, status_code=302)

    proxy_request = ProxyRequest(
        target_url=url,
        request_id=new_request_id(),
        received_at=asyncio.get_running_loop().time(),
        range_header=request.headers.get("range"),
        user_agent=request.headers.get("user-agent"),
    )
    request.state.request_id = proxy_request.request_id
    logger.info(
        "[%s] Processing request for: %s (range=%s)",
        proxy_request.request_id, proxy_request.url_preview, proxy_request.range_header or "-",
    )
    return await request.app.state.relay.open(proxy_request)


_INDEX_TEMPLATE = """<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>Media stream proxy</title></head>
<body>
<h1>Media stream proxy</h1>
<p>Usage: <code>GET /proxy?url=&lt;direct media URL&gt;</code>.
Byte ranges are honoured via the <code>Range</code> header.</p>
<ul>
<li>Rate limit: {max_requests} requests per {window_s} seconds per client</li>
<li>Maximum payload: {max_mib} MB</li>
<li>Overall request deadline: {deadline_s} seconds</li>
<li>Clients in the current window: {tracked}</li>
</ul>
<p>Web page links (watch pages, playlists, channels) are redirected, not proxied.</p>
</body>
</html>
"""


@router.get("/", response_class=HTMLResponse)
async def index(request: Request):
    limiter = request.app.state.limiter
    relay = request.app.state.relay
    return _INDEX_TEMPLATE.format(
        max_requests=limiter.max_requests,
        window_s=limiter.window_s,
        max_mib=relay.max_payload_bytes // (1024 * 1024),
        deadline_s=f"{relay.deadline_s:g}",
        tracked=limiter.tracked_clients,
    )
