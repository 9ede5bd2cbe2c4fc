from __future__ import annotations

from typing import Mapping

import httpx
from fastapi.responses import StreamingResponse
from starlette.background import BackgroundTask

from sfproxy.core.exceptions import CORS_HEADERS
from sfproxy.core.rewriter import filename_from_url

STRIPPED_HEADERS = {"set-cookie", "server", "location"}

# Framing is owned by the ASGI server, not the upstream
HOP_BY_HOP_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
}


def rewrite_headers(
    upstream_headers: Mapping[str, str],
    target_url: str,
    cache_ttl: int,
    proxy_name: str,
) -> httpx.Headers:
    headers = httpx.Headers(upstream_headers)

    filename = filename_from_url(target_url)
    if filename and "." in filename:
        headers["Content-Disposition"] = f'attachment; filename="{filename}"'

    headers["Cache-Control"] = f"public, max-age={cache_ttl}"
    headers["X-Proxy-By"] = proxy_name

    for name in STRIPPED_HEADERS | HOP_BY_HOP_HEADERS:
        if name in headers:
            del headers[name]

    headers.update(CORS_HEADERS)
    return headers


def process_response(
    upstream: httpx.Response,
    target_url: str,
    cache_ttl: int,
    proxy_name: str,
) -> StreamingResponse:
    """Wrap the terminal mirror response; the body is streamed through undecoded."""
    headers = rewrite_headers(upstream.headers, target_url, cache_ttl, proxy_name)
    return StreamingResponse(
        upstream.aiter_raw(),
        status_code=upstream.status_code,
        headers=dict(headers),
        background=BackgroundTask(upstream.aclose),
    )
