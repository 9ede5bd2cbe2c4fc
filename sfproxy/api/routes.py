from __future__ import annotations

import logging
import time
from datetime import datetime, timezone

import httpx
from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import JSONResponse

from sfproxy.config import (
    CACHE_STATUS_HEADER,
    CACHE_TTL_SECONDS,
    MAX_REDIRECTS,
    MIRROR_HOST,
    PROXY_NAME,
    REQUEST_TIMEOUT_SECONDS,
    SERVICE_NAME,
    SERVICE_VERSION,
)
from sfproxy.core.exceptions import CORS_HEADERS, FetchError, InvalidTarget, UpstreamError
from sfproxy.core.fetcher import build_request, fetch_with_redirects
from sfproxy.core.metrics import stats
from sfproxy.core.response import process_response
from sfproxy.core.rewriter import parse_download_path
from sfproxy.services.stats import build_stats_payload

router = APIRouter()

logger = logging.getLogger("sfproxy")

PROCESS_STARTED_AT = time.monotonic()
PREFLIGHT_HEADERS = {**CORS_HEADERS, "Access-Control-Max-Age": "86400"}


def _json(payload: dict) -> JSONResponse:
    return JSONResponse(payload, headers={"Access-Control-Allow-Origin": "*"})


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _raw_path(request: Request) -> str:
    """Request path with its percent-encoding intact, so reserved characters in file names survive."""
    raw = request.scope.get("raw_path")
    if not raw:
        return request.url.path
    return raw.split(b"?", 1)[0].decode("latin-1")


async def get_http_client(request: Request) -> httpx.AsyncClient:
    return request.app.state.http_client


@router.options("/{path:path}", include_in_schema=False)
async def preflight(path: str):  # noqa: ARG001
    return Response(status_code=204, headers=PREFLIGHT_HEADERS)


@router.api_route("/", methods=["GET", "HEAD"])
@router.api_route("/api", methods=["GET", "HEAD"])
async def api_info(request: Request):
    base = str(request.base_url).rstrip("/")
    return _json(
        {
            "name": SERVICE_NAME,
            "version": SERVICE_VERSION,
            "description": "SourceForge mirror download accelerator",
            "usage": {
                "example": f"{base}/projects/project-name/files/file.zip/download",
                "original": "https://sourceforge.net/projects/project-name/files/file.zip/download",
            },
        }
    )


@router.api_route("/health", methods=["GET", "HEAD"])
async def health():
    return _json(
        {
            "status": "healthy",
            "timestamp": _utc_now_iso(),
            "uptime": int(time.monotonic() - PROCESS_STARTED_AT),
            "version": SERVICE_VERSION,
        }
    )


@router.api_route("/stats", methods=["GET", "HEAD"])
async def stats_summary():
    return _json(build_stats_payload(stats))


@router.api_route("/{path:path}", methods=["GET", "HEAD"])
async def proxy_download(
    path: str,  # noqa: ARG001
    request: Request,
    client: httpx.AsyncClient = Depends(get_http_client),
):
    request.state.proxied = True
    stats.record_request()

    request_path = _raw_path(request)
    target = parse_download_path(request_path, MIRROR_HOST)
    if target is None:
        stats.record_error()
        raise InvalidTarget(request_path)

    stats.record_download(target.filename)

    try:
        upstream = await fetch_with_redirects(
            client,
            build_request(target.url),
            REQUEST_TIMEOUT_SECONDS,
            MAX_REDIRECTS,
        )
    except FetchError:
        stats.record_error()
        raise

    if not upstream.is_success:
        await upstream.aclose()
        stats.record_error()
        raise UpstreamError(upstream.status_code, upstream.reason_phrase)

    if upstream.headers.get(CACHE_STATUS_HEADER) == "HIT":
        stats.record_cache_hit()

    content_length = upstream.headers.get("content-length")
    if content_length:
        try:
            stats.record_transfer(int(content_length))
        except ValueError:
            logger.debug("event=bad_content_length value=%s", content_length)

    logger.info(
        "event=file_proxied project=%s file=%s status=%s size_bytes=%s",
        target.project_name,
        target.file_path,
        upstream.status_code,
        content_length,
    )
    return process_response(upstream, target.url, CACHE_TTL_SECONDS, PROXY_NAME)
