from __future__ import annotations

import asyncio
import logging
from typing import Dict
from urllib.parse import urljoin, urlsplit

import httpx

from sfproxy.core.exceptions import RequestTimeout, TooManyRedirects, UpstreamUnavailable

logger = logging.getLogger("sfproxy.fetcher")

DEFAULT_MAX_REDIRECTS = 5


def standard_headers() -> Dict[str, str]:
    """Browser-like headers sent on every outbound attempt, regardless of the client's own."""
    return {
        "User-Agent": (
            "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
            "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
        ),
        "Accept": "*/*",
        "Accept-Language": "en-US,en;q=0.9",
        "Accept-Encoding": "gzip, deflate, br",
        "Connection": "keep-alive",
    }


def is_redirect(status_code: int) -> bool:
    return 300 <= status_code < 400


def resolve_location(location: str, current_url: str) -> str:
    """Absolute locations are used as-is; relative ones resolve against the current origin."""
    parsed = urlsplit(location)
    if parsed.scheme and parsed.netloc:
        return location
    current = urlsplit(current_url)
    origin = f"{current.scheme}://{current.netloc}/"
    return urljoin(origin, location)


def build_request(url: str) -> httpx.Request:
    # Built directly rather than via the client so no stored cookies or default headers leak in
    return httpx.Request("GET", url, headers=standard_headers())


async def send_with_timeout(
    client: httpx.AsyncClient, request: httpx.Request, timeout: float
) -> httpx.Response:
    """Send one attempt without following redirects. The whole attempt is bounded by ``timeout``."""
    try:
        return await asyncio.wait_for(
            client.send(request, stream=True, follow_redirects=False),
            timeout=timeout,
        )
    except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
        raise RequestTimeout(timeout) from exc
    except httpx.HTTPError as exc:
        raise UpstreamUnavailable(str(exc) or exc.__class__.__name__) from exc


async def fetch_with_redirects(
    client: httpx.AsyncClient,
    request: httpx.Request,
    timeout: float,
    max_redirects: int = DEFAULT_MAX_REDIRECTS,
) -> httpx.Response:
    """
    Issue ``request`` and follow redirects manually.

    Each redirect is re-issued as a fresh GET with the standard header set. A
    3xx without a Location header is terminal and returned as-is, as is any
    non-3xx status. At most ``max_redirects`` redirects are followed; the next
    one raises TooManyRedirects. The returned response is opened in streaming
    mode and must be closed by the caller.
    """
    current = request
    redirects = 0

    while True:
        response = await send_with_timeout(client, current, timeout)

        if not is_redirect(response.status_code):
            return response

        location = response.headers.get("location")
        if not location:
            return response

        await response.aclose()
        if redirects >= max_redirects:
            raise TooManyRedirects(max_redirects)

        next_url = resolve_location(location, str(current.url))
        logger.debug(
            "event=redirect status=%s from=%s to=%s hop=%s",
            response.status_code,
            current.url,
            next_url,
            redirects + 1,
        )
        current = build_request(next_url)
        redirects += 1
