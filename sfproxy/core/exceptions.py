from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Dict, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger("sfproxy")

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, HEAD, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Authorization, X-Requested-With",
}


class ProxyError(Exception):
    """Base class for failures that map onto a JSON error response."""

    status_code = 502

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code

    @property
    def public_message(self) -> str:
        return self.message


class InvalidTarget(ProxyError):
    status_code = 400

    def __init__(self, path: str) -> None:
        super().__init__("Invalid SourceForge URL")
        self.path = path


class UpstreamError(ProxyError):
    """The mirror answered with a non-2xx terminal status."""

    def __init__(self, status_code: int, reason: str) -> None:
        super().__init__(f"SourceForge Error: {reason}", status_code)
        self.reason = reason


class FetchError(ProxyError):
    """The mirror could not be reached or never produced a terminal response."""

    status_code = 502

    @property
    def public_message(self) -> str:
        return f"Proxy request failed: {self.message}"


class RequestTimeout(FetchError):
    def __init__(self, timeout_seconds: float) -> None:
        super().__init__(f"Request timeout after {int(timeout_seconds * 1000)}ms")
        self.timeout_seconds = timeout_seconds


class TooManyRedirects(FetchError):
    def __init__(self, max_redirects: int) -> None:
        super().__init__(f"Too many redirects ({max_redirects})")
        self.max_redirects = max_redirects


class UpstreamUnavailable(FetchError):
    pass


def error_payload(message: str, status_code: int) -> Dict[str, object]:
    return {
        "error": True,
        "message": message,
        "status": status_code,
        "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
    }


def error_response(message: str, status_code: int = 500) -> JSONResponse:
    return JSONResponse(
        error_payload(message, status_code),
        status_code=status_code,
        headers={"Access-Control-Allow-Origin": "*"},
    )


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(ProxyError)
    async def proxy_error_handler(request: Request, exc: ProxyError):
        logger.warning(
            "event=proxy_error path=%s status=%s error=%s",
            request.url.path,
            exc.status_code,
            exc.message,
        )
        return error_response(exc.public_message, exc.status_code)

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        detail = exc.detail if isinstance(exc.detail, str) else "Request failed"
        response = error_response(detail, exc.status_code)
        if exc.headers:
            response.headers.update(exc.headers)
        return response
