import logging
import time
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI, Request

from sfproxy.api.routes import router
from sfproxy.config import (
    CLIENT_IP_HEADER,
    ENABLE_SYNC_SCHEDULER,
    LOG_LEVEL,
    REQUEST_TIMEOUT_SECONDS,
    SERVICE_NAME,
    SERVICE_VERSION,
    STATS_SYNC_INTERVAL_SECONDS,
    SYNC_SCHEDULER_MINUTES,
)
from sfproxy.core.exceptions import error_response, register_exception_handlers
from sfproxy.core.metrics import stats
from sfproxy.scheduler import start_stats_sync
from sfproxy.services.persistence import StatsPersistence
from sfproxy.storage import create_store

logging.basicConfig(level=LOG_LEVEL)
logger = logging.getLogger("sfproxy")

persistence = StatsPersistence(stats, create_store(), STATS_SYNC_INTERVAL_SECONDS)


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.http_client = httpx.AsyncClient(
        timeout=httpx.Timeout(REQUEST_TIMEOUT_SECONDS),
        follow_redirects=False,
    )
    scheduler = None
    if ENABLE_SYNC_SCHEDULER and persistence.store is not None:
        scheduler = start_stats_sync(persistence, logger, SYNC_SCHEDULER_MINUTES)

    yield

    if scheduler is not None:
        scheduler.shutdown(wait=False)
    await persistence.wait_pending()
    if persistence.hydrated:
        try:
            await persistence.flush()
        except Exception as exc:
            logger.warning("event=shutdown_flush_failed error=%s", exc)
    if persistence.store is not None:
        await persistence.store.close()
    await app.state.http_client.aclose()


app = FastAPI(title=SERVICE_NAME, version=SERVICE_VERSION, lifespan=lifespan)


@app.middleware("http")
async def dispatch(request: Request, call_next):
    """Outermost boundary: stats lifecycle on the way in, generic 500 on any escaped error."""
    started = time.perf_counter()
    try:
        await persistence.hydrate()
        persistence.maybe_rollover()
        persistence.maybe_flush()
        stats.record_client(request.headers.get(CLIENT_IP_HEADER) or "unknown")

        response = await call_next(request)
    except Exception:
        stats.record_error()
        logger.exception("event=unhandled_error method=%s path=%s", request.method, request.url.path)
        return error_response("Internal Server Error", 500)

    if getattr(request.state, "proxied", False):
        stats.record_response_time(int((time.perf_counter() - started) * 1000))
    return response


app.include_router(router)
register_exception_handlers(app)
