from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Callable, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from taskguard.api.error_handling import register_exception_handlers
from taskguard.api.routes import router
from taskguard.logging import get_logger, set_correlation_id
from taskguard.service.runtime import Runtime, get_runtime

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3
_NO_STORE_PREFIXES = ("/v1/", "/healthz")


@asynccontextmanager
async def lifespan(app: FastAPI):
    runtime = get_runtime()
    logger.info("taskguard_started", version=__version__)
    yield
    try:
        await runtime.close()
    except Exception as exc:
        logger.error("taskguard_shutdown_failed", error_type=type(exc).__name__, error=str(exc))
    else:
        logger.info("taskguard_stopped")


app = FastAPI(title="TaskGuard Auth", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def correlate_request(request: Request, call_next):
    """Adopt the caller's X-Request-ID (or mint one) and echo it on the response."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def harden_response(request: Request, call_next):
    response = await call_next(request)
    headers = response.headers
    headers.setdefault("X-Frame-Options", "DENY")
    headers.setdefault("X-Content-Type-Options", "nosniff")
    headers.setdefault("Referrer-Policy", "no-referrer")
    # Bodies on these paths can carry tokens
    if request.url.path.startswith(_NO_STORE_PREFIXES):
        headers.setdefault("Cache-Control", "no-store")
        headers.setdefault("Pragma", "no-cache")
    headers.setdefault("API-Version", __version__)
    return response


register_exception_handlers(app)
app.include_router(router)


def _store_check(runtime: Runtime) -> Optional[Callable[[], None]]:
    connect = getattr(runtime.store, "_connect", None)
    if connect is None:
        return None

    def ping() -> None:
        with connect() as conn:
            conn.execute("SELECT 1").fetchone()

    return ping


async def _check(component: str, check: Callable[[], None]) -> bool:
    try:
        await asyncio.wait_for(asyncio.to_thread(check), HEALTH_CHECK_TIMEOUT_SECONDS)
    except asyncio.TimeoutError:
        logger.error(
            "health_check_timeout", component=component, timeout=HEALTH_CHECK_TIMEOUT_SECONDS
        )
        return False
    except Exception as exc:
        logger.error("health_check_failed", component=component, error=str(exc))
        return False
    return True


@app.get("/healthz")
async def health():
    """Account store and shared cache reachability; 503 when either is down."""
    runtime = get_runtime()
    store_check = _store_check(runtime)
    store_ok = True if store_check is None else await _check("store", store_check)
    cache_ok = await _check("cache", runtime.cache.verify_connection)

    healthy = store_ok and cache_ok
    body = {
        "status": "healthy" if healthy else "unhealthy",
        "checks": {
            "store": {
                "status": "healthy" if store_ok else "unhealthy",
                "type": "memory" if store_check is None else "postgres",
            },
            "cache": {
                "status": "healthy" if cache_ok else "unhealthy",
                "type": type(runtime.cache).__name__,
            },
        },
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    return JSONResponse(body, status_code=200 if healthy else 503)
