from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, Dict, List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from heimdall.api.error_handling import register_exception_handlers
from heimdall.api.routes import router
from heimdall.config import get_settings
from heimdall.logging import get_logger, set_correlation_id
from heimdall.service.clock import format_rfc3339

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup so configuration errors surface immediately."""
    from heimdall.service.runtime import get_runtime

    get_runtime()
    logger.info("admin_api_started", version=__version__)

    yield

    try:
        await get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Heimdall Admin API", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    origins = get_settings().cors_allow_origins
    if origins:
        return origins
    # Local admin frontends; no wildcard because the Authorization header is sent.
    return [
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
    ]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag every log line of a request with one id, echoed in ``X-Request-ID``."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith("/admin/"):
        response.headers.setdefault("Cache-Control", "no-store")
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Report document store and key-value reachability."""
    from heimdall.service.runtime import get_runtime

    runtime = get_runtime()

    async def _check(label: str, awaitable) -> bool:
        try:
            result = await asyncio.wait_for(awaitable, HEALTH_CHECK_TIMEOUT_SECONDS)
            return result is not False
        except asyncio.TimeoutError:
            logger.error(
                "health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS
            )
        except Exception as exc:
            logger.error("health_check_failed", component=label, error=str(exc))
        return False

    store_ok = await _check("store", asyncio.to_thread(runtime.store.ping))
    cache_ok = await _check("cache", runtime.cache.ping())
    checks = {
        "store": {
            "status": "healthy" if store_ok else "unhealthy",
            "type": type(runtime.store).__name__,
        },
        "cache": {
            "status": "healthy" if cache_ok else "unhealthy",
            "type": type(runtime.cache).__name__,
        },
    }
    return {
        "status": "healthy" if store_ok and cache_ok else "unhealthy",
        "checks": checks,
        "version": __version__,
        "timestamp": format_rfc3339(runtime.clock.now()),
    }
