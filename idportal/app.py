from __future__ import annotations

import asyncio
import secrets
from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI

from idportal.api.error_handling import register_exception_handlers
from idportal.api.routes import router
from idportal.api.schemas import HealthResponse
from idportal.config import get_settings
from idportal.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup, close its clients on shutdown."""
    from idportal.service.runtime import get_runtime

    get_runtime()
    yield
    try:
        await get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error_type=type(exc).__name__, error=str(exc))


app = FastAPI(title="Identity Portal", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Propagate ``X-Request-ID`` (or a fresh UUID) into logs and the response."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def ensure_csrf_cookie(request, call_next):
    """Give every client a script-readable double-submit CSRF token."""
    settings = get_settings()
    token = request.cookies.get(settings.csrf_cookie_name)
    issued = not token
    if issued:
        token = secrets.token_urlsafe(32)
    request.state.csrf_token = token
    response = await call_next(request)
    if issued:
        response.set_cookie(
            settings.csrf_cookie_name,
            token,
            httponly=False,
            secure=settings.session_cookie_secure,
            samesite="lax",
            path="/",
        )
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "no-referrer")
    response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    response.headers.setdefault("Pragma", "no-cache")
    response.headers.setdefault(
        "Content-Security-Policy",
        "default-src 'self'; frame-ancestors 'none'; base-uri 'self'; form-action 'self'",
    )
    if request.url.scheme == "https" and get_settings().enable_hsts:
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Liveness plus a bounded Redis check when Redis is configured."""
    from idportal.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}
    healthy = True

    verify = getattr(runtime.cache, "verify_connection", None)
    if verify is None:
        checks["redis"] = {"status": "not_configured"}
    else:
        try:
            await asyncio.wait_for(asyncio.to_thread(verify), HEALTH_CHECK_TIMEOUT_SECONDS)
            checks["redis"] = {"status": "healthy"}
        except asyncio.TimeoutError:
            logger.error("health_check_timeout", component="redis")
            checks["redis"] = {"status": "unhealthy"}
            healthy = False
        except Exception as exc:
            logger.error("health_check_redis_failed", error=str(exc))
            checks["redis"] = {"status": "unhealthy"}
            healthy = False

    checks["backend"] = {"type": "memory" if runtime.settings.use_memory_backend else "freeipa"}
    return HealthResponse(status="healthy" if healthy else "unhealthy", checks=checks).model_dump()
