from __future__ import annotations

import asyncio
import hmac
from contextlib import asynccontextmanager
from typing import Any, Dict, List

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from trustcore.api.error_handling import error_response, register_exception_handlers
from trustcore.api.routes import router
from trustcore.config import Settings
from trustcore.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3


@asynccontextmanager
async def lifespan(app: FastAPI):
    from trustcore.service.runtime import get_runtime

    runtime = get_runtime()
    try:
        runtime.remember_me.cleanup_expired()
    except Exception as exc:
        logger.error("startup_remember_me_cleanup_failed", error=str(exc))

    yield

    try:
        if runtime.cache is not None:
            await runtime.cache.close()
        close = getattr(runtime.email.transport, "close", None)
        if close is not None:
            close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="TrustCore", version=__version__, lifespan=lifespan)


_CSRF_SAFE_METHODS = {"GET", "HEAD", "OPTIONS", "TRACE"}


def _allowed_origins() -> List[str]:
    if _settings.cors_origins:
        return _settings.cors_origins
    return ["http://localhost:3000", "http://localhost:5173", "http://127.0.0.1:3000"]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "X-CSRF-Token", "X-Request-ID"],
    expose_headers=["X-Request-ID", "API-Version"],
    max_age=3600,
)


@app.middleware("http")
async def enforce_csrf_token(request: Request, call_next):
    """Double-submit check: ``X-CSRF-Token`` must match the sealed session's token."""
    if not _settings.enable_csrf or request.method.upper() in _CSRF_SAFE_METHODS:
        return await call_next(request)
    blob = request.cookies.get(_settings.session_cookie_name)
    if not blob:
        return await call_next(request)

    from trustcore.service.runtime import get_runtime

    session = get_runtime().sessions.unseal(blob)
    if not session.is_logged_in or not session.csrf_token:
        return await call_next(request)
    header_token = request.headers.get("X-CSRF-Token") or ""
    if not hmac.compare_digest(header_token, session.csrf_token):
        logger.warning("csrf_token_rejected", path=request.url.path, method=request.method)
        return error_response(403, "missing or invalid CSRF token", code="FORBIDDEN")
    return await call_next(request)


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    if request.url.scheme == "https" and _settings.enable_hsts:
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    response.headers.setdefault("API-Version", __version__)
    return response


# Registered last so it runs first and every later log line carries the id
@app.middleware("http")
async def add_correlation_id(request: Request, call_next):
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> JSONResponse:
    """Report store, Redis and email breaker state."""
    from trustcore.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {"store": {"status": "healthy", "type": "memory"}}
    healthy = True

    if runtime.cache is not None:
        try:
            await asyncio.wait_for(
                asyncio.to_thread(runtime.cache.verify_connection),
                HEALTH_CHECK_TIMEOUT_SECONDS,
            )
            checks["redis"] = {"status": "healthy"}
        except Exception as exc:
            logger.error("health_check_redis_failed", error=str(exc))
            checks["redis"] = {"status": "unhealthy"}
            healthy = False
    else:
        checks["redis"] = {"status": "not_configured"}

    breaker = runtime.email_breaker.get_state()
    checks["email"] = {
        "status": "healthy" if breaker.state.value == "CLOSED" else "degraded",
        "circuit": breaker.state.value,
    }

    body = {
        "status": "healthy" if healthy else "unhealthy",
        "version": __version__,
        "checks": checks,
    }
    return JSONResponse(status_code=200 if healthy else 503, content=body)
