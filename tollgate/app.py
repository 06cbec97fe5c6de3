from __future__ import annotations

import asyncio
import json
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from tollgate.api.error_handling import register_exception_handlers
from tollgate.api.routes import router
from tollgate.api.schemas import Envelope, ErrorBody
from tollgate.config import get_settings
from tollgate.logging import get_logger, set_correlation_id
from tollgate.service.guard import SAFE_METHODS
from tollgate.tracking import init_tracking

logger = get_logger(__name__)

_settings = get_settings()

__version__ = "0.1.0"

CSRF_COOKIE_MAX_AGE = 24 * 60 * 60
HEALTH_CHECK_TIMEOUT_SECONDS = 3


@asynccontextmanager
async def lifespan(app: FastAPI):
    from tollgate.service.runtime import get_runtime

    init_tracking(_settings)
    get_runtime()
    yield
    try:
        await get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Tollgate", version=__version__, lifespan=lifespan)


def _forbidden(message: str) -> JSONResponse:
    envelope = Envelope(status="error", error=ErrorBody(code="forbidden", message=message))
    return JSONResponse(status_code=403, content=envelope.model_dump())


async def _body_csrf_token(request: Request, field: str) -> Optional[str]:
    if "application/json" not in request.headers.get("content-type", ""):
        return None
    try:
        payload = json.loads(await request.body() or b"null")
    except ValueError:
        return None
    if isinstance(payload, dict) and isinstance(payload.get(field), str):
        return payload[field]
    return None


@app.middleware("http")
async def enforce_csrf(request: Request, call_next):
    """Double-submit CSRF check for unsafe requests, token minting for safe ones.

    The secret lives in an httpOnly cookie; the token derived from it is sent
    back in the ``X-CSRF-Token`` header and must be echoed on unsafe requests.
    """
    from tollgate.service.runtime import get_runtime

    runtime = get_runtime()
    guard = runtime.csrf
    settings = runtime.settings
    path = request.url.path

    if request.method.upper() in SAFE_METHODS:
        if guard.is_exempt(path):
            return await call_next(request)
        minted = guard.mint(request.cookies.get(settings.csrf_cookie_name))
        request.state.csrf_token = minted.token
        response = await call_next(request)
        response.headers[settings.csrf_header_name] = minted.token
        if minted.new_secret:
            response.set_cookie(
                settings.csrf_cookie_name,
                minted.secret,
                httponly=True,
                secure=settings.is_production,
                samesite="strict" if settings.is_production else "lax",
                max_age=CSRF_COOKIE_MAX_AGE,
                path="/",
            )
        return response

    headers = {key.lower(): value for key, value in request.headers.items()}
    body_token = None
    if not guard.is_exempt(path) and not headers.get(settings.csrf_header_name.lower()):
        body_token = await _body_csrf_token(request, settings.csrf_body_field)
    rejection = guard.check(request.method, path, headers, request.cookies, body_token)
    if rejection:
        return _forbidden(rejection)
    return await call_next(request)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Bind a correlation ID for the request and echo it in ``X-Request-ID``."""
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
    if request.url.path.startswith("/auth/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    if _settings.is_production:
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    return response


# Added last so it wraps the CSRF rejection responses too
app.add_middleware(
    CORSMiddleware,
    allow_origins=sorted(_settings.origin_allow_list),
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", _settings.csrf_header_name, "X-Request-ID"],
    expose_headers=[_settings.csrf_header_name, "X-Request-ID"],
    max_age=3600,
)

register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Report profile store and Redis reachability."""
    from tollgate.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}

    async def _probe(label: str, awaitable) -> bool:
        try:
            return bool(await asyncio.wait_for(awaitable, HEALTH_CHECK_TIMEOUT_SECONDS))
        except asyncio.TimeoutError:
            logger.error("health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS)
        except Exception as exc:
            logger.error("health_check_failed", component=label, error=str(exc))
        return False

    store_ok = await _probe("profile_store", asyncio.to_thread(runtime.profiles.ping))
    checks["profile_store"] = {"status": "healthy" if store_ok else "unhealthy"}
    healthy = store_ok

    if runtime.cache is not None:
        redis_ok = await _probe("redis", runtime.cache.ping())
        checks["redis"] = {"status": "healthy" if redis_ok else "unhealthy"}
        healthy = healthy and redis_ok
    else:
        checks["redis"] = {"status": "not_configured"}

    return {
        "status": "healthy" if healthy else "unhealthy",
        "checks": checks,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
