"""
api/main.py -- FastAPI application entry point for the Everglass CRM API.

Run with:      python main.py serve
               uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. CORSMiddleware     -- credentials-enabled CORS for the configured origins
  2. SlowAPIMiddleware  -- enforces per-route rate limits from api.limiter

Lifespan handles startup (stores, auth workflow, session sweep task) and
shutdown (cancel sweep task, dispose engines) symmetrically.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from api.limiter import limiter
from api.models import HealthResponse
from api.routes.auth import router as auth_router
from api.routes.clients import router as clients_router
from api.routes.stats import router as stats_router
from auth.passwords import SessionCookieSigner
from auth.service import AuthService
from auth.sessions import SessionStore
from auth.store import UserStore
from core.config import build_auth_config, get_settings
from core.errors import AppError, FieldError, ValidationFailed, not_found
from crm.store import CRMStore

API_NAME = "Everglass CRM API"
API_VERSION = "1.0.0"

# Advertised by GET / and by the 404 payload.
ENDPOINTS = {
    "health": "GET /health",
    "login": "POST /auth/login",
    "logout": "POST /auth/logout",
    "me": "GET /auth/me",
    "change_password": "POST /auth/change-password",
    "reset_password": "POST /auth/reset-password",
    "users": "GET|POST /auth/users, PATCH /auth/users/{id}",
    "clients": "GET /api/clients, GET /api/clients/{id}",
    "stats": "GET /api/stats/global|franchises/{id}|centers/{id}",
}

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("everglass.api")


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Background session sweep
# ---------------------------------------------------------------------------


async def _sweep_loop(app: FastAPI, period_seconds: int) -> None:
    """Delete expired sessions every period_seconds.

    Expired sessions are already refused on read; the sweep only keeps the
    table small. A failed pass is logged and the next one runs on schedule;
    nothing awaits this task, so an escaping exception would be lost.
    CancelledError (a BaseException) from task.cancel() during shutdown
    still propagates and unwinds the coroutine.
    """
    while True:
        await asyncio.sleep(period_seconds)
        try:
            app.state.sessions.clean_expired()
        except Exception:
            logger.exception("Session sweep failed; retrying in %ds", period_seconds)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build every long-lived collaborator once and tear them down on exit.

    Startup order matters:
      1. Settings and the derived AuthSecurityConfig -- everything else reads them.
      2. Stores -- each creates its tables on first use.
      3. AuthService -- needs both user and session stores.
      4. Sweep task last -- references app.state.sessions.
    """
    settings = get_settings()
    config = build_auth_config(settings)
    logger.info("Everglass API starting up (env=%s)", settings.node_env)

    app.state.settings = settings
    app.state.started_at = time.time()
    app.state.cookie_signer = SessionCookieSigner(settings.session_secret)
    app.state.users = UserStore(settings.database_url)
    app.state.sessions = SessionStore(settings.database_url, timeout_seconds=config.session_timeout_seconds)
    app.state.crm = CRMStore(settings.database_url)
    app.state.auth = AuthService(app.state.users, app.state.sessions, config)
    if not app.state.users.has_users():
        logger.warning("No employee accounts yet -- run `python main.py create-admin`")
    app.state.sweep_task = asyncio.create_task(_sweep_loop(app, settings.session_check_period_seconds))
    logger.info(
        "Auth initialized (session timeout %d min, max %d login attempts)",
        config.session_timeout_minutes,
        config.max_login_attempts,
    )

    yield

    app.state.sweep_task.cancel()
    app.state.crm.close()
    app.state.sessions.close()
    app.state.users.close()
    logger.info("Everglass API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title=API_NAME,
    description="Employee authentication, sessions, and scoped access to the Everglass CRM.",
    version=API_VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Register in the order you want the request to encounter them: CORS -> SlowAPI.
# allow_credentials is required for the browser to send the session cookie.
# ---------------------------------------------------------------------------

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE"],
    allow_headers=["Content-Type"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


# ---------------------------------------------------------------------------
# Request logging middleware
# ---------------------------------------------------------------------------


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, tags=["Auth"])
app.include_router(clients_router, prefix="/api", tags=["Clients"])
app.include_router(stats_router, prefix="/api", tags=["Stats"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same {"success": false, "error": {...}} envelope so
# API clients can parse errors uniformly without inspecting status codes.
# ---------------------------------------------------------------------------


def _error_response(status_code: int, code: str, message: str, details: dict | None = None) -> JSONResponse:
    error: dict = {"code": code, "message": message}
    if details is not None:
        error["details"] = details
    return JSONResponse(status_code=status_code, content={"success": False, "error": error})


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    """Serialize taxonomy errors with their own status and code."""
    if exc.status_code >= 500:
        logger.error("%s on %s %s: %s", exc.code, request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded.

    Retry-After tells clients how many seconds to wait before retrying.
    """
    retry_after = int(getattr(exc, "retry_after", 60))
    logger.warning(
        "Rate limit exceeded on %s from %s",
        request.url.path,
        request.client.host if request.client else "unknown",
    )
    response = _error_response(
        429, "RATE_LIMITED", "Too many requests. Please try again later.", {"limit": str(exc.detail)}
    )
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Map request-body and parameter failures to VALIDATION_ERROR field errors.

    The leading "body" / "query" / "path" segment is dropped from the field
    path so clients see "new_password", not "body.new_password".
    """
    errors = []
    for err in exc.errors():
        loc = [str(part) for part in err.get("loc", ()) if part not in ("body", "query", "path")]
        errors.append(FieldError(".".join(loc) or "body", err.get("msg", "Invalid value.")))
    failure = ValidationFailed(errors)
    return JSONResponse(status_code=failure.status_code, content=failure.to_dict())


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Return a structured error for framework HTTP exceptions.

    Unknown routes get NOT_FOUND with the requested path and the endpoint map
    so a client developer can see what exists.
    """
    if exc.status_code == 404:
        err = not_found()
        return _error_response(
            404,
            err.code,
            f"Route {request.method} {request.url.path} not found.",
            {"path": request.url.path, "available_endpoints": ENDPOINTS},
        )
    return _error_response(exc.status_code, f"HTTP_{exc.status_code}", str(exc.detail))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception is written to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error_response(500, "INTERNAL_ERROR", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Root and health endpoints
#
# Defined directly in main.py (not in a router) so they are always reachable
# regardless of router registration state. No rate limit applied -- health
# checks from load balancers and monitoring systems must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/", tags=["Health"])
def root() -> dict:
    """Return API identity and the endpoint map."""
    return {
        "success": True,
        "data": {
            "name": API_NAME,
            "version": API_VERSION,
            "status": "running",
            "timestamp": _utc_now_iso(),
            "endpoints": ENDPOINTS,
        },
    }


@app.get("/health", tags=["Health"])
def health(request: Request):
    """Report liveness, database connectivity, and process uptime."""
    uptime = round(time.time() - request.app.state.started_at, 3)
    try:
        request.app.state.crm.ping()
    except SQLAlchemyError:
        logger.exception("Health check: database unreachable")
        return JSONResponse(
            status_code=500,
            content=HealthResponse(
                status="unhealthy", database="disconnected", uptime=uptime, timestamp=_utc_now_iso()
            ).model_dump(),
        )
    return HealthResponse(status="healthy", database="connected", uptime=uptime, timestamp=_utc_now_iso())
