"""
api/main.py -- FastAPI application entry point for Caskbook auth.

Exposes registration, login, session and account-security endpoints over
HTTP for the Caskbook web client and mobile/API clients.

Run with:  uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
                              (credentials allowed: the session cookie must flow)
  3. SlowAPIMiddleware     -- enforces per-route limits from api.limiter
  4. SessionMiddleware     -- authlib's OAuth state storage only; login
                              sessions are server-side (auth/sessions.py)

Lifespan handles startup (engine, gateway, OAuth registry, purge task) and
shutdown (cancel purge task, dispose engine) symmetrically.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.openapi.docs import get_redoc_html, get_swagger_ui_html
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy.exc import SQLAlchemyError
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException
from starlette.middleware.sessions import SessionMiddleware

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from auth.db import build_engine
from auth.dependencies import get_current_user, set_session_cookie
from auth.errors import AuthError, RateLimited
from auth.gateway import build_gateway
from auth.models import UserProfile
from auth.oauth import build_oauth, is_google_configured
from core.config import get_settings

VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("caskbook.api")

settings = get_settings()

# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------

PURGE_INTERVAL_SECONDS = 60 * 60


async def _purge_loop(app: FastAPI) -> None:
    """Purge expired sessions, tokens, attempts and reset tokens every hour.

    The purge itself is blocking SQL, so it runs in the threadpool. A storage
    failure is logged and retried on the next tick; CancelledError from
    task.cancel() during shutdown propagates out of asyncio.sleep.
    """
    while True:
        await asyncio.sleep(PURGE_INTERVAL_SECONDS)
        try:
            counts = await run_in_threadpool(app.state.gateway.purge)
        except SQLAlchemyError:
            logger.exception("Purge failed; will retry next interval")
            continue
        logger.info("Purged expired auth records: %s", counts)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build every auth component once and share it through app.state.

    Startup order matters:
      1. Engine first -- creates missing tables, so stores can query at once.
      2. Gateway second -- wires users, sessions, tokens, lockout, limiter
         and reset service onto the same engine.
      3. Purge task last -- references app.state.gateway.
    """
    logger.info("Caskbook auth API starting up (profile=%s)", settings.profile.value)
    app.state.settings = settings
    app.state.engine = build_engine(settings.database_url, settings.storage_timeout_seconds)
    app.state.gateway = build_gateway(settings, app.state.engine)
    app.state.oauth = build_oauth(settings)
    logger.info("Auth initialized (google_oauth=%s)", is_google_configured(settings))
    app.state.purge_task = asyncio.create_task(_purge_loop(app))

    yield

    app.state.purge_task.cancel()
    app.state.engine.dispose()
    logger.info("Caskbook auth API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Caskbook Auth API",
    description="Accounts, sessions and account security for Caskbook.",
    version=VERSION,
    lifespan=lifespan,
    # Built-in /docs and /redoc are replaced below with auth-protected routes.
    docs_url=None,
    redoc_url=None,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# add_middleware() calls are applied outermost-first from the caller's
# perspective. Register in the order you want the request to encounter them.
# ---------------------------------------------------------------------------

app.add_middleware(TrustedHostMiddleware, allowed_hosts=settings.allowed_hosts)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# authlib keeps the OAuth state value here between the authorization redirect
# and the callback (CSRF protection for the authorization code flow).
app.add_middleware(
    SessionMiddleware,
    secret_key=settings.secret_key,
    session_cookie="caskbook.oauth",
    max_age=600,
    same_site="lax",
    https_only=settings.is_production,
)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


# ---------------------------------------------------------------------------
# Rolling session cookie
#
# auth.dependencies records the session id on request.state when it resolves
# an identity. Rewriting the cookie here keeps the browser's Max-Age in step
# with the server-side sliding expiry, and delivers the cookie for a session
# that was just opened by bearer-token authentication.
# ---------------------------------------------------------------------------


@app.middleware("http")
async def session_cookie(request: Request, call_next):
    response = await call_next(request)
    session_id = getattr(request.state, "session_cookie", None)
    if session_id:
        app_settings = request.app.state.settings
        cookie_name = app_settings.session_cookie_name
        already_set = any(
            key == b"set-cookie" and value.startswith(f"{cookie_name}=".encode())
            for key, value in response.raw_headers
        )
        if not already_set:
            set_session_cookie(response, app_settings, session_id)
    return response


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

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])


# ---------------------------------------------------------------------------
# Auth-protected API documentation
# ---------------------------------------------------------------------------


@app.get("/docs", include_in_schema=False)
def docs(user: UserProfile = Depends(get_current_user)):
    """Swagger UI -- requires authentication."""
    return get_swagger_ui_html(openapi_url="/openapi.json", title="Caskbook Auth API")


@app.get("/redoc", include_in_schema=False)
def redoc(user: UserProfile = Depends(get_current_user)):
    """ReDoc UI -- requires authentication."""
    return get_redoc_html(openapi_url="/openapi.json", title="Caskbook Auth API")


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


def _error_response(status_code: int, code: str, message: str, detail: str | None = None, **hints) -> JSONResponse:
    content = ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail, **hints))
    return JSONResponse(status_code=status_code, content=content.model_dump(exclude_none=True))


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Render any gateway failure. Hints (remainingAttempts, lockedUntil,
    retryAfter) are merged into the error object."""
    if exc.kind == "internal":
        logger.error("%s on %s %s", exc.code, request.method, request.url.path)
    response = _error_response(exc.status_code, exc.code, exc.message, **exc.hints())
    if isinstance(exc, RateLimited):
        response.headers["Retry-After"] = str(exc.retry_after)
    response.headers["Cache-Control"] = "no-store"
    return response


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a slowapi limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = _error_response(
        429, "rate_limited", "Too many requests.", detail=str(exc.detail), retryAfter=retry_after
    )
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 400 when the body or query fails validation.

    Only field locations and messages are echoed; pydantic's error dicts
    also carry the raw input, which may be a password.
    """
    problems = []
    for err in exc.errors():
        loc = ".".join(str(part) for part in err.get("loc", ())[1:]) or "body"
        problems.append(f"{loc}: {err.get('msg', 'invalid')}")
    return _error_response(400, "validation_error", "Request validation failed.", detail="; ".join(problems))


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Structured error for HTTP exceptions, including routing 404 and 405."""
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})
    return _error_response(exc.status_code, f"http_{exc.status_code}", str(exc.detail))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception is written to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error_response(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable
# regardless of router registration state. No rate limit applied.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
def health(request: Request) -> JSONResponse:
    """Return liveness, version and per-component status (503 when storage is down)."""
    components: dict[str, str] = {}
    try:
        request.app.state.gateway.users.ping()
        components["database"] = "ok"
    except SQLAlchemyError:
        logger.exception("Health check: database unreachable")
        components["database"] = "unavailable"
    components["google_oauth"] = "configured" if is_google_configured(request.app.state.settings) else "disabled"

    healthy = components["database"] == "ok"
    body = HealthResponse(status="ok" if healthy else "degraded", version=VERSION, components=components)
    return JSONResponse(status_code=200 if healthy else 503, content=body.model_dump())
