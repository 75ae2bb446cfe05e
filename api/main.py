"""
api/main.py -- FastAPI application entry point for Warden.

Exposes the command tree (GET /api/<command>/...) for the CLI client and a
small JSON session API (/api/v1/auth/*) for browsers and scripts.

Run with:      uvicorn asgi:app --port 8334
Configure via: WARDEN_* environment variables (core/config.py)

Middleware stack (outermost to innermost):
  1. log_requests        -- one log line per request with latency
  2. request_context     -- builds the RequestContext, authenticates the
                            bearer token, refreshes it on the way out
  3. CORSMiddleware      -- adds CORS headers for allowed browser origins
  4. SlowAPIMiddleware   -- enforces per-route rate limits from api.limiter

Each add_middleware() / @app.middleware call wraps everything registered
before it, so registration order below is innermost first.

Lifespan handles startup (services, workers, bootstrap sysadmin) and
shutdown (stop workers, close DB) symmetrically.

Security notes:
  [A1] A presented token that fails verification (bad signature, expired,
       revoked, unknown subject) is answered with 401 and
       WWW-Authenticate: Bearer error="invalid_token" before any route runs.
       The CLI deletes its stored token on that signal.
  [A2] A fresh token is only handed out when the principal changed during
       the request (login, sysadmin swap) or the presented one is inside its
       refresh window.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from starlette.concurrency import run_in_threadpool

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.cli import router as cli_router
from api.routes.v1.auth import TOKEN_COOKIE, set_token_cookie
from api.routes.v1.auth import router as auth_router
from api.services import build_services, start_workers, stop_workers
from core.config import get_settings
from core.context import RequestContext
from core.errors import STATUS_CODES, Unauthorized, WardenError
from ratelimit.iptrk import UNKNOWN_ADDRESS

VERSION = "0.3.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("warden.api")


def error_response(status: int, code: str, message: str, detail: str | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status,
        content=ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail)).model_dump(),
    )


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build the services container, start the workers, tear down on exit.

    Startup order matters:
      1. Services first -- opens the database and loads platform settings.
      2. Workers second -- revocation sweeper and IPtrk writer need the DB.
      3. Bootstrap sysadmin last -- goes through the normal user store.
    """
    settings = get_settings()
    logger.info("Warden API starting up")
    services = build_services(settings)
    start_workers(services)
    services.users.bootstrap_admin(settings.admin_username, settings.admin_password)
    app.state.services = services
    logger.info("Services initialized (check_2fa=%s)", settings.check_2fa)

    yield

    stop_workers(services)
    services.db.close()
    logger.info("Warden API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Warden API",
    description="Authentication, authorization and abuse mitigation for a member platform.",
    version=VERSION,
    lifespan=lifespan,
)

app.add_middleware(SlowAPIMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost", "http://localhost:3000", "http://127.0.0.1"],
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type", "Authorization"],
    expose_headers=["WWW-Authenticate", "X-ReturnCode"],
    max_age=3600,
)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


# ---------------------------------------------------------------------------
# Request context middleware
# ---------------------------------------------------------------------------


def _bearer(request: Request) -> str:
    header = request.headers.get("Authorization", "")
    scheme, _, value = header.partition(" ")
    if scheme.lower() == "bearer" and value.strip():
        return value.strip()
    return request.cookies.get(TOKEN_COOKIE, "")


def _language(request: Request) -> str:
    raw = request.headers.get("Accept-Language", "")
    first = raw.split(",", 1)[0].split(";", 1)[0].strip()
    return first.split("-", 1)[0].lower() or "en"


def _invalid_token_header(realm: str) -> str:
    return f'Bearer realm="{realm}", error="invalid_token"'


@app.middleware("http")
async def request_context(request: Request, call_next):
    """Attach a RequestContext to request.state and manage the token on it."""
    services = request.app.state.services
    ctx = RequestContext(
        services,
        client_ip=request.client.host if request.client else UNKNOWN_ADDRESS,
        user_agent=request.headers.get("User-Agent", ""),
        language=_language(request),
    )
    request.state.ctx = ctx

    presented = _bearer(request)
    expsoon = False
    if presented:
        try:
            expsoon = await run_in_threadpool(ctx.login_with_token, presented)
        except Unauthorized as exc:
            logger.info("Rejected token from %s: %s", ctx.client_ip, exc.message)
            response = error_response(401, exc.code, "Invalid or expired token")
            response.headers["WWW-Authenticate"] = _invalid_token_header(services.settings.app_name)
            response.delete_cookie(TOKEN_COOKIE)
            return response

    response = await call_next(request)

    if ctx.user is not None and (expsoon or not ctx.token):
        token = await run_in_threadpool(ctx.new_token)
        response.headers["WWW-Authenticate"] = f'Bearer access_token="{token}"'
        set_token_cookie(response, token, int(services.tokens.ttl.total_seconds()))
    elif presented and ctx.user is None:
        response.headers["WWW-Authenticate"] = _invalid_token_header(services.settings.app_name)
        response.delete_cookie(TOKEN_COOKIE)
    return response


# ---------------------------------------------------------------------------
# Request logging middleware
# ---------------------------------------------------------------------------


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """One line per request: who, what, outcome. Command arguments may hold
    passwords, so only the first two path words after /api/ are logged."""
    began = time.perf_counter()
    response = await call_next(request)
    elapsed = (time.perf_counter() - began) * 1000

    words = request.url.path.split("/")[2:4]
    ctx = getattr(request.state, "ctx", None)
    who = ctx.user.username if ctx is not None and ctx.user is not None else "-"
    logger.info(
        "%s %s %s rc=%s %d %.1fms user=%s",
        request.client.host if request.client else "unknown",
        request.method,
        "/".join(words),
        response.headers.get("X-ReturnCode", "0"),
        response.status_code,
        elapsed,
        who,
    )
    return response


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


@app.exception_handler(WardenError)
async def warden_error_handler(request: Request, exc: WardenError) -> JSONResponse:
    """Map the error taxonomy onto HTTP statuses.

    Transient and Internal errors are logged with their real message and
    answered with the generic public one.
    """
    status = STATUS_CODES.get(exc.code, 500)
    if status >= 500:
        logger.error("%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc.message)
    response = error_response(status, exc.code, exc.public_message)
    if status == 401:
        response.headers["WWW-Authenticate"] = f'Bearer realm="{get_settings().app_name}"'
    return response


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a slowapi limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = error_response(429, "rate_limited", "Too many requests.", str(exc))
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return error_response(422, "validation_error", "Request validation failed.", str(exc.errors()))


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})
    return error_response(exc.status_code, f"http_{exc.status_code}", str(exc.detail))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception goes to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return error_response(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"])
async def health() -> HealthResponse:
    """Return API liveness and current version."""
    return HealthResponse(version=VERSION)


# ---------------------------------------------------------------------------
# Router registration
#
# The command tree matches every GET under /api/, so it goes last.
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
app.include_router(cli_router, tags=["Commands"])
