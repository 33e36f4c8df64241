"""
api/main.py -- FastAPI application entry point for authgate.

Exposes the authentication engine over HTTP for desktop and mobile clients.

Run with:      uvicorn api.main:app --reload

Middleware stack (registration order; the last one registered sees the request first):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter
  4. log_requests          -- latency/status log line + X-Correlation-ID
  5. security_headers      -- HSTS, nosniff, frame denial, referrer policy, CSP

Lifespan builds the LoginOrchestrator (and through it every auth component)
on startup, makes sure a signing key exists, and starts the periodic
maintenance task. Shutdown cancels the task and disposes the engine.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse, Response
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from prometheus_client import CONTENT_TYPE_LATEST
from sqlalchemy import text

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from auth.maintenance import run_maintenance
from auth.orchestrator import build_orchestrator
from core.config import get_settings

API_VERSION = "1.0.0"

_SECURITY_HEADERS = {
    "Strict-Transport-Security": "max-age=31536000; includeSubDomains",
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "strict-origin-when-cross-origin",
}
_API_CSP = "default-src 'self'; frame-ancestors 'none'"
# /docs and /redoc pull their scripts and styles from the jsdelivr CDN.
_DOCS_CSP = (
    "default-src 'self'; "
    "script-src 'self' 'unsafe-inline' https://cdn.jsdelivr.net; "
    "style-src 'self' 'unsafe-inline' https://cdn.jsdelivr.net; "
    "img-src 'self' data: https://fastapi.tiangolo.com; "
    "frame-ancestors 'none'"
)
_DOCS_PATHS = ("/docs", "/redoc")

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("authgate.api")

# ---------------------------------------------------------------------------
# Background maintenance task
# ---------------------------------------------------------------------------


async def _maintenance_loop(app: FastAPI, interval_seconds: int) -> None:
    """Run one maintenance tick every interval_seconds.

    The tick does blocking SQL and possibly RSA key generation, so it runs in
    a worker thread. A failed tick is logged and the loop carries on; the next
    tick retries the same idempotent work. CancelledError from task.cancel()
    during shutdown propagates out of asyncio.sleep and ends the loop.
    """
    orchestrator = app.state.orchestrator
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await asyncio.to_thread(
                run_maintenance, orchestrator.keys, orchestrator.sessions, orchestrator.audit, orchestrator.metrics
            )
        except Exception:
            logger.exception("Maintenance tick failed")


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Startup order matters:
      1. Orchestrator first -- creates the engine and every table.
      2. Signing key second -- the first login should not pay for RSA key
         generation.
      3. Maintenance task last -- it references app.state.orchestrator.
    """
    settings = get_settings()
    logger.info("authgate API starting up")
    orchestrator = build_orchestrator(settings)
    app.state.orchestrator = orchestrator
    key = await asyncio.to_thread(orchestrator.keys.current_signing_key)
    logger.info("Active signing key: %s", key.key_id)

    task = None
    if settings.maintenance_enabled:
        task = asyncio.create_task(_maintenance_loop(app, settings.maintenance_interval_seconds))

    yield

    if task is not None:
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
    orchestrator.accounts.engine.dispose()
    logger.info("authgate API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="authgate API",
    description="Authentication, session and token lifecycle service.",
    version=API_VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Register in the order you want the request to encounter them:
# TrustedHost -> CORS -> SlowAPI.
# ---------------------------------------------------------------------------

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=["localhost", "127.0.0.1", "*.localhost"],
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_origins,
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type", "Authorization", "X-Correlation-ID"],
    expose_headers=["X-Correlation-ID", "Retry-After"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter

# ---------------------------------------------------------------------------
# Request logging middleware
#
# Every request passes through this coroutine before reaching a route. The
# correlation id is taken from the caller when supplied so a client can tie
# its own logs to ours; otherwise a fresh one is generated.
# ---------------------------------------------------------------------------


@app.middleware("http")
async def log_requests(request: Request, call_next):
    correlation_id = request.headers.get("X-Correlation-ID") or uuid.uuid4().hex
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s cid=%s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
        correlation_id,
    )
    response.headers["X-Correlation-ID"] = correlation_id
    return response


@app.middleware("http")
async def security_headers(request: Request, call_next):
    """Stamp browser hardening headers on every response and drop the Server header."""
    response = await call_next(request)
    for name, value in _SECURITY_HEADERS.items():
        response.headers[name] = value
    docs = request.url.path.startswith(_DOCS_PATHS)
    response.headers["Content-Security-Policy"] = _DOCS_CSP if docs else _API_CSP
    if "server" in response.headers:
        del response.headers["server"]
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = JSONResponse(
        status_code=429,
        content=ErrorResponse(
            error=ErrorDetail(
                code="rate_limited",
                message="Too many requests.",
                detail=str(exc.detail),
            )
        ).model_dump(mode="json"),
    )
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation.

    Only the location and message of each error are echoed back; the raw
    input is left out so a rejected password never appears in a response.
    """
    problems = "; ".join(
        f"{'.'.join(str(p) for p in err.get('loc', ()))}: {err.get('msg', '')}" for err in exc.errors()
    )
    return JSONResponse(
        status_code=422,
        content=ErrorResponse(
            error=ErrorDetail(
                code="validation_error",
                message="Request validation failed.",
                detail=problems,
            )
        ).model_dump(mode="json"),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    Route handlers raise HTTPException with a dict detail. When detail is
    already a structured dict, use it directly as the error field rather than
    stringifying it. Headers on the exception (WWW-Authenticate,
    Cache-Control) are carried over.
    """
    headers = getattr(exc, "headers", None)
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=headers)
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(
                code=f"http_{exc.status_code}",
                message=str(exc.detail),
            )
        ).model_dump(mode="json"),
        headers=headers,
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception goes to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error=ErrorDetail(
                code="internal_error",
                message="An unexpected error occurred.",
            )
        ).model_dump(mode="json"),
    )


# ---------------------------------------------------------------------------
# Metrics endpoint
# ---------------------------------------------------------------------------


@app.get("/metrics", include_in_schema=False)
def metrics(request: Request) -> Response:
    """Prometheus text exposition of the auth engine's counters and histograms."""
    return Response(content=request.app.state.orchestrator.metrics.render(), media_type=CONTENT_TYPE_LATEST)


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable
# regardless of router registration state. No rate limit applied.
# ---------------------------------------------------------------------------


@app.get("/health", tags=["Health"])
@app.get("/api/v1/health", tags=["Health"])
def health(request: Request) -> JSONResponse:
    """Return liveness, version and a database probe. 503 when the database is unreachable."""
    try:
        with request.app.state.orchestrator.accounts.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except Exception:
        logger.exception("Health check database probe failed")
        return JSONResponse(
            status_code=503,
            content=HealthResponse(status="degraded", version=API_VERSION, database="unavailable").model_dump(),
        )
    return JSONResponse(content=HealthResponse(version=API_VERSION).model_dump())
