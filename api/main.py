"""
api/main.py -- FastAPI application entry point for the HR auth service.

Run with:      python main.py serve
               uvicorn api.main:app --reload

Middleware stack (outermost to innermost):
  1. log_requests          -- correlation id, access log line, request metrics
  2. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  3. CORSMiddleware        -- adds CORS headers for allowed browser origins
  4. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Starlette wraps each newly added middleware around the existing stack, so
the registrations below run innermost first.

Lifespan handles startup (stores, reset notifier, session cleanup task) and
shutdown (cancel cleanup task, dispose engines) symmetrically.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import re
import time
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.openapi.docs import get_redoc_html, get_swagger_ui_html
from fastapi.responses import JSONResponse, Response
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse, HealthStatusResponse
from api.routes.v1.audit import router as audit_router
from api.routes.v1.auth import router as auth_router
from api.routes.v1.users import router as users_router
from audit.store import AuditStore
from auth.dependencies import get_current_user
from auth.models import User
from auth.notifications import LoggingResetNotifier
from auth.sessions import run_session_cleanup
from auth.store import UserStore
from core import metrics
from core.config import get_settings

API_VERSION = "1.0.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("hr_auth.api")

_settings = get_settings()

# ---------------------------------------------------------------------------
# Background session cleanup task
# ---------------------------------------------------------------------------


async def _session_cleanup_loop(app: FastAPI) -> None:
    """Expire and purge sessions every SESSION_CLEANUP_INTERVAL_SECONDS.

    The store call is blocking SQL, so it runs in a worker thread. Any failed
    pass is logged with its traceback and retried on the next tick, so one bad
    pass never ends the loop. CancelledError is a BaseException and still
    stops the task at shutdown.
    """
    while True:
        await asyncio.sleep(_settings.session_cleanup_interval_seconds)
        try:
            await asyncio.to_thread(run_session_cleanup, app.state.user_store)
        except Exception:
            logger.exception("Session cleanup pass failed")


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Everything before yield runs on startup; everything after yield runs on
    shutdown. The cleanup task references app.state.user_store, so the store
    is created first.
    """
    logger.info("HR auth API starting up")
    app.state.user_store = UserStore()
    app.state.audit_store = AuditStore()
    app.state.reset_notifier = LoggingResetNotifier()
    logger.info("Stores initialized (bootstrap_required=%s)", not app.state.user_store.has_users())
    app.state.cleanup_task = asyncio.create_task(_session_cleanup_loop(app))

    yield

    app.state.cleanup_task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await app.state.cleanup_task
    app.state.user_store.close()
    app.state.audit_store.close()
    logger.info("HR auth API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="HR Auth API",
    description="Authentication, sessions, role-based access and audit trail for the HR system.",
    version=API_VERSION,
    lifespan=lifespan,
    # Built-in /docs and /redoc are replaced by auth-protected routes below.
    docs_url=None,
    redoc_url=None,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Each add_middleware() call wraps the stack built so far, so register from
# the inside out: SlowAPI, then CORS, then TrustedHost. log_requests below is
# registered last and is therefore outermost.
# ---------------------------------------------------------------------------

app.add_middleware(SlowAPIMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE"],
    allow_headers=["Content-Type", "Authorization", "X-Correlation-ID"],
    expose_headers=["X-Correlation-ID", "Retry-After"],
    max_age=3600,
)

app.add_middleware(TrustedHostMiddleware, allowed_hosts=_settings.allowed_hosts)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter

# ---------------------------------------------------------------------------
# Request logging middleware
#
# Every request gets a correlation id: the caller's X-Correlation-ID when it
# is well-formed, a fresh uuid4 otherwise. It is echoed on the response and
# included in the access log line so one request can be traced end to end.
# The same pass feeds the request counters in core.metrics; started_at lets
# audit entries record how long the request had run.
# ---------------------------------------------------------------------------

_CORRELATION_ID_RE = re.compile(r"^[A-Za-z0-9._-]{1,64}$")


@app.middleware("http")
async def log_requests(request: Request, call_next):
    incoming = request.headers.get("X-Correlation-ID", "")
    correlation_id = incoming if _CORRELATION_ID_RE.match(incoming) else uuid.uuid4().hex
    request.state.correlation_id = correlation_id

    start = time.perf_counter()
    request.state.started_at = start
    response = await call_next(request)
    elapsed = time.perf_counter() - start
    ms = elapsed * 1000
    metrics.record_request(request.url.path, request.method, response.status_code, elapsed)
    response.headers["X-Correlation-ID"] = correlation_id
    logger.info(
        "%s %s %d %.1fms %s cid=%s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
        correlation_id,
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
app.include_router(users_router, prefix="/api/v1", tags=["Users"])
app.include_router(audit_router, prefix="/api/v1", tags=["Audit"])


# ---------------------------------------------------------------------------
# Auth-protected API documentation
# ---------------------------------------------------------------------------


@app.get("/docs", include_in_schema=False)
async def docs(user: User = Depends(get_current_user)):
    """Swagger UI -- requires authentication."""
    return get_swagger_ui_html(openapi_url="/openapi.json", title="HR Auth API")


@app.get("/redoc", include_in_schema=False)
async def redoc(user: User = Depends(get_current_user)):
    """ReDoc UI -- requires authentication."""
    return get_redoc_html(openapi_url="/openapi.json", title="HR Auth API")


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
        ).model_dump(),
    )
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation."""
    # Drop submitted values: a rejected password must not be echoed back.
    errors = [{"loc": list(e.get("loc", ())), "msg": e.get("msg", "")} for e in exc.errors()]
    return JSONResponse(
        status_code=422,
        content=ErrorResponse(
            error=ErrorDetail(
                code="validation_error",
                message="Request validation failed.",
                detail=str(errors),
            )
        ).model_dump(),
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    Route handlers raise HTTPException with detail={"code": ..., "message": ...}.
    When detail is already a structured dict, use it directly as the error
    field. Headers (Retry-After, WWW-Authenticate) are passed through.
    """
    headers = getattr(exc, "headers", None)
    if isinstance(exc.detail, dict):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": ErrorDetail(**exc.detail).model_dump()},
            headers=headers,
        )
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(
                code="not_found" if exc.status_code == 404 else f"http_{exc.status_code}",
                message=str(exc.detail),
            )
        ).model_dump(),
        headers=headers,
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception is logged server-side only. The client receives a
    generic message and no stack trace.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error=ErrorDetail(
                code="internal_error",
                message="An unexpected error occurred.",
            )
        ).model_dump(),
    )


# ---------------------------------------------------------------------------
# Health and metrics endpoints
#
# Defined directly in main.py so they are always reachable. No rate limit and
# no auth -- load balancers and scrapers must not be throttled or challenged.
#
#   /api/v1/health        full report: app + database components
#   /api/v1/health/live   process is up; never touches the database
#   /api/v1/health/ready  database answers; 503 until it does
#   /metrics              Prometheus text exposition (core.metrics)
# ---------------------------------------------------------------------------


def _database_ok(request: Request) -> bool:
    try:
        return request.app.state.user_store.ping() and request.app.state.audit_store.ping()
    except SQLAlchemyError:
        logger.exception("Health check: database unreachable")
        return False


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
def health(request: Request) -> JSONResponse:
    """Return liveness plus a database reachability check (503 when degraded)."""
    db_ok = _database_ok(request)
    components = {"app": "ok", "database": "ok" if db_ok else "error"}
    body = HealthResponse(status="healthy" if db_ok else "degraded", version=API_VERSION, components=components)
    return JSONResponse(status_code=200 if db_ok else 503, content=body.model_dump())


@app.get("/api/v1/health/live", response_model=HealthStatusResponse, tags=["Health"])
def health_live() -> HealthStatusResponse:
    return HealthStatusResponse(status="alive")


@app.get("/api/v1/health/ready", response_model=HealthStatusResponse, tags=["Health"])
def health_ready(request: Request) -> JSONResponse:
    """Readiness: 200 once both stores answer, 503 otherwise."""
    if _database_ok(request):
        return JSONResponse(status_code=200, content=HealthStatusResponse(status="ready").model_dump())
    return JSONResponse(status_code=503, content=HealthStatusResponse(status="not_ready").model_dump())


@app.get("/metrics", include_in_schema=False)
def prometheus_metrics() -> Response:
    body, content_type = metrics.metrics_payload()
    return Response(content=body, media_type=content_type)
