"""
api/main.py -- FastAPI application entry point for CryptIoMT.

Run with:      uvicorn api.main:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan opens the stores and the report dispatcher, then starts the
scheduled jobs (when JOBS_ENABLED):
  daily     -- vulnerability sync at DAILY_SYNC_HOUR_UTC:DAILY_SYNC_MINUTE_UTC
  hourly    -- due report schedules, then the device alert sweep
  daily     -- risk snapshot at SNAPSHOT_HOUR_UTC:SNAPSHOT_MINUTE_UTC
Job bodies are blocking and run in a worker thread. A failed run is logged
and the loop waits for its next slot; nothing is retried early. Shutdown
cancels the loops and closes everything opened at startup.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Any

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.openapi.docs import get_redoc_html, get_swagger_ui_html
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy.exc import SQLAlchemyError

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from api.routes.v1.compliance import router as compliance_router
from api.routes.v1.dashboard import router as dashboard_router
from api.routes.v1.devices import router as devices_router
from api.routes.v1.groups import router as groups_router
from api.routes.v1.notifications import router as notifications_router
from api.routes.v1.organizations import router as organizations_router
from api.routes.v1.reports import router as reports_router
from api.routes.v1.vulnerabilities import router as vulnerabilities_router
from auth.dependencies import get_current_user
from auth.models import User
from auth.store import UserStore
from cmdb.alerts import check_device_alerts
from cmdb.errors import (
    CMDBError,
    InvalidInputError,
    NotAuthenticatedError,
    NotFoundError,
    PermissionDeniedError,
)
from cmdb.reports import ReportDispatcher, advance_due_schedules
from cmdb.risk import capture_risk_snapshots
from cmdb.store import CMDBStore
from cmdb.sync import sync_recent
from core.config import get_settings, now_utc
from core.fetcher import FeedError

API_VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("cryptiomt.api")

# ---------------------------------------------------------------------------
# Scheduled jobs
# ---------------------------------------------------------------------------


def seconds_until(hour: int, minute: int, now: datetime) -> float:
    """Seconds from now to the next hour:minute (UTC). Never zero."""
    target = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if target <= now:
        target += timedelta(days=1)
    return (target - now).total_seconds()


async def _run_job(name: str, job: Callable[[], Any]) -> None:
    """Run one blocking job body in a worker thread; log and survive failures."""
    try:
        result = await asyncio.to_thread(job)
    except asyncio.CancelledError:
        raise
    except Exception:
        logger.exception("Scheduled job %s failed", name)
        return
    logger.info("Scheduled job %s finished: %s", name, result)


async def _daily_loop(name: str, hour: int, minute: int, job: Callable[[], Any]) -> None:
    """Run job once a day at hour:minute UTC.

    CancelledError from task.cancel() during shutdown propagates out of
    asyncio.sleep and unwinds the coroutine.
    """
    while True:
        await asyncio.sleep(seconds_until(hour, minute, now_utc()))
        await _run_job(name, job)


async def _interval_loop(name: str, interval_seconds: int, job: Callable[[], Any]) -> None:
    while True:
        await asyncio.sleep(interval_seconds)
        await _run_job(name, job)


def _start_jobs(app: FastAPI) -> list[asyncio.Task]:
    settings = get_settings()
    cmdb: CMDBStore = app.state.cmdb
    dispatcher: ReportDispatcher = app.state.report_dispatcher

    def hourly() -> str:
        swept = advance_due_schedules(cmdb, now_utc(), dispatcher.enqueue)
        created = check_device_alerts(cmdb)
        return f"{swept.processed} report(s) queued, {created} notification(s)"

    return [
        asyncio.create_task(
            _daily_loop(
                "vulnerability-sync",
                settings.daily_sync_hour_utc,
                settings.daily_sync_minute_utc,
                lambda: sync_recent(cmdb, days_back=settings.daily_sync_days_back),
            )
        ),
        asyncio.create_task(_interval_loop("reports-and-alerts", settings.report_interval_seconds, hourly)),
        asyncio.create_task(
            _daily_loop(
                "risk-snapshot",
                settings.snapshot_hour_utc,
                settings.snapshot_minute_utc,
                lambda: capture_risk_snapshots(cmdb),
            )
        ),
    ]


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Open stores and the dispatcher, start the job loops; undo it all on shutdown.

    Stores come first because both the dispatcher and the job loops read
    app.state.cmdb.
    """
    settings = get_settings()
    logger.info("CryptIoMT API starting up")
    app.state.cmdb = CMDBStore()
    app.state.user_store = UserStore()
    app.state.setup_required = not app.state.user_store.has_users()
    logger.info("Stores initialized (setup_required=%s)", app.state.setup_required)
    app.state.report_dispatcher = ReportDispatcher(app.state.cmdb)

    app.state.job_tasks = _start_jobs(app) if settings.jobs_enabled else []
    if not settings.jobs_enabled:
        logger.info("Scheduled jobs disabled (JOBS_ENABLED=false)")

    yield

    for task in app.state.job_tasks:
        task.cancel()
    await asyncio.gather(*app.state.job_tasks, return_exceptions=True)
    app.state.report_dispatcher.shutdown(wait=True)
    app.state.cmdb.close()
    app.state.user_store.close()
    logger.info("CryptIoMT API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="CryptIoMT API",
    description="Medical device vulnerability matching, risk classification and scheduled reporting.",
    version=API_VERSION,
    lifespan=lifespan,
    # Built-in docs are replaced by the auth-protected routes below.
    docs_url=None,
    redoc_url=None,
)

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=["localhost", "127.0.0.1", "*.localhost"],
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost", "http://localhost:3000", "http://127.0.0.1"],
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE"],
    allow_headers=["Content-Type", "Authorization", "X-API-Key"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter

# ---------------------------------------------------------------------------
# Middleware
# ---------------------------------------------------------------------------


@app.middleware("http")
async def setup_guard(request: Request, call_next):
    """Until the first admin exists, only health and /auth/setup are served.

    setup_required is an in-memory flag set at startup and cleared by
    POST /auth/setup, which re-checks the DB itself.
    """
    if getattr(request.app.state, "setup_required", False):
        if request.url.path not in ("/api/v1/health", "/api/v1/auth/setup"):
            return JSONResponse(
                status_code=503,
                content=ErrorResponse(
                    error=ErrorDetail(
                        code="setup_required",
                        message="No users exist yet. Create the first admin with POST /api/v1/auth/setup.",
                    )
                ).model_dump(),
            )
    return await call_next(request)


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
# Routers
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
app.include_router(organizations_router, prefix="/api/v1", tags=["Organizations"])
app.include_router(devices_router, prefix="/api/v1", tags=["Devices"])
app.include_router(groups_router, prefix="/api/v1", tags=["Groups"])
app.include_router(vulnerabilities_router, prefix="/api/v1", tags=["Vulnerabilities"])
app.include_router(reports_router, prefix="/api/v1", tags=["Reports"])
app.include_router(notifications_router, prefix="/api/v1", tags=["Notifications"])
app.include_router(dashboard_router, prefix="/api/v1", tags=["Dashboard"])
app.include_router(compliance_router, prefix="/api/v1", tags=["Compliance"])


@app.get("/docs", include_in_schema=False)
async def docs(user: User = Depends(get_current_user)):
    """Swagger UI -- requires authentication."""
    return get_swagger_ui_html(openapi_url="/openapi.json", title="CryptIoMT API")


@app.get("/redoc", include_in_schema=False)
async def redoc(user: User = Depends(get_current_user)):
    """ReDoc UI -- requires authentication."""
    return get_redoc_html(openapi_url="/openapi.json", title="CryptIoMT API")


# ---------------------------------------------------------------------------
# Exception handlers
#
# Every handler returns the same ErrorResponse envelope.
# ---------------------------------------------------------------------------

_DOMAIN_ERRORS: list[tuple[type[CMDBError], int, str]] = [
    (NotAuthenticatedError, 401, "unauthorized"),
    (PermissionDeniedError, 403, "forbidden"),
    (NotFoundError, 404, "not_found"),
    (InvalidInputError, 400, "invalid_input"),
]


def _error(status_code: int, code: str, message: str, detail: str | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail)).model_dump(),
    )


@app.exception_handler(CMDBError)
async def cmdb_error_handler(request: Request, exc: CMDBError) -> JSONResponse:
    """Map domain errors raised by cmdb/ to HTTP statuses."""
    for error_type, status_code, code in _DOMAIN_ERRORS:
        if isinstance(exc, error_type):
            return _error(status_code, code, str(exc))
    logger.error("Unmapped domain error on %s %s: %s", request.method, request.url.path, exc)
    return _error(500, "internal_error", "An unexpected error occurred.")


@app.exception_handler(FeedError)
async def feed_error_handler(request: Request, exc: FeedError) -> JSONResponse:
    logger.warning("Vulnerability feed unavailable: %s", exc)
    return _error(502, "feed_unavailable", "The vulnerability feed could not be reached.", str(exc))


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """429 with Retry-After. slowapi exposes the wait as exc.retry_after when known."""
    response = _error(429, "rate_limited", "Too many requests.", str(exc))
    response.headers["Retry-After"] = str(int(getattr(exc, "retry_after", 60)))
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return _error(422, "validation_error", "Request validation failed.", str(exc.errors()))


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Structured error for HTTPException.

    Routes raise HTTPException with a dict detail; that dict becomes the
    error field as-is.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})
    return _error(exc.status_code, f"http_{exc.status_code}", str(exc.detail))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all. The exception goes to the log only, never to the client."""
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined here rather than in a router so it is always reachable. Not rate
# limited: load balancer checks must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Liveness plus a database round trip. A failed DB check is reported, not raised."""
    try:
        database = "ok" if request.app.state.cmdb.ping() else "error"
    except SQLAlchemyError:
        logger.exception("Health check database query failed")
        database = "error"
    status = "healthy" if database == "ok" else "degraded"
    return HealthResponse(status=status, version=API_VERSION, components={"app": "ok", "database": database})
