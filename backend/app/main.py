"""
Resonant Analysis Queue
=======================
Priority-aware analysis job queue: API surface, request context and the
in-process maintenance schedule.
"""

import time
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from app.api.envelope import error_envelope, queue_error_envelope
from app.api.routes.analysis_queue import router as analysis_queue_router
from app.api.routes.queue_admin import router as queue_admin_router
from app.core.config import get_settings
from app.core.database import init_db
from app.core.logging import (
    get_correlation_id,
    get_logger,
    get_request_id,
    new_correlation_id,
    new_request_id,
    set_correlation_id,
    set_request_id,
    setup_logging,
)
from app.domain.queue.errors import QueueError
from app.queue.maintenance_scheduler import start_maintenance_scheduler, stop_maintenance_scheduler
from app.schemas import HealthResponse

settings = get_settings()
logger = get_logger("main")

_start_time = time.time()


def _scheduler_enabled() -> bool:
    return settings.queue_enabled and settings.maintenance_scheduler_enabled


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup & shutdown lifecycle."""

    # ── Startup ──
    setup_logging(debug=settings.app_debug, json_output=settings.log_json)
    logger.info("app_starting", app=settings.app_name, env=settings.app_env)

    await init_db()
    logger.info("database_initialized")

    if _scheduler_enabled():
        start_maintenance_scheduler()

    logger.info("app_ready", port=settings.app_port, queue_enabled=settings.queue_enabled)

    yield

    # ── Shutdown ──
    if _scheduler_enabled():
        stop_maintenance_scheduler()
    logger.info("app_shutdown")


app = FastAPI(
    title="Resonant Analysis Queue",
    description=(
        "Priority-aware queue for AI analysis of journal entries.\n\n"
        "Weighted dispatch, retry with backoff, SLA-driven priority upgrades, "
        "dead-letter recovery and queue health metrics."
    ),
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── Request Logging Middleware ──

@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Bind request/correlation ids and log each request with timing."""
    request_id = request.headers.get("x-request-id") or new_request_id()
    correlation_id = request.headers.get("x-correlation-id") or new_correlation_id()
    set_request_id(request_id)
    set_correlation_id(correlation_id)
    structlog.contextvars.bind_contextvars(request_id=request_id, correlation_id=correlation_id)
    start = time.time()
    response = None
    try:
        response = await call_next(request)
        return response
    finally:
        elapsed = round((time.time() - start) * 1000, 2)
        if response is not None:
            response.headers["x-request-id"] = request_id
            response.headers["x-correlation-id"] = correlation_id
            status_code = response.status_code
        else:
            status_code = 500

        if request.url.path not in ["/health", "/docs", "/redoc", "/openapi.json"]:
            logger.info(
                "http_request",
                method=request.method,
                path=request.url.path,
                status=status_code,
                elapsed_ms=elapsed,
                request_id=get_request_id(),
                correlation_id=get_correlation_id(),
            )

        structlog.contextvars.clear_contextvars()
        set_request_id("")
        set_correlation_id("")


# ── Exception Handlers ──

@app.exception_handler(QueueError)
async def queue_exception_handler(request: Request, exc: QueueError):
    logger.warning(
        "queue_error",
        path=request.url.path,
        code=exc.code,
        status_code=exc.status_code,
        error=str(exc),
    )
    return queue_error_envelope(exc, path=request.url.path)


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    logger.warning(
        "http_exception",
        path=request.url.path,
        status_code=exc.status_code,
        detail=str(exc.detail),
    )
    return error_envelope(
        code="http_error",
        message="Request failed",
        status_code=exc.status_code,
        details=exc.detail,
        meta={"path": request.url.path},
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.warning("validation_error", path=request.url.path, errors=exc.errors())
    return error_envelope(
        code="validation_error",
        message="Validation failed",
        status_code=422,
        details=[{"loc": list(err.get("loc", [])), "msg": err.get("msg"), "type": err.get("type")} for err in exc.errors()],
        meta={"path": request.url.path},
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(
        "unhandled_exception",
        path=request.url.path,
        error=str(exc),
        error_type=type(exc).__name__,
    )
    return error_envelope(
        code="internal_error",
        message="Internal server error",
        status_code=500,
        details=None,
        meta={"path": request.url.path},
    )


# ── Register Routers ──

app.include_router(analysis_queue_router, prefix="/api/v1")
app.include_router(queue_admin_router, prefix="/api/v1")


@app.get("/health", response_model=HealthResponse, tags=["System"])
async def health_check():
    """Process liveness; queue health lives under the admin surface."""
    return HealthResponse(
        status="ok",
        version="0.1.0",
        database="connected",
        queue_enabled=settings.queue_enabled,
        uptime_seconds=round(time.time() - _start_time, 2),
    )


@app.get("/", tags=["System"])
async def root():
    return {
        "name": settings.app_name,
        "version": "0.1.0",
        "status": "operational",
        "docs": "/docs",
    }
