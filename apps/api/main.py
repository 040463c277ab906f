"""
FastAPI application entry point.

This module sets up the FastAPI application with middleware, the plan sync
router, health checks, and (in development) an embedded plan sync worker.
"""
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from routers import plan_sync
from core.config import settings
from core.database import check_db_connection
from core.logging import setup_logging
from services.plan_sync.bootstrap import PlanSyncWorker, WorkerRunState
import logging
import time

# Setup logging first
setup_logging()
logger = logging.getLogger(__name__)

# Initialize Sentry for error tracking (production)
if settings.SENTRY_DSN:
    import sentry_sdk
    from sentry_sdk.integrations.fastapi import FastApiIntegration
    from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration
    from sentry_sdk.integrations.redis import RedisIntegration
    from sentry_sdk.integrations.celery import CeleryIntegration

    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        environment=settings.ENVIRONMENT,
        traces_sample_rate=settings.SENTRY_TRACES_SAMPLE_RATE,
        integrations=[
            FastApiIntegration(transaction_style="endpoint"),
            SqlalchemyIntegration(),
            RedisIntegration(),
            CeleryIntegration(),
        ],
        # Don't send PII
        send_default_pii=False,
        before_send=lambda event, hint: _filter_sensitive_data(event),
    )
    logger.info(f"Sentry initialized for environment: {settings.ENVIRONMENT}")


def _filter_sensitive_data(event):
    """Filter sensitive data before sending to Sentry."""
    if "request" in event and "headers" in event["request"]:
        headers = event["request"]["headers"]
        if isinstance(headers, dict):
            headers.pop("authorization", None)
            headers.pop("cookie", None)
    return event


# Create FastAPI app
app = FastAPI(
    title="Coaching Admin Plan Sync API",
    description="Workout plan synchronization: diffs, optimistic concurrency and background apply jobs",
    version="1.0.0",
    docs_url="/docs" if settings.DEBUG else None,
    redoc_url="/redoc" if settings.DEBUG else None,
)

# One run-state per process; the worker is started at most once.
app.state.plan_sync_worker_state = WorkerRunState()


@app.on_event("startup")
async def start_plan_sync_worker():
    """Start an embedded plan sync worker when AUTO_START_WORKER is set (development)."""
    if not settings.AUTO_START_WORKER:
        return
    try:
        PlanSyncWorker(app.state.plan_sync_worker_state).start()
    except Exception as e:
        logger.warning(f"Embedded plan sync worker not started (non-critical): {e}")


# CORS middleware
# Production: set CORS_ORIGINS env var (comma-separated)
# Development: DEBUG=True allows all origins
if settings.DEBUG:
    allowed_origins = ["*"]
elif settings.CORS_ORIGINS:
    allowed_origins = [origin.strip() for origin in settings.CORS_ORIGINS.split(",")]
else:
    allowed_origins = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]
app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Request logging middleware
@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log all requests with timing information."""
    start_time = time.time()

    try:
        response = await call_next(request)
    except Exception as e:
        logger.error(
            f"Request failed: {request.method} {request.url.path}",
            exc_info=True,
            extra={
                "extra_fields": {
                    "method": request.method,
                    "path": request.url.path,
                    "error": str(e),
                }
            }
        )
        raise

    process_time = time.time() - start_time
    logger.info(
        f"{request.method} {request.url.path} - {response.status_code}",
        extra={
            "extra_fields": {
                "method": request.method,
                "path": request.url.path,
                "status_code": response.status_code,
                "process_time_ms": round(process_time * 1000, 2),
            }
        }
    )
    response.headers["X-Process-Time"] = str(process_time)
    return response


# Error handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler for unhandled errors."""
    logger.error(
        f"Unhandled exception: {exc}",
        exc_info=True,
        extra={
            "extra_fields": {
                "method": request.method,
                "path": request.url.path,
            }
        }
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal server error"},
    )


@app.get("/health")
async def health():
    """
    Simple health check for load balancers and uptime monitors.

    Returns:
        - 200: Core systems operational
        - 503: Canonical store unavailable
    """
    if not check_db_connection():
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={
                "status": "unhealthy",
                "database": "unavailable",
            }
        )

    return {
        "status": "healthy",
        "timestamp": time.time(),
    }


@app.get("/health/detailed")
async def health_detailed():
    """
    Detailed health check for monitoring dashboards.

    Checks the store, Redis (offline cache, plan tree cache, broker) and the
    embedded worker. Always returns 200.
    """
    from core.cache import get_redis_client

    checks = {
        "database": {"status": "unknown", "latency_ms": None},
        "redis": {"status": "unknown", "latency_ms": None},
    }

    start = time.time()
    db_healthy = check_db_connection()
    checks["database"]["status"] = "healthy" if db_healthy else "unhealthy"
    checks["database"]["latency_ms"] = round((time.time() - start) * 1000, 2)

    start = time.time()
    try:
        redis = get_redis_client()
        if redis:
            redis.ping()
            checks["redis"]["status"] = "healthy"
        else:
            checks["redis"]["status"] = "unavailable"
        checks["redis"]["latency_ms"] = round((time.time() - start) * 1000, 2)
    except Exception as e:
        checks["redis"]["status"] = "error"
        checks["redis"]["error"] = str(e)

    all_healthy = all(c["status"] == "healthy" for c in checks.values())
    any_error = any(c["status"] == "error" for c in checks.values())

    return {
        "status": "healthy" if all_healthy else ("degraded" if not any_error else "unhealthy"),
        "version": "1.0.0",
        "environment": settings.ENVIRONMENT,
        "timestamp": time.time(),
        "checks": checks,
        "worker": app.state.plan_sync_worker_state.describe(),
    }


@app.get("/ping")
async def ping():
    """
    Minimal ping endpoint for uptime monitors.
    No dependencies checked - just confirms the API is responding.
    """
    return {"pong": True}


# Include routers
app.include_router(plan_sync.router)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=settings.API_HOST, port=settings.API_PORT)
