"""Library Visibility API - FastAPI Application."""

import logging
from contextlib import asynccontextmanager
from datetime import timezone

from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded

from app.middleware import CorrelationIDMiddleware, CorrelationIdFilter

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] [%(correlation_id)s] %(name)s: %(message)s",
    datefmt="%H:%M:%S",
)
for _handler in logging.getLogger().handlers:
    _handler.addFilter(CorrelationIdFilter())

# Suppress noisy loggers - SQLAlchemy is especially chatty
logging.getLogger("sqlalchemy").setLevel(logging.WARNING)
logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
logging.getLogger("sqlalchemy.pool").setLevel(logging.WARNING)
logging.getLogger("apscheduler").setLevel(logging.WARNING)
logging.getLogger("asyncio").setLevel(logging.WARNING)
logging.getLogger("watchfiles").setLevel(logging.WARNING)

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from fastapi import FastAPI, Depends, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from app.api.v1.router import api_router
from app.core.errors import ExclusionError
from app.core.tasks import TaskManager
from app.db.database import init_db, get_db
from app.db.models import PendingRecompute, User, UserExcludedEntity
from app.services.exclusion_service import get_exclusion_service

logger = logging.getLogger(__name__)
settings = get_settings()

# Rate limiter - 100 requests per minute per IP for general endpoints
# Hide/unhide and recompute endpoints have stricter limits applied via decorators
limiter = Limiter(key_func=get_remote_address, default_limits=["100/minute"])

scheduler = AsyncIOScheduler(
    timezone=timezone.utc,
    job_defaults={
        # Several missed sweeps collapse into one run
        "coalesce": True,
        # A slow sweep must not overlap the next one
        "max_instances": 1,
    },
)
task_manager = TaskManager.get_instance()


async def run_reconciliation():
    """Re-run deferred recomputes left behind by a crash or exhausted retries."""
    try:
        processed = await get_exclusion_service().reconcile_pending()
        if processed:
            logger.info(f"Reconciliation sweep processed {processed} pending recomputes")
    except Exception as e:
        logger.error(f"Reconciliation sweep failed: {type(e).__name__}: {e}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    await init_db()

    scheduler.add_job(
        run_reconciliation,
        IntervalTrigger(minutes=settings.reconciliation_interval_minutes),
        id="exclusion_reconciliation",
        replace_existing=True,
    )
    scheduler.start()
    logger.info(
        f"Scheduler started - exclusion reconciliation every {settings.reconciliation_interval_minutes} minutes"
    )

    # Pick up anything a previous process left pending
    task_manager.create_task(run_reconciliation(), name="startup_reconciliation")

    yield

    # Shutdown
    logger.info("Shutting down application...")
    await task_manager.cancel_all(timeout=10.0)
    scheduler.shutdown()
    logger.info("Shutdown complete")


app = FastAPI(
    title=settings.app_name,
    description="Per-user visibility and exclusion engine for the media library",
    version="1.0.0",
    lifespan=lifespan,
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
)

# Rate limiting
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.exception_handler(ExclusionError)
async def exclusion_error_handler(request: Request, exc: ExclusionError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# CORS middleware - restricted methods and headers
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "X-Correlation-ID", "X-User-ID"],
    expose_headers=["X-Correlation-ID"],  # Allow frontend to read correlation ID
)

# Correlation ID middleware for request tracing
app.add_middleware(CorrelationIDMiddleware)

# Include API routes
app.include_router(api_router, prefix="/api/v1")


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "service": settings.app_name}


@app.get("/health/db")
async def db_status(db: AsyncSession = Depends(get_db)):
    """Check database connectivity and the size of the exclusion store."""
    try:
        users = await db.execute(select(func.count()).select_from(User))
        exclusions = await db.execute(select(func.count()).select_from(UserExcludedEntity))
        pending = await db.execute(select(func.count()).select_from(PendingRecompute))

        job = scheduler.get_job("exclusion_reconciliation")
        next_sweep = job.next_run_time.isoformat() if job and job.next_run_time else None

        return {
            "status": "healthy",
            "users": users.scalar_one(),
            "exclusion_rows": exclusions.scalar_one(),
            "pending_recomputes": pending.scalar_one(),
            "next_reconciliation": next_sweep,
        }
    except Exception as e:
        logger.error(f"Health check DB error: {e}")
        return {
            "status": "error",
            "error": "Database health check failed",
        }


@app.get("/")
async def root():
    """Root endpoint with API info."""
    return {
        "name": settings.app_name,
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/health",
    }
