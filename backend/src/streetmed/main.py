import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import timedelta

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from streetmed.api.deps import DbSession, get_redis_service
from streetmed.api.v1 import assignments, orders, rounds
from streetmed.core.config import settings
from streetmed.core.database import get_db
from streetmed.core.redis import close_redis, ping_redis
from streetmed.middleware.metrics import PrometheusMiddleware, metrics_endpoint
from streetmed.services.admission_service import AdmissionService
from streetmed.services.assignment_service import AssignmentService
from streetmed.services.errors import CoordinationError

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# Background task control
_auto_assign_task: asyncio.Task | None = None
_reclaim_task: asyncio.Task | None = None


async def auto_assign_loop(interval: int):
    """Background task to place unbound orders into upcoming rounds."""
    while True:
        try:
            async for db in get_db():
                service = AdmissionService(db, await get_redis_service())
                bound, skipped = await service.auto_assign_unbound_orders()
                if bound:
                    logger.info(f"Auto-assign loop bound {bound} orders ({skipped} skipped)")
                break  # Only run once per iteration

            await asyncio.sleep(interval)

        except asyncio.CancelledError:
            logger.info("Auto-assign loop cancelled")
            break
        except Exception as e:
            logger.error(f"Error in auto-assign loop: {e}")
            await asyncio.sleep(interval)


async def reclaim_loop(older_than_hours: int, interval: int):
    """Background task to release assignments accepted but never started."""
    older_than = timedelta(hours=older_than_hours)
    while True:
        try:
            async for db in get_db():
                service = AssignmentService(db, await get_redis_service())
                await service.release_stale_assignments(older_than)
                break  # Only run once per iteration

            await asyncio.sleep(interval)

        except asyncio.CancelledError:
            logger.info("Assignment reclaim loop cancelled")
            break
        except Exception as e:
            logger.error(f"Error in assignment reclaim loop: {e}")
            await asyncio.sleep(interval)


async def _stop(task: asyncio.Task | None) -> None:
    if task:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup and shutdown events."""
    global _auto_assign_task, _reclaim_task

    logger.info("Starting application...")

    if settings.AUTO_ASSIGN_INTERVAL_SECONDS > 0:
        logger.info(
            f"Starting auto-assign loop every {settings.AUTO_ASSIGN_INTERVAL_SECONDS}s"
        )
        _auto_assign_task = asyncio.create_task(
            auto_assign_loop(settings.AUTO_ASSIGN_INTERVAL_SECONDS)
        )

    if settings.ASSIGNMENT_RECLAIM_AFTER_HOURS:
        logger.info(
            f"Starting assignment reclaim loop: ACCEPTED older than "
            f"{settings.ASSIGNMENT_RECLAIM_AFTER_HOURS}h, every "
            f"{settings.ASSIGNMENT_RECLAIM_INTERVAL_SECONDS}s"
        )
        _reclaim_task = asyncio.create_task(
            reclaim_loop(
                settings.ASSIGNMENT_RECLAIM_AFTER_HOURS,
                settings.ASSIGNMENT_RECLAIM_INTERVAL_SECONDS,
            )
        )

    yield

    logger.info("Stopping background tasks")
    await _stop(_auto_assign_task)
    await _stop(_reclaim_task)
    _auto_assign_task = None
    _reclaim_task = None
    await close_redis()


app = FastAPI(
    title="Street Medicine Coordination",
    version="1.0.0",
    description="Order, assignment and round coordination for street-medicine outreach",
    lifespan=lifespan,
)

# Prometheus Metrics Middleware (must be first to capture all requests)
app.add_middleware(PrometheusMiddleware)

# CORS Middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(CoordinationError)
async def coordination_error_handler(request: Request, exc: CoordinationError):
    """Render business rule failures as {"status": "error", "code", "kind", "message"}."""
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


# Include API routers
app.include_router(orders.router, prefix="/api/v1/orders", tags=["orders"])
app.include_router(assignments.router, prefix="/api/v1/assignments", tags=["assignments"])
app.include_router(rounds.router, prefix="/api/v1/rounds", tags=["rounds"])


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy"}


@app.get("/health/ready")
async def readiness_check(db: DbSession):
    """Readiness: database reachable, and Redis too when it is enabled."""
    checks = {"database": "ok", "redis": "disabled"}
    try:
        await db.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        logger.warning(f"Readiness database check failed: {e}")
        checks["database"] = "unavailable"
    if settings.REDIS_ENABLED:
        checks["redis"] = "ok" if await ping_redis() else "unavailable"

    ready = "unavailable" not in checks.values()
    return JSONResponse(
        status_code=200 if ready else 503,
        content={"status": "healthy" if ready else "degraded", **checks},
    )


# Prometheus metrics endpoint
app.add_route("/metrics", metrics_endpoint)
