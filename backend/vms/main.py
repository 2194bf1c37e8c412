"""FastAPI application entry point."""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from sqlalchemy import text

from vms.api.deps import get_clock, get_count_cache, get_dispatcher
from vms.api.routes import api_router
from vms.core.config import settings
from vms.core.errors import VisitError
from vms.core.rate_limit import limiter
from vms.db.base import Base
from vms.db.session import SessionLocal, engine
from vms.services.jobs import VisitJobs
from vms.services.notification_service import Notifier
from vms.services.scheduler_service import TaskScheduler

# Configure logging - use JSON format in production, human-readable in dev
root_logger = logging.getLogger()
root_logger.setLevel(getattr(logging, settings.log_level))
root_logger.handlers.clear()

if settings.debug:
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s"))
else:
    import json as _json
    import sys

    class JSONFormatter(logging.Formatter):
        def format(self, record):
            return _json.dumps({
                "ts": self.formatTime(record, self.datefmt),
                "level": record.levelname,
                "logger": record.name,
                "msg": record.getMessage(),
                "module": record.module,
                "line": record.lineno,
            })

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter())

root_logger.addHandler(handler)
logger = logging.getLogger(__name__)

scheduler = TaskScheduler(clock=get_clock())


def _notifier_factory() -> Notifier:
    return Notifier(get_dispatcher(), session_factory=SessionLocal, clock=get_clock(), config=settings)


jobs = VisitJobs(SessionLocal, get_clock(), _notifier_factory, cache=get_count_cache(), config=settings)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    logger.info(f"Starting visitor management for {settings.venue_name}")

    # No migrations: the schema is created from the models
    if settings.database_url.startswith("sqlite:///"):
        Path(settings.database_url.removeprefix("sqlite:///")).parent.mkdir(parents=True, exist_ok=True)
    Base.metadata.create_all(bind=engine)

    scheduler_task = None
    if settings.scheduler_enabled:
        jobs.register(scheduler)
        scheduler_task = asyncio.create_task(scheduler.start())

    yield

    if scheduler_task is not None:
        scheduler.stop()
        scheduler_task.cancel()
        try:
            await scheduler_task
        except asyncio.CancelledError:
            pass
    dispatcher = get_dispatcher()
    if hasattr(dispatcher, "close"):
        dispatcher.close()
    logger.info("Shutting down visitor management")


app = FastAPI(
    title="Visitor Management System",
    description="Visit registration, admission and status recalculation",
    version="1.0.0",
    lifespan=lifespan,
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
)

# Rate limiting setup
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Accept", "Origin", "X-Actor-Role"],
)


@app.exception_handler(VisitError)
async def visit_error_handler(request: Request, exc: VisitError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    else:
        logger.info(f"{request.method} {request.url.path} rejected ({exc.status_code}): {exc}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.reasons[0] if exc.reasons else str(exc), "errors": exc.reasons},
    )


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()) if part != "body")
        errors.append(f"{location}: {error.get('msg')}" if location else error.get("msg"))
    return JSONResponse(
        status_code=422,
        content={"detail": errors[0] if errors else "Invalid request", "errors": errors},
    )


app.include_router(api_router, prefix=settings.api_v1_prefix)


@app.get("/health")
def health_check():
    """Liveness check with database connectivity."""
    db = None
    try:
        db = SessionLocal()
        db.execute(text("SELECT 1"))
        database = "healthy"
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        database = "unhealthy"
    finally:
        if db:
            db.close()

    return {
        "status": "healthy" if database == "healthy" else "degraded",
        "version": "1.0.0",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "checks": {"database": database},
    }


@app.get("/health/scheduler")
def scheduler_status():
    """Background task scheduler status."""
    return {"enabled": settings.scheduler_enabled, "tasks": scheduler.get_status()}
