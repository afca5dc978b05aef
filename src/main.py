"""FastAPI application entry point: wires everything together.

Usage:
    python -m src.main

Starts the HTTP API and, when enabled, the in-process timeout sweep.
"""

from __future__ import annotations

import logging
import sys
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from src.api import practitioners, reviews, sessions
from src.api.deps import build_container
from src.api.errors import register_error_handlers
from src.config import settings
from src.db.engine import async_session_factory, build_admission_lock, db_lifespan
from src.events.audit import make_audit_subscriber
from src.events.bus import EventBus
from src.lifecycle.sweep import build_scheduler
from src.schemas.events import EventType, SystemEvent

# ── Logging setup ────────────────────────────────────────────────────

logging.basicConfig(
    level=getattr(logging, settings.log_level),
    format="%(asctime)s %(levelname)-8s %(name)s - %(message)s",
    stream=sys.stdout,
)
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.dev.ConsoleRenderer(),
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
)
# APScheduler logs every job run at INFO
logging.getLogger("apscheduler").setLevel(logging.WARNING)

logger = logging.getLogger(__name__)

# ── FastAPI lifespan ─────────────────────────────────────────────────


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application startup and shutdown lifecycle."""
    logger.info("Starting Healing Sessions API (env=%s)", settings.environment)

    # 1. Database
    async with db_lifespan():
        logger.info("Database initialized")

        # 2. Event system + audit trail
        events = EventBus()
        events.subscribe(make_audit_subscriber(async_session_factory))
        await events.start()

        # 3. Lifecycle service
        container = build_container(settings, async_session_factory, build_admission_lock(), events)
        app.state.container = container

        # 4. Timeout sweep
        scheduler = None
        if settings.lifecycle.sweep_enabled:
            scheduler = build_scheduler(container.service, settings.lifecycle, events)
            scheduler.start()
        else:
            logger.warning("SWEEP_ENABLED is false; overdue sessions end only when read")

        await events.emit(SystemEvent(
            event_type=EventType.SYSTEM_STARTUP,
            data={"environment": settings.environment, "sweep": scheduler is not None},
            source_module="main",
        ))

        try:
            yield
        finally:
            logger.info("Shutting down Healing Sessions API...")

            if scheduler is not None:
                scheduler.shutdown(wait=False)
                logger.info("Timeout sweep stopped")

            await events.emit(SystemEvent(event_type=EventType.SYSTEM_SHUTDOWN, source_module="main"))
            await events.stop()

    logger.info("Shutdown complete")


# ── FastAPI app ──────────────────────────────────────────────────────


def create_app() -> FastAPI:
    app = FastAPI(
        title="Healing Sessions API",
        description="Timed guest/practitioner video sessions",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    register_error_handlers(app)

    app.include_router(sessions.router)
    app.include_router(reviews.router)
    app.include_router(practitioners.router)

    @app.get("/health")
    async def health_check() -> dict[str, str]:
        """Health check endpoint."""
        return {"status": "ok", "environment": settings.environment}

    return app


app = create_app()


# ── Entry point ──────────────────────────────────────────────────────

if __name__ == "__main__":
    uvicorn.run(
        "src.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.environment == "development",
        log_level=settings.log_level.lower(),
    )
