# schoolpickup/main.py - Application factory, logging, middleware and lifespan wiring
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
from logging.handlers import RotatingFileHandler
from typing import Optional
import logging
import traceback
import time

from schoolpickup.core.clock import Clock, utcnow
from schoolpickup.core.config import settings
from schoolpickup.core.db import DatabaseManager, db_manager as default_db_manager
from schoolpickup.models.base import Base
from schoolpickup.api.routers import auth, pickup_requests, authorizations
from schoolpickup.services.event_bus import EventBus
from schoolpickup.services.mutation_coordinator import MutationCoordinator
from schoolpickup.services.notification_outbox import PickupNotifier
from schoolpickup.services.pickup_queries import PickupQueries
from schoolpickup.services.pickup_state_machine import PickupService
from schoolpickup.services.sweeper import AutoCompletionSweeper

LOG_FORMATS = {
    "simple": "%(levelname)s - %(message)s",
    "detailed": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
}


def configure_logging():
    """Configure root logging once from settings"""
    handlers = [logging.StreamHandler()]
    if settings.LOG_FILE_PATH:
        handlers.append(RotatingFileHandler(
            settings.LOG_FILE_PATH,
            maxBytes=settings.LOG_MAX_SIZE,
            backupCount=settings.LOG_BACKUP_COUNT
        ))

    logging.basicConfig(
        level=settings.LOG_LEVEL,
        format=LOG_FORMATS.get(settings.LOG_FORMAT, LOG_FORMATS["detailed"]),
        handlers=handlers
    )


configure_logging()
logger = logging.getLogger(__name__)


def create_app(db_manager: Optional[DatabaseManager] = None, clock: Clock = utcnow) -> FastAPI:
    db_manager = db_manager or default_db_manager

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Build the pickup engine and its background workers"""
        logger.info("Starting School Pickup API...")
        logger.info(f"Environment: {settings.ENV}")
        logger.info(f"Database URL: {db_manager.url.split('@')[1] if '@' in db_manager.url else 'local'}")

        db_manager.initialize()

        # Create tables if they don't exist (for development)
        if settings.is_development or settings.ENV == "test":
            logger.info("Creating database tables...")
            Base.metadata.create_all(bind=db_manager.engine)

        school_tz = settings.school_tz
        bus = EventBus(queue_size=settings.EVENT_QUEUE_SIZE)
        coordinator = MutationCoordinator(db_manager.SessionLocal, bus)
        pickups = PickupService(coordinator, school_tz, clock=clock, max_retries=settings.CONFLICT_MAX_RETRIES)
        queries = PickupQueries(coordinator, school_tz, clock=clock)
        sweeper = AutoCompletionSweeper(
            pickups,
            queries,
            stale_after_seconds=settings.SWEEP_STALE_AFTER_SECONDS,
            interval_seconds=settings.SWEEP_INTERVAL_SECONDS,
            clock=clock,
        )
        notifier = PickupNotifier(db_manager.SessionLocal, bus)

        app.state.db_manager = db_manager
        app.state.bus = bus
        app.state.coordinator = coordinator
        app.state.pickups = pickups
        app.state.queries = queries
        app.state.sweeper = sweeper
        app.state.notifier = notifier
        app.state.fallback_poll_seconds = settings.FALLBACK_POLL_SECONDS

        if settings.NOTIFICATIONS_ENABLED:
            notifier.start()
        if settings.SWEEP_ENABLED:
            sweeper.start()

        yield

        logger.info("Shutting down School Pickup API...")
        await sweeper.stop()
        await notifier.stop()
        db_manager.close()

    app = FastAPI(
        title=settings.API_TITLE,
        description="Pickup request lifecycle and real-time call coordination",
        version=settings.API_VERSION,
        docs_url="/docs" if settings.is_development and settings.DEV_SHOW_DOCS else None,
        redoc_url="/redoc" if settings.is_development and settings.DEV_SHOW_DOCS else None,
        lifespan=lifespan
    )

    # Request logging middleware - BEFORE CORS
    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        start_time = time.time()
        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(f"Error processing {request.method} {request.url.path}: {e}")
            raise
        process_time = time.time() - start_time
        logger.info(f"{request.method} {request.url.path} -> {response.status_code} ({process_time:.3f}s)")
        return response

    app.add_middleware(
        CORSMiddleware,
        **settings.get_cors_config(),
        max_age=3600,
    )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Handle uncaught exceptions"""
        logger.error(f"Unhandled exception on {request.method} {request.url.path}: {exc}")
        logger.error(traceback.format_exc())

        if settings.is_development:
            return JSONResponse(
                status_code=500,
                content={
                    "detail": str(exc),
                    "traceback": traceback.format_exc()
                }
            )
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error"}
        )

    @app.get("/health")
    async def health_check():
        database = app.state.db_manager.health_check()
        return {
            "status": "healthy" if database["status"] == "healthy" else "degraded",
            "environment": settings.ENV,
            "version": settings.API_VERSION,
            "database": database,
            "subscribers": app.state.bus.subscriber_count,
            "sweeper_running": app.state.sweeper.running,
        }

    app.include_router(auth.router, prefix="/api/auth", tags=["Authentication"])
    app.include_router(pickup_requests.router, prefix="/api/pickup-requests", tags=["Pickup Requests"])
    app.include_router(authorizations.router, prefix="/api/authorizations", tags=["Pickup Authorizations"])

    return app


app = create_app()
