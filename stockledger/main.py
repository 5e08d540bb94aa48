"""
Stock Ledger Microservice
Stock reservations, movement ledger and checkout lifecycle with structured
logging, health probes and a background reservation sweeper.
"""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
from typing import Optional
import os

from sqlalchemy.engine import Engine

from stockledger.api import checkout_router, register_error_handlers, stock_router
from stockledger.application.container import StockLedger
from stockledger.core import RequestLoggingMiddleware, ServiceHealth, get_logger, setup_logging
from stockledger.core_settings import Settings, get_settings
from stockledger.infrastructure.db import build_session_factory, create_db_engine, init_models, run_migrations

SERVICE_DESCRIPTION = "Stock reservation and movement ledger microservice"

logger = get_logger(__name__)


def create_app(settings: Optional[Settings] = None, engine: Optional[Engine] = None) -> FastAPI:
    settings = settings or get_settings()
    os.environ.setdefault("SERVICE_VERSION", settings.SERVICE_VERSION)
    setup_logging(service_name=settings.SERVICE_NAME, level=settings.LOG_LEVEL)

    engine = engine or create_db_engine(settings.DATABASE_URL)
    ledger = StockLedger(build_session_factory(engine), settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifecycle management"""
        logger.info(f"Starting {settings.SERVICE_NAME} version {settings.SERVICE_VERSION}")

        # Startup
        if settings.RUN_MIGRATIONS_ON_STARTUP:
            try:
                run_migrations(engine.url.render_as_string(hide_password=False))
            except Exception as e:
                logger.error(f"Migration error: {e}")

        try:
            init_models(engine)
            logger.info("Database models initialized")
        except Exception as e:
            logger.error(f"Failed to initialize database models: {e}")
            raise

        sweeper = None
        if settings.RESERVATION_SWEEP_ENABLED:
            sweeper = ledger.build_sweeper()
            sweeper.start()

        logger.info(f"{settings.SERVICE_NAME} started successfully")

        yield

        # Shutdown
        logger.info(f"Shutting down {settings.SERVICE_NAME}")
        if sweeper is not None:
            await sweeper.stop()

    app = FastAPI(
        title=settings.SERVICE_NAME,
        description=SERVICE_DESCRIPTION,
        version=settings.SERVICE_VERSION,
        lifespan=lifespan,
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        openapi_url="/api/openapi.json"
    )
    app.state.ledger = ledger
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestLoggingMiddleware)

    health_service = ServiceHealth(
        settings.SERVICE_NAME,
        settings.SERVICE_VERSION,
        engine,
        metrics_provider=ledger.metrics,
    )
    app.include_router(health_service.create_health_router())

    app.include_router(stock_router)
    app.include_router(checkout_router)
    register_error_handlers(app)

    @app.get("/")
    async def root():
        """Root endpoint"""
        return {
            "service": settings.SERVICE_NAME,
            "version": settings.SERVICE_VERSION,
            "status": "running",
            "docs": "/api/docs"
        }

    @app.get("/info")
    async def info():
        """Service information endpoint"""
        return {
            "service": settings.SERVICE_NAME,
            "version": settings.SERVICE_VERSION,
            "description": SERVICE_DESCRIPTION,
            "environment": os.getenv("ENVIRONMENT", "development"),
            "policies": {
                "reservation_ttl_minutes": settings.RESERVATION_TTL_MINUTES,
                "optimistic_lock_max_attempts": settings.OPTIMISTIC_LOCK_MAX_ATTEMPTS,
            },
            "endpoints": {
                "health": "/health",
                "ready": "/health/ready",
                "live": "/health/live",
                "metrics": "/metrics",
                "docs": "/api/docs"
            }
        }

    return app


app = create_app()
