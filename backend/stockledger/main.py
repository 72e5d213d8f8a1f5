"""FastAPI application factory.

Business endpoints live in the host application; this app only carries the
health probes and the mapping of stock errors onto HTTP responses, so a
host can mount it or call ``register_exception_handlers`` on its own app.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy import text

from stockledger.core.config import Settings, get_settings
from stockledger.core.exceptions import (
    ConcurrencyConflictError,
    InsufficientStockError,
    InvariantViolationError,
    NotFoundError,
)
from stockledger.core.logging_config import configure_logging
from stockledger.db.base import Base
from stockledger.db.session import build_engine, build_session_factory
# Import all models to ensure they're registered with Base.metadata
from stockledger import models  # noqa: F401

logger = logging.getLogger(__name__)

VERSION = "1.0.0"


def register_exception_handlers(app: FastAPI) -> None:
    """Translate the stock error taxonomy into JSON responses."""

    @app.exception_handler(InsufficientStockError)
    async def insufficient_stock_handler(request: Request, exc: InsufficientStockError):
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={
                "detail": str(exc),
                "error": "insufficient_stock",
                "product_id": exc.product_id,
                "location_id": exc.location_id,
                "available": exc.available,
                "requested": exc.requested,
            },
        )

    @app.exception_handler(ConcurrencyConflictError)
    async def concurrency_conflict_handler(request: Request, exc: ConcurrencyConflictError):
        return JSONResponse(
            status_code=status.HTTP_409_CONFLICT,
            content={
                "detail": "Stock was modified concurrently, please retry",
                "error": "concurrency_conflict",
                "retryable": True,
            },
        )

    @app.exception_handler(NotFoundError)
    async def not_found_handler(request: Request, exc: NotFoundError):
        return JSONResponse(
            status_code=status.HTTP_404_NOT_FOUND,
            content={"detail": str(exc), "error": "not_found", "entity": exc.entity},
        )

    @app.exception_handler(InvariantViolationError)
    async def invariant_violation_handler(request: Request, exc: InvariantViolationError):
        logger.error(f"Invariant violation on {request.method} {request.url.path}: {exc} (index={exc.index})")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"detail": "Internal server error", "error": "internal_error"},
        )


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings)

    engine = build_engine(settings)
    session_factory = build_session_factory(engine)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan handler."""
        logger.info("Starting stock ledger service")

        # Create tables if they don't exist (for SQLite dev)
        # In production with PostgreSQL, use Alembic migrations
        if settings.database_url.startswith("sqlite"):
            Base.metadata.create_all(bind=engine)
            logger.info("Database tables created (SQLite mode)")

        yield

        engine.dispose()
        logger.info("Shutting down stock ledger service")

    app = FastAPI(
        title="Stock Ledger",
        description="Inventory quantity consistency core",
        version=VERSION,
        lifespan=lifespan,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
    )
    app.state.settings = settings
    app.state.engine = engine
    app.state.session_factory = session_factory

    register_exception_handlers(app)

    @app.get("/health")
    def health_check():
        """Basic liveness check endpoint."""
        return {"status": "healthy", "version": VERSION}

    @app.get("/health/ready")
    def readiness_check():
        """Readiness probe with database connectivity check."""
        checks = {"database": "unknown"}

        db = None
        try:
            db = app.state.session_factory()
            db.execute(text("SELECT 1"))
            checks["database"] = "healthy"
        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            checks["database"] = "unhealthy"
        finally:
            if db:
                db.close()

        return {
            "status": "ready" if checks["database"] == "healthy" else "degraded",
            "version": VERSION,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "checks": checks,
        }

    return app
