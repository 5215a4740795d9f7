"""
Tranche Pricing & Funding Service — application entry-point.

Run with ``uvicorn tranche_service.main:app``.  The lifespan creates the
tables (retrying while the database comes up); if it never does, the service
still starts and ``/health`` reports ``degraded`` until it can reach the
database.
"""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.openapi.docs import get_redoc_html
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import SQLModel

from tranche_service.api.v1.api import api_router
from tranche_service.core.cache import cache
from tranche_service.core.config import settings
from tranche_service.core.exceptions import add_exception_handlers
from tranche_service.core.logging import setup_logging
from tranche_service.core.resilience import (
    CircuitState,
    RetryPolicy,
    db_circuit_breaker,
    retry_with_backoff,
)
from tranche_service.db.session import AsyncSessionLocal, engine
from tranche_service.middleware import RequestIDMiddleware, RequestTimingMiddleware

setup_logging()
logger = logging.getLogger(__name__)

APP_VERSION = "1.0.0"

STARTUP_RETRY = RetryPolicy(
    max_retries=4,
    base_delay=2.0,
    max_delay=16.0,
    jitter=False,
    retryable_exceptions=(SQLAlchemyError, OSError),
)


@retry_with_backoff(STARTUP_RETRY)
async def create_schema() -> None:
    # Table classes register with SQLModel.metadata on import.
    import tranche_service.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    try:
        await create_schema()
        logger.info("Database tables ready")
    except (SQLAlchemyError, OSError) as exc:
        logger.error("Database unreachable at startup; serving in DEGRADED mode: %s", exc)

    yield

    logger.info("Disposing database connection pool")
    await engine.dispose()


app = FastAPI(
    title=settings.PROJECT_NAME,
    version=APP_VERSION,
    description=(
        "Sells fund units through sequential fixed-price tranches and manages "
        "the capital-call lifecycle of investors' staged commitments."
    ),
    openapi_url=f"{settings.API_V1_STR}/openapi.json",
    redoc_url=None,
    lifespan=lifespan,
)


@app.get("/redoc", include_in_schema=False)
async def redoc_html():
    return get_redoc_html(
        openapi_url=app.openapi_url or f"{settings.API_V1_STR}/openapi.json",
        title=f"{settings.PROJECT_NAME} — ReDoc",
        redoc_js_url="https://unpkg.com/redoc@latest/bundles/redoc.standalone.js",
    )


# Last added runs outermost.
app.add_middleware(GZipMiddleware, minimum_size=500)
app.add_middleware(RequestIDMiddleware)
app.add_middleware(RequestTimingMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=[origin.strip() for origin in settings.CORS_ORIGINS.split(",")],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

add_exception_handlers(app)
app.include_router(api_router, prefix=settings.API_V1_STR)


async def _database_reachable() -> bool:
    try:
        async with AsyncSessionLocal() as session:
            await session.execute(text("SELECT 1"))
    except (SQLAlchemyError, OSError) as exc:
        logger.warning("Health probe could not reach the database: %s", exc)
        return False
    return True


@app.get("/health", tags=["Health"])
async def health_check():
    """
    Readiness probe.

    ``degraded`` when ``SELECT 1`` fails or the database circuit is open;
    purchases and transitions would be refused in either case.
    """
    database = await _database_reachable()
    breaker = db_circuit_breaker.get_status()
    healthy = database and breaker["state"] != CircuitState.OPEN.value
    return {
        "status": "ok" if healthy else "degraded",
        "version": APP_VERSION,
        "database": database,
        "circuit_breaker": breaker,
        "cache": cache.get_stats(),
    }
