"""FastAPI application for quota monitoring."""

import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator

# Load environment variables from .env file
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, Request

from keypool.api.routes import get_pool_manager, router as api_router, set_pool_manager
from keypool.config import Settings, settings
from keypool.pool import PoolManager

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan events."""
    logger.info("Starting keypool API...")
    pool = get_pool_manager()
    pool.init_db()
    yield
    logger.info("Shutting down keypool API...")
    await pool.close()
    set_pool_manager(None)


def create_app(pool: PoolManager | None = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    if pool is not None:
        set_pool_manager(pool)

    app = FastAPI(
        title="keypool",
        description="Quota-aware credential pool monitoring",
        version="0.1.0",
        lifespan=lifespan,
    )

    # Request timing middleware
    @app.middleware("http")
    async def add_timing_header(request: Request, call_next):
        start_time = time.perf_counter()
        response = await call_next(request)
        process_time = (time.perf_counter() - start_time) * 1000
        response.headers["X-Process-Time-Ms"] = f"{process_time:.2f}"
        return response

    app.include_router(api_router, prefix="/v1")

    # Health check
    @app.get("/health")
    async def health_check():
        pool = get_pool_manager()
        database = pool.db.health_check()
        cache = await pool.tracker.ephemeral.health_check()
        return {
            "status": "healthy" if database else "degraded",
            "version": "0.1.0",
            "database": database,
            "cache": cache,
            "flagged_tenants": sorted(pool.flagged_tenants),
        }

    return app


def run(config: Settings | None = None) -> None:
    """Run the API with uvicorn, optionally against explicit settings."""
    import uvicorn

    config = config or settings
    logging.basicConfig(
        level=getattr(logging, config.log_level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    app = create_app(pool=PoolManager.from_settings(config))
    uvicorn.run(app, host=config.api_host, port=config.api_port)


# Create app instance
app = create_app()
