"""tunnelgate control API - FastAPI Application Factory."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from tunnelgate.api import api_router
from tunnelgate.api.health import router as health_router
from tunnelgate.core import settings, setup_logging
from tunnelgate.core.logging import get_logger
from tunnelgate.services.supervisor import get_tunnel_supervisor

logger = get_logger("main")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler for startup/shutdown."""
    setup_logging(level=settings.log_level, format_type=settings.log_format)
    logger.info(f"Starting {settings.app_name} v{settings.app_version}")

    try:
        await get_tunnel_supervisor().recover()
    except Exception:
        logger.exception("Failed to recover running tunnel agent")

    yield

    logger.info("Shutting down...")
    # The agent is detached and keeps serving; only the in-process proxy goes
    await get_tunnel_supervisor().shutdown()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title=settings.app_name,
        description="Expose local plugin servers through a Cloudflare tunnel",
        version=settings.app_version,
        lifespan=lifespan,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        openapi_url="/openapi.json" if settings.debug else None,
    )

    app.include_router(health_router)  # Health at root level
    app.include_router(api_router)  # API at /api

    return app


# Application instance
app = create_app()
