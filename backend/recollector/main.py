"""Recollector Backend - FastAPI Application Factory."""

import asyncio
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from recollector.api import api_router
from recollector.api.health import router as health_router
from recollector.core import async_session_maker, settings, setup_logging
from recollector.core.clock import Clock
from recollector.core.logging import get_logger
from recollector.middleware import (
    AuthenticationGate,
    AuthenticationMiddleware,
    SecurityHeadersMiddleware,
)

# Import all models to ensure they're registered with Base for Alembic
from recollector.models import RevokedToken, User  # noqa: F401
from recollector.services.revocation_sweeper import RevocationSweeper
from recollector.services.tokens import SigningKey, TokenIssuer

logger = get_logger("main")


def task_done_callback(task: asyncio.Task[None]) -> None:
    """Log unhandled exceptions from background tasks."""
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error(f"Background task {task.get_name()} failed: {exc}")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler for startup/shutdown."""
    setup_logging(
        level=settings.log_level,
        format_type="structured" if not settings.debug else "dev",
    )
    logger.info(f"Starting {settings.app_name} v{settings.app_version}")

    for warning in settings.check_security_configuration():
        logger.warning(f"Security configuration: {warning}")

    sweeper: RevocationSweeper = app.state.sweeper
    await sweeper.start()
    if sweeper.task is not None:
        sweeper.task.add_done_callback(task_done_callback)

    yield

    # Shutdown
    logger.info("Shutting down...")
    await sweeper.stop()


def create_app(
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    clock: Clock | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        session_factory: Session factory used by the authentication gate,
            the health check and the revocation sweeper. Defaults to the
            module-level ``async_session_maker``.
        clock: Time source for token issuance and validation.
    """
    clock = clock or Clock()
    session_factory = session_factory or async_session_maker
    issuer = TokenIssuer.from_settings(settings, clock)

    app = FastAPI(
        title=settings.app_name,
        description="List and category tracker - authentication service",
        version=settings.app_version,
        lifespan=lifespan,
        # OpenAPI docs only in debug mode
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        openapi_url="/openapi.json" if settings.debug else None,
    )

    app.state.clock = clock
    app.state.session_factory = session_factory
    app.state.token_issuer = issuer
    app.state.sweeper = RevocationSweeper(
        session_factory,
        clock=clock,
        interval_seconds=settings.revocation_sweep_interval_seconds,
    )

    # Resolves Authorization headers into request.state.identity; never rejects
    app.add_middleware(
        AuthenticationMiddleware,
        gate=AuthenticationGate(SigningKey.access_from_settings(settings), clock),
    )

    # Security headers middleware
    app.add_middleware(SecurityHeadersMiddleware)

    # CORS middleware - MUST be outermost (added last in Starlette LIFO order)
    # so that CORS headers are present on ALL responses, including 401s.
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=[
            "Authorization",
            "Content-Type",
            "Accept",
            "X-Request-ID",
        ],
    )

    # Prometheus metrics (before routers so /metrics endpoint is registered first)
    if settings.enable_metrics:
        from prometheus_fastapi_instrumentator import Instrumentator

        Instrumentator(
            excluded_handlers=["/health", "/metrics"],
        ).instrument(app).expose(app, endpoint="/metrics", include_in_schema=False)

    # Include routers
    app.include_router(health_router)  # Health at root level
    app.include_router(api_router)  # API at /api/v1

    # Root endpoint
    @app.get("/")
    async def root() -> dict[str, str]:
        """Root endpoint with API information."""
        return {
            "name": settings.app_name,
            "version": settings.app_version,
        }

    return app


# Application instance
app = create_app()
