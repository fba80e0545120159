"""dispatch-history service entry point.

Initializes the FastAPI application with:
- Structured logging
- The shared store (live records and the append-only audit log)
- Typed JSON error handlers
- The /api/v1 router and a /health endpoint
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from dispatch_history.api.router import router
from dispatch_history.api.schemas import HealthResponse
from dispatch_history.database import close_database, get_session_factory, init_database
from dispatch_history.errors import register_exception_handlers
from dispatch_history.observability import configure_logging, get_logger
from dispatch_history.settings import get_settings

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Manage application startup and shutdown lifecycle.

    Args:
        app: The FastAPI application instance.

    Yields:
        None
    """
    settings = get_settings()
    configure_logging(settings.log_level, json_logs=settings.log_json)

    logger.info("Initializing shared store", service=settings.service_name)
    await init_database(
        settings.database_url,
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
        echo=settings.database_echo,
    )
    app.state.settings = settings
    logger.info("dispatch-history startup complete", entity_types=sorted(settings.entity_types))

    yield

    logger.info("Shutting down dispatch-history")
    await close_database()
    logger.info("dispatch-history shutdown complete")


def create_app() -> FastAPI:
    """Build the FastAPI application."""
    application = FastAPI(title="dispatch-history", version="0.1.0", lifespan=lifespan)
    register_exception_handlers(application)
    application.include_router(router, prefix="/api/v1")

    @application.get("/health", response_model=HealthResponse, tags=["health"])
    async def health() -> HealthResponse:
        """Report whether the shared store answers."""
        try:
            async with get_session_factory()() as session:
                await session.execute(text("SELECT 1"))
        except (SQLAlchemyError, RuntimeError) as exc:
            logger.warning("Health check failed", error=type(exc).__name__)
            return HealthResponse(status="degraded", database=False)
        return HealthResponse(status="ok", database=True)

    return application


app: FastAPI = create_app()
