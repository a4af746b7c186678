"""Todo Plan Engine - FastAPI Application."""

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI

from app.config import get_settings
from app.dependencies import get_approval_registry, get_run_store
from api.v1.router import api_v1_router
from core.logging_config import setup_logging
from core.middleware import RequestTrackingMiddleware, setup_exception_handlers
from integrations.claude_client import get_claude_client
from integrations.todo_client import get_todo_client

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown events."""
    settings = get_settings()
    setup_logging(settings)

    todo_client = get_todo_client()
    if await todo_client.connect():
        logger.info("Todo server connected", url=settings.TODO_SERVER_URL)
    else:
        logger.warning("Todo server unavailable, will retry on first run", url=settings.TODO_SERVER_URL)

    claude = get_claude_client()
    if not claude.is_configured:
        logger.warning("Claude not configured (set ANTHROPIC_API_KEY); analysis steps will fail")

    logger.info(
        "Application started",
        app=settings.APP_NAME,
        version=settings.APP_VERSION,
        environment=settings.ENVIRONMENT,
    )
    yield

    removed = get_approval_registry().cleanup(
        settings.APPROVAL_RETENTION_SECONDS, live_plan_ids=get_run_store().live_plan_ids()
    )
    logger.info("Application shutting down", stale_approvals_removed=removed)
    await todo_client.disconnect()
    await claude.disconnect()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="Runs multi-step todo plans with approval gating, "
                    "dependency resolution, fallbacks and bulk safety checks.",
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
        lifespan=lifespan,
    )

    # Request tracking middleware
    app.add_middleware(RequestTrackingMiddleware)

    # Global exception handlers
    setup_exception_handlers(app)

    # Versioned API
    app.include_router(api_v1_router, prefix=settings.API_V1_PREFIX)

    return app


app = create_app()
