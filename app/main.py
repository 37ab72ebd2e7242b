"""
Inbox Zero rule engine - Main FastAPI Application

Entry point for the application. Mounts the webhook and JSON API routers.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.core.config import settings
from app.core.database import init_db, close_db
from app.core.sentry import init_sentry
from app.api.rules import router as rules_router
from app.api.scheduled_actions import router as scheduled_actions_router
from app.api.webhooks import router as webhook_router

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan events.

    Runs on startup and shutdown.
    """
    logger.info(f"Starting {settings.APP_NAME} ({settings.ENVIRONMENT})")

    init_sentry()

    # Initialize database (only in development - use Alembic in production)
    if settings.ENVIRONMENT == "development":
        await init_db()

    yield

    logger.info("Shutting down...")
    await close_db()


app = FastAPI(
    title=settings.APP_NAME,
    description="Email rule engine - match incoming mail against user rules and act on it",
    version="0.1.0",
    docs_url="/docs" if settings.DEBUG else None,  # Disable docs in production
    redoc_url="/redoc" if settings.DEBUG else None,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "http://localhost:8000"] if settings.DEBUG else [settings.APP_URL],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(webhook_router, prefix="/webhooks", tags=["webhooks"])
app.include_router(rules_router, prefix="/rules")
app.include_router(scheduled_actions_router, prefix="/scheduled-actions")


@app.get("/health")
async def health_check():
    """
    Health check endpoint for monitoring.

    Status values:
    - healthy: All systems operational
    - degraded: Some warnings but functional
    - unhealthy: Critical components down
    """
    from app.core.health import get_health_metrics

    metrics = await get_health_metrics()

    return {
        "service": settings.APP_NAME,
        "version": "0.1.0",
        "environment": settings.ENVIRONMENT,
        **metrics,
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG,
    )
