"""
Health check utilities for monitoring application components.

Checks:
- Database connectivity
- Redis connectivity (Celery broker)
- Provider/LLM configuration
- Webhook activity (last received timestamp)
- Scheduled action backlog
"""

import logging
from datetime import datetime
from typing import Dict, Any

from sqlalchemy import text
from sqlalchemy.exc import OperationalError
import redis

from app.core.config import settings
from app.core.database import AsyncSessionLocal

logger = logging.getLogger(__name__)


async def check_database() -> Dict[str, Any]:
    """Check PostgreSQL connectivity and latency."""
    start_time = datetime.utcnow()

    try:
        async with AsyncSessionLocal() as session:
            result = await session.execute(text("SELECT 1"))
            result.scalar()

        latency_ms = (datetime.utcnow() - start_time).total_seconds() * 1000
        return {"status": "healthy", "latency_ms": round(latency_ms, 2)}
    except OperationalError as e:
        logger.error(f"Database health check failed: {e}")
        return {"status": "unhealthy", "error": str(e)}
    except Exception as e:
        logger.error(f"Unexpected database error: {e}")
        return {"status": "unhealthy", "error": str(e)}


async def check_redis() -> Dict[str, Any]:
    """Check Redis connectivity (Celery broker)."""
    start_time = datetime.utcnow()

    try:
        redis_client = redis.from_url(settings.CELERY_BROKER_URL, socket_connect_timeout=2)
        redis_client.ping()
        latency_ms = (datetime.utcnow() - start_time).total_seconds() * 1000
        redis_client.close()
        return {"status": "healthy", "latency_ms": round(latency_ms, 2)}
    except redis.ConnectionError as e:
        logger.error(f"Redis health check failed: {e}")
        return {"status": "unhealthy", "error": str(e)}
    except Exception as e:
        logger.error(f"Unexpected Redis error: {e}")
        return {"status": "unhealthy", "error": str(e)}


def check_configuration() -> Dict[str, Any]:
    """
    Verify that provider and LLM credentials are configured.

    Lightweight: makes no external calls.
    """
    missing = []
    if not settings.GOOGLE_CLIENT_ID or not settings.GOOGLE_CLIENT_SECRET:
        missing.append("google_oauth")
    if not settings.OPENAI_API_KEY:
        missing.append("openai")

    if missing:
        return {"status": "unhealthy", "missing": missing}

    return {
        "status": "healthy",
        "outlook_configured": bool(settings.MICROSOFT_CLIENT_ID),
    }


async def check_last_webhook() -> Dict[str, Any]:
    """
    Check when the last provider notification was received.

    No webhook in 30+ minutes usually means an expired watch.
    """
    try:
        async with AsyncSessionLocal() as session:
            result = await session.execute(text("""
                SELECT MAX(last_webhook_received_at)
                FROM email_accounts
                WHERE is_active = true
            """))
            last_webhook = result.scalar()

        if not last_webhook:
            return {"status": "unknown", "message": "No webhooks received yet"}

        seconds_since = (datetime.utcnow() - last_webhook).total_seconds()
        if seconds_since > 1800:
            return {
                "status": "warning",
                "seconds_since_last": round(seconds_since, 0),
                "message": "No webhooks in 30+ minutes - check Gmail watch",
            }
        return {"status": "healthy", "seconds_since_last": round(seconds_since, 0)}
    except Exception as e:
        logger.error(f"Webhook health check failed: {e}")
        return {"status": "unhealthy", "error": str(e)}


async def check_scheduled_backlog() -> Dict[str, Any]:
    """
    Count delayed actions that are overdue by more than 10 minutes.

    A growing backlog means the beat sweep or workers are not running.
    """
    try:
        async with AsyncSessionLocal() as session:
            result = await session.execute(text("""
                SELECT COUNT(*)
                FROM scheduled_actions
                WHERE status = 'PENDING'
                  AND scheduled_for < NOW() - INTERVAL '10 minutes'
            """))
            overdue = result.scalar() or 0

        return {
            "status": "warning" if overdue > 0 else "healthy",
            "overdue_actions": overdue,
        }
    except Exception as e:
        logger.error(f"Scheduled backlog check failed: {e}")
        return {"status": "unknown", "error": str(e)}


async def get_health_metrics() -> Dict[str, Any]:
    """
    Get health metrics for all components.

    Returns:
        Dict with overall status and component-specific metrics
    """
    metrics = {
        "database": await check_database(),
        "redis": await check_redis(),
        "configuration": check_configuration(),
        "last_webhook": await check_last_webhook(),
        "scheduled_actions": await check_scheduled_backlog(),
    }

    if any(m.get("status") == "unhealthy" for m in metrics.values()):
        overall_status = "unhealthy"
    elif any(m.get("status") == "warning" for m in metrics.values()):
        overall_status = "degraded"
    else:
        overall_status = "healthy"

    return {
        "status": overall_status,
        "timestamp": datetime.utcnow().isoformat(),
        "components": metrics,
    }
