"""
Sentry initialization and error monitoring configuration.

Captures:
- Python exceptions
- FastAPI errors
- Celery task failures
- Rule engine errors reported through capture_business_error

Context enrichment:
- Email account ID, message ID, rule ID
- Environment (dev/staging/production)
"""

import logging
import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.celery import CeleryIntegration
from sentry_sdk.integrations.logging import LoggingIntegration

from app.core.config import settings

logger = logging.getLogger(__name__)


SENSITIVE_KEYS = [
    "access_token",
    "refresh_token",
    "encrypted_access_token",
    "encrypted_refresh_token",
    "token",
    "password",
    "secret",
    "api_key",
    "encryption_key",
    "body",
    "text_plain",
    "text_html",
    "content",
]


def init_sentry():
    """
    Initialize Sentry error monitoring.

    Only initializes if SENTRY_DSN is configured.
    """
    if not settings.SENTRY_DSN:
        logger.info("Sentry DSN not configured - error monitoring disabled")
        return

    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        environment=settings.ENVIRONMENT,
        release="inbox-zero-rules@0.1.0",
        integrations=[
            FastApiIntegration(transaction_style="endpoint"),
            CeleryIntegration(),
            LoggingIntegration(
                level=logging.INFO,
                event_level=logging.ERROR,
            ),
        ],
        traces_sample_rate=0.1 if settings.is_production else 1.0,
        sample_rate=1.0,
        send_default_pii=False,
        max_breadcrumbs=50,
        before_send=filter_sensitive_data,
    )

    logger.info(f"Sentry initialized - environment: {settings.ENVIRONMENT}")


def _redact(obj):
    if isinstance(obj, dict):
        for key in list(obj.keys()):
            if any(sensitive in str(key).lower() for sensitive in SENSITIVE_KEYS):
                obj[key] = "[REDACTED]"
            else:
                _redact(obj[key])
    elif isinstance(obj, list):
        for item in obj:
            _redact(item)


def filter_sensitive_data(event, hint):
    """
    Redact tokens, keys and message bodies before an event leaves the process.

    Args:
        event: Sentry event dict
        hint: Additional context

    Returns:
        The redacted event
    """
    if event.get("extra"):
        _redact(event["extra"])

    if event.get("contexts"):
        _redact(event["contexts"])

    if isinstance(event.get("request"), dict) and event["request"].get("data"):
        _redact(event["request"]["data"])

    return event


def capture_business_error(
    error: Exception,
    context: dict,
    level: str = "error"
):
    """
    Capture an expected engine error with enriched context.

    Use this for errors that are handled but need tracking:
    - LLM failures
    - Provider quota/auth errors
    - Scheduled action failures

    Example:
        capture_business_error(
            error=e,
            context={
                "email_account_id": str(account.id),
                "message_id": message.id,
                "operation": "run_rules",
            },
        )
    """
    safe_context = {k: v for k, v in context.items() if "token" not in k.lower()}

    sentry_sdk.capture_exception(
        error,
        level=level,
        extras=safe_context,
    )

    logger.error(
        f"Business error captured: {error}",
        extra=safe_context,
        exc_info=True
    )
