"""
Webhook endpoints for mail provider notifications.

Handles:
- Gmail push notifications (via Google Cloud Pub/Sub)

CRITICAL: Webhooks MUST return 200 OK immediately to prevent Pub/Sub retries.
All processing happens in Celery tasks; every outcome below is a 200.
"""

import logging
from datetime import datetime
from typing import Optional

import sentry_sdk
from fastapi import APIRouter, Depends, Request
from pydantic import ValidationError
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.database import get_db
from app.core.security import mask_email
from app.models.email_account import EmailAccount
from app.models.webhook import GmailWebhookPayload, PubSubRequest, WebhookResponse

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/gmail", response_model=WebhookResponse)
async def gmail_webhook(
    request: Request,
    token: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
):
    """
    Receive Gmail push notifications from Google Cloud Pub/Sub.

    Decodes {emailAddress, historyId}, looks up the email account and
    enqueues process_gmail_history.

    Usage:
        curl -X POST "http://localhost:8000/webhooks/gmail?token=..." \
          -H "Content-Type: application/json" \
          -d '{"message": {"data": "...", "messageId": "1"}, "subscription": "..."}'
    """
    if settings.GOOGLE_PUBSUB_VERIFICATION_TOKEN and token != settings.GOOGLE_PUBSUB_VERIFICATION_TOKEN:
        logger.warning("Gmail webhook with invalid verification token")
        return WebhookResponse(status="ignored", message="Invalid token")

    try:
        body = await request.json()
        pubsub = PubSubRequest.model_validate(body)
        payload = GmailWebhookPayload.model_validate(pubsub.message.decode_data())
    except (ValueError, ValidationError) as e:
        # Invalid format: 200 so Pub/Sub does not redeliver it forever
        logger.warning(f"Invalid Pub/Sub message format: {type(e).__name__}")
        return WebhookResponse(status="ignored", message="Invalid message format")

    log_extra = {
        "history_id": payload.history_id,
        "pubsub_message_id": pubsub.message.messageId,
    }

    try:
        result = await db.execute(
            select(EmailAccount).where(func.lower(EmailAccount.email_address) == payload.email_address.lower())
        )
        account = result.scalar_one_or_none()

        if not account:
            logger.warning(
                f"Webhook for unknown email account {mask_email(payload.email_address)}",
                extra=log_extra
            )
            return WebhookResponse(status="ignored", message="Email account not found")

        log_extra["email_account_id"] = str(account.id)

        if not account.is_active:
            logger.info("Webhook for inactive email account", extra=log_extra)
            return WebhookResponse(status="ignored", message="Email account inactive")

        account.last_webhook_received_at = datetime.utcnow()
        await db.commit()

        from app.tasks.ingest import process_gmail_history

        task = process_gmail_history.delay(str(account.id), payload.history_id)
        logger.info(f"Enqueued history processing task {task.id}", extra=log_extra)

        return WebhookResponse(
            status="success",
            message="Webhook received, processing started",
            task_id=task.id,
        )

    except Exception as e:
        logger.error(f"Unexpected webhook error: {e}", extra=log_extra)
        sentry_sdk.capture_exception(e)
        return WebhookResponse(status="error", message="Internal error")
