"""
Celery tasks for Gmail history ingestion and watch management.

Tasks:
- process_gmail_history: Sync history after a push notification (webhook-triggered)
- renew_expiring_gmail_watches: Renew watches expiring within a day (daily)
"""

import logging
from datetime import datetime
from uuid import UUID

import sentry_sdk
from sqlalchemy import select
from sqlalchemy.orm import selectinload

from app.core.celery_app import celery_app
from app.core.celery_utils import run_async_task
from app.core.database import get_async_session
from app.models.email_account import EmailAccount
from app.modules.email.factory import get_email_provider
from app.modules.email.gmail_watch import renew_expiring_watches
from app.modules.email.history import sync_gmail_history
from app.modules.email.provider import ProviderAuthError

logger = logging.getLogger(__name__)


@celery_app.task(
    name="app.tasks.ingest.process_gmail_history",
    bind=True,
    max_retries=3,
    default_retry_delay=60,
)
def process_gmail_history(self, email_account_id: str, history_id: str):
    """
    Process new emails from Gmail history (webhook-triggered).

    Enqueues run_rules_for_message for every new inbound message and moves
    the account's history cursor forward.

    Args:
        email_account_id: UUID of the email account (as string)
        history_id: historyId from the push notification

    Raises:
        Exception: Retries up to 3 times with exponential backoff

    Usage:
        # Enqueued by webhook endpoint
        process_gmail_history.delay(email_account_id, history_id)
    """
    from app.tasks.rules import run_rules_for_message

    async def _process():
        async with get_async_session() as session:
            result = await session.execute(
                select(EmailAccount)
                .options(selectinload(EmailAccount.user))
                .where(EmailAccount.id == UUID(email_account_id))
            )
            account = result.scalar_one_or_none()

            if not account or not account.is_active:
                logger.warning(
                    f"Email account {email_account_id} not found or inactive, skipping history",
                    extra={"email_account_id": email_account_id}
                )
                return {"status": "skipped", "reason": "account_inactive"}

            provider = await get_email_provider(account, session)
            sync = await sync_gmail_history(account, provider, history_id, session)
            account.last_synced_at = datetime.utcnow()

        # Enqueue only after the cursor update is committed
        for message_id in sync.inbound_message_ids:
            run_rules_for_message.delay(email_account_id, message_id)

        return {
            "status": "success",
            "enqueued": len(sync.inbound_message_ids),
            "outbound": sync.outbound_count,
            "skipped": sync.skipped_count,
        }

    try:
        return run_async_task(_process())
    except ProviderAuthError as e:
        # Revoked access: retrying cannot help
        logger.error(
            f"Auth error while processing history for {email_account_id}: {e}",
            extra={"email_account_id": email_account_id}
        )
        sentry_sdk.capture_exception(e)
        return {"status": "failed", "reason": "auth_error"}
    except Exception as e:
        logger.error(
            f"Error processing history for {email_account_id}: {e}",
            extra={"email_account_id": email_account_id, "history_id": history_id},
            exc_info=True
        )
        raise self.retry(exc=e, countdown=60 * (2 ** self.request.retries))


@celery_app.task(name="app.tasks.ingest.renew_expiring_gmail_watches")
def renew_expiring_gmail_watches():
    """
    Renew Gmail watches that expire within 24 hours.

    Runs daily via Celery Beat. Gmail watches last 7 days.

    Returns:
        Dict with renewal stats
    """
    async def _renew():
        async with get_async_session() as session:
            renewed = await renew_expiring_watches(session)

        logger.info(f"Watch renewal complete: {len(renewed)} renewed")
        return {"renewed": len(renewed), "email_account_ids": renewed}

    return run_async_task(_renew())
