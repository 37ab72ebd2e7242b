"""
Celery task running the rule engine for one message.
"""

import logging
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import selectinload

from app.core.celery_app import celery_app
from app.core.celery_utils import run_async_task
from app.core.database import get_async_session
from app.core.sentry import capture_business_error
from app.models.email_account import EmailAccount
from app.modules.auth.token_refresh import OAuthPermanentError
from app.modules.email.factory import get_email_provider
from app.modules.email.history import is_message_processed
from app.modules.email.provider import ProviderAuthError, ProviderNotFound
from app.modules.rules.loader import load_rules
from app.modules.rules.run_rules import run_rules

logger = logging.getLogger(__name__)


@celery_app.task(
    name="app.tasks.rules.run_rules_for_message",
    bind=True,
    max_retries=3,
    default_retry_delay=30,
)
def run_rules_for_message(self, email_account_id: str, message_id: str):
    """
    Match and execute rules for a single message.

    Skips drafts, vanished messages and messages that already have an
    ExecutedRule. LLM and transient provider failures are retried with
    exponential backoff (30s, 60s, 120s); the transaction is rolled back so
    a retry starts clean.

    Args:
        email_account_id: UUID of the email account (as string)
        message_id: Provider message id

    Returns:
        Dict with the per-rule outcome
    """
    log_extra = {"email_account_id": email_account_id, "message_id": message_id}

    async def _run():
        async with get_async_session() as session:
            result = await session.execute(
                select(EmailAccount)
                .options(selectinload(EmailAccount.user))
                .where(EmailAccount.id == UUID(email_account_id))
            )
            account = result.scalar_one_or_none()
            if not account or not account.is_active:
                return {"status": "skipped", "reason": "account_inactive"}

            if await is_message_processed(session, account.id, message_id):
                logger.info("Message already processed", extra=log_extra)
                return {"status": "skipped", "reason": "already_processed"}

            provider = await get_email_provider(account, session)
            try:
                message = await provider.get_message(message_id)
            except ProviderNotFound:
                logger.info("Message no longer exists", extra=log_extra)
                return {"status": "skipped", "reason": "not_found"}

            if message.is_draft:
                return {"status": "skipped", "reason": "draft"}

            rules = await load_rules(session, account.id)
            if not rules:
                return {"status": "skipped", "reason": "no_rules"}

            results = await run_rules(provider, message, rules, account, session)

        return {
            "status": "success",
            "results": [
                {
                    "rule_id": r.rule.id if r.rule else None,
                    "status": r.status.value,
                    "executed_rule_id": r.executed_rule_id,
                }
                for r in results
            ],
        }

    try:
        return run_async_task(_run())
    except (ProviderAuthError, OAuthPermanentError) as e:
        logger.error(f"Auth error running rules: {e}", extra=log_extra)
        capture_business_error(e, {**log_extra, "operation": "run_rules"}, level="warning")
        return {"status": "failed", "reason": "auth_error"}
    except Exception as e:
        logger.error(f"Error running rules: {type(e).__name__}: {e}", extra=log_extra, exc_info=True)
        if self.request.retries >= self.max_retries:
            capture_business_error(e, {**log_extra, "operation": "run_rules"})
        raise self.retry(exc=e, countdown=30 * (2 ** self.request.retries))
