"""
Execution of due scheduled actions.

Failure policy:
- Permanent errors (auth, missing objects, invalid requests) -> FAILED "[PERMANENT] ..."
- Anything else is retried after SCHEDULED_ACTION_RETRY_DELAY_MINUTES, up to
  SCHEDULED_ACTION_MAX_RETRIES times, then FAILED
- A message that no longer exists completes the action ("Email no longer exists")
"""

import logging
import time
from datetime import datetime, timedelta
from typing import Dict, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import selectinload

from app.core.config import settings
from app.models.email_account import EmailAccount
from app.models.executed_rule import ExecutedAction, ExecutedRule, ExecutedRuleStatus
from app.models.scheduled_action import ScheduledAction, ScheduledActionStatus
from app.modules.email.factory import get_email_provider
from app.modules.email.provider import ProviderAuthError, ProviderNotFound
from app.modules.rules.execute import execute_act

logger = logging.getLogger(__name__)


PERMANENT_ERROR_CODES = {
    "PERMISSION_DENIED",
    "NOT_FOUND",
    "INVALID_ARGUMENT",
    "FAILED_PRECONDITION",
}

PERMANENT_ERROR_MESSAGES = (
    "Permission denied",
    "Invalid argument",
    "Not found",
    "Forbidden",
    "Email account not found",
)

EMAIL_NO_LONGER_EXISTS = "Email no longer exists"


class EmailAccountNotFound(Exception):
    pass


def is_permanent_failure(error: Optional[Exception]) -> bool:
    if error is None:
        return False
    if isinstance(error, (ProviderAuthError, ProviderNotFound, EmailAccountNotFound)):
        return True
    if getattr(error, "code", None) in PERMANENT_ERROR_CODES:
        return True
    message = str(error)
    return any(fragment in message for fragment in PERMANENT_ERROR_MESSAGES)


async def load_email_account(session, email_account_id) -> EmailAccount:
    result = await session.execute(
        select(EmailAccount)
        .options(selectinload(EmailAccount.user))
        .where(EmailAccount.id == email_account_id)
    )
    account = result.scalar_one_or_none()
    if account is None:
        raise EmailAccountNotFound("Email account not found")
    return account


async def mark_action_completed(
    session,
    scheduled_action: ScheduledAction,
    executed_action_id=None,
    reason: Optional[str] = None,
):
    scheduled_action.status = ScheduledActionStatus.COMPLETED.value
    scheduled_action.executed_at = datetime.utcnow()
    scheduled_action.executed_action_id = executed_action_id
    scheduled_action.error_message = reason
    await session.flush()


async def mark_action_failed(session, scheduled_action: ScheduledAction, error: Exception, is_permanent: bool):
    prefix = "[PERMANENT] " if is_permanent else ""
    scheduled_action.status = ScheduledActionStatus.FAILED.value
    scheduled_action.error_message = f"{prefix}{error}"
    await session.flush()

    logger.warning(
        "Marked scheduled action as failed",
        extra={"scheduled_action_id": str(scheduled_action.id), "permanent": is_permanent}
    )


async def schedule_retry(session, scheduled_action: ScheduledAction, error: Exception):
    retry_at = datetime.utcnow() + timedelta(minutes=settings.SCHEDULED_ACTION_RETRY_DELAY_MINUTES)
    scheduled_action.status = ScheduledActionStatus.PENDING.value
    scheduled_action.scheduled_for = retry_at
    scheduled_action.retry_count = (scheduled_action.retry_count or 0) + 1
    scheduled_action.error_message = f"Retry scheduled: {error}"
    await session.flush()

    logger.info(
        f"Scheduled action retry at {retry_at.isoformat()}",
        extra={
            "scheduled_action_id": str(scheduled_action.id),
            "retry_count": scheduled_action.retry_count,
        }
    )


async def check_and_complete_executed_rule(session, executed_rule_id) -> bool:
    """Mark the ExecutedRule APPLIED once none of its scheduled actions are outstanding."""
    result = await session.execute(
        select(func.count(ScheduledAction.id)).where(
            ScheduledAction.executed_rule_id == executed_rule_id,
            ScheduledAction.status.in_([
                ScheduledActionStatus.PENDING.value,
                ScheduledActionStatus.EXECUTING.value,
            ]),
        )
    )
    if (result.scalar() or 0) > 0:
        return False

    executed_rule = await session.get(ExecutedRule, executed_rule_id)
    if executed_rule is not None:
        executed_rule.status = ExecutedRuleStatus.APPLIED.value
        await session.flush()
        logger.info(
            "All scheduled actions finished, ExecutedRule applied",
            extra={"executed_rule_id": str(executed_rule_id)}
        )
    return True


async def execute_scheduled_action(scheduled_action: ScheduledAction, session) -> Dict:
    """
    Run one claimed (EXECUTING) scheduled action.

    Never raises for action failures: the outcome is written to the row.

    Returns:
        {"success": bool, "retry": bool, ...}
    """
    start_time = time.time()
    log_extra = {
        "scheduled_action_id": str(scheduled_action.id),
        "email_account_id": str(scheduled_action.email_account_id),
        "message_id": scheduled_action.message_id,
        "action_type": scheduled_action.action_type,
    }
    logger.info("Executing scheduled action", extra=log_extra)

    try:
        account = await load_email_account(session, scheduled_action.email_account_id)
        provider = await get_email_provider(account, session)

        try:
            message = await provider.get_message(scheduled_action.message_id)
        except ProviderNotFound:
            logger.info("Email no longer exists", extra=log_extra)
            await mark_action_completed(session, scheduled_action, None, EMAIL_NO_LONGER_EXISTS)
            return {"success": True, "retry": False, "reason": EMAIL_NO_LONGER_EXISTS}

        executed_rule = await session.get(ExecutedRule, scheduled_action.executed_rule_id)
        executed_action = ExecutedAction(
            executed_rule_id=scheduled_action.executed_rule_id,
            type=scheduled_action.action_type,
            label=scheduled_action.label,
            subject=scheduled_action.subject,
            content=scheduled_action.content,
            to=scheduled_action.to,
            cc=scheduled_action.cc,
            bcc=scheduled_action.bcc,
            url=scheduled_action.url,
        )
        session.add(executed_action)
        await session.flush()

        await execute_act(
            provider,
            executed_rule,
            message,
            session,
            executed_actions=[executed_action],
            update_status=False,
        )

        await mark_action_completed(session, scheduled_action, executed_action.id)
        await check_and_complete_executed_rule(session, scheduled_action.executed_rule_id)

        duration_ms = (time.time() - start_time) * 1000
        logger.info(
            f"Executed scheduled action in {duration_ms:.0f}ms",
            extra={**log_extra, "executed_action_id": str(executed_action.id)}
        )
        return {"success": True, "retry": False, "executed_action_id": str(executed_action.id)}

    except Exception as e:
        logger.error(f"Failed to execute scheduled action: {type(e).__name__}: {e}", extra=log_extra)

        permanent = is_permanent_failure(e)
        if not permanent and (scheduled_action.retry_count or 0) < settings.SCHEDULED_ACTION_MAX_RETRIES:
            await schedule_retry(session, scheduled_action, e)
            return {"success": False, "retry": True, "error": str(e)}

        await mark_action_failed(session, scheduled_action, e, permanent)
        return {"success": False, "retry": False, "error": str(e)}
