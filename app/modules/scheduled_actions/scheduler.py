"""
Scheduling of delayed actions.

Rows move PENDING -> EXECUTING -> COMPLETED | FAILED, or PENDING -> CANCELLED
when a newer rule run for the same thread supersedes them. The beat sweep
claims due rows with mark_executing, which only succeeds for one worker.
"""

import logging
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import select, update

from app.models.email_message import ParsedMessage
from app.models.executed_rule import ExecutedRule
from app.models.matching import ActionItem
from app.models.scheduled_action import ScheduledAction, ScheduledActionStatus

logger = logging.getLogger(__name__)


async def schedule_delayed_actions(
    session,
    executed_rule: ExecutedRule,
    action_items: List[ActionItem],
    message: ParsedMessage,
    now: Optional[datetime] = None,
) -> List[ScheduledAction]:
    """
    Create a PENDING ScheduledAction for every delayed action item.

    Items without a positive delay are ignored.
    """
    now = now or datetime.utcnow()
    scheduled = []
    for item in action_items:
        if not item.is_delayed:
            continue
        scheduled_action = ScheduledAction(
            executed_rule_id=executed_rule.id,
            email_account_id=executed_rule.email_account_id,
            message_id=message.id,
            thread_id=message.thread_id,
            action_type=item.type.value,
            label=item.label,
            subject=item.subject,
            content=item.content,
            to=item.to,
            cc=item.cc,
            bcc=item.bcc,
            url=item.url,
            scheduled_for=now + timedelta(minutes=item.delay_in_minutes),
            status=ScheduledActionStatus.PENDING.value,
            retry_count=0,
        )
        session.add(scheduled_action)
        scheduled.append(scheduled_action)

    if scheduled:
        await session.flush()
        logger.info(
            f"Scheduled {len(scheduled)} delayed actions",
            extra={
                "email_account_id": str(executed_rule.email_account_id),
                "executed_rule_id": str(executed_rule.id),
                "message_id": message.id,
            }
        )
    return scheduled


async def cancel_scheduled_actions(
    session,
    email_account_id,
    thread_id: str,
    rule_id=None,
    reason: str = "Superseded by new rule",
) -> int:
    """
    Cancel PENDING actions for a thread (optionally only those of one rule).

    Returns:
        Number of cancelled rows
    """
    executed_rules = select(ExecutedRule.id).where(
        ExecutedRule.email_account_id == email_account_id,
        ExecutedRule.thread_id == thread_id,
    )
    if rule_id is not None:
        executed_rules = executed_rules.where(ExecutedRule.rule_id == rule_id)

    result = await session.execute(
        update(ScheduledAction)
        .where(
            ScheduledAction.email_account_id == email_account_id,
            ScheduledAction.thread_id == thread_id,
            ScheduledAction.status == ScheduledActionStatus.PENDING.value,
            ScheduledAction.executed_rule_id.in_(executed_rules),
        )
        .values(
            status=ScheduledActionStatus.CANCELLED.value,
            error_message=reason,
            updated_at=datetime.utcnow(),
        )
        .execution_options(synchronize_session=False)
    )

    cancelled = result.rowcount or 0
    if cancelled:
        logger.info(
            f"Cancelled {cancelled} scheduled actions: {reason}",
            extra={"email_account_id": str(email_account_id), "thread_id": thread_id}
        )
    return cancelled


async def cancel_scheduled_action(session, scheduled_action_id, reason: str = "Cancelled by user") -> bool:
    """Cancel one PENDING row. False when it is no longer pending."""
    result = await session.execute(
        update(ScheduledAction)
        .where(
            ScheduledAction.id == scheduled_action_id,
            ScheduledAction.status == ScheduledActionStatus.PENDING.value,
        )
        .values(
            status=ScheduledActionStatus.CANCELLED.value,
            error_message=reason,
            updated_at=datetime.utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    return (result.rowcount or 0) == 1


async def get_due_scheduled_actions(session, limit: int, now: Optional[datetime] = None) -> List[ScheduledAction]:
    now = now or datetime.utcnow()
    result = await session.execute(
        select(ScheduledAction)
        .where(
            ScheduledAction.status == ScheduledActionStatus.PENDING.value,
            ScheduledAction.scheduled_for <= now,
        )
        .order_by(ScheduledAction.scheduled_for)
        .limit(limit)
    )
    return list(result.scalars().all())


async def mark_executing(session, scheduled_action_id) -> bool:
    """
    Claim a PENDING row for execution.

    Returns:
        True if this caller won the row, False if another worker (or a
        cancellation) got there first
    """
    result = await session.execute(
        update(ScheduledAction)
        .where(
            ScheduledAction.id == scheduled_action_id,
            ScheduledAction.status == ScheduledActionStatus.PENDING.value,
        )
        .values(
            status=ScheduledActionStatus.EXECUTING.value,
            updated_at=datetime.utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    return (result.rowcount or 0) == 1
