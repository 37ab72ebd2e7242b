"""
Execution of an ExecutedRule's actions against the mailbox.
"""

import logging
from typing import List, Optional

from app.models.email_message import ParsedMessage
from app.models.executed_rule import ExecutedAction, ExecutedRule, ExecutedRuleStatus
from app.models.matching import ActionItem
from app.models.rule import ActionType
from app.modules.email.provider import EmailProvider
from app.modules.rules.actions import run_action_function

logger = logging.getLogger(__name__)


def executed_action_to_item(executed_action: ExecutedAction) -> ActionItem:
    return ActionItem(
        id=str(executed_action.id) if executed_action.id else None,
        type=ActionType(executed_action.type),
        label=executed_action.label,
        subject=executed_action.subject,
        content=executed_action.content,
        to=executed_action.to,
        cc=executed_action.cc,
        bcc=executed_action.bcc,
        url=executed_action.url,
    )


async def execute_act(
    provider: EmailProvider,
    executed_rule: ExecutedRule,
    message: ParsedMessage,
    session,
    executed_actions: Optional[List[ExecutedAction]] = None,
    update_status: bool = True,
) -> None:
    """
    Run actions in order.

    Args:
        provider: Mail provider for the account
        executed_rule: Audit row the actions belong to
        message: The message the rule matched
        session: AsyncSession (draft ids and status are written here)
        executed_actions: Subset to run; defaults to all of executed_rule.actions
        update_status: Set APPLIED / ERROR on the ExecutedRule

    Raises:
        Whatever the failing action raised, after marking the rule ERROR
    """
    actions = executed_rule.actions if executed_actions is None else executed_actions
    log_extra = {
        "email_account_id": str(executed_rule.email_account_id),
        "message_id": message.id,
        "thread_id": message.thread_id,
        "executed_rule_id": str(executed_rule.id),
    }

    for executed_action in actions:
        try:
            result = await run_action_function(
                provider,
                message,
                executed_action_to_item(executed_action),
                executed_rule,
                session,
            )
        except Exception as e:
            logger.error(
                f"Error executing action {executed_action.type}: {type(e).__name__}: {e}",
                extra=log_extra
            )
            if update_status:
                executed_rule.status = ExecutedRuleStatus.ERROR.value
                await session.flush()
            raise

        if result and result.get("draft_id"):
            executed_action.draft_id = result["draft_id"]

    if update_status:
        executed_rule.status = ExecutedRuleStatus.APPLIED.value
    await session.flush()

    logger.info(f"Executed {len(actions)} actions", extra=log_extra)
