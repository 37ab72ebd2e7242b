"""
Rule engine entry point: match, resolve arguments, persist and execute.

    results = await run_rules(provider, message, rules, email_account, session)

Each matched rule produces one ExecutedRule row (the audit record) with its
immediate actions as ExecutedAction rows; delayed actions become
ScheduledAction rows. A message with no match gets a single SKIPPED row so
it is not processed again.
"""

import logging
import uuid
from typing import List, Optional

from sqlalchemy import select

from app.core.sentry import capture_business_error
from app.models.email_message import ParsedMessage
from app.models.executed_rule import ExecutedAction, ExecutedRule, ExecutedRuleStatus
from app.models.matching import (
    ActionItem,
    ConditionType,
    MatchReason,
    RuleData,
    RuleMatch,
    RunRulesResult,
)
from app.models.rule import ActionType, CONVERSATION_STATUS_TYPES, Rule, is_conversation_status_type
from app.modules.email.provider import EmailProvider
from app.modules.rules.choose_args import get_action_items_with_ai_args
from app.modules.rules.execute import execute_act
from app.modules.rules.match_rules import find_matching_rules
from app.modules.scheduled_actions.scheduler import cancel_scheduled_actions, schedule_delayed_actions

logger = logging.getLogger(__name__)


def _uuid(value):
    if value is None or isinstance(value, uuid.UUID):
        return value
    return uuid.UUID(str(value))


async def get_last_conversation_rule_id(session, email_account_id, thread_id: str) -> Optional[str]:
    """Rule id of the latest conversation-status rule APPLIED in the thread."""
    result = await session.execute(
        select(ExecutedRule.rule_id)
        .join(Rule, ExecutedRule.rule_id == Rule.id)
        .where(
            ExecutedRule.email_account_id == email_account_id,
            ExecutedRule.thread_id == thread_id,
            ExecutedRule.status == ExecutedRuleStatus.APPLIED.value,
            Rule.system_type.in_([t.value for t in CONVERSATION_STATUS_TYPES]),
        )
        .order_by(ExecutedRule.created_at.desc())
        .limit(1)
    )
    rule_id = result.scalar_one_or_none()
    return str(rule_id) if rule_id else None


async def ensure_conversation_rule_continuity(
    session,
    email_account_id,
    thread_id: str,
    conversation_rules: List[RuleData],
    matches: List[RuleMatch],
) -> List[RuleMatch]:
    """
    Keep conversation tracking alive on a thread.

    When a conversation-status rule was applied earlier in the thread and no
    conversation rule matched this time, that rule is added with a STATIC
    reason. There is no separate conversation meta rule: the thread's last
    APPLIED conversation-status rule plays that part. Returns a new list;
    the input is never mutated.
    """
    if not conversation_rules:
        return matches

    if any(is_conversation_status_type(m.rule.system_type) for m in matches):
        return matches

    previous_rule_id = await get_last_conversation_rule_id(session, email_account_id, thread_id)
    if not previous_rule_id:
        return matches

    rule = next((r for r in conversation_rules if r.id == previous_rule_id), None)
    if rule is None:
        logger.warning(
            "Previously applied conversation rule is no longer enabled",
            extra={"email_account_id": str(email_account_id), "thread_id": thread_id}
        )
        return matches

    logger.info(
        "Continuing conversation tracking on thread",
        extra={"email_account_id": str(email_account_id), "thread_id": thread_id, "rule_id": rule.id}
    )
    return list(matches) + [RuleMatch(rule=rule, match_reasons=[MatchReason(type=ConditionType.STATIC)])]


def limit_draft_email_actions(matches: List[RuleMatch]) -> List[RuleMatch]:
    """
    Allow at most one DRAFT_EMAIL action across all matched rules.

    A draft with fixed content wins over a fully generated one; otherwise the
    first draft wins. Other actions are untouched. The same list is returned
    when nothing needs to change.
    """
    drafts = [
        (match_index, action)
        for match_index, match in enumerate(matches)
        for action in match.rule.actions
        if action.type == ActionType.DRAFT_EMAIL
    ]
    if len(drafts) < 2:
        return matches

    keep = next((d for d in drafts if d[1].content), drafts[0])
    _, kept_action = keep

    logger.info(f"Limiting {len(drafts)} draft actions to one", extra={"action_id": kept_action.id})

    limited = []
    for match in matches:
        actions = [
            a for a in match.rule.actions
            if a.type != ActionType.DRAFT_EMAIL or a is kept_action
        ]
        if len(actions) == len(match.rule.actions):
            limited.append(match)
        else:
            limited.append(RuleMatch(
                rule=match.rule.model_copy(update={"actions": actions}),
                match_reasons=match.match_reasons,
            ))
    return limited


def get_executed_rule_status(rule: RuleData, immediate_actions: List[ActionItem]) -> ExecutedRuleStatus:
    if not rule.automate:
        return ExecutedRuleStatus.PENDING
    if immediate_actions:
        return ExecutedRuleStatus.APPLYING
    return ExecutedRuleStatus.APPLIED


async def save_skipped(session, email_account, message: ParsedMessage, reason: str) -> ExecutedRule:
    executed_rule = ExecutedRule(
        email_account_id=email_account.id,
        rule_id=None,
        thread_id=message.thread_id,
        message_id=message.id,
        status=ExecutedRuleStatus.SKIPPED.value,
        automated=True,
        reason=reason,
    )
    session.add(executed_rule)
    await session.flush()
    return executed_rule


async def save_failed_match(
    session,
    email_account,
    message: ParsedMessage,
    match: RuleMatch,
    reason: str,
) -> ExecutedRule:
    """Record a match whose actions could not be resolved."""
    executed_rule = ExecutedRule(
        email_account_id=email_account.id,
        rule_id=_uuid(match.rule.id),
        thread_id=message.thread_id,
        message_id=message.id,
        status=ExecutedRuleStatus.ERROR.value,
        automated=match.rule.automate,
        reason=reason,
        match_metadata=[r.model_dump(mode="json") for r in match.match_reasons],
    )
    session.add(executed_rule)
    await session.flush()
    return executed_rule


async def resolve_match_actions(
    provider: EmailProvider,
    message: ParsedMessage,
    match: RuleMatch,
    email_account,
) -> Optional[List[ActionItem]]:
    """
    Action items for a match, or None when argument generation failed.

    Failures are reported and not raised, so one match cannot abort the
    others.
    """
    try:
        return await get_action_items_with_ai_args(message, email_account, match.rule, provider)
    except Exception as e:
        capture_business_error(e, {
            "email_account_id": str(email_account.id),
            "message_id": message.id,
            "rule_id": match.rule.id,
            "operation": "get_action_items_with_ai_args",
        })
        return None


async def execute_matched_rule(
    provider: EmailProvider,
    message: ParsedMessage,
    match: RuleMatch,
    action_items: List[ActionItem],
    reason: str,
    email_account,
    session,
    is_test: bool,
) -> RunRulesResult:
    rule = match.rule
    log_extra = {
        "email_account_id": str(email_account.id),
        "message_id": message.id,
        "thread_id": message.thread_id,
        "rule_id": rule.id,
    }

    immediate = [item for item in action_items if not item.is_delayed]
    delayed = [item for item in action_items if item.is_delayed]
    status = get_executed_rule_status(rule, immediate)

    if is_test:
        return RunRulesResult(
            rule=rule,
            action_items=action_items,
            reason=reason,
            status=status,
            match_reasons=match.match_reasons,
        )

    executed_rule = ExecutedRule(
        email_account_id=email_account.id,
        rule_id=_uuid(rule.id),
        thread_id=message.thread_id,
        message_id=message.id,
        status=status.value,
        automated=rule.automate,
        reason=reason,
        match_metadata=[r.model_dump(mode="json") for r in match.match_reasons],
        actions=[
            ExecutedAction(
                type=item.type.value,
                label=item.label,
                subject=item.subject,
                content=item.content,
                to=item.to,
                cc=item.cc,
                bcc=item.bcc,
                url=item.url,
            )
            for item in immediate
        ],
    )
    session.add(executed_rule)
    await session.flush()

    await cancel_scheduled_actions(
        session,
        email_account.id,
        message.thread_id,
        rule_id=executed_rule.rule_id,
        reason="Superseded by new rule",
    )
    # Cancel before scheduling so this run's rows stay PENDING
    if delayed and rule.automate:
        await schedule_delayed_actions(session, executed_rule, delayed, message)

    if rule.automate and immediate:
        try:
            await execute_act(provider, executed_rule, message, session)
        except Exception as e:
            capture_business_error(e, {**log_extra, "operation": "execute_act"})
            status = ExecutedRuleStatus.ERROR
        else:
            status = ExecutedRuleStatus(executed_rule.status)

    logger.info(f"Rule {rule.name} -> {status.value}", extra=log_extra)

    return RunRulesResult(
        rule=rule,
        action_items=action_items,
        reason=reason,
        status=status,
        match_reasons=match.match_reasons,
        executed_rule_id=str(executed_rule.id),
    )


async def run_rules(
    provider: EmailProvider,
    message: ParsedMessage,
    rules: List[RuleData],
    email_account,
    session,
    is_test: bool = False,
) -> List[RunRulesResult]:
    """
    Run an account's rules on one message.

    Action arguments are resolved for every match before any action runs.
    A match whose arguments fail is recorded as ERROR and the remaining
    matches still run, so nothing executed here is undone by a later
    failure and a retried task never repeats a send.

    Args:
        provider: Mail provider for the account
        message: Parsed message
        rules: Rule snapshots for the account (disabled rules are ignored)
        email_account: Owning EmailAccount
        session: AsyncSession; the caller commits
        is_test: Resolve matches and arguments only, never persist or execute

    Returns:
        One RunRulesResult per matched rule, or a single SKIPPED result

    Raises:
        LLMError: Rule selection failed (before any action ran)
        ProviderError: The provider failed while matching
    """
    enabled = [r for r in rules if r.enabled]
    conversation_rules = [r for r in enabled if is_conversation_status_type(r.system_type)]

    result = await find_matching_rules(
        enabled, message, email_account, provider, session, is_test=is_test
    )

    matches = await ensure_conversation_rule_continuity(
        session, email_account.id, message.thread_id, conversation_rules, result.matches
    )
    matches = limit_draft_email_actions(matches)

    if not matches:
        reason = result.reasoning or "No rules matched"
        logger.info(
            "No rules matched",
            extra={"email_account_id": str(email_account.id), "message_id": message.id}
        )
        if is_test:
            return [RunRulesResult(status=ExecutedRuleStatus.SKIPPED, reason=reason)]
        executed_rule = await save_skipped(session, email_account, message, reason)
        return [RunRulesResult(
            status=ExecutedRuleStatus.SKIPPED,
            reason=reason,
            executed_rule_id=str(executed_rule.id),
        )]

    resolved = [
        (match, await resolve_match_actions(provider, message, match, email_account))
        for match in matches
    ]

    results = []
    for match, action_items in resolved:
        if action_items is None:
            reason = "; ".join(filter(None, [result.reasoning, "Action arguments failed"]))
            executed_rule_id = None
            if not is_test:
                executed_rule = await save_failed_match(session, email_account, message, match, reason)
                executed_rule_id = str(executed_rule.id)
            results.append(RunRulesResult(
                rule=match.rule,
                reason=reason,
                status=ExecutedRuleStatus.ERROR,
                match_reasons=match.match_reasons,
                executed_rule_id=executed_rule_id,
            ))
            continue

        results.append(await execute_matched_rule(
            provider, message, match, action_items, result.reasoning, email_account, session, is_test
        ))
    return results
