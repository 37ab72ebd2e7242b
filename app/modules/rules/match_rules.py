"""
Rule matching: decide which of an account's rules apply to a message.

Matching order:
1. Cold email pre-check (only when an enabled COLD_EMAIL rule exists)
2. Per rule: calendar preset, learned patterns, thread gating, static/AI conditions
3. Conversation-status filter on AI candidates
4. A learned-pattern match short-circuits the AI step
5. AI rule selection over the remaining candidates

Rules are RuleData snapshots; nothing here mutates ORM state.
"""

import logging
from typing import List, NamedTuple, Optional, Sequence, Set

from sqlalchemy import select

from app.core.config import settings
from app.models.email_message import ParsedMessage
from app.models.executed_rule import ExecutedRule, ExecutedRuleStatus
from app.models.matching import (
    ConditionType,
    MatchingRulesResult,
    MatchReason,
    RuleData,
    RuleMatch,
)
from app.models.rule import SystemType, is_conversation_status_type
from app.modules.email.parse import extract_email_address, get_email_for_llm
from app.modules.email.provider import EmailProvider
from app.modules.rules.ai_choose_rule import SelectedRule, ai_choose_rule
from app.modules.rules.cold_email import is_cold_email, save_cold_email
from app.modules.rules.conditions import evaluate_rule_conditions
from app.modules.rules.groups import find_matching_group

logger = logging.getLogger(__name__)


NO_REPLY_PREFIXES = (
    "noreply@",
    "no-reply@",
    "notifications@",
    "notif@",
    "info@",
    "newsletter@",
    "updates@",
    "account@",
)


class PotentialMatches(NamedTuple):
    matches: List[RuleMatch]
    potential_ai_matches: List[RuleData]


async def get_previously_applied_rule_ids(session, email_account_id, thread_id: str) -> Set[str]:
    """Ids of rules already APPLIED somewhere in this thread."""
    result = await session.execute(
        select(ExecutedRule.rule_id).where(
            ExecutedRule.email_account_id == email_account_id,
            ExecutedRule.thread_id == thread_id,
            ExecutedRule.status == ExecutedRuleStatus.APPLIED.value,
            ExecutedRule.rule_id.isnot(None),
        ).distinct()
    )
    return {str(rule_id) for rule_id in result.scalars().all()}


class PreviousThreadRules:
    """Loads previously applied rule ids at most once, and only if needed."""

    def __init__(self, session, email_account_id, thread_id: str):
        self.session = session
        self.email_account_id = email_account_id
        self.thread_id = thread_id
        self._rule_ids: Optional[Set[str]] = None

    async def get_rule_ids(self) -> Set[str]:
        if self._rule_ids is None:
            self._rule_ids = await get_previously_applied_rule_ids(
                self.session, self.email_account_id, self.thread_id
            )
        return self._rule_ids


async def filter_conversation_status_rules(
    potential_matches: List[RuleData],
    message: ParsedMessage,
    provider: EmailProvider,
) -> List[RuleData]:
    """
    Drop conversation-status candidates for senders the user won't reply to.

    Only applies when TO_REPLY is a candidate. Automated-looking senders, and
    senders who sent many emails without ever getting a reply, lose all
    conversation-status candidates.
    """
    to_reply_rule = next(
        (r for r in potential_matches if r.system_type == SystemType.TO_REPLY), None
    )
    if to_reply_rule is None:
        return potential_matches

    sender = message.headers.from_
    if not sender:
        return potential_matches

    def without_conversation_rules() -> List[RuleData]:
        return [r for r in potential_matches if not is_conversation_status_type(r.system_type)]

    sender_email = extract_email_address(sender).lower()
    if sender_email.startswith(NO_REPLY_PREFIXES):
        return without_conversation_rules()

    threshold = settings.TO_REPLY_RECEIVED_THRESHOLD
    try:
        history = await provider.check_sender_reply_history(sender_email, threshold)
        if not history.get("has_replied") and history.get("received_count", 0) >= threshold:
            logger.info(
                "Filtering out TO_REPLY rule: no prior reply and high received count",
                extra={
                    "rule_id": to_reply_rule.id,
                    "message_id": message.id,
                    "received_count": history.get("received_count"),
                }
            )
            return without_conversation_rules()
    except Exception as e:
        logger.error(
            f"Error checking reply history for TO_REPLY filter: {e}",
            extra={"message_id": message.id}
        )

    return potential_matches


def filter_multiple_system_rules(selected: Sequence[SelectedRule]) -> List[RuleData]:
    """
    When the AI picks several system rules keep only the primary one
    (or all of them if none is primary). Non-system rules are always kept.
    """
    system_rules = [s for s in selected if s.rule.system_type]
    other_rules = [s for s in selected if not s.rule.system_type]

    if len(system_rules) > 1:
        primary = next((s for s in system_rules if s.is_primary), None)
        if primary is not None:
            system_rules = [primary]

    return [s.rule for s in system_rules + other_rules]


def get_match_reason(match_reasons: List[MatchReason]) -> str:
    return ", ".join(reason.describe() for reason in match_reasons if reason.type != ConditionType.AI)


async def find_potential_matching_rules(
    rules: List[RuleData],
    message: ParsedMessage,
    is_thread: bool,
    provider: EmailProvider,
    previous_rules: PreviousThreadRules,
) -> PotentialMatches:
    matches: List[RuleMatch] = []
    potential_ai_matches: List[RuleData] = []

    for rule in rules:
        if rule.system_type == SystemType.CALENDAR and message.has_ics_attachment:
            matches.append(RuleMatch(
                rule=rule,
                match_reasons=[MatchReason(type=ConditionType.PRESET, system_type=SystemType.CALENDAR)],
            ))
            continue

        if rule.group is not None:
            group_match = find_matching_group(message, rule.group)
            if group_match.excluded:
                continue
            if group_match.matching_item is not None:
                matches.append(RuleMatch(
                    rule=rule,
                    match_reasons=[MatchReason(
                        type=ConditionType.LEARNED_PATTERN,
                        group_item=group_match.matching_item,
                        group_name=rule.group.name,
                    )],
                ))
                continue

        # Rules that don't run on threads still follow a thread they already labeled
        if is_thread and not rule.run_on_threads:
            if rule.id not in await previous_rules.get_rule_ids():
                continue

        result = evaluate_rule_conditions(rule, message)
        if result.matched:
            matches.append(RuleMatch(rule=rule, match_reasons=result.match_reasons))
        if result.potential_ai_match:
            potential_ai_matches.append(rule)

    filtered_ai_matches = await filter_conversation_status_rules(potential_ai_matches, message, provider)

    has_learned_pattern_match = any(
        reason.type == ConditionType.LEARNED_PATTERN
        for match in matches
        for reason in match.match_reasons
    )

    return PotentialMatches(matches, [] if has_learned_pattern_match else filtered_ai_matches)


async def find_matching_rules_with_reasons(
    rules: List[RuleData],
    message: ParsedMessage,
    email_account,
    provider: EmailProvider,
    session,
) -> MatchingRulesResult:
    is_thread = await provider.is_reply_in_thread(message)
    previous_rules = PreviousThreadRules(session, email_account.id, message.thread_id)

    potential = await find_potential_matching_rules(rules, message, is_thread, provider, previous_rules)
    matches = potential.matches

    existing_reasoning = ", ".join(
        reason for reason in (get_match_reason(m.match_reasons) for m in matches) if reason
    )

    if not potential.potential_ai_matches:
        return MatchingRulesResult(matches=matches, reasoning=existing_reasoning)

    ai_result = await ai_choose_rule(
        get_email_for_llm(message),
        potential.potential_ai_matches,
        email_account,
    )
    chosen = filter_multiple_system_rules(ai_result.rules)

    matched_ids = {m.rule.id for m in matches}
    combined = list(matches) + [
        RuleMatch(rule=rule, match_reasons=[MatchReason(type=ConditionType.AI)])
        for rule in chosen
        if rule.id not in matched_ids
    ]

    ai_reason = (ai_result.reason or "").strip()
    reasoning = "; ".join(r for r in (existing_reasoning, ai_reason) if r)

    return MatchingRulesResult(matches=combined, reasoning=reasoning)


async def find_matching_rules(
    rules: List[RuleData],
    message: ParsedMessage,
    email_account,
    provider: EmailProvider,
    session,
    is_test: bool = False,
) -> MatchingRulesResult:
    """
    Find every rule that applies to a message.

    Args:
        rules: Enabled rule snapshots for the account
        message: Parsed message
        email_account: Owning EmailAccount (prompt context, model override)
        provider: Mail provider for thread and sender-history checks
        session: AsyncSession for cold email and thread history lookups
        is_test: Do not record newly detected cold senders

    Returns:
        MatchingRulesResult with the matches and a human readable reasoning

    Raises:
        LLMError: An AI step failed
    """
    cold_rule = next(
        (r for r in rules if r.system_type == SystemType.COLD_EMAIL and r.enabled), None
    )

    if cold_rule is not None:
        cold_result = await is_cold_email(message, email_account, provider, session)
        if cold_result.is_cold_email:
            if cold_result.ai_reason is not None and not is_test:
                await save_cold_email(session, email_account, message, cold_result.ai_reason)
            return MatchingRulesResult(
                matches=[RuleMatch(rule=cold_rule, match_reasons=[])],
                reasoning=cold_result.ai_reason or cold_result.reason,
            )

    rules_without_cold_email = [r for r in rules if r.system_type != SystemType.COLD_EMAIL]

    return await find_matching_rules_with_reasons(
        rules_without_cold_email, message, email_account, provider, session
    )
