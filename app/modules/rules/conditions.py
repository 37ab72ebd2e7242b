"""
Static condition evaluation for rules.

Patterns are literals with `*` wildcards. For from/to, several alternatives
may be given separated by `|`, `,` or the word OR:

    "@a.com|@b.com", "@a.com, @b.com", "@a.com OR @b.com"

Matching is an unanchored, case-sensitive regex search.
"""

import logging
import re
from typing import List, NamedTuple

from app.models.email_message import ParsedMessage
from app.models.matching import ConditionType, MatchReason, RuleData
from app.models.rule import LogicalOperator

logger = logging.getLogger(__name__)


_SPLIT_RE = re.compile(r"\s*\bor\b\s*|[|,]", re.IGNORECASE)
# Every regex metacharacter except * (wildcard) and | (alternation)
_ESCAPE_RE = re.compile(r"[.+?^${}()\[\]\\]")


class ConditionResult(NamedTuple):
    matched: bool
    potential_ai_match: bool
    match_reasons: List[MatchReason]


def split_email_patterns(pattern: str) -> List[str]:
    return [p.strip() for p in _SPLIT_RE.split(pattern) if p and p.strip()]


def pattern_to_regex(pattern: str) -> str:
    escaped = _ESCAPE_RE.sub(lambda m: "\\" + m.group(0), pattern)
    return escaped.replace("*", ".*")


def _safe_regex_test(pattern: str, text: str, allow_alternatives: bool = False) -> bool:
    patterns = split_email_patterns(pattern) if allow_alternatives else [pattern]
    try:
        for individual in patterns:
            if re.search(pattern_to_regex(individual), text or ""):
                return True
    except re.error as e:
        logger.error(f"Invalid rule pattern {pattern!r}: {e}")
        return False
    return False


def matches_static_rule(rule: RuleData, message: ParsedMessage) -> bool:
    """
    True when every static condition set on the rule matches.

    A rule without static conditions never matches statically.
    """
    if not rule.has_static_conditions:
        return False

    headers = message.headers
    from_match = _safe_regex_test(rule.from_pattern, headers.from_, True) if rule.from_pattern else True
    to_match = _safe_regex_test(rule.to_pattern, headers.to, True) if rule.to_pattern else True
    subject_match = _safe_regex_test(rule.subject_pattern, headers.subject) if rule.subject_pattern else True
    body_match = _safe_regex_test(rule.body_pattern, message.text_plain or "") if rule.body_pattern else True

    return from_match and to_match and subject_match and body_match


def has_ai_condition(rule: RuleData) -> bool:
    return bool(rule.instructions and rule.instructions.strip())


def evaluate_rule_conditions(rule: RuleData, message: ParsedMessage) -> ConditionResult:
    """
    Combine the static and AI conditions of a rule.

    OR: a static match is enough; otherwise AI decides when instructions exist.
    AND: a failed static condition rejects the rule; AI instructions make it an
    AI candidate; a rule with only static conditions matches on them alone.
    """
    has_static = rule.has_static_conditions
    has_ai = has_ai_condition(rule)

    static_match = matches_static_rule(rule, message) if has_static else False
    match_reasons = [MatchReason(type=ConditionType.STATIC)] if static_match else []

    if rule.conditional_operator == LogicalOperator.OR:
        if static_match:
            return ConditionResult(True, False, match_reasons)
        if has_ai:
            return ConditionResult(False, True, match_reasons)
        return ConditionResult(False, False, match_reasons)

    if has_static and not static_match:
        return ConditionResult(False, False, [])
    if has_ai:
        return ConditionResult(False, True, match_reasons)
    return ConditionResult(static_match if has_static else False, False, match_reasons)
