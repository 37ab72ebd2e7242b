"""
Learned pattern matching (rule groups).
"""

import re
from typing import NamedTuple, Optional

from app.models.email_message import ParsedMessage
from app.models.group import GroupItemType
from app.models.matching import GroupData, GroupItemData


class GroupMatch(NamedTuple):
    matching_item: Optional[GroupItemData]
    excluded: bool


_ID_RE = re.compile(r"[#]?\b[a-z]*\d[\w-]*\b")
_WHITESPACE_RE = re.compile(r"\s+")


def generalize_subject(subject: Optional[str]) -> str:
    """
    Reduce a subject to its stable part so that numbered variants match.

    "Order #12345 shipped" -> "order shipped"
    """
    if not subject:
        return ""
    text = _ID_RE.sub(" ", subject.lower())
    return _WHITESPACE_RE.sub(" ", text).strip()


def matches_group_item(item: GroupItemData, message: ParsedMessage) -> bool:
    value = item.value or ""
    if not value:
        return False

    if item.type == GroupItemType.FROM:
        return value.lower() in (message.headers.from_ or "").lower()

    if item.type == GroupItemType.SUBJECT:
        generalized = generalize_subject(value)
        return bool(generalized) and generalized in generalize_subject(message.headers.subject)

    if item.type == GroupItemType.BODY:
        return value in (message.text_plain or "")

    return False


def find_matching_group(message: ParsedMessage, group: GroupData) -> GroupMatch:
    """
    Check a message against a rule's learned patterns.

    Exclusion items are checked first; a matching exclusion vetoes the rule.
    Otherwise the first matching inclusion item is returned.
    """
    for item in group.items:
        if item.exclude and matches_group_item(item, message):
            return GroupMatch(None, True)

    for item in group.items:
        if not item.exclude and matches_group_item(item, message):
            return GroupMatch(item, False)

    return GroupMatch(None, False)
