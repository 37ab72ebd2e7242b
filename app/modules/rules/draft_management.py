"""
Cleanup of automation drafts that were superseded in the same thread.

A previous draft is only deleted when the user has not touched it: its body
(minus quoted history) must still equal what the engine wrote.
"""

import logging
import re
from typing import Optional

import html2text
from sqlalchemy import select

from app.models.email_message import ParsedMessage
from app.models.executed_rule import ExecutedAction, ExecutedRule
from app.models.rule import ActionType
from app.modules.email.provider import EmailProvider

logger = logging.getLogger(__name__)


QUOTED_CONTENT_PATTERNS = [
    re.compile(r"\n\nOn .*? wrote:", re.DOTALL),
    re.compile(r"\n\n---- Original Message ----"),
    re.compile(r"\n\n>"),
    re.compile(r"\n\nFrom:"),
]


def strip_quoted_content(text: str) -> str:
    """Cut a draft body at the start of the quoted original, then trim."""
    if not text:
        return ""
    cut = len(text)
    for pattern in QUOTED_CONTENT_PATTERNS:
        match = pattern.search(text)
        if match:
            cut = min(cut, match.start())
    return text[:cut].strip()


def extract_draft_plain_text(draft: ParsedMessage) -> str:
    """Plain body of a draft; HTML-only bodies are converted without link URLs."""
    if draft.text_plain:
        return draft.text_plain
    if draft.text_html:
        converter = html2text.HTML2Text()
        converter.ignore_links = True
        converter.ignore_images = True
        converter.ignore_emphasis = True
        converter.body_width = 0
        return converter.handle(draft.text_html).strip()
    return ""


def is_draft_unmodified(original_content: Optional[str], current_draft: ParsedMessage) -> bool:
    original = (original_content or "").strip()
    if not original:
        return False
    current = strip_quoted_content(extract_draft_plain_text(current_draft))
    return current == original


async def handle_previous_draft_deletion(
    provider: EmailProvider,
    executed_rule: ExecutedRule,
    session,
) -> None:
    """
    Delete the latest earlier automation draft in the thread if unmodified.

    Errors are logged and swallowed: failing to clean up must never block
    the new draft.
    """
    log_extra = {
        "email_account_id": str(executed_rule.email_account_id),
        "thread_id": executed_rule.thread_id,
        "executed_rule_id": str(executed_rule.id),
    }
    try:
        result = await session.execute(
            select(ExecutedAction)
            .join(ExecutedRule, ExecutedAction.executed_rule_id == ExecutedRule.id)
            .where(
                ExecutedRule.thread_id == executed_rule.thread_id,
                ExecutedRule.email_account_id == executed_rule.email_account_id,
                ExecutedAction.executed_rule_id != executed_rule.id,
                ExecutedAction.type == ActionType.DRAFT_EMAIL.value,
                ExecutedAction.draft_id.isnot(None),
            )
            .order_by(ExecutedAction.created_at.desc())
            .limit(1)
        )
        previous = result.scalar_one_or_none()
        if previous is None:
            logger.debug("No previous draft in thread", extra=log_extra)
            return

        current_draft = await provider.get_draft(previous.draft_id)
        if current_draft is None:
            logger.info("Previous draft no longer exists", extra=log_extra)
            return

        if not is_draft_unmodified(previous.content, current_draft):
            logger.info("Previous draft was modified by the user, keeping it", extra=log_extra)
            return

        await provider.delete_draft(previous.draft_id)
        previous.was_draft_sent = False
        await session.flush()
        logger.info("Deleted unmodified previous draft", extra=log_extra)
    except Exception as e:
        logger.error(f"Error handling previous draft deletion: {e}", extra=log_extra)
