"""
Gmail history processing (delta sync after a push notification).

Inbound INBOX messages are returned for rule processing; SENT messages
update reply tracking. The account's history cursor always moves forward.
"""

import logging
from typing import Dict, List, NamedTuple

from sqlalchemy import select

from app.models.email_account import EmailAccount
from app.models.executed_rule import ExecutedRule
from app.modules.email.provider import ProviderNotFound
from app.modules.rules.reply_tracking import handle_outbound_message

logger = logging.getLogger(__name__)


class HistorySyncResult(NamedTuple):
    inbound_message_ids: List[str]
    outbound_count: int
    skipped_count: int


def extract_added_messages(history: List[Dict]) -> List[Dict]:
    """messagesAdded entries, de-duplicated, in history order."""
    seen = set()
    messages = []
    for record in history:
        for added in record.get("messagesAdded", []):
            message = added.get("message", {})
            message_id = message.get("id")
            if not message_id or message_id in seen:
                continue
            seen.add(message_id)
            messages.append(message)
    return messages


def _newer_history_id(current, candidate) -> str:
    try:
        return str(max(int(current), int(candidate)))
    except (TypeError, ValueError):
        return str(candidate or current)


async def is_message_processed(session, email_account_id, message_id: str) -> bool:
    result = await session.execute(
        select(ExecutedRule.id).where(
            ExecutedRule.email_account_id == email_account_id,
            ExecutedRule.message_id == message_id,
        ).limit(1)
    )
    return result.scalar_one_or_none() is not None


async def sync_gmail_history(account: EmailAccount, provider, history_id: str, session) -> HistorySyncResult:
    """
    Read history since the stored cursor and sort new messages.

    Raises:
        ProviderError: History or message fetch failed (other than an
            expired cursor, which resets the cursor)
    """
    log_extra = {"email_account_id": str(account.id)}
    start_history_id = account.last_history_id

    if not start_history_id:
        logger.info("No history cursor yet, starting from notification", extra=log_extra)
        account.last_history_id = str(history_id)
        await session.flush()
        return HistorySyncResult([], 0, 0)

    try:
        history = await provider.get_history(start_history_id, ["messageAdded"])
    except ProviderNotFound:
        logger.warning("History cursor expired, resetting", extra=log_extra)
        account.last_history_id = str(history_id)
        await session.flush()
        return HistorySyncResult([], 0, 0)

    inbound: List[str] = []
    outbound_count = 0
    skipped_count = 0

    for message in extract_added_messages(history):
        message_id = message["id"]
        label_ids = message.get("labelIds", [])

        if "DRAFT" in label_ids:
            skipped_count += 1
            continue
        if "SENT" not in label_ids and "INBOX" not in label_ids:
            skipped_count += 1
            continue
        if await is_message_processed(session, account.id, message_id):
            skipped_count += 1
            continue

        if "SENT" in label_ids:
            try:
                parsed = await provider.get_message(message_id)
            except ProviderNotFound:
                skipped_count += 1
                continue
            await handle_outbound_message(session, account.id, parsed, provider)
            outbound_count += 1
            continue

        inbound.append(message_id)

    account.last_history_id = _newer_history_id(start_history_id, history_id)
    await session.flush()

    logger.info(
        f"History sync: {len(inbound)} inbound, {outbound_count} outbound, {skipped_count} skipped",
        extra=log_extra
    )
    return HistorySyncResult(inbound, outbound_count, skipped_count)
