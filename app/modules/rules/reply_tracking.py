"""
Reply tracking (ThreadTracker rows).

Inbound: a message that needs a reply resolves AWAITING trackers on the
thread (the other side answered) and opens a NEEDS_REPLY tracker.

Outbound: a message the user sent resolves NEEDS_REPLY trackers and opens an
AWAITING tracker when it is the latest message in the thread.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import select, update

from app.models.email_message import ParsedMessage
from app.models.thread_tracker import ThreadTracker, ThreadTrackerType

logger = logging.getLogger(__name__)


def internal_date_to_datetime(internal_date: Optional[str]) -> datetime:
    if not internal_date:
        return datetime.utcnow()
    try:
        return datetime.utcfromtimestamp(int(internal_date) / 1000)
    except (TypeError, ValueError):
        return datetime.utcnow()


async def _resolve(session, email_account_id, thread_id: str, tracker_type: ThreadTrackerType):
    await session.execute(
        update(ThreadTracker)
        .where(
            ThreadTracker.email_account_id == email_account_id,
            ThreadTracker.thread_id == thread_id,
            ThreadTracker.type == tracker_type.value,
            ThreadTracker.resolved.is_(False),
        )
        .values(resolved=True)
    )


async def _open_tracker(
    session,
    email_account_id,
    thread_id: str,
    message_id: str,
    tracker_type: ThreadTrackerType,
    sent_at: datetime,
):
    existing = await session.execute(
        select(ThreadTracker.id).where(
            ThreadTracker.email_account_id == email_account_id,
            ThreadTracker.thread_id == thread_id,
            ThreadTracker.message_id == message_id,
            ThreadTracker.type == tracker_type.value,
        )
    )
    if existing.scalar_one_or_none() is not None:
        return

    session.add(ThreadTracker(
        email_account_id=email_account_id,
        thread_id=thread_id,
        message_id=message_id,
        type=tracker_type.value,
        sent_at=sent_at,
        resolved=False,
    ))
    await session.flush()


async def coordinate_reply_process(session, email_account_id, message: ParsedMessage):
    """Mark an inbound message's thread as needing a reply."""
    await _resolve(session, email_account_id, message.thread_id, ThreadTrackerType.AWAITING)
    await _open_tracker(
        session,
        email_account_id,
        message.thread_id,
        message.id,
        ThreadTrackerType.NEEDS_REPLY,
        internal_date_to_datetime(message.internal_date),
    )
    logger.info(
        "Thread marked as needing reply",
        extra={"email_account_id": str(email_account_id), "thread_id": message.thread_id}
    )


async def handle_outbound_message(session, email_account_id, message: ParsedMessage, provider):
    """Update trackers after the user sent a message."""
    await _resolve(session, email_account_id, message.thread_id, ThreadTrackerType.NEEDS_REPLY)

    thread_messages = await provider.get_thread_messages(message.thread_id)
    latest = max(
        (m for m in thread_messages if not m.is_draft),
        key=lambda m: int(m.internal_date or 0),
        default=None,
    )
    if latest is not None and latest.id != message.id:
        logger.info(
            "Sent message is not the latest in the thread, not awaiting a reply",
            extra={"email_account_id": str(email_account_id), "thread_id": message.thread_id}
        )
        return

    await _open_tracker(
        session,
        email_account_id,
        message.thread_id,
        message.id,
        ThreadTrackerType.AWAITING,
        internal_date_to_datetime(message.internal_date),
    )
