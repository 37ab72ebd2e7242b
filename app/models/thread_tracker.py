"""
ThreadTracker model - reply tracking per thread.

NEEDS_REPLY: someone wrote to the user and expects an answer.
AWAITING: the user wrote and is waiting for the other side.
"""

import uuid
from datetime import datetime
from enum import Enum
from sqlalchemy import Column, String, DateTime, Boolean, ForeignKey
from sqlalchemy.dialects.postgresql import UUID

from app.core.database import Base


class ThreadTrackerType(str, Enum):
    AWAITING = "AWAITING"
    NEEDS_REPLY = "NEEDS_REPLY"


class ThreadTracker(Base):
    __tablename__ = "thread_trackers"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    email_account_id = Column(UUID(as_uuid=True), ForeignKey("email_accounts.id", ondelete="CASCADE"), nullable=False, index=True)
    thread_id = Column(String, nullable=False, index=True)
    message_id = Column(String, nullable=False)
    type = Column(String, nullable=False)
    sent_at = Column(DateTime, nullable=False)
    resolved = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f"<ThreadTracker {self.type} {self.thread_id}{' resolved' if self.resolved else ''}>"
