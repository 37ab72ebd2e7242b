"""
ColdEmail model - senders classified as unsolicited outreach.
"""

import uuid
from datetime import datetime
from enum import Enum
from sqlalchemy import Column, String, DateTime, ForeignKey, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID

from app.core.database import Base


class ColdEmailStatus(str, Enum):
    AI_LABELED_COLD = "AI_LABELED_COLD"
    USER_REJECTED_COLD = "USER_REJECTED_COLD"  # user said the sender is not cold


class ColdEmail(Base):
    __tablename__ = "cold_emails"
    __table_args__ = (
        UniqueConstraint("email_account_id", "from_email", name="uq_cold_emails_account_sender"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    email_account_id = Column(UUID(as_uuid=True), ForeignKey("email_accounts.id", ondelete="CASCADE"), nullable=False, index=True)
    from_email = Column(String, nullable=False)
    status = Column(String, nullable=False)
    reason = Column(Text, nullable=True)
    message_id = Column(String, nullable=True)
    thread_id = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f"<ColdEmail {self.from_email} {self.status}>"
