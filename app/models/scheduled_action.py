"""
ScheduledAction model - an action deferred by delay_in_minutes.

Rows are claimed by the beat sweep with a conditional PENDING -> EXECUTING
update so that exactly one worker executes each row.
"""

import uuid
from datetime import datetime
from enum import Enum
from sqlalchemy import Column, String, DateTime, ForeignKey, Text, Integer
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from app.core.database import Base


class ScheduledActionStatus(str, Enum):
    PENDING = "PENDING"
    EXECUTING = "EXECUTING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class ScheduledAction(Base):
    __tablename__ = "scheduled_actions"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    executed_rule_id = Column(UUID(as_uuid=True), ForeignKey("executed_rules.id", ondelete="CASCADE"), nullable=False, index=True)
    email_account_id = Column(UUID(as_uuid=True), ForeignKey("email_accounts.id", ondelete="CASCADE"), nullable=False, index=True)

    message_id = Column(String, nullable=False)
    thread_id = Column(String, nullable=False, index=True)

    # Resolved action fields
    action_type = Column(String, nullable=False)
    label = Column(String, nullable=True)
    subject = Column(String, nullable=True)
    content = Column(Text, nullable=True)
    to = Column(String, nullable=True)
    cc = Column(String, nullable=True)
    bcc = Column(String, nullable=True)
    url = Column(String, nullable=True)

    scheduled_for = Column(DateTime, nullable=False, index=True)
    status = Column(String, default=ScheduledActionStatus.PENDING.value, nullable=False, index=True)
    retry_count = Column(Integer, default=0, nullable=False)
    error_message = Column(Text, nullable=True)

    executed_at = Column(DateTime, nullable=True)
    executed_action_id = Column(UUID(as_uuid=True), ForeignKey("executed_actions.id", ondelete="SET NULL"), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    executed_rule = relationship("ExecutedRule", back_populates="scheduled_actions")

    def __repr__(self):
        return f"<ScheduledAction {self.action_type} {self.status} at {self.scheduled_for}>"
