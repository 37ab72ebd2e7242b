"""
ExecutedRule and ExecutedAction models - audit trail of rule runs.

One ExecutedRule is written per (message, matched rule); a message that
matched nothing gets a single SKIPPED row so it is not processed twice.
"""

import uuid
from datetime import datetime
from enum import Enum
from sqlalchemy import Column, String, DateTime, Boolean, ForeignKey, Text
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import relationship

from app.core.database import Base


class ExecutedRuleStatus(str, Enum):
    APPLIED = "APPLIED"
    APPLYING = "APPLYING"
    PENDING = "PENDING"  # waiting for user approval (rule not automated)
    SKIPPED = "SKIPPED"
    ERROR = "ERROR"
    REJECTED = "REJECTED"


class ExecutedRule(Base):
    __tablename__ = "executed_rules"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    email_account_id = Column(UUID(as_uuid=True), ForeignKey("email_accounts.id", ondelete="CASCADE"), nullable=False, index=True)
    rule_id = Column(UUID(as_uuid=True), ForeignKey("rules.id", ondelete="SET NULL"), nullable=True, index=True)

    thread_id = Column(String, nullable=False, index=True)
    message_id = Column(String, nullable=False, index=True)

    status = Column(String, nullable=False, index=True)
    automated = Column(Boolean, default=True, nullable=False)
    reason = Column(Text, nullable=True)
    match_metadata = Column(JSONB, nullable=True)  # serialized MatchReason list

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)

    # Relationships
    rule = relationship("Rule")
    actions = relationship("ExecutedAction", back_populates="executed_rule", cascade="all, delete-orphan")
    scheduled_actions = relationship("ScheduledAction", back_populates="executed_rule", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<ExecutedRule {self.status} {self.message_id}>"


class ExecutedAction(Base):
    """
    An action with the fields it actually ran with (templates resolved).

    draft_id is set for DRAFT_EMAIL actions; was_draft_sent becomes False when
    an unmodified automation draft is cleaned up.
    """

    __tablename__ = "executed_actions"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    executed_rule_id = Column(UUID(as_uuid=True), ForeignKey("executed_rules.id", ondelete="CASCADE"), nullable=False, index=True)

    type = Column(String, nullable=False)
    label = Column(String, nullable=True)
    subject = Column(String, nullable=True)
    content = Column(Text, nullable=True)
    to = Column(String, nullable=True)
    cc = Column(String, nullable=True)
    bcc = Column(String, nullable=True)
    url = Column(String, nullable=True)

    draft_id = Column(String, nullable=True)
    was_draft_sent = Column(Boolean, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    executed_rule = relationship("ExecutedRule", back_populates="actions")

    def __repr__(self):
        return f"<ExecutedAction {self.type}>"
