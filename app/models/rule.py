"""
Rule and Action models - user-defined automation rules.

A rule combines static conditions (wildcard patterns on from/to/subject/body),
an optional learned-pattern group and free-text AI instructions. When a rule
matches, its actions run in order (or later, when delay_in_minutes is set).
"""

import uuid
from datetime import datetime
from enum import Enum
from sqlalchemy import Column, String, DateTime, Boolean, ForeignKey, Text, Integer, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from app.core.database import Base


class ActionType(str, Enum):
    ARCHIVE = "ARCHIVE"
    LABEL = "LABEL"
    REPLY = "REPLY"
    SEND_EMAIL = "SEND_EMAIL"
    FORWARD = "FORWARD"
    DRAFT_EMAIL = "DRAFT_EMAIL"
    MARK_SPAM = "MARK_SPAM"
    CALL_WEBHOOK = "CALL_WEBHOOK"
    MARK_READ = "MARK_READ"
    TRACK_THREAD = "TRACK_THREAD"


class SystemType(str, Enum):
    """Preset rules created for every account."""
    TO_REPLY = "TO_REPLY"
    AWAITING_REPLY = "AWAITING_REPLY"
    FYI = "FYI"
    ACTIONED = "ACTIONED"
    COLD_EMAIL = "COLD_EMAIL"
    CALENDAR = "CALENDAR"
    NEWSLETTER = "NEWSLETTER"
    MARKETING = "MARKETING"
    RECEIPT = "RECEIPT"
    NOTIFICATION = "NOTIFICATION"


class LogicalOperator(str, Enum):
    AND = "AND"
    OR = "OR"


# Rules that describe where a conversation stands rather than what it is about
CONVERSATION_STATUS_TYPES = frozenset({
    SystemType.TO_REPLY,
    SystemType.AWAITING_REPLY,
    SystemType.FYI,
    SystemType.ACTIONED,
})


def is_conversation_status_type(system_type) -> bool:
    if not system_type:
        return False
    try:
        return SystemType(system_type) in CONVERSATION_STATUS_TYPES
    except ValueError:
        return False


class Rule(Base):
    """
    Automation rule owned by an email account.

    automate=False rules are recorded as PENDING for user approval instead of
    running their actions.
    """

    __tablename__ = "rules"
    __table_args__ = (
        UniqueConstraint("email_account_id", "name", name="uq_rules_account_name"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    email_account_id = Column(UUID(as_uuid=True), ForeignKey("email_accounts.id", ondelete="CASCADE"), nullable=False, index=True)

    name = Column(String, nullable=False)
    enabled = Column(Boolean, default=True, nullable=False)
    automate = Column(Boolean, default=True, nullable=False)
    run_on_threads = Column(Boolean, default=False, nullable=False)
    conditional_operator = Column(String, default=LogicalOperator.AND.value, nullable=False)

    # AI condition
    instructions = Column(Text, nullable=True)

    # Static conditions
    from_pattern = Column(String, nullable=True)
    to_pattern = Column(String, nullable=True)
    subject_pattern = Column(String, nullable=True)
    body_pattern = Column(String, nullable=True)

    # Learned patterns
    group_id = Column(UUID(as_uuid=True), ForeignKey("groups.id", ondelete="SET NULL"), nullable=True, unique=True)

    system_type = Column(String, nullable=True, index=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    # Relationships
    email_account = relationship("EmailAccount", back_populates="rules")
    actions = relationship(
        "Action",
        back_populates="rule",
        cascade="all, delete-orphan",
        order_by="Action.created_at",
    )
    group = relationship("Group", back_populates="rule")

    def __repr__(self):
        return f"<Rule {self.name}>"


class Action(Base):
    """
    One step of a rule.

    Text fields may contain {{...}} template variables that the LLM fills in
    per message.
    """

    __tablename__ = "actions"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    rule_id = Column(UUID(as_uuid=True), ForeignKey("rules.id", ondelete="CASCADE"), nullable=False, index=True)

    type = Column(String, nullable=False)
    label = Column(String, nullable=True)
    subject = Column(String, nullable=True)
    content = Column(Text, nullable=True)
    to = Column(String, nullable=True)
    cc = Column(String, nullable=True)
    bcc = Column(String, nullable=True)
    url = Column(String, nullable=True)
    delay_in_minutes = Column(Integer, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    rule = relationship("Rule", back_populates="actions")

    def __repr__(self):
        return f"<Action {self.type}>"
