"""
Group models - learned patterns attached to a rule.

Items are remembered from user behaviour (e.g. the user always labels mail
from a sender the same way) and short-circuit AI selection when they match.
"""

import uuid
from datetime import datetime
from enum import Enum
from sqlalchemy import Column, String, DateTime, Boolean, ForeignKey
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from app.core.database import Base


class GroupItemType(str, Enum):
    FROM = "FROM"
    SUBJECT = "SUBJECT"
    BODY = "BODY"


class Group(Base):
    __tablename__ = "groups"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    email_account_id = Column(UUID(as_uuid=True), ForeignKey("email_accounts.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    email_account = relationship("EmailAccount", back_populates="groups")
    items = relationship("GroupItem", back_populates="group", cascade="all, delete-orphan")
    rule = relationship("Rule", back_populates="group", uselist=False)

    def __repr__(self):
        return f"<Group {self.name}>"


class GroupItem(Base):
    """
    One learned pattern. exclude=True items veto the rule for matching mail.
    """

    __tablename__ = "group_items"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    group_id = Column(UUID(as_uuid=True), ForeignKey("groups.id", ondelete="CASCADE"), nullable=False, index=True)
    type = Column(String, nullable=False)
    value = Column(String, nullable=False)
    exclude = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    group = relationship("Group", back_populates="items")

    def __repr__(self):
        return f"<GroupItem {self.type}:{self.value}{' (exclude)' if self.exclude else ''}>"
