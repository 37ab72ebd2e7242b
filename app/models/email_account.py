"""
EmailAccount model - a connected mailbox (OAuth connection) owned by a user.

Stores encrypted OAuth tokens, Gmail watch state and the profile text
(about, writing style) that is fed into LLM prompts.
"""

import uuid
from datetime import datetime, timedelta
from enum import Enum
from sqlalchemy import Column, String, DateTime, Boolean, ForeignKey, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from app.core.database import Base


class EmailProviderType(str, Enum):
    GOOGLE = "google"
    MICROSOFT = "microsoft"


class EmailAccount(Base):
    """
    Connected email account.

    CRITICAL SECURITY:
    - access_token and refresh_token are ALWAYS encrypted before storage
    - Tokens are NEVER logged
    - Use app.core.security.decrypt_token() to decrypt for API calls
    """

    __tablename__ = "email_accounts"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)

    # Provider info
    provider = Column(String, nullable=False)  # 'google' | 'microsoft'
    email_address = Column(String, nullable=False, unique=True, index=True)
    name = Column(String, nullable=True)

    # Encrypted OAuth tokens (NEVER store plaintext!)
    encrypted_access_token = Column(Text, nullable=True)
    encrypted_refresh_token = Column(Text, nullable=False)
    token_expires_at = Column(DateTime, nullable=True)

    # Prompt context
    about = Column(Text, nullable=True)
    writing_style = Column(Text, nullable=True)
    signature = Column(Text, nullable=True)
    cold_email_prompt = Column(Text, nullable=True)
    timezone = Column(String, nullable=True)

    # Gmail watch state (for delta sync)
    watch_expiration = Column(DateTime, nullable=True)
    last_history_id = Column(String, nullable=True)

    # Status
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    last_synced_at = Column(DateTime, nullable=True)
    last_webhook_received_at = Column(DateTime, nullable=True)

    # Relationships
    user = relationship("User", back_populates="email_accounts")
    rules = relationship("Rule", back_populates="email_account", cascade="all, delete-orphan")
    groups = relationship("Group", back_populates="email_account", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<EmailAccount {self.provider}:{self.email_address}>"

    @property
    def is_gmail(self) -> bool:
        return self.provider == EmailProviderType.GOOGLE.value

    @property
    def needs_watch_renewal(self) -> bool:
        """Check if Gmail watch needs renewal (renew 1 day before expiry)."""
        if not self.is_gmail or not self.is_active:
            return False
        if not self.watch_expiration:
            return True
        return self.watch_expiration < datetime.utcnow() + timedelta(days=1)
