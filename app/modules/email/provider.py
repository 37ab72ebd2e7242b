"""
Mail provider abstraction.

The rule engine talks to Gmail and Outlook only through EmailProvider.
Implementations translate provider failures into the typed errors below so
callers (executor retry policy, webhook handlers) can branch on them.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from app.models.email_message import ParsedMessage, SendEmailBody


# Canonical error codes, keyed by HTTP status
STATUS_CODES = {
    400: "INVALID_ARGUMENT",
    401: "UNAUTHENTICATED",
    403: "PERMISSION_DENIED",
    404: "NOT_FOUND",
    409: "ALREADY_EXISTS",
    412: "FAILED_PRECONDITION",
    429: "RESOURCE_EXHAUSTED",
    500: "INTERNAL",
    502: "UNAVAILABLE",
    503: "UNAVAILABLE",
}


class ProviderError(Exception):
    """Base exception for mail provider API errors."""

    def __init__(self, message: str, status_code: Optional[int] = None, code: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.code = code or (STATUS_CODES.get(status_code) if status_code else None)


class ProviderQuotaExceeded(ProviderError):
    """Raised when the provider quota is exhausted (429)."""
    pass


class ProviderAuthError(ProviderError):
    """Raised when the OAuth token is invalid or access was revoked (401/403)."""
    pass


class ProviderNotFound(ProviderError):
    """Raised when a message, thread, draft or label does not exist (404)."""
    pass


class EmailProvider(ABC):
    """
    Operations the engine needs from a mailbox.

    All methods are coroutines; implementations backed by blocking SDKs run
    the calls in a worker thread.
    """

    name: str = ""

    @abstractmethod
    async def get_message(self, message_id: str) -> ParsedMessage:
        """Raises ProviderNotFound when the message is gone."""

    @abstractmethod
    async def get_thread_messages(self, thread_id: str) -> List[ParsedMessage]:
        """Messages in the thread, oldest first."""

    @abstractmethod
    async def get_draft(self, draft_id: str) -> Optional[ParsedMessage]:
        """None when the draft was sent or deleted."""

    @abstractmethod
    async def delete_draft(self, draft_id: str) -> None:
        ...

    @abstractmethod
    async def archive_thread(self, thread_id: str) -> None:
        ...

    @abstractmethod
    async def get_or_create_label(self, name: str) -> Dict:
        """Returns {"id": ..., "name": ...}."""

    @abstractmethod
    async def label_message(self, message_id: str, label_id: str) -> None:
        ...

    @abstractmethod
    async def mark_read_thread(self, thread_id: str, read: bool = True) -> None:
        ...

    @abstractmethod
    async def mark_spam(self, thread_id: str) -> None:
        ...

    @abstractmethod
    async def draft_email(
        self,
        message: ParsedMessage,
        content: str,
        to: Optional[str] = None,
        cc: Optional[str] = None,
        bcc: Optional[str] = None,
        subject: Optional[str] = None,
    ) -> str:
        """Create a reply draft in the message's thread; returns the draft id."""

    @abstractmethod
    async def reply_to_email(self, message: ParsedMessage, content: str) -> None:
        ...

    @abstractmethod
    async def send_email(self, body: SendEmailBody) -> None:
        ...

    @abstractmethod
    async def forward_email(
        self,
        message: ParsedMessage,
        to: str,
        cc: Optional[str] = None,
        bcc: Optional[str] = None,
        content: Optional[str] = None,
    ) -> None:
        ...

    @abstractmethod
    async def is_reply_in_thread(self, message: ParsedMessage) -> bool:
        """True when the message is not the first one in its thread."""

    @abstractmethod
    async def has_previous_communications_with_sender(
        self,
        sender: str,
        before_date: Optional[str],
        message_id: str,
    ) -> bool:
        """True when mail was exchanged with sender before before_date (epoch ms)."""

    @abstractmethod
    async def check_sender_reply_history(self, sender_email: str, received_threshold: int) -> Dict:
        """
        Returns {"has_replied": bool, "received_count": int}.

        received_count is capped at received_threshold.
        """
