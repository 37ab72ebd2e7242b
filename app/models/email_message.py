"""
In-memory message models shared by providers and the rule engine.

Providers normalize Gmail and Graph payloads into ParsedMessage; the engine
never touches provider-specific structures.
"""

from typing import List, Optional
from pydantic import BaseModel, ConfigDict, Field


class MessageHeaders(BaseModel):
    """Headers the engine cares about. Keys use the wire names as aliases."""

    model_config = ConfigDict(populate_by_name=True)

    from_: str = Field("", alias="from")
    to: str = ""
    cc: Optional[str] = None
    bcc: Optional[str] = None
    subject: str = ""
    date: str = ""
    message_id: Optional[str] = Field(None, alias="message-id")
    references: Optional[str] = None
    in_reply_to: Optional[str] = Field(None, alias="in-reply-to")
    list_unsubscribe: Optional[str] = Field(None, alias="list-unsubscribe")


class Attachment(BaseModel):
    filename: str
    mime_type: str = ""
    size: int = 0
    attachment_id: Optional[str] = None


class ParsedMessage(BaseModel):
    """
    A normalized email message.

    For drafts, id is the provider's draft id.
    """

    id: str
    thread_id: str
    headers: MessageHeaders = Field(default_factory=MessageHeaders)
    snippet: str = ""
    text_plain: Optional[str] = None
    text_html: Optional[str] = None
    label_ids: List[str] = Field(default_factory=list)
    attachments: List[Attachment] = Field(default_factory=list)
    internal_date: Optional[str] = None
    history_id: Optional[str] = None
    conversation_index: Optional[str] = None
    # Outlook body.contentType ("html" or "text"); Gmail keeps both parts instead
    body_content_type: Optional[str] = None

    @property
    def is_draft(self) -> bool:
        return "DRAFT" in self.label_ids

    @property
    def is_sent(self) -> bool:
        return "SENT" in self.label_ids

    @property
    def has_ics_attachment(self) -> bool:
        return any(a.filename.lower().endswith(".ics") for a in self.attachments)


class EmailForLLM(BaseModel):
    """The slice of a message that is allowed into a prompt."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    from_: str = Field(..., alias="from")
    to: str = ""
    cc: Optional[str] = None
    subject: str = ""
    content: str = ""
    date: Optional[str] = None


class SendEmailBody(BaseModel):
    """Outgoing message built by SEND_EMAIL / REPLY / FORWARD actions."""

    to: str
    subject: str = ""
    content: str
    cc: Optional[str] = None
    bcc: Optional[str] = None
    reply_to_message: Optional[ParsedMessage] = None
