"""
Outgoing MIME construction for drafts, replies and forwards.

Replies carry In-Reply-To / References so every client threads them, and
quote the original below an "On ... wrote:" line.
"""

import base64
import html
from email.message import EmailMessage
from typing import Optional

from app.models.email_message import ParsedMessage


def reply_subject(subject: str) -> str:
    subject = subject or ""
    if subject.lower().startswith("re:"):
        return subject
    return f"Re: {subject}".strip()


def forward_subject(subject: str) -> str:
    subject = subject or ""
    if subject.lower().startswith("fwd:"):
        return subject
    return f"Fwd: {subject}".strip()


def quote_plain(message: ParsedMessage) -> str:
    original = message.text_plain or message.snippet or ""
    quoted = "\n".join(f"> {line}" for line in original.splitlines())
    return f"On {message.headers.date}, {message.headers.from_} wrote:\n{quoted}"


def text_to_html(text: str) -> str:
    return "<div>" + html.escape(text).replace("\n", "<br>") + "</div>"


def build_message(
    to: str,
    subject: str,
    content: str,
    from_address: Optional[str] = None,
    cc: Optional[str] = None,
    bcc: Optional[str] = None,
    reply_to_message: Optional[ParsedMessage] = None,
    quote_original: bool = True,
) -> EmailMessage:
    """
    Build a text + HTML message.

    When reply_to_message is given, threading headers are set from its
    Message-ID and References.
    """
    msg = EmailMessage()
    if from_address:
        msg["From"] = from_address
    msg["To"] = to
    if cc:
        msg["Cc"] = cc
    if bcc:
        msg["Bcc"] = bcc
    msg["Subject"] = subject

    plain = content
    if reply_to_message is not None:
        header_message_id = reply_to_message.headers.message_id
        if header_message_id:
            msg["In-Reply-To"] = header_message_id
            references = reply_to_message.headers.references
            msg["References"] = f"{references} {header_message_id}".strip() if references else header_message_id
        if quote_original:
            plain = f"{content}\n\n{quote_plain(reply_to_message)}"

    msg.set_content(plain)
    msg.add_alternative(text_to_html(plain), subtype="html")
    return msg


def encode_raw(message: EmailMessage) -> str:
    """base64url encoding expected by the Gmail API 'raw' field."""
    return base64.urlsafe_b64encode(message.as_bytes()).decode()
