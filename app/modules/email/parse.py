"""
Message parsing utilities.

Normalizes Gmail API payloads into ParsedMessage and prepares the
prompt-safe EmailForLLM view of a message.

CRITICAL SECURITY:
- Message bodies are held in memory only; never log or persist them
- Prompts receive bodies truncated to MAX_EMAIL_CHARS_FOR_LLM
"""

import base64
import binascii
import logging
import re
from typing import Dict, List, Optional, Tuple
from email.utils import getaddresses, parseaddr

import html2text

from app.core.config import settings
from app.models.email_message import (
    Attachment,
    EmailForLLM,
    MessageHeaders,
    ParsedMessage,
)

logger = logging.getLogger(__name__)


HEADER_FIELDS = {
    "from": "from",
    "to": "to",
    "cc": "cc",
    "bcc": "bcc",
    "subject": "subject",
    "date": "date",
    "message-id": "message-id",
    "references": "references",
    "in-reply-to": "in-reply-to",
    "list-unsubscribe": "list-unsubscribe",
}


def extract_header(headers: List[Dict], name: str) -> Optional[str]:
    """
    Extract a header value from a Gmail API headers list.

    Gmail returns headers as [{"name": "From", "value": "..."}].
    Lookup is case-insensitive.
    """
    if not headers:
        return None

    name_lower = name.lower()
    for header in headers:
        if header.get("name", "").lower() == name_lower:
            return header.get("value")
    return None


def parse_from_header(from_header: str) -> Tuple[str, Optional[str]]:
    """
    Parse a From header into (email_address, display_name).

    - "John Doe <john@example.com>" -> ("john@example.com", "John Doe")
    - "john@example.com" -> ("john@example.com", None)
    """
    if not from_header:
        return ("", None)

    display_name, email_address = parseaddr(from_header)

    if display_name:
        display_name = display_name.strip('"\'').strip() or None

    email_address = email_address.lower().strip() if email_address else ""
    return (email_address, display_name)


def extract_email_address(header_value: str) -> str:
    """Lowercased address from a single-address header value."""
    return parse_from_header(header_value)[0]


def extract_email_addresses(header_value: Optional[str]) -> List[str]:
    """All addresses from a To/Cc style header."""
    if not header_value:
        return []
    return [addr.lower() for _, addr in getaddresses([header_value]) if addr]


def extract_domain(email: str) -> str:
    """Domain of an email address, lowercase ("" if none)."""
    if not email or "@" not in email:
        return ""
    return email.rsplit("@", 1)[-1].lower().strip()


def _decode_body(data: Optional[str]) -> str:
    if not data:
        return ""
    try:
        padded = data + "=" * (-len(data) % 4)
        return base64.urlsafe_b64decode(padded).decode("utf-8", errors="replace")
    except (binascii.Error, ValueError) as e:
        logger.warning(f"Failed to decode message part: {e}")
        return ""


def _walk_parts(part: Dict, texts: Dict[str, List[str]], attachments: List[Attachment]):
    mime_type = part.get("mimeType", "")
    filename = part.get("filename") or ""
    body = part.get("body") or {}

    if filename:
        attachments.append(Attachment(
            filename=filename,
            mime_type=mime_type,
            size=body.get("size", 0),
            attachment_id=body.get("attachmentId"),
        ))
    elif mime_type in ("text/plain", "text/html"):
        texts[mime_type].append(_decode_body(body.get("data")))

    for child in part.get("parts") or []:
        _walk_parts(child, texts, attachments)


def parse_gmail_message(message: Dict) -> ParsedMessage:
    """
    Convert a Gmail API message resource (format='full') into ParsedMessage.

    Usage:
        raw = service.users().messages().get(userId="me", id=message_id, format="full").execute()
        parsed = parse_gmail_message(raw)
    """
    payload = message.get("payload") or {}
    raw_headers = payload.get("headers") or []

    header_values = {}
    for name, key in HEADER_FIELDS.items():
        value = extract_header(raw_headers, name)
        if value is not None:
            header_values[key] = value

    texts: Dict[str, List[str]] = {"text/plain": [], "text/html": []}
    attachments: List[Attachment] = []
    _walk_parts(payload, texts, attachments)

    text_plain = "\n".join(t for t in texts["text/plain"] if t) or None
    text_html = "\n".join(t for t in texts["text/html"] if t) or None

    return ParsedMessage(
        id=message["id"],
        thread_id=message.get("threadId", ""),
        headers=MessageHeaders(**header_values),
        snippet=message.get("snippet", ""),
        text_plain=text_plain,
        text_html=text_html,
        label_ids=message.get("labelIds", []),
        attachments=attachments,
        internal_date=message.get("internalDate"),
        history_id=message.get("historyId"),
    )


def html_to_text(html: str) -> str:
    """Convert an HTML body to readable plain text."""
    converter = html2text.HTML2Text()
    converter.ignore_images = True
    converter.ignore_links = False
    converter.body_width = 0
    return converter.handle(html).strip()


_QUOTE_PATTERNS = [
    re.compile(r"\n\s*On .{1,200}? wrote:", re.DOTALL),
    re.compile(r"\n-{2,}\s*Original Message\s*-{2,}", re.IGNORECASE),
    re.compile(r"\n-{5,}\s*Forwarded message\s*-{5,}", re.IGNORECASE),
]


def extract_reply(text: str) -> str:
    """Drop quoted history from a reply body, keeping only the newest text."""
    cut = len(text)
    for pattern in _QUOTE_PATTERNS:
        match = pattern.search(text)
        if match:
            cut = min(cut, match.start())
    reply = text[:cut]
    lines = [line for line in reply.splitlines() if not line.startswith(">")]
    return "\n".join(lines).strip()


def get_message_text(message: ParsedMessage) -> str:
    if message.text_plain:
        return message.text_plain
    if message.text_html:
        return html_to_text(message.text_html)
    return message.snippet or ""


def truncate(text: str, max_length: int) -> str:
    if len(text) <= max_length:
        return text
    return text[:max_length] + "..."


def get_email_for_llm(
    message: ParsedMessage,
    max_length: Optional[int] = None,
    extract_reply_only: bool = False,
) -> EmailForLLM:
    """
    Build the prompt view of a message.

    Args:
        message: Parsed message
        max_length: Body limit (defaults to settings.MAX_EMAIL_CHARS_FOR_LLM)
        extract_reply_only: Strip quoted history (used for thread context)
    """
    limit = max_length or settings.MAX_EMAIL_CHARS_FOR_LLM
    content = get_message_text(message)
    if extract_reply_only:
        content = extract_reply(content)

    return EmailForLLM(
        id=message.id,
        from_=message.headers.from_,
        to=message.headers.to,
        cc=message.headers.cc,
        subject=message.headers.subject,
        content=truncate(content.strip(), limit),
        date=message.headers.date or None,
    )


def stringify_email(email: EmailForLLM, max_length: Optional[int] = None) -> str:
    """Render an email as a tagged block for prompts."""
    parts = [f"<from>{email.from_}</from>"]
    if email.to:
        parts.append(f"<to>{email.to}</to>")
    if email.cc:
        parts.append(f"<cc>{email.cc}</cc>")
    if email.date:
        parts.append(f"<date>{email.date}</date>")
    parts.append(f"<subject>{email.subject}</subject>")
    content = truncate(email.content, max_length) if max_length else email.content
    parts.append(f"<body>{content}</body>")
    return "\n".join(parts)
