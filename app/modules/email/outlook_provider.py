"""
Outlook / Microsoft 365 implementation of EmailProvider (Microsoft Graph).

Graph has no labels; LABEL actions map to Outlook categories, and archive
or spam move messages to the well-known archive / junkemail folders.

CRITICAL SECURITY:
- NEVER log access tokens or message bodies
"""

import asyncio
import base64
import binascii
import logging
import time
from typing import Dict, List, Optional

import requests
from dateutil import parser as date_parser

from app.core.security import decrypt_token
from app.models.email_account import EmailAccount, EmailProviderType
from app.models.email_message import Attachment, MessageHeaders, ParsedMessage, SendEmailBody
from app.modules.auth.token_refresh import OAuthPermanentError, refresh_access_token_with_retry
from app.modules.email.mime import quote_plain, text_to_html
from app.modules.email.parse import extract_email_address, extract_email_addresses
from app.modules.email.provider import (
    EmailProvider,
    ProviderAuthError,
    ProviderError,
    ProviderNotFound,
    ProviderQuotaExceeded,
)

logger = logging.getLogger(__name__)


GRAPH_BASE = "https://graph.microsoft.com/v1.0"

MESSAGE_FIELDS = ",".join([
    "id", "conversationId", "conversationIndex", "subject", "from", "toRecipients",
    "ccRecipients", "bccRecipients", "receivedDateTime", "sentDateTime", "body",
    "bodyPreview", "isRead", "isDraft", "internetMessageId", "hasAttachments",
    "categories", "parentFolderId",
])

# A conversation index of a first message is exactly 22 bytes; replies append 5-byte blocks
ROOT_CONVERSATION_INDEX_LENGTH = 22


def _recipients(value: Optional[str]) -> List[Dict]:
    return [{"emailAddress": {"address": addr}} for addr in extract_email_addresses(value)]


def _format_address(entry: Optional[Dict]) -> str:
    if not entry:
        return ""
    address = entry.get("emailAddress", {})
    name = address.get("name")
    email = address.get("address", "")
    return f"{name} <{email}>" if name and name != email else email


def _odata_quote(value: str) -> str:
    return value.replace("'", "''")


def _iso_to_ms(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    return str(int(date_parser.isoparse(value).timestamp() * 1000))


def parse_graph_message(data: Dict, attachments: Optional[List[Dict]] = None) -> ParsedMessage:
    """Convert a Graph message resource into ParsedMessage."""
    body = data.get("body") or {}
    content = body.get("content") or ""
    is_html = (body.get("contentType") or "").lower() == "html"

    label_ids = list(data.get("categories") or [])
    if data.get("isDraft"):
        label_ids.append("DRAFT")
    if not data.get("isRead", True):
        label_ids.append("UNREAD")

    return ParsedMessage(
        id=data["id"],
        thread_id=data.get("conversationId", ""),
        headers=MessageHeaders(
            from_=_format_address(data.get("from")),
            to=", ".join(_format_address(r) for r in data.get("toRecipients") or []),
            cc=", ".join(_format_address(r) for r in data.get("ccRecipients") or []) or None,
            bcc=", ".join(_format_address(r) for r in data.get("bccRecipients") or []) or None,
            subject=data.get("subject") or "",
            date=data.get("receivedDateTime") or data.get("sentDateTime") or "",
            message_id=data.get("internetMessageId"),
        ),
        snippet=data.get("bodyPreview", ""),
        text_html=content if is_html else None,
        text_plain=None if is_html else content,
        label_ids=label_ids,
        attachments=[
            Attachment(
                filename=a.get("name", ""),
                mime_type=a.get("contentType", ""),
                size=a.get("size", 0),
                attachment_id=a.get("id"),
            )
            for a in attachments or []
        ],
        internal_date=_iso_to_ms(data.get("receivedDateTime")),
        conversation_index=data.get("conversationIndex"),
        body_content_type=body.get("contentType"),
    )


class OutlookProvider(EmailProvider):
    """
    Microsoft Graph provider.

    Usage:
        provider = OutlookProvider(account)
        message = await provider.get_message(message_id)
    """

    name = "microsoft"

    def __init__(self, email_account: EmailAccount, max_retries: int = 3, timeout: int = 30):
        if not email_account:
            raise ValueError("Email account is required")

        if email_account.provider != EmailProviderType.MICROSOFT.value:
            raise ValueError(
                f"Email account {email_account.id} is not an Outlook account (provider={email_account.provider})"
            )

        self.email_account = email_account
        self._max_retries = max_retries
        self._timeout = timeout
        self._session = requests.Session()

    @property
    def _account_id(self) -> str:
        return str(self.email_account.id)

    def _headers(self) -> Dict:
        token = decrypt_token(self.email_account.encrypted_access_token)
        return {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}

    def _refresh_access_token(self, operation: str):
        """
        Replace a rejected access token with a fresh one.

        The new token is set on the account; the caller's session persists it.
        """
        extra = {"email_account_id": self._account_id, "operation": operation}
        try:
            encrypted_access, expires_at, encrypted_refresh = refresh_access_token_with_retry(self.email_account)
        except OAuthPermanentError as e:
            logger.error(f"Token refresh rejected during {operation}: {e.error_code}", extra=extra)
            raise ProviderAuthError(f"Unauthorized during {operation}: refresh failed", status_code=401)

        self.email_account.encrypted_access_token = encrypted_access
        self.email_account.encrypted_refresh_token = encrypted_refresh
        self.email_account.token_expires_at = expires_at
        logger.info(f"Refreshed access token after 401 during {operation}", extra=extra)

    def _raise_for_status(self, response: requests.Response, operation: str):
        status_code = response.status_code
        try:
            error = response.json().get("error", {})
        except ValueError:
            error = {}
        detail = error.get("message") or response.text[:200]
        extra = {"email_account_id": self._account_id, "operation": operation, "status": status_code}

        if status_code in (401, 403):
            logger.error(f"Graph API {status_code} error during {operation}", extra=extra)
            label = "Permission denied" if status_code == 403 else "Unauthorized"
            raise ProviderAuthError(f"{label} during {operation}: {detail}", status_code=status_code)
        if status_code == 404:
            logger.warning(f"Graph API 404 error during {operation}", extra=extra)
            raise ProviderNotFound(f"Not found during {operation}", status_code=status_code)
        if status_code == 429:
            raise ProviderQuotaExceeded(f"Graph API throttled during {operation}", status_code=status_code)

        logger.error(f"Graph API {status_code} error during {operation}: {detail}", extra=extra)
        if status_code == 400:
            raise ProviderError(f"Invalid argument during {operation}: {detail}", status_code=status_code)
        raise ProviderError(f"Graph API error ({status_code}) during {operation}", status_code=status_code)

    def _request_sync(self, method: str, path: str, operation: str, **kwargs):
        url = path if path.startswith("http") else f"{GRAPH_BASE}/{path.lstrip('/')}"

        for attempt in range(self._max_retries):
            response = self._session.request(
                method, url, headers=self._headers(), timeout=self._timeout, **kwargs
            )

            if response.status_code in (429, 500, 502, 503) and attempt < self._max_retries - 1:
                retry_after = response.headers.get("Retry-After")
                backoff_time = int(retry_after) if retry_after and retry_after.isdigit() else min(2 ** attempt, 16)
                logger.warning(
                    f"Graph API {response.status_code} error, retrying in {backoff_time}s",
                    extra={"email_account_id": self._account_id, "operation": operation, "attempt": attempt + 1}
                )
                time.sleep(backoff_time)
                continue

            if response.status_code == 401 and attempt == 0 and self._max_retries > 1:
                self._refresh_access_token(operation)
                continue

            if response.status_code >= 400:
                self._raise_for_status(response, operation)

            if response.status_code == 204 or not response.content:
                return {}
            return response.json()

        raise ProviderError(f"Graph API retries exhausted during {operation}")

    async def _request(self, method: str, path: str, operation: str, **kwargs):
        return await asyncio.to_thread(self._request_sync, method, path, operation, **kwargs)

    async def _get_attachments(self, message_id: str) -> List[Dict]:
        data = await self._request(
            "GET",
            f"me/messages/{message_id}/attachments",
            "list_attachments",
            params={"$select": "id,name,contentType,size"},
        )
        return data.get("value", [])

    # Reads

    async def get_message(self, message_id: str) -> ParsedMessage:
        data = await self._request(
            "GET", f"me/messages/{message_id}", f"get_message(message_id={message_id})",
            params={"$select": MESSAGE_FIELDS},
        )
        attachments = await self._get_attachments(message_id) if data.get("hasAttachments") else []
        return parse_graph_message(data, attachments)

    async def get_thread_messages(self, thread_id: str) -> List[ParsedMessage]:
        data = await self._request(
            "GET", "me/messages", f"get_thread(thread_id={thread_id})",
            params={
                "$filter": f"conversationId eq '{_odata_quote(thread_id)}'",
                "$select": MESSAGE_FIELDS,
                "$top": 50,
            },
        )
        messages = [parse_graph_message(m) for m in data.get("value", [])]
        # Graph returns newest first
        return sorted(messages, key=lambda m: int(m.internal_date or 0))

    async def get_draft(self, draft_id: str) -> Optional[ParsedMessage]:
        try:
            data = await self._request(
                "GET", f"me/messages/{draft_id}", f"get_draft(draft_id={draft_id})",
                params={"$select": MESSAGE_FIELDS},
            )
        except ProviderNotFound:
            return None
        if not data.get("isDraft"):
            return None  # already sent
        return parse_graph_message(data)

    async def _conversation_message_ids(self, thread_id: str, folder: Optional[str] = None) -> List[str]:
        path = f"me/mailFolders/{folder}/messages" if folder else "me/messages"
        data = await self._request(
            "GET", path, f"list_conversation(thread_id={thread_id})",
            params={"$filter": f"conversationId eq '{_odata_quote(thread_id)}'", "$select": "id", "$top": 50},
        )
        return [m["id"] for m in data.get("value", [])]

    # Modifications

    async def _move_thread(self, thread_id: str, destination: str, operation: str):
        for message_id in await self._conversation_message_ids(thread_id, folder="inbox"):
            await self._request(
                "POST", f"me/messages/{message_id}/move", operation,
                json={"destinationId": destination},
            )

    async def archive_thread(self, thread_id: str) -> None:
        await self._move_thread(thread_id, "archive", f"archive_thread(thread_id={thread_id})")

    async def mark_spam(self, thread_id: str) -> None:
        await self._move_thread(thread_id, "junkemail", f"mark_spam(thread_id={thread_id})")

    async def get_or_create_label(self, name: str) -> Dict:
        data = await self._request("GET", "me/outlook/masterCategories", "list_categories")
        for category in data.get("value", []):
            if category.get("displayName", "").lower() == name.lower():
                return {"id": category["displayName"], "name": category["displayName"]}

        created = await self._request(
            "POST", "me/outlook/masterCategories", f"create_category(name={name})",
            json={"displayName": name, "color": "preset0"},
        )
        return {"id": created["displayName"], "name": created["displayName"]}

    async def label_message(self, message_id: str, label_id: str) -> None:
        data = await self._request(
            "GET", f"me/messages/{message_id}", f"get_categories(message_id={message_id})",
            params={"$select": "categories"},
        )
        categories = data.get("categories") or []
        if label_id in categories:
            return
        await self._request(
            "PATCH", f"me/messages/{message_id}", f"label_message(message_id={message_id})",
            json={"categories": categories + [label_id]},
        )

    async def mark_read_thread(self, thread_id: str, read: bool = True) -> None:
        for message_id in await self._conversation_message_ids(thread_id):
            await self._request(
                "PATCH", f"me/messages/{message_id}", f"mark_read(message_id={message_id})",
                json={"isRead": read},
            )

    async def delete_draft(self, draft_id: str) -> None:
        await self._request("DELETE", f"me/messages/{draft_id}", f"delete_draft(draft_id={draft_id})")

    # Sending

    async def draft_email(
        self,
        message: ParsedMessage,
        content: str,
        to: Optional[str] = None,
        cc: Optional[str] = None,
        bcc: Optional[str] = None,
        subject: Optional[str] = None,
    ) -> str:
        draft = await self._request(
            "POST", f"me/messages/{message.id}/createReply", f"create_draft(message_id={message.id})",
        )

        body_text = f"{content}\n\n{quote_plain(message)}"
        patch: Dict = {"body": {"contentType": "HTML", "content": text_to_html(body_text)}}
        if to:
            patch["toRecipients"] = _recipients(to)
        if cc:
            patch["ccRecipients"] = _recipients(cc)
        if bcc:
            patch["bccRecipients"] = _recipients(bcc)
        if subject:
            patch["subject"] = subject

        await self._request("PATCH", f"me/messages/{draft['id']}", "update_draft", json=patch)
        logger.info(
            f"Created draft in thread {message.thread_id}",
            extra={"email_account_id": self._account_id, "thread_id": message.thread_id, "draft_id": draft["id"]}
        )
        return draft["id"]

    async def reply_to_email(self, message: ParsedMessage, content: str) -> None:
        await self._request(
            "POST", f"me/messages/{message.id}/reply", f"reply(message_id={message.id})",
            json={"comment": content},
        )

    async def send_email(self, body: SendEmailBody) -> None:
        if body.reply_to_message:
            await self._request(
                "POST", f"me/messages/{body.reply_to_message.id}/reply", "send_email",
                json={
                    "message": {
                        "toRecipients": _recipients(body.to),
                        "ccRecipients": _recipients(body.cc),
                        "bccRecipients": _recipients(body.bcc),
                    },
                    "comment": body.content,
                },
            )
            return

        await self._request(
            "POST", "me/sendMail", "send_email",
            json={
                "message": {
                    "subject": body.subject,
                    "body": {"contentType": "HTML", "content": text_to_html(body.content)},
                    "toRecipients": _recipients(body.to),
                    "ccRecipients": _recipients(body.cc),
                    "bccRecipients": _recipients(body.bcc),
                },
                "saveToSentItems": True,
            },
        )

    async def forward_email(
        self,
        message: ParsedMessage,
        to: str,
        cc: Optional[str] = None,
        bcc: Optional[str] = None,
        content: Optional[str] = None,
    ) -> None:
        payload: Dict = {"toRecipients": _recipients(to), "comment": content or ""}
        if cc or bcc:
            payload["message"] = {"ccRecipients": _recipients(cc), "bccRecipients": _recipients(bcc)}
        await self._request(
            "POST", f"me/messages/{message.id}/forward", f"forward(message_id={message.id})",
            json=payload,
        )

    # Sender history

    async def is_reply_in_thread(self, message: ParsedMessage) -> bool:
        if not message.conversation_index:
            return bool(message.headers.in_reply_to)
        try:
            decoded = base64.b64decode(message.conversation_index)
        except (binascii.Error, ValueError):
            return False
        return len(decoded) > ROOT_CONVERSATION_INDEX_LENGTH

    async def _search(self, query: str, top: int, folder: Optional[str] = None) -> List[Dict]:
        path = f"me/mailFolders/{folder}/messages" if folder else "me/messages"
        data = await self._request(
            "GET", path, "search_messages",
            params={"$search": f'"{query}"', "$select": "id,receivedDateTime", "$top": top},
        )
        return data.get("value", [])

    async def has_previous_communications_with_sender(
        self,
        sender: str,
        before_date: Optional[str],
        message_id: str,
    ) -> bool:
        address = extract_email_address(sender) or sender
        for item in await self._search(f"participants:{address}", top=5):
            if item["id"] == message_id:
                continue
            received = _iso_to_ms(item.get("receivedDateTime"))
            if not before_date or (received and int(received) < int(before_date)):
                return True
        return False

    async def check_sender_reply_history(self, sender_email: str, received_threshold: int) -> Dict:
        address = extract_email_address(sender_email) or sender_email
        if await self._search(f"to:{address}", top=1, folder="sentitems"):
            return {"has_replied": True, "received_count": 0}

        data = await self._request(
            "GET", "me/messages", "count_received",
            params={
                "$filter": f"from/emailAddress/address eq '{_odata_quote(address)}'",
                "$select": "id",
                "$top": received_threshold,
            },
        )
        return {"has_replied": False, "received_count": len(data.get("value", []))}
