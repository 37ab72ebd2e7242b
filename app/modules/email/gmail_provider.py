"""
Gmail implementation of EmailProvider (google-api-python-client).

Provides:
- Message, thread and draft retrieval normalized to ParsedMessage
- Thread and message modification (archive, label, read, spam)
- Drafts, replies, sends and forwards with proper threading headers
- History reads for push-notification ingestion
- Rate limiting, retries and typed errors

CRITICAL SECURITY:
- NEVER log access tokens or message bodies
- ALWAYS respect the per-account rate limit
"""

import asyncio
import logging
from datetime import datetime
from typing import Callable, Dict, List, Optional

from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from app.core.security import decrypt_token
from app.models.email_account import EmailAccount
from app.models.email_message import ParsedMessage, SendEmailBody
from app.modules.email.mime import build_message, encode_raw, forward_subject, reply_subject
from app.modules.email.parse import (
    extract_email_address,
    get_message_text,
    parse_gmail_message,
)
from app.modules.email.provider import (
    EmailProvider,
    ProviderAuthError,
    ProviderError,
    ProviderNotFound,
    ProviderQuotaExceeded,
)
from app.modules.email.rate_limiter import RateLimitExceeded, get_rate_limiter

logger = logging.getLogger(__name__)


INBOX = "INBOX"
UNREAD = "UNREAD"
SPAM = "SPAM"

# Quota units per call type (Gmail API docs)
READ_UNITS = 5
MODIFY_UNITS = 5
SEND_UNITS = 100


class GmailProvider(EmailProvider):
    """
    Gmail API provider with rate limiting and error handling.

    Usage:
        provider = GmailProvider(account)
        message = await provider.get_message(message_id)
        await provider.archive_thread(message.thread_id)
    """

    name = "google"

    def __init__(self, email_account: EmailAccount, rate_limiter=None, max_retries: int = 3):
        """
        Args:
            email_account: Account with encrypted OAuth tokens
            rate_limiter: Optional RateLimiter (uses the global one if not provided)
            max_retries: Attempts for retryable failures (429, 5xx, rate limit)

        Raises:
            ValueError: If the account is missing, inactive or not a Gmail account
        """
        if not email_account:
            raise ValueError("Email account is required")

        if not email_account.is_active:
            raise ValueError(f"Email account {email_account.id} is inactive")

        if not email_account.is_gmail:
            raise ValueError(
                f"Email account {email_account.id} is not a Gmail account (provider={email_account.provider})"
            )

        self.email_account = email_account
        self._service = None
        self._rate_limiter = rate_limiter
        self._max_retries = max_retries

    @property
    def _account_id(self) -> str:
        return str(self.email_account.id)

    def _build_service(self):
        """Build an authenticated Gmail API service from the stored access token."""
        access_token = decrypt_token(self.email_account.encrypted_access_token)
        credentials = Credentials(token=access_token)
        return build("gmail", "v1", credentials=credentials, cache_discovery=False)

    def _get_service(self):
        if not self._service:
            self._service = self._build_service()
        return self._service

    async def _check_rate_limit(self, quota_units: int):
        limiter = self._rate_limiter or await get_rate_limiter()
        await limiter.check_and_increment(self._account_id, quota_units=quota_units)

    async def _execute_with_retry(
        self,
        build_request: Callable,
        operation_name: str,
        quota_units: int = READ_UNITS,
    ):
        """
        Execute a Gmail API request with retries and rate limiting.

        Args:
            build_request: Callable taking the service and returning an HttpRequest
            operation_name: Name of operation (for logging)
            quota_units: Quota units consumed by the call

        Raises:
            ProviderError (or subclass) when the call fails for good
        """
        for attempt in range(self._max_retries):
            try:
                await self._check_rate_limit(quota_units)
                request = build_request(self._get_service())
                return await asyncio.to_thread(request.execute)

            except HttpError as e:
                status_code = e.resp.status

                if status_code == 429 and attempt < self._max_retries - 1:
                    backoff_time = min(2 ** attempt, 16)
                    logger.warning(
                        f"Gmail API 429 error, retrying in {backoff_time}s (attempt {attempt + 1}/{self._max_retries})",
                        extra={
                            "email_account_id": self._account_id,
                            "operation": operation_name,
                            "attempt": attempt + 1,
                            "backoff": backoff_time
                        }
                    )
                    await asyncio.sleep(backoff_time)
                    continue

                if status_code == 401 and attempt == 0 and self._max_retries > 1:
                    # Rebuild once; the account token may have been refreshed meanwhile
                    logger.info(
                        "Gmail API 401 error, rebuilding service",
                        extra={"email_account_id": self._account_id, "operation": operation_name}
                    )
                    self._service = None
                    continue

                if status_code in (500, 502, 503) and attempt < self._max_retries - 1:
                    backoff_time = min(2 ** attempt, 8)
                    logger.warning(
                        f"Gmail API {status_code} error, retrying in {backoff_time}s",
                        extra={
                            "email_account_id": self._account_id,
                            "operation": operation_name,
                            "status": status_code
                        }
                    )
                    await asyncio.sleep(backoff_time)
                    continue

                self._handle_error(e, operation_name)

            except RateLimitExceeded:
                if attempt < self._max_retries - 1:
                    backoff_time = min(2 ** attempt, 16)
                    logger.warning(
                        f"Rate limit exceeded, waiting {backoff_time}s",
                        extra={"email_account_id": self._account_id, "operation": operation_name}
                    )
                    await asyncio.sleep(backoff_time)
                    continue
                raise

        raise ProviderError(f"Gmail API retries exhausted during {operation_name}")

    def _handle_error(self, error: HttpError, operation: str):
        """
        Translate a Gmail HttpError into a typed provider error.

        Raises:
            ProviderAuthError: 401 / 403
            ProviderQuotaExceeded: 429
            ProviderNotFound: 404
            ProviderError: anything else
        """
        status_code = error.resp.status
        extra = {"email_account_id": self._account_id, "operation": operation, "status": status_code}

        if status_code == 401:
            logger.error(f"Gmail API 401 error during {operation}", extra=extra)
            raise ProviderAuthError(
                f"OAuth token expired for account {self._account_id}. Token refresh needed.",
                status_code=status_code,
            )

        if status_code == 403:
            logger.error(f"Gmail API 403 error during {operation}", extra=extra)
            raise ProviderAuthError(
                f"Permission denied for account {self._account_id} during {operation}",
                status_code=status_code,
            )

        if status_code == 429:
            logger.warning(f"Gmail API quota exceeded during {operation}", extra=extra)
            raise ProviderQuotaExceeded(
                f"Gmail API quota exceeded for account {self._account_id}",
                status_code=status_code,
            )

        if status_code == 404:
            logger.warning(f"Gmail API 404 error during {operation}", extra=extra)
            raise ProviderNotFound(f"Not found during {operation}", status_code=status_code)

        if status_code in (500, 502, 503):
            logger.warning(f"Gmail API {status_code} error during {operation}", extra=extra)
            raise ProviderError(
                f"Gmail API server error ({status_code}) during {operation}",
                status_code=status_code,
            )

        logger.error(f"Gmail API {status_code} error during {operation}: {error}", extra=extra)
        if status_code == 400:
            raise ProviderError(f"Invalid argument during {operation}", status_code=status_code)
        raise ProviderError(f"Gmail API error ({status_code}) during {operation}", status_code=status_code)

    # Reads

    async def get_message(self, message_id: str) -> ParsedMessage:
        raw = await self._execute_with_retry(
            lambda s: s.users().messages().get(userId="me", id=message_id, format="full"),
            f"get_message(message_id={message_id})",
        )
        return parse_gmail_message(raw)

    async def get_thread_messages(self, thread_id: str) -> List[ParsedMessage]:
        raw = await self._execute_with_retry(
            lambda s: s.users().threads().get(userId="me", id=thread_id, format="full"),
            f"get_thread(thread_id={thread_id})",
            quota_units=10,
        )
        messages = [parse_gmail_message(m) for m in raw.get("messages", [])]
        return sorted(messages, key=lambda m: int(m.internal_date or 0))

    async def get_draft(self, draft_id: str) -> Optional[ParsedMessage]:
        try:
            raw = await self._execute_with_retry(
                lambda s: s.users().drafts().get(userId="me", id=draft_id, format="full"),
                f"get_draft(draft_id={draft_id})",
            )
        except ProviderNotFound:
            return None

        message = raw.get("message")
        if not message:
            return None
        return parse_gmail_message(message).model_copy(update={"id": raw["id"]})

    async def get_history(
        self,
        start_history_id: str,
        history_types: Optional[List[str]] = None,
        max_pages: int = 10,
    ) -> List[Dict]:
        """
        History records since start_history_id (all pages, bounded).

        Raises:
            ProviderNotFound: start_history_id is too old; do a full sync instead
        """
        history: List[Dict] = []
        page_token = None
        types = history_types or ["messageAdded"]

        for _ in range(max_pages):
            params = {
                "userId": "me",
                "startHistoryId": start_history_id,
                "historyTypes": types,
                "maxResults": 500,
            }
            if page_token:
                params["pageToken"] = page_token

            response = await self._execute_with_retry(
                lambda s, p=params: s.users().history().list(**p),
                "list_history",
                quota_units=2,
            )
            history.extend(response.get("history", []))
            page_token = response.get("nextPageToken")
            if not page_token:
                break
        if page_token:
            logger.warning(
                f"History truncated after {max_pages} pages",
                extra={"email_account_id": self._account_id, "start_history_id": start_history_id}
            )

        return history

    async def list_message_ids(self, query: str, max_results: int = 10) -> List[str]:
        response = await self._execute_with_retry(
            lambda s: s.users().messages().list(userId="me", q=query, maxResults=max_results),
            "list_messages",
        )
        return [m["id"] for m in response.get("messages", [])]

    # Modifications

    async def archive_thread(self, thread_id: str) -> None:
        logger.info(
            f"Archiving thread {thread_id}",
            extra={"email_account_id": self._account_id, "thread_id": thread_id}
        )
        await self._execute_with_retry(
            lambda s: s.users().threads().modify(
                userId="me", id=thread_id, body={"removeLabelIds": [INBOX]}
            ),
            f"archive_thread(thread_id={thread_id})",
            quota_units=10,
        )

    async def get_or_create_label(self, name: str) -> Dict:
        response = await self._execute_with_retry(
            lambda s: s.users().labels().list(userId="me"),
            "list_labels",
            quota_units=1,
        )
        for label in response.get("labels", []):
            if label.get("name", "").lower() == name.lower():
                return {"id": label["id"], "name": label["name"]}

        logger.info(
            f"Creating label '{name}'",
            extra={"email_account_id": self._account_id, "label_name": name}
        )
        label = await self._execute_with_retry(
            lambda s: s.users().labels().create(
                userId="me",
                body={
                    "name": name,
                    "labelListVisibility": "labelShow",
                    "messageListVisibility": "show",
                },
            ),
            f"create_label(name={name})",
        )
        return {"id": label["id"], "name": label["name"]}

    async def label_message(self, message_id: str, label_id: str) -> None:
        await self._execute_with_retry(
            lambda s: s.users().messages().modify(
                userId="me", id=message_id, body={"addLabelIds": [label_id]}
            ),
            f"label_message(message_id={message_id})",
            quota_units=MODIFY_UNITS,
        )

    async def mark_read_thread(self, thread_id: str, read: bool = True) -> None:
        body = {"removeLabelIds": [UNREAD]} if read else {"addLabelIds": [UNREAD]}
        await self._execute_with_retry(
            lambda s: s.users().threads().modify(userId="me", id=thread_id, body=body),
            f"mark_read_thread(thread_id={thread_id})",
            quota_units=10,
        )

    async def mark_spam(self, thread_id: str) -> None:
        await self._execute_with_retry(
            lambda s: s.users().threads().modify(
                userId="me",
                id=thread_id,
                body={"addLabelIds": [SPAM], "removeLabelIds": [INBOX]},
            ),
            f"mark_spam(thread_id={thread_id})",
            quota_units=10,
        )

    async def delete_draft(self, draft_id: str) -> None:
        await self._execute_with_retry(
            lambda s: s.users().drafts().delete(userId="me", id=draft_id),
            f"delete_draft(draft_id={draft_id})",
            quota_units=10,
        )

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
        mime = build_message(
            to=to or message.headers.from_,
            subject=subject or reply_subject(message.headers.subject),
            content=content,
            from_address=self.email_account.email_address,
            cc=cc,
            bcc=bcc,
            reply_to_message=message,
        )
        draft = await self._execute_with_retry(
            lambda s: s.users().drafts().create(
                userId="me",
                body={"message": {"raw": encode_raw(mime), "threadId": message.thread_id}},
            ),
            f"create_draft(thread_id={message.thread_id})",
            quota_units=10,
        )
        logger.info(
            f"Created draft in thread {message.thread_id}",
            extra={"email_account_id": self._account_id, "thread_id": message.thread_id, "draft_id": draft["id"]}
        )
        return draft["id"]

    async def _send_raw(self, mime, thread_id: Optional[str], operation: str) -> Dict:
        body = {"raw": encode_raw(mime)}
        if thread_id:
            body["threadId"] = thread_id
        return await self._execute_with_retry(
            lambda s: s.users().messages().send(userId="me", body=body),
            operation,
            quota_units=SEND_UNITS,
        )

    async def reply_to_email(self, message: ParsedMessage, content: str) -> None:
        mime = build_message(
            to=message.headers.from_,
            subject=reply_subject(message.headers.subject),
            content=content,
            from_address=self.email_account.email_address,
            reply_to_message=message,
        )
        await self._send_raw(mime, message.thread_id, f"reply(message_id={message.id})")

    async def send_email(self, body: SendEmailBody) -> None:
        reply_to = body.reply_to_message
        mime = build_message(
            to=body.to,
            subject=body.subject,
            content=body.content,
            from_address=self.email_account.email_address,
            cc=body.cc,
            bcc=body.bcc,
            reply_to_message=reply_to,
            quote_original=False,
        )
        await self._send_raw(mime, reply_to.thread_id if reply_to else None, "send_email")

    async def forward_email(
        self,
        message: ParsedMessage,
        to: str,
        cc: Optional[str] = None,
        bcc: Optional[str] = None,
        content: Optional[str] = None,
    ) -> None:
        forwarded = (
            "---------- Forwarded message ----------\n"
            f"From: {message.headers.from_}\n"
            f"Date: {message.headers.date}\n"
            f"Subject: {message.headers.subject}\n"
            f"To: {message.headers.to}\n\n"
            f"{get_message_text(message)}"
        )
        mime = build_message(
            to=to,
            subject=forward_subject(message.headers.subject),
            content=f"{content}\n\n{forwarded}" if content else forwarded,
            from_address=self.email_account.email_address,
            cc=cc,
            bcc=bcc,
        )
        await self._send_raw(mime, None, f"forward(message_id={message.id})")

    # Sender history

    async def is_reply_in_thread(self, message: ParsedMessage) -> bool:
        # Gmail reuses the first message's id as the thread id
        return bool(message.id and message.thread_id and message.id != message.thread_id)

    async def has_previous_communications_with_sender(
        self,
        sender: str,
        before_date: Optional[str],
        message_id: str,
    ) -> bool:
        address = extract_email_address(sender) or sender
        before = ""
        if before_date:
            before = f" before:{int(int(before_date) / 1000)}"

        for query in (f"from:{address}{before}", f"to:{address}{before}"):
            ids = await self.list_message_ids(query, max_results=2)
            if any(i != message_id for i in ids):
                return True
        return False

    async def check_sender_reply_history(self, sender_email: str, received_threshold: int) -> Dict:
        address = extract_email_address(sender_email) or sender_email
        sent = await self.list_message_ids(f"to:{address} in:sent", max_results=1)
        if sent:
            return {"has_replied": True, "received_count": 0}

        received = await self.list_message_ids(f"from:{address}", max_results=received_threshold)
        return {"has_replied": False, "received_count": len(received)}

    # Watch

    async def watch(self, topic_name: str) -> Dict:
        """Start (or renew) push notifications. Returns {historyId, expiration}."""
        return await self._execute_with_retry(
            lambda s: s.users().watch(
                userId="me",
                body={"topicName": topic_name, "labelIds": [INBOX, "SENT"], "labelFilterBehavior": "include"},
            ),
            "watch",
            quota_units=100,
        )

    @staticmethod
    def watch_expiration_to_datetime(expiration_ms: str) -> datetime:
        return datetime.utcfromtimestamp(int(expiration_ms) / 1000)
