"""
Unit tests for GmailProvider.

Tests Gmail API integration with mocked responses:
- Initialization checks
- Message retrieval normalized to ParsedMessage
- Error translation (401, 403, 404, 429, 5xx)
- Retry logic for server errors
- Labels and sender history helpers

Run tests:
    pytest tests/unit/test_gmail_provider.py -v
"""

import base64
import logging

import httplib2
import pytest
from unittest.mock import AsyncMock, MagicMock, Mock, patch
from googleapiclient.errors import HttpError

from app.models.email_account import EmailAccount
from app.models.email_message import MessageHeaders, ParsedMessage
from app.modules.email.gmail_provider import GmailProvider
from app.modules.email.provider import ProviderAuthError, ProviderError, ProviderNotFound, ProviderQuotaExceeded


# Test fixtures

@pytest.fixture
def mock_account():
    """Create a mock Gmail email account."""
    account = Mock(spec=EmailAccount)
    account.id = "test-account-id"
    account.provider = "google"
    account.is_gmail = True
    account.email_address = "me@example.com"
    account.is_active = True
    account.encrypted_access_token = "encrypted_token"
    return account


@pytest.fixture
def mock_rate_limiter():
    """Create a mock rate limiter that always allows requests."""
    limiter = AsyncMock()
    limiter.check_and_increment = AsyncMock()
    return limiter


@pytest.fixture
def service():
    return MagicMock()


@pytest.fixture
def provider(mock_account, mock_rate_limiter, service):
    gmail = GmailProvider(mock_account, rate_limiter=mock_rate_limiter)
    gmail._service = service
    return gmail


def create_http_error(status_code: int, reason: str = "Error"):
    """Create an HttpError for testing."""
    resp = httplib2.Response({"status": status_code})
    content = f'{{"error": {{"message": "{reason}"}}}}'.encode()
    return HttpError(resp, content)


def _b64(text: str) -> str:
    return base64.urlsafe_b64encode(text.encode()).decode()


RAW_MESSAGE = {
    "id": "msg-2",
    "threadId": "msg-1",
    "labelIds": ["INBOX", "UNREAD"],
    "snippet": "Hi there",
    "internalDate": "1704103200000",
    "payload": {
        "mimeType": "multipart/alternative",
        "headers": [
            {"name": "From", "value": "Alice <alice@example.com>"},
            {"name": "To", "value": "me@example.com"},
            {"name": "Subject", "value": "Lunch?"},
            {"name": "Message-ID", "value": "<abc@mail.example.com>"},
        ],
        "parts": [
            {"mimeType": "text/plain", "body": {"data": _b64("Are you free for lunch?")}},
            {"mimeType": "text/html", "body": {"data": _b64("<p>Are you free for lunch?</p>")}},
            {"mimeType": "text/calendar", "filename": "invite.ics", "body": {"attachmentId": "att-1", "size": 10}},
        ],
    },
}


class TestGmailProviderInit:
    """Test GmailProvider initialization and validation."""

    def test_init_with_valid_account(self, mock_account):
        gmail = GmailProvider(mock_account)
        assert gmail.email_account == mock_account
        assert gmail._service is None
        assert gmail._max_retries == 3

    def test_init_with_none_account(self):
        with pytest.raises(ValueError, match="Email account is required"):
            GmailProvider(None)

    def test_init_with_inactive_account(self, mock_account):
        mock_account.is_active = False
        with pytest.raises(ValueError, match="inactive"):
            GmailProvider(mock_account)

    def test_init_with_non_gmail_provider(self, mock_account):
        mock_account.is_gmail = False
        mock_account.provider = "microsoft"
        with pytest.raises(ValueError, match="not a Gmail account"):
            GmailProvider(mock_account)

    @patch("app.modules.email.gmail_provider.decrypt_token", return_value="plaintext_token")
    @patch("app.modules.email.gmail_provider.build")
    def test_service_built_lazily_from_decrypted_token(self, mock_build, mock_decrypt, mock_account):
        gmail = GmailProvider(mock_account)
        gmail._get_service()
        gmail._get_service()
        mock_decrypt.assert_called_once_with("encrypted_token")
        mock_build.assert_called_once()


class TestGetMessage:
    @pytest.mark.asyncio
    async def test_parses_full_message(self, provider, service, mock_rate_limiter):
        service.users().messages().get().execute.return_value = RAW_MESSAGE

        message = await provider.get_message("msg-2")

        assert message.id == "msg-2"
        assert message.thread_id == "msg-1"
        assert message.headers.from_ == "Alice <alice@example.com>"
        assert message.headers.subject == "Lunch?"
        assert message.headers.message_id == "<abc@mail.example.com>"
        assert message.text_plain == "Are you free for lunch?"
        assert message.has_ics_attachment
        mock_rate_limiter.check_and_increment.assert_awaited()

    @pytest.mark.asyncio
    async def test_not_found(self, provider, service):
        service.users().messages().get().execute.side_effect = create_http_error(404, "Not Found")
        with pytest.raises(ProviderNotFound):
            await provider.get_message("missing")

    @pytest.mark.asyncio
    async def test_forbidden_is_auth_error(self, provider, service):
        service.users().messages().get().execute.side_effect = create_http_error(403, "Forbidden")
        with pytest.raises(ProviderAuthError) as exc_info:
            await provider.get_message("msg-2")
        assert exc_info.value.status_code == 403

    @pytest.mark.asyncio
    async def test_server_error_is_retried(self, provider, service):
        service.users().messages().get().execute.side_effect = [create_http_error(503), RAW_MESSAGE]
        with patch("app.modules.email.gmail_provider.asyncio.sleep", AsyncMock()):
            message = await provider.get_message("msg-2")
        assert message.id == "msg-2"

    @pytest.mark.asyncio
    async def test_quota_exhausted(self, mock_account, mock_rate_limiter, service):
        gmail = GmailProvider(mock_account, rate_limiter=mock_rate_limiter, max_retries=1)
        gmail._service = service
        service.users().messages().get().execute.side_effect = create_http_error(429, "Rate Limit")
        with pytest.raises(ProviderQuotaExceeded):
            await gmail.get_message("msg-2")

    @pytest.mark.asyncio
    async def test_unauthorized_rebuilds_service_once(self, provider, service):
        service.users().messages().get().execute.side_effect = [create_http_error(401, "Expired"), RAW_MESSAGE]
        with patch.object(provider, "_get_service", return_value=service):
            message = await provider.get_message("msg-2")
        assert message.id == "msg-2"

    @pytest.mark.asyncio
    async def test_unauthorized_with_single_attempt(self, mock_account, mock_rate_limiter, service):
        gmail = GmailProvider(mock_account, rate_limiter=mock_rate_limiter, max_retries=1)
        gmail._service = service
        service.users().messages().get().execute.side_effect = create_http_error(401, "Expired")
        with pytest.raises(ProviderAuthError) as exc_info:
            await gmail.get_message("msg-2")
        assert exc_info.value.status_code == 401

    @pytest.mark.asyncio
    async def test_bad_request(self, provider, service):
        service.users().messages().get().execute.side_effect = create_http_error(400, "Bad")
        with pytest.raises(ProviderError, match="Invalid argument"):
            await provider.get_message("msg-2")

    @pytest.mark.asyncio
    async def test_missing_draft_is_none(self, provider, service):
        service.users().drafts().get().execute.side_effect = create_http_error(404)
        assert await provider.get_draft("d1") is None


class TestLabelsAndHistory:
    @pytest.mark.asyncio
    async def test_existing_label_is_reused(self, provider, service):
        service.users().labels().list().execute.return_value = {
            "labels": [{"id": "Label_1", "name": "Newsletters"}]
        }
        label = await provider.get_or_create_label("newsletters")
        assert label == {"id": "Label_1", "name": "Newsletters"}
        service.users().labels().create.assert_not_called()

    @pytest.mark.asyncio
    async def test_missing_label_is_created(self, provider, service):
        service.users().labels().list().execute.return_value = {"labels": []}
        service.users().labels().create().execute.return_value = {"id": "Label_2", "name": "Receipts"}
        label = await provider.get_or_create_label("Receipts")
        assert label["id"] == "Label_2"

    @pytest.mark.asyncio
    async def test_is_reply_in_thread(self, provider):
        first = ParsedMessage(id="t1", thread_id="t1", headers=MessageHeaders())
        reply = ParsedMessage(id="m2", thread_id="t1", headers=MessageHeaders())
        assert not await provider.is_reply_in_thread(first)
        assert await provider.is_reply_in_thread(reply)

    @pytest.mark.asyncio
    async def test_sender_reply_history(self, provider):
        provider.list_message_ids = AsyncMock(side_effect=[[], ["a", "b", "c"]])
        history = await provider.check_sender_reply_history("Bob <bob@example.com>", 10)
        assert history == {"has_replied": False, "received_count": 3}
        assert provider.list_message_ids.await_args_list[0].args[0] == "to:bob@example.com in:sent"

    @pytest.mark.asyncio
    async def test_previous_communications_ignores_current_message(self, provider):
        provider.list_message_ids = AsyncMock(side_effect=[["current"], []])
        assert not await provider.has_previous_communications_with_sender(
            "bob@example.com", "1704103200000", "current"
        )
        assert provider.list_message_ids.await_args_list[0].args[0] == "from:bob@example.com before:1704103200"

    @pytest.mark.asyncio
    async def test_history_follows_pages(self, provider, service):
        service.users().history().list().execute.side_effect = [
            {"history": [{"id": "101"}], "nextPageToken": "p2"},
            {"history": [{"id": "102"}]},
        ]
        history = await provider.get_history("100")
        assert [h["id"] for h in history] == ["101", "102"]

    @pytest.mark.asyncio
    async def test_history_truncation_is_logged(self, provider, service, caplog):
        service.users().history().list().execute.side_effect = [
            {"history": [{"id": "101"}], "nextPageToken": "p2"},
            {"history": [{"id": "102"}], "nextPageToken": "p3"},
        ]
        with caplog.at_level(logging.WARNING, logger="app.modules.email.gmail_provider"):
            history = await provider.get_history("100", max_pages=2)
        assert len(history) == 2
        assert "History truncated after 2 pages" in caplog.text
