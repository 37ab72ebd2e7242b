"""
Unit tests for OutlookProvider.

Tests Microsoft Graph integration with a mocked requests session:
- Graph message resources normalized to ParsedMessage
- Retry on throttling and server errors
- Error translation (401, 403, 404)
- Access token refresh after a 401
- Conversation lookup filters

Run tests:
    pytest tests/unit/test_outlook_provider.py -v
"""

from datetime import datetime

import pytest
from unittest.mock import Mock, patch

from app.models.email_account import EmailAccount
from app.modules.auth.token_refresh import OAuthPermanentError
from app.modules.email.outlook_provider import OutlookProvider, parse_graph_message
from app.modules.email.provider import ProviderAuthError, ProviderError, ProviderNotFound


# Test fixtures

@pytest.fixture
def mock_account():
    """Create a mock Outlook email account."""
    account = Mock(spec=EmailAccount)
    account.id = "test-account-id"
    account.provider = "microsoft"
    account.email_address = "me@example.com"
    account.is_active = True
    account.encrypted_access_token = "encrypted_token"
    account.encrypted_refresh_token = "encrypted_refresh"
    account.token_expires_at = None
    return account


@pytest.fixture
def session():
    return Mock()


@pytest.fixture
def provider(mock_account, session):
    outlook = OutlookProvider(mock_account)
    outlook._session = session
    return outlook


@pytest.fixture(autouse=True)
def plain_tokens():
    with patch(
        "app.modules.email.outlook_provider.decrypt_token", side_effect=lambda token: f"plain-{token}"
    ) as mock_decrypt:
        yield mock_decrypt


@pytest.fixture(autouse=True)
def no_sleep():
    with patch("app.modules.email.outlook_provider.time.sleep") as mock_sleep:
        yield mock_sleep


def graph_response(status_code: int, body=None, headers=None):
    """Create a requests-like response for testing."""
    response = Mock()
    response.status_code = status_code
    response.headers = headers or {}
    response.json.return_value = body if body is not None else {}
    response.content = b"{}" if body is not None else b""
    response.text = ""
    return response


def graph_error(status_code: int, message: str = "Error", headers=None):
    return graph_response(status_code, {"error": {"message": message}}, headers=headers)


GRAPH_MESSAGE = {
    "id": "AAMk-2",
    "conversationId": "conv-1",
    "conversationIndex": "AQHZ",
    "subject": "Lunch?",
    "from": {"emailAddress": {"name": "Alice", "address": "alice@example.com"}},
    "toRecipients": [{"emailAddress": {"name": "Me", "address": "me@example.com"}}],
    "ccRecipients": [],
    "receivedDateTime": "2024-01-01T10:00:00Z",
    "body": {"contentType": "html", "content": "<p>Are you free for lunch?</p>"},
    "bodyPreview": "Are you free for lunch?",
    "isRead": False,
    "isDraft": False,
    "internetMessageId": "<abc@mail.example.com>",
    "hasAttachments": False,
    "categories": ["Personal"],
}


class TestOutlookProviderInit:
    def test_init_with_valid_account(self, mock_account):
        outlook = OutlookProvider(mock_account)
        assert outlook.email_account == mock_account
        assert outlook.name == "microsoft"

    def test_init_with_none_account(self):
        with pytest.raises(ValueError, match="Email account is required"):
            OutlookProvider(None)

    def test_init_with_gmail_account(self, mock_account):
        mock_account.provider = "google"
        with pytest.raises(ValueError, match="not an Outlook account"):
            OutlookProvider(mock_account)


class TestParseGraphMessage:
    def test_html_body(self):
        message = parse_graph_message(GRAPH_MESSAGE)

        assert message.id == "AAMk-2"
        assert message.thread_id == "conv-1"
        assert message.headers.from_ == "Alice <alice@example.com>"
        assert message.headers.to == "Me <me@example.com>"
        assert message.headers.cc is None
        assert message.headers.message_id == "<abc@mail.example.com>"
        assert message.text_html == "<p>Are you free for lunch?</p>"
        assert message.text_plain is None
        assert message.body_content_type == "html"
        assert message.internal_date == "1704103200000"
        assert message.label_ids == ["Personal", "UNREAD"]

    def test_text_body_and_draft(self):
        data = dict(GRAPH_MESSAGE, isDraft=True, isRead=True, categories=[],
                    body={"contentType": "text", "content": "Plain words"})
        message = parse_graph_message(data)

        assert message.text_plain == "Plain words"
        assert message.text_html is None
        assert message.body_content_type == "text"
        assert message.is_draft

    def test_attachments(self):
        message = parse_graph_message(
            GRAPH_MESSAGE,
            [{"id": "att-1", "name": "invite.ics", "contentType": "text/calendar", "size": 10}],
        )
        assert message.has_ics_attachment
        assert message.attachments[0].attachment_id == "att-1"


class TestRequests:
    @pytest.mark.asyncio
    async def test_get_message(self, provider, session):
        session.request.return_value = graph_response(200, GRAPH_MESSAGE)

        message = await provider.get_message("AAMk-2")

        assert message.id == "AAMk-2"
        method, url = session.request.call_args.args
        assert method == "GET"
        assert url.endswith("/me/messages/AAMk-2")
        assert session.request.call_args.kwargs["headers"]["Authorization"] == "Bearer plain-encrypted_token"

    @pytest.mark.asyncio
    async def test_throttling_is_retried(self, provider, session, no_sleep):
        session.request.side_effect = [
            graph_error(429, "Too many requests", headers={"Retry-After": "3"}),
            graph_response(200, GRAPH_MESSAGE),
        ]

        message = await provider.get_message("AAMk-2")

        assert message.id == "AAMk-2"
        no_sleep.assert_called_once_with(3)

    @pytest.mark.asyncio
    async def test_server_error_is_retried(self, provider, session, no_sleep):
        session.request.side_effect = [graph_error(503), graph_error(500), graph_response(200, GRAPH_MESSAGE)]

        message = await provider.get_message("AAMk-2")

        assert message.id == "AAMk-2"
        assert session.request.call_count == 3

    @pytest.mark.asyncio
    async def test_server_error_after_retries(self, provider, session):
        session.request.return_value = graph_error(503)
        with pytest.raises(ProviderError) as exc_info:
            await provider.get_message("AAMk-2")
        assert exc_info.value.status_code == 503

    @pytest.mark.asyncio
    async def test_not_found(self, provider, session):
        session.request.return_value = graph_error(404, "Not Found")
        with pytest.raises(ProviderNotFound):
            await provider.get_message("missing")

    @pytest.mark.asyncio
    async def test_forbidden_is_auth_error(self, provider, session):
        session.request.return_value = graph_error(403, "Forbidden")
        with pytest.raises(ProviderAuthError) as exc_info:
            await provider.get_message("AAMk-2")
        assert exc_info.value.status_code == 403

    @pytest.mark.asyncio
    async def test_missing_draft_is_none(self, provider, session):
        session.request.return_value = graph_error(404)
        assert await provider.get_draft("draft-1") is None


class TestTokenRefresh:
    @pytest.mark.asyncio
    async def test_unauthorized_refreshes_and_retries_once(self, provider, session, mock_account):
        session.request.side_effect = [graph_error(401, "Expired"), graph_response(200, GRAPH_MESSAGE)]
        expires_at = datetime(2030, 1, 1)

        with patch(
            "app.modules.email.outlook_provider.refresh_access_token_with_retry",
            return_value=("new_token", expires_at, "new_refresh"),
        ) as mock_refresh:
            message = await provider.get_message("AAMk-2")

        assert message.id == "AAMk-2"
        mock_refresh.assert_called_once_with(mock_account)
        assert mock_account.encrypted_access_token == "new_token"
        assert mock_account.encrypted_refresh_token == "new_refresh"
        assert mock_account.token_expires_at == expires_at
        retried_headers = session.request.call_args_list[1].kwargs["headers"]
        assert retried_headers["Authorization"] == "Bearer plain-new_token"

    @pytest.mark.asyncio
    async def test_second_unauthorized_is_auth_error(self, provider, session):
        session.request.return_value = graph_error(401, "Expired")

        with patch(
            "app.modules.email.outlook_provider.refresh_access_token_with_retry",
            return_value=("new_token", datetime(2030, 1, 1), "new_refresh"),
        ) as mock_refresh:
            with pytest.raises(ProviderAuthError) as exc_info:
                await provider.get_message("AAMk-2")

        assert exc_info.value.status_code == 401
        mock_refresh.assert_called_once()
        assert session.request.call_count == 2

    @pytest.mark.asyncio
    async def test_rejected_refresh_is_auth_error(self, provider, session):
        session.request.return_value = graph_error(401, "Expired")

        with patch(
            "app.modules.email.outlook_provider.refresh_access_token_with_retry",
            side_effect=OAuthPermanentError("revoked", error_code="invalid_grant"),
        ):
            with pytest.raises(ProviderAuthError):
                await provider.get_message("AAMk-2")

        assert session.request.call_count == 1

    @pytest.mark.asyncio
    async def test_single_attempt_does_not_refresh(self, mock_account, session):
        outlook = OutlookProvider(mock_account, max_retries=1)
        outlook._session = session
        session.request.return_value = graph_error(401, "Expired")

        with patch("app.modules.email.outlook_provider.refresh_access_token_with_retry") as mock_refresh:
            with pytest.raises(ProviderAuthError):
                await outlook.get_message("AAMk-2")

        mock_refresh.assert_not_called()


class TestConversations:
    @pytest.mark.asyncio
    async def test_thread_messages_sorted_oldest_first(self, provider, session):
        newer = dict(GRAPH_MESSAGE, id="AAMk-3", receivedDateTime="2024-01-02T10:00:00Z")
        session.request.return_value = graph_response(200, {"value": [newer, GRAPH_MESSAGE]})

        messages = await provider.get_thread_messages("conv-1")

        assert [m.id for m in messages] == ["AAMk-2", "AAMk-3"]
        params = session.request.call_args.kwargs["params"]
        assert params["$filter"] == "conversationId eq 'conv-1'"

    @pytest.mark.asyncio
    async def test_thread_filter_escapes_quotes(self, provider, session):
        session.request.return_value = graph_response(200, {"value": []})

        await provider.get_thread_messages("it's")

        params = session.request.call_args.kwargs["params"]
        assert params["$filter"] == "conversationId eq 'it''s'"

    @pytest.mark.asyncio
    async def test_archive_moves_inbox_messages(self, provider, session):
        session.request.side_effect = [
            graph_response(200, {"value": [{"id": "AAMk-2"}, {"id": "AAMk-3"}]}),
            graph_response(201, {"id": "moved-2"}),
            graph_response(201, {"id": "moved-3"}),
        ]

        await provider.archive_thread("o'brien")

        list_call, first_move, _ = session.request.call_args_list
        assert list_call.args[1].endswith("/me/mailFolders/inbox/messages")
        assert list_call.kwargs["params"]["$filter"] == "conversationId eq 'o''brien'"
        assert first_move.args[1].endswith("/me/messages/AAMk-2/move")
        assert first_move.kwargs["json"] == {"destinationId": "archive"}
