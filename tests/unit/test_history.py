"""
Tests for Gmail history delta sync.

Covers cursor handling (missing, expired, forward-only) and how added
messages are sorted into inbound, outbound and skipped.
"""

import pytest
from unittest.mock import AsyncMock, Mock, patch

from app.models.email_message import ParsedMessage
from app.modules.email.history import extract_added_messages, sync_gmail_history
from app.modules.email.provider import ProviderNotFound


def _added(message_id, *labels):
    return {"messagesAdded": [{"message": {"id": message_id, "labelIds": list(labels)}}]}


@pytest.fixture
def account():
    account = Mock()
    account.id = "account-1"
    account.last_history_id = "100"
    return account


@pytest.fixture
def history_provider():
    provider = AsyncMock()
    provider.get_history = AsyncMock(return_value=[])
    return provider


def test_extract_added_messages_deduplicates():
    history = [_added("m1", "INBOX"), _added("m2", "INBOX"), _added("m1", "INBOX"), {"labelsAdded": []}]
    assert [m["id"] for m in extract_added_messages(history)] == ["m1", "m2"]


class TestSyncGmailHistory:
    @pytest.mark.asyncio
    async def test_no_cursor_starts_from_notification(self, account, history_provider, session):
        account.last_history_id = None

        result = await sync_gmail_history(account, history_provider, "150", session)

        assert result.inbound_message_ids == []
        assert account.last_history_id == "150"
        history_provider.get_history.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_expired_cursor_resets(self, account, history_provider, session):
        history_provider.get_history.side_effect = ProviderNotFound("gone", status_code=404)

        result = await sync_gmail_history(account, history_provider, "150", session)

        assert result == ([], 0, 0)
        assert account.last_history_id == "150"

    @pytest.mark.asyncio
    async def test_sorts_added_messages(self, account, history_provider, session):
        history_provider.get_history.return_value = [
            _added("inbound", "INBOX", "UNREAD"),
            _added("draft", "DRAFT"),
            _added("archived", "CATEGORY_UPDATES"),
            _added("done", "INBOX"),
            _added("sent", "SENT"),
        ]
        sent = ParsedMessage(id="sent", thread_id="t1", label_ids=["SENT"])
        history_provider.get_message = AsyncMock(return_value=sent)

        async def processed(session, account_id, message_id):
            return message_id == "done"

        with patch("app.modules.email.history.is_message_processed", side_effect=processed), \
             patch("app.modules.email.history.handle_outbound_message", AsyncMock()) as outbound:
            result = await sync_gmail_history(account, history_provider, "150", session)

        assert result.inbound_message_ids == ["inbound"]
        assert result.outbound_count == 1
        assert result.skipped_count == 3
        outbound.assert_awaited_once_with(session, "account-1", sent, history_provider)
        assert account.last_history_id == "150"

    @pytest.mark.asyncio
    async def test_cursor_never_moves_backwards(self, account, history_provider, session):
        account.last_history_id = "200"

        await sync_gmail_history(account, history_provider, "150", session)

        assert account.last_history_id == "200"
