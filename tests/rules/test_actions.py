"""
Tests for action dispatch, execute_act, draft cleanup and outgoing webhooks.
"""

import uuid
from datetime import datetime

import httpx
import pytest
from unittest.mock import AsyncMock, Mock, patch

from app.models.email_message import ParsedMessage
from app.models.executed_rule import ExecutedAction, ExecutedRule, ExecutedRuleStatus
from app.models.matching import ActionItem
from app.models.rule import ActionType
from app.modules.rules.actions import build_webhook_payload, run_action_function
from app.modules.rules.draft_management import (
    handle_previous_draft_deletion,
    is_draft_unmodified,
    strip_quoted_content,
)
from app.modules.rules.execute import execute_act
from app.modules.rules.webhook_caller import WEBHOOK_SECRET_HEADER, WebhookError, call_webhook


@pytest.fixture
def executed_rule():
    return ExecutedRule(
        id=uuid.uuid4(),
        email_account_id=uuid.uuid4(),
        rule_id=uuid.uuid4(),
        thread_id="thread-1",
        message_id="msg-1",
        status=ExecutedRuleStatus.APPLYING.value,
        automated=True,
        reason="Matched static conditions",
        created_at=datetime(2024, 1, 1, 12, 0, 0),
    )


class TestRunActionFunction:
    """One provider call per action type."""

    @pytest.mark.asyncio
    async def test_archive(self, provider, message, executed_rule, session):
        await run_action_function(provider, message, ActionItem(type=ActionType.ARCHIVE), executed_rule, session)
        provider.archive_thread.assert_awaited_once_with("thread-1")

    @pytest.mark.asyncio
    async def test_label_creates_and_applies(self, provider, message, executed_rule, session):
        provider.get_or_create_label.return_value = {"id": "Label_7", "name": "News"}
        await run_action_function(
            provider, message, ActionItem(type=ActionType.LABEL, label="News"), executed_rule, session
        )
        provider.label_message.assert_awaited_once_with("msg-1", "Label_7")

    @pytest.mark.asyncio
    async def test_label_without_id_raises(self, provider, message, executed_rule, session):
        provider.get_or_create_label.return_value = {}
        with pytest.raises(ValueError):
            await run_action_function(
                provider, message, ActionItem(type=ActionType.LABEL, label="News"), executed_rule, session
            )

    @pytest.mark.asyncio
    async def test_draft_returns_draft_id(self, provider, message, executed_rule, session):
        provider.draft_email.return_value = "draft-9"
        with patch("app.modules.rules.actions.handle_previous_draft_deletion", AsyncMock()) as mock_cleanup:
            result = await run_action_function(
                provider, message, ActionItem(type=ActionType.DRAFT_EMAIL, content="Hi"), executed_rule, session
            )
        assert result == {"draft_id": "draft-9"}
        mock_cleanup.assert_awaited_once_with(provider, executed_rule, session)

    @pytest.mark.asyncio
    async def test_send_email_requires_fields(self, provider, message, executed_rule, session):
        await run_action_function(
            provider, message, ActionItem(type=ActionType.SEND_EMAIL, to="a@b.com"), executed_rule, session
        )
        provider.send_email.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_forward(self, provider, message, executed_rule, session):
        await run_action_function(
            provider, message, ActionItem(type=ActionType.FORWARD, to="boss@example.com"), executed_rule, session
        )
        provider.forward_email.assert_awaited_once()
        assert provider.forward_email.await_args.kwargs["to"] == "boss@example.com"

    @pytest.mark.asyncio
    async def test_reply_opens_tracker(self, provider, message, executed_rule, session):
        with patch("app.modules.rules.actions.coordinate_reply_process", AsyncMock()) as mock_track:
            await run_action_function(
                provider, message, ActionItem(type=ActionType.REPLY, content="Thanks"), executed_rule, session
            )
        provider.reply_to_email.assert_awaited_once_with(message, "Thanks")
        mock_track.assert_awaited_once_with(session, executed_rule.email_account_id, message)

    @pytest.mark.asyncio
    async def test_call_webhook(self, provider, message, executed_rule, session):
        with patch("app.modules.rules.actions.call_webhook", AsyncMock()) as mock_call:
            await run_action_function(
                provider, message, ActionItem(type=ActionType.CALL_WEBHOOK, url="https://hook.test"), executed_rule, session
            )
        url, payload = mock_call.await_args.args
        assert url == "https://hook.test"
        assert payload.email.messageId == "msg-1"
        assert payload.executedRule.id == str(executed_rule.id)


class TestWebhookPayload:
    def test_payload_uses_wire_names(self, message, executed_rule):
        body = build_webhook_payload(message, executed_rule).model_dump(mode="json", by_alias=True)
        assert body["email"]["from"] == "Alice <alice@example.com>"
        assert body["email"]["threadId"] == "thread-1"
        assert body["executedRule"]["createdAt"] == "2024-01-01T12:00:00"


class TestExecuteAct:
    """Ordered execution and status bookkeeping."""

    @pytest.mark.asyncio
    async def test_success_marks_applied_and_stores_draft_id(self, provider, message, executed_rule, session):
        draft_action = ExecutedAction(type=ActionType.DRAFT_EMAIL.value, content="Hi")
        executed_rule.actions = [ExecutedAction(type=ActionType.ARCHIVE.value), draft_action]

        with patch("app.modules.rules.execute.run_action_function", AsyncMock(side_effect=[None, {"draft_id": "d1"}])):
            await execute_act(provider, executed_rule, message, session)

        assert executed_rule.status == ExecutedRuleStatus.APPLIED.value
        assert draft_action.draft_id == "d1"

    @pytest.mark.asyncio
    async def test_failure_marks_error_and_stops(self, provider, message, executed_rule, session):
        executed_rule.actions = [
            ExecutedAction(type=ActionType.ARCHIVE.value),
            ExecutedAction(type=ActionType.LABEL.value, label="x"),
        ]
        runner = AsyncMock(side_effect=RuntimeError("boom"))
        with patch("app.modules.rules.execute.run_action_function", runner):
            with pytest.raises(RuntimeError):
                await execute_act(provider, executed_rule, message, session)

        assert runner.await_count == 1
        assert executed_rule.status == ExecutedRuleStatus.ERROR.value

    @pytest.mark.asyncio
    async def test_status_untouched_when_disabled(self, provider, message, executed_rule, session):
        action = ExecutedAction(type=ActionType.ARCHIVE.value)
        with patch("app.modules.rules.execute.run_action_function", AsyncMock(side_effect=RuntimeError("x"))):
            with pytest.raises(RuntimeError):
                await execute_act(
                    provider, executed_rule, message, session, executed_actions=[action], update_status=False
                )
        assert executed_rule.status == ExecutedRuleStatus.APPLYING.value


class TestDraftManagement:
    """Only unmodified earlier drafts are deleted."""

    def test_strip_quoted_content(self):
        text = "Sounds good!\n\nOn Mon, Jan 1, 2024 Alice wrote:\n> hello"
        assert strip_quoted_content(text) == "Sounds good!"

    def test_unmodified_draft(self):
        draft = ParsedMessage(id="d1", thread_id="t1", text_plain="Thanks!\n\n> quoted")
        assert is_draft_unmodified("Thanks!", draft)

    def test_modified_draft(self):
        draft = ParsedMessage(id="d1", thread_id="t1", text_plain="Thanks! Also, see you Friday.")
        assert not is_draft_unmodified("Thanks!", draft)

    def test_html_only_draft(self):
        draft = ParsedMessage(id="d1", thread_id="t1", text_html="<p>Thanks!</p>")
        assert is_draft_unmodified("Thanks!", draft)

    def test_empty_original_is_never_unmodified(self):
        assert not is_draft_unmodified("", ParsedMessage(id="d1", thread_id="t1", text_plain=""))

    @pytest.mark.asyncio
    async def test_deletes_unmodified_previous_draft(self, provider, executed_rule, session):
        previous = ExecutedAction(type=ActionType.DRAFT_EMAIL.value, content="Thanks!", draft_id="old-draft")
        result = Mock()
        result.scalar_one_or_none.return_value = previous
        session.execute.return_value = result
        provider.get_draft.return_value = ParsedMessage(id="old-draft", thread_id="thread-1", text_plain="Thanks!")

        await handle_previous_draft_deletion(provider, executed_rule, session)

        provider.delete_draft.assert_awaited_once_with("old-draft")
        assert previous.was_draft_sent is False

    @pytest.mark.asyncio
    async def test_keeps_edited_previous_draft(self, provider, executed_rule, session):
        previous = ExecutedAction(type=ActionType.DRAFT_EMAIL.value, content="Thanks!", draft_id="old-draft")
        result = Mock()
        result.scalar_one_or_none.return_value = previous
        session.execute.return_value = result
        provider.get_draft.return_value = ParsedMessage(id="old-draft", thread_id="thread-1", text_plain="Edited")

        await handle_previous_draft_deletion(provider, executed_rule, session)

        provider.delete_draft.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_errors_are_swallowed(self, provider, executed_rule, session):
        session.execute.side_effect = RuntimeError("db down")
        await handle_previous_draft_deletion(provider, executed_rule, session)
        provider.get_draft.assert_not_awaited()


class TestCallWebhook:
    """Outgoing webhook delivery through httpx."""

    @pytest.mark.asyncio
    async def test_posts_json(self, message, executed_rule):
        seen = {}

        def handler(request: httpx.Request):
            seen["url"] = str(request.url)
            seen["body"] = request.read()
            return httpx.Response(200)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        await call_webhook("https://hook.test/in", build_webhook_payload(message, executed_rule), client=client)
        await client.aclose()

        assert seen["url"] == "https://hook.test/in"
        assert b'"threadId":"thread-1"' in seen["body"].replace(b" ", b"")

    @pytest.mark.asyncio
    async def test_secret_header(self, message, executed_rule):
        seen = {}

        def handler(request: httpx.Request):
            seen["secret"] = request.headers.get(WEBHOOK_SECRET_HEADER)
            return httpx.Response(204)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        with patch("app.modules.rules.webhook_caller.settings") as mock_settings:
            mock_settings.WEBHOOK_SECRET = "s3cret"
            await call_webhook("https://hook.test", build_webhook_payload(message, executed_rule), client=client)
        await client.aclose()

        assert seen["secret"] == "s3cret"

    @pytest.mark.asyncio
    async def test_error_status_raises(self, message, executed_rule):
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(500)))
        with pytest.raises(WebhookError) as exc_info:
            await call_webhook("https://hook.test", build_webhook_payload(message, executed_rule), client=client)
        await client.aclose()
        assert exc_info.value.status_code == 500

    @pytest.mark.asyncio
    async def test_network_error_raises(self, message, executed_rule):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        with pytest.raises(WebhookError):
            await call_webhook("https://hook.test", build_webhook_payload(message, executed_rule), client=client)
        await client.aclose()
