"""
Tests for rule matching: presets, learned patterns, thread gating,
conversation-status filtering, AI selection and the cold email pre-check.
"""

import pytest
from unittest.mock import AsyncMock, Mock, patch

from app.models.email_message import Attachment
from app.models.group import GroupItemType
from app.models.matching import ConditionType, GroupData, GroupItemData
from app.models.rule import SystemType
from app.modules.rules.ai_choose_rule import (
    AIChooseRuleResult,
    ChooseRuleResponse,
    ChosenRule,
    SelectedRule,
    ai_choose_rule,
)
from app.modules.rules.cold_email import ColdEmailResult
from app.modules.rules.match_rules import (
    filter_conversation_status_rules,
    filter_multiple_system_rules,
    find_matching_rules,
)
from app.modules.email.parse import get_email_for_llm


def _llm_returning(response):
    client = Mock()
    client.generate_object = AsyncMock(return_value=response)
    return client


class TestAiChooseRule:
    """Mapping the model's answer back onto candidate rules."""

    @pytest.mark.asyncio
    async def test_no_candidates_no_call(self, message, email_account):
        with patch("app.modules.rules.ai_choose_rule.get_llm_client") as mock_client:
            result = await ai_choose_rule(get_email_for_llm(message), [], email_account)
        mock_client.assert_not_called()
        assert result.rules == []

    @pytest.mark.asyncio
    async def test_names_are_case_insensitive_and_deduped(self, make_rule, message, email_account):
        newsletter = make_rule("Newsletter", instructions="newsletters")
        response = ChooseRuleResponse(
            reasoning="It is a newsletter",
            rules=[
                ChosenRule(rule_name="newsletter", is_primary=True),
                ChosenRule(rule_name="NEWSLETTER"),
                ChosenRule(rule_name="Unknown"),
            ],
        )
        with patch("app.modules.rules.ai_choose_rule.get_llm_client", return_value=_llm_returning(response)):
            result = await ai_choose_rule(get_email_for_llm(message), [newsletter], email_account)

        assert [s.rule.id for s in result.rules] == [newsletter.id]
        assert result.rules[0].is_primary
        assert result.reason == "It is a newsletter"

    @pytest.mark.asyncio
    async def test_no_match(self, make_rule, message, email_account):
        response = ChooseRuleResponse(reasoning="Nothing fits", no_match=True)
        with patch("app.modules.rules.ai_choose_rule.get_llm_client", return_value=_llm_returning(response)):
            result = await ai_choose_rule(
                get_email_for_llm(message), [make_rule(instructions="x")], email_account
            )
        assert result.rules == []
        assert result.reason == "Nothing fits"


class TestFilters:
    """Conversation-status and multiple system rule filters."""

    @pytest.mark.asyncio
    async def test_no_reply_sender_drops_conversation_rules(self, make_rule, make_message, provider):
        to_reply = make_rule("To Reply", system_type=SystemType.TO_REPLY, instructions="x")
        custom = make_rule("Custom", instructions="y")
        result = await filter_conversation_status_rules(
            [to_reply, custom], make_message(from_="noreply@service.com"), provider
        )
        assert result == [custom]
        provider.check_sender_reply_history.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_high_volume_sender_without_replies(self, make_rule, message, provider):
        to_reply = make_rule("To Reply", system_type=SystemType.TO_REPLY, instructions="x")
        fyi = make_rule("FYI", system_type=SystemType.FYI, instructions="x")
        provider.check_sender_reply_history.return_value = {"has_replied": False, "received_count": 25}
        assert await filter_conversation_status_rules([to_reply, fyi], message, provider) == []

    @pytest.mark.asyncio
    async def test_history_error_keeps_candidates(self, make_rule, message, provider):
        to_reply = make_rule("To Reply", system_type=SystemType.TO_REPLY, instructions="x")
        provider.check_sender_reply_history.side_effect = RuntimeError("quota")
        assert await filter_conversation_status_rules([to_reply], message, provider) == [to_reply]

    @pytest.mark.asyncio
    async def test_untouched_without_to_reply(self, make_rule, make_message, provider):
        fyi = make_rule("FYI", system_type=SystemType.FYI, instructions="x")
        result = await filter_conversation_status_rules([fyi], make_message(from_="noreply@x.com"), provider)
        assert result == [fyi]

    def test_multiple_system_rules_keep_primary(self, make_rule):
        to_reply = make_rule("To Reply", system_type=SystemType.TO_REPLY)
        newsletter = make_rule("Newsletter", system_type=SystemType.NEWSLETTER)
        custom = make_rule("Custom")
        result = filter_multiple_system_rules([
            SelectedRule(rule=to_reply),
            SelectedRule(rule=newsletter, is_primary=True),
            SelectedRule(rule=custom),
        ])
        assert result == [newsletter, custom]

    def test_multiple_system_rules_without_primary_keeps_all(self, make_rule):
        a = make_rule("A", system_type=SystemType.TO_REPLY)
        b = make_rule("B", system_type=SystemType.NEWSLETTER)
        assert filter_multiple_system_rules([SelectedRule(rule=a), SelectedRule(rule=b)]) == [a, b]


class TestFindMatchingRules:
    """Full matching pipeline with mocked AI and cold email detection."""

    @pytest.mark.asyncio
    async def test_static_match_without_ai(self, make_rule, make_message, email_account, provider, session):
        rule = make_rule("Shop", from_pattern="@shop.com")
        with patch("app.modules.rules.match_rules.ai_choose_rule", AsyncMock()) as mock_ai:
            result = await find_matching_rules(
                [rule], make_message(from_="orders@shop.com"), email_account, provider, session
            )
        mock_ai.assert_not_awaited()
        assert [m.rule.id for m in result.matches] == [rule.id]
        assert result.reasoning == "Matched static conditions"

    @pytest.mark.asyncio
    async def test_calendar_preset(self, make_rule, make_message, email_account, provider, session):
        calendar = make_rule("Calendar", system_type=SystemType.CALENDAR, instructions="invites")
        message = make_message(attachments=[Attachment(filename="invite.ics")])
        with patch("app.modules.rules.match_rules.ai_choose_rule", AsyncMock()) as mock_ai:
            result = await find_matching_rules([calendar], message, email_account, provider, session)
        mock_ai.assert_not_awaited()
        assert result.matches[0].match_reasons[0].type == ConditionType.PRESET

    @pytest.mark.asyncio
    async def test_learned_pattern_short_circuits_ai(self, make_rule, make_message, email_account, provider, session):
        group = GroupData(
            id="g1",
            name="Receipts",
            items=[GroupItemData(id="i1", type=GroupItemType.FROM, value="billing@shop.com")],
        )
        receipts = make_rule("Receipts", group=group, group_id="g1")
        other = make_rule("Other", instructions="anything")
        with patch("app.modules.rules.match_rules.ai_choose_rule", AsyncMock()) as mock_ai:
            result = await find_matching_rules(
                [receipts, other], make_message(from_="billing@shop.com"), email_account, provider, session
            )
        mock_ai.assert_not_awaited()
        assert [m.rule.id for m in result.matches] == [receipts.id]
        assert result.reasoning == 'Matched learned pattern: "FROM: billing@shop.com"'

    @pytest.mark.asyncio
    async def test_ai_selection_combines_reasoning(self, make_rule, make_message, email_account, provider, session):
        shop = make_rule("Shop", from_pattern="@shop.com")
        news = make_rule("News", instructions="newsletters")
        ai_result = AIChooseRuleResult(rules=[SelectedRule(rule=news)], reason="Looks like a newsletter")
        with patch("app.modules.rules.match_rules.ai_choose_rule", AsyncMock(return_value=ai_result)):
            result = await find_matching_rules(
                [shop, news], make_message(from_="x@shop.com"), email_account, provider, session
            )
        assert [m.rule.id for m in result.matches] == [shop.id, news.id]
        assert result.matches[1].match_reasons[0].type == ConditionType.AI
        assert result.reasoning == "Matched static conditions; Looks like a newsletter"

    @pytest.mark.asyncio
    async def test_thread_skips_rules_not_run_on_threads(self, make_rule, message, email_account, provider, session):
        rule = make_rule("Shop", from_pattern="@example.com")
        provider.is_reply_in_thread.return_value = True
        result_proxy = Mock()
        result_proxy.scalars.return_value.all.return_value = []
        session.execute.return_value = result_proxy

        result = await find_matching_rules([rule], message, email_account, provider, session)
        assert result.matches == []

    @pytest.mark.asyncio
    async def test_thread_keeps_previously_applied_rule(self, make_rule, message, email_account, provider, session):
        rule = make_rule("Shop", from_pattern="@example.com")
        provider.is_reply_in_thread.return_value = True
        result_proxy = Mock()
        result_proxy.scalars.return_value.all.return_value = [rule.id]
        session.execute.return_value = result_proxy

        result = await find_matching_rules([rule], message, email_account, provider, session)
        assert [m.rule.id for m in result.matches] == [rule.id]

    @pytest.mark.asyncio
    async def test_cold_email_returns_only_cold_rule(self, make_rule, message, email_account, provider, session):
        cold = make_rule("Cold Email", system_type=SystemType.COLD_EMAIL, instructions="cold")
        other = make_rule("Other", from_pattern="@example.com")
        cold_result = ColdEmailResult(is_cold_email=True, reason="ai", ai_reason="Sales pitch")
        with patch("app.modules.rules.match_rules.is_cold_email", AsyncMock(return_value=cold_result)), \
                patch("app.modules.rules.match_rules.save_cold_email", AsyncMock()) as mock_save:
            result = await find_matching_rules([cold, other], message, email_account, provider, session)

        mock_save.assert_awaited_once_with(session, email_account, message, "Sales pitch")
        assert [m.rule.id for m in result.matches] == [cold.id]
        assert result.reasoning == "Sales pitch"

    @pytest.mark.asyncio
    async def test_cold_email_not_saved_in_test_mode(self, make_rule, message, email_account, provider, session):
        cold = make_rule("Cold Email", system_type=SystemType.COLD_EMAIL, instructions="cold")
        cold_result = ColdEmailResult(is_cold_email=True, reason="ai", ai_reason="Sales pitch")
        with patch("app.modules.rules.match_rules.is_cold_email", AsyncMock(return_value=cold_result)), \
                patch("app.modules.rules.match_rules.save_cold_email", AsyncMock()) as mock_save:
            await find_matching_rules([cold], message, email_account, provider, session, is_test=True)
        mock_save.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_not_cold_excludes_cold_rule(self, make_rule, message, email_account, provider, session):
        cold = make_rule("Cold Email", system_type=SystemType.COLD_EMAIL, instructions="cold")
        cold_result = ColdEmailResult(is_cold_email=False, reason="hasPreviousEmail", ai_reason=None)
        with patch("app.modules.rules.match_rules.is_cold_email", AsyncMock(return_value=cold_result)), \
                patch("app.modules.rules.match_rules.ai_choose_rule", AsyncMock()) as mock_ai:
            result = await find_matching_rules([cold], message, email_account, provider, session)
        mock_ai.assert_not_awaited()
        assert result.matches == []
