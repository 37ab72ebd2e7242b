"""
Tests for static condition evaluation and learned pattern matching.
"""

from app.models.matching import ConditionType, GroupData, GroupItemData
from app.models.group import GroupItemType
from app.models.rule import LogicalOperator
from app.modules.rules.conditions import (
    evaluate_rule_conditions,
    matches_static_rule,
    pattern_to_regex,
    split_email_patterns,
)
from app.modules.rules.groups import find_matching_group, generalize_subject


class TestPatterns:
    """Wildcard patterns and from/to alternatives."""

    def test_split_on_pipe_comma_and_or(self):
        assert split_email_patterns("@a.com|@b.com") == ["@a.com", "@b.com"]
        assert split_email_patterns("@a.com, @b.com") == ["@a.com", "@b.com"]
        assert split_email_patterns("@a.com OR @b.com") == ["@a.com", "@b.com"]

    def test_or_inside_word_is_not_a_separator(self):
        assert split_email_patterns("support@oracle.com") == ["support@oracle.com"]

    def test_wildcard_becomes_dot_star_and_dots_are_escaped(self):
        assert pattern_to_regex("*@example.com") == r".*@example\.com"


class TestMatchesStaticRule:
    """All set static conditions must match."""

    def test_from_alternatives(self, make_rule, make_message):
        rule = make_rule(from_pattern="@a.com|@b.com")
        assert matches_static_rule(rule, make_message(from_="Bob <bob@b.com>"))
        assert not matches_static_rule(rule, make_message(from_="Carl <carl@c.com>"))

    def test_subject_wildcard(self, make_rule, make_message):
        rule = make_rule(subject_pattern="Invoice *")
        assert matches_static_rule(rule, make_message(subject="Your Invoice #42 is ready"))
        assert not matches_static_rule(rule, make_message(subject="Receipt"))

    def test_subject_is_case_sensitive(self, make_rule, make_message):
        rule = make_rule(subject_pattern="Invoice")
        assert not matches_static_rule(rule, make_message(subject="invoice"))

    def test_all_conditions_required(self, make_rule, make_message):
        rule = make_rule(from_pattern="@shop.com", subject_pattern="Order")
        assert matches_static_rule(rule, make_message(from_="x@shop.com", subject="Order shipped"))
        assert not matches_static_rule(rule, make_message(from_="x@shop.com", subject="Hello"))

    def test_body_pattern(self, make_rule, make_message):
        rule = make_rule(body_pattern="unsubscribe")
        assert matches_static_rule(rule, make_message(text_plain="click to unsubscribe"))

    def test_no_static_conditions_never_matches(self, make_rule, message):
        assert not matches_static_rule(make_rule(instructions="newsletters"), message)


class TestEvaluateRuleConditions:
    """AND / OR combination of static and AI conditions."""

    def test_and_static_only_match(self, make_rule, make_message):
        rule = make_rule(from_pattern="@a.com")
        result = evaluate_rule_conditions(rule, make_message(from_="x@a.com"))
        assert result.matched
        assert not result.potential_ai_match
        assert result.match_reasons[0].type == ConditionType.STATIC

    def test_and_static_fail_rejects_even_with_ai(self, make_rule, make_message):
        rule = make_rule(from_pattern="@a.com", instructions="anything")
        result = evaluate_rule_conditions(rule, make_message(from_="x@b.com"))
        assert not result.matched
        assert not result.potential_ai_match

    def test_and_static_pass_with_ai_goes_to_ai(self, make_rule, make_message):
        rule = make_rule(from_pattern="@a.com", instructions="anything")
        result = evaluate_rule_conditions(rule, make_message(from_="x@a.com"))
        assert not result.matched
        assert result.potential_ai_match
        assert [r.type for r in result.match_reasons] == [ConditionType.STATIC]

    def test_ai_only_rule_is_candidate(self, make_rule, message):
        result = evaluate_rule_conditions(make_rule(instructions="newsletters"), message)
        assert not result.matched
        assert result.potential_ai_match

    def test_blank_instructions_are_not_ai(self, make_rule, message):
        result = evaluate_rule_conditions(make_rule(instructions="   "), message)
        assert not result.matched
        assert not result.potential_ai_match

    def test_or_static_match_skips_ai(self, make_rule, make_message):
        rule = make_rule(
            from_pattern="@a.com",
            instructions="anything",
            conditional_operator=LogicalOperator.OR,
        )
        result = evaluate_rule_conditions(rule, make_message(from_="x@a.com"))
        assert result.matched
        assert not result.potential_ai_match

    def test_or_static_miss_falls_back_to_ai(self, make_rule, make_message):
        rule = make_rule(
            from_pattern="@a.com",
            instructions="anything",
            conditional_operator=LogicalOperator.OR,
        )
        result = evaluate_rule_conditions(rule, make_message(from_="x@b.com"))
        assert not result.matched
        assert result.potential_ai_match


class TestGroups:
    """Learned pattern matching."""

    def _group(self, *items):
        return GroupData(
            id="g1",
            name="Receipts",
            items=[
                GroupItemData(id=str(i), type=t, value=v, exclude=ex)
                for i, (t, v, ex) in enumerate(items)
            ],
        )

    def test_generalize_subject_drops_ids(self):
        assert generalize_subject("Order #12345 shipped") == "order shipped"
        assert generalize_subject(None) == ""

    def test_from_item_is_case_insensitive(self, make_message):
        group = self._group((GroupItemType.FROM, "Billing@Shop.com", False))
        match = find_matching_group(make_message(from_="billing@shop.com"), group)
        assert match.matching_item is not None
        assert not match.excluded

    def test_subject_item_matches_numbered_variant(self, make_message):
        group = self._group((GroupItemType.SUBJECT, "Order #1 shipped", False))
        match = find_matching_group(make_message(subject="Order #98765 shipped"), group)
        assert match.matching_item is not None

    def test_exclusion_wins(self, make_message):
        group = self._group(
            (GroupItemType.FROM, "shop.com", False),
            (GroupItemType.SUBJECT, "password reset", True),
        )
        match = find_matching_group(
            make_message(from_="no-reply@shop.com", subject="Password reset"), group
        )
        assert match.excluded
        assert match.matching_item is None

    def test_no_match(self, make_message):
        group = self._group((GroupItemType.BODY, "tracking number", False))
        match = find_matching_group(make_message(text_plain="hello"), group)
        assert match == (None, False)
