"""
Unit tests for the row condition language.
"""

import pytest

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from service_approvals.app.rules.expressions import (
    AnyValue, Between, BoolOp, Compare, ExpressionSyntaxError, Literal, Membership, Name, Not,
    UnaryCompare, UnaryMembership, UnaryTests, evaluate_condition, format_literal,
    parse_condition, referenced_names, tokenize
)


class TestParsing:
    """Test cases for parse_condition."""

    def test_unary_comparison(self):
        """Test a comparator followed by a literal."""
        node = parse_condition(">= 18")

        assert node == UnaryTests((UnaryCompare(">=", Literal(18)),))

    def test_unary_list(self):
        """Test comma separated literals."""
        node = parse_condition('"GOLD", "SILVER"')

        assert node == UnaryTests((UnaryMembership((Literal("GOLD"),)), UnaryMembership((Literal("SILVER"),))))

    def test_unary_in(self):
        """Test in (...) as a unary test."""
        node = parse_condition('in ("A", "B")')

        assert node == UnaryTests((UnaryMembership((Literal("A"), Literal("B"))),))

    def test_negated_unary(self):
        """Test not(...) wrapping unary tests."""
        node = parse_condition('not("X", "Y")')

        assert node.negated is True
        assert len(node.tests) == 2

    def test_dash_means_any(self):
        """Test a lone dash matches anything."""
        assert parse_condition("-") == UnaryTests((AnyValue(),))

    def test_negative_number(self):
        """Test a leading minus on a number is a negative literal."""
        assert parse_condition("< -5") == UnaryTests((UnaryCompare("<", Literal(-5)),))
        assert parse_condition("-2.5") == UnaryTests((UnaryMembership((Literal(-2.5),)),))

    def test_boolean_expression(self):
        """Test and/or precedence."""
        node = parse_condition("a > 1 or b < 2 and c = 3")

        assert isinstance(node, BoolOp)
        assert node.op == "or"
        assert node.operands[0] == Compare(">", Name(("a",)), Literal(1))
        assert node.operands[1].op == "and"

    def test_membership_brackets(self):
        """Test in accepts square brackets too."""
        node = parse_condition('plan in ["A", "B"]')

        assert node == Membership(Name(("plan",)), (Literal("A"), Literal("B")))

    def test_between(self):
        """Test between ... and ..."""
        node = parse_condition("score between 1 and 10")

        assert node == Between(Name(("score",)), Literal(1), Literal(10))

    def test_not_expression(self):
        """Test not(...) around an expression."""
        node = parse_condition("not(age < 5)")

        assert node == Not(Compare("<", Name(("age",)), Literal(5)))

    def test_dotted_names(self):
        """Test member access paths."""
        node = parse_condition('member.address.state = "CA" and age >= 18')

        assert referenced_names(node) == {"member.address.state", "age"}

    def test_literals(self):
        """Test boolean and null literals."""
        assert parse_condition("true") == UnaryTests((UnaryMembership((Literal(True),)),))
        assert parse_condition("flag = null") == Compare("=", Name(("flag",)), Literal(None))

    def test_escaped_string(self):
        """Test backslash escapes inside strings."""
        node = parse_condition(r'"say \"hi\""')

        assert node.tests[0].values[0] == Literal('say "hi"')

    @pytest.mark.parametrize("text", [
        "",
        "   ",
        ">=",
        "age >=",
        "age >= 18 and",
        "(age > 1",
        "age @ 5",
        "in (1, 2",
        '"unterminated',
        "between 1 and",
    ])
    def test_syntax_errors(self, text):
        """Test malformed conditions raise ExpressionSyntaxError."""
        with pytest.raises(ExpressionSyntaxError):
            parse_condition(text)

    def test_error_position(self):
        """Test the error carries the offending offset."""
        with pytest.raises(ExpressionSyntaxError) as exc_info:
            tokenize("age # 5")

        assert exc_info.value.position == 4

    def test_syntax_error_is_value_error(self):
        """Test callers may catch ValueError."""
        with pytest.raises(ValueError):
            parse_condition("age >")


class TestEvaluation:
    """Test cases for evaluate_condition."""

    def test_unary_against_input(self):
        """Test unary tests compare against the input value."""
        node = parse_condition(">= 18")

        assert evaluate_condition(node, 18)
        assert not evaluate_condition(node, 17)

    def test_negated_unary(self):
        """Test not(...) inverts membership."""
        node = parse_condition('not("CA")')

        assert evaluate_condition(node, "NY")
        assert not evaluate_condition(node, "CA")

    def test_missing_value_never_matches(self):
        """Test comparisons against missing input are unknown, not false matches."""
        node = parse_condition("age > 5 or plan = \"A\"")

        assert not evaluate_condition(node, {})
        assert evaluate_condition(node, {"plan": "A"})

    def test_not_of_unknown_is_unknown(self):
        """Test not() does not turn a missing value into a match."""
        node = parse_condition("not(age < 5)")

        assert not evaluate_condition(node, {})
        assert evaluate_condition(node, {"age": 10})

    def test_bool_is_not_number(self):
        """Test True does not compare equal to 1."""
        node = parse_condition("= 1")

        assert not evaluate_condition(node, True)
        assert evaluate_condition(node, 1)

    def test_type_mismatch(self):
        """Test strings never order against numbers."""
        assert not evaluate_condition(parse_condition("> 3"), "abc")

    def test_input_expression_prefix(self):
        """Test names rooted at the input expression read from the input."""
        node = parse_condition("member.age >= 21")

        assert evaluate_condition(node, {"age": 30}, "member")
        assert not evaluate_condition(node, {"age": 20}, "member")

    def test_between_inclusive(self):
        """Test both endpoints are inclusive."""
        node = parse_condition("score between 1 and 10")

        assert evaluate_condition(node, {"score": 1})
        assert evaluate_condition(node, {"score": 10})
        assert not evaluate_condition(node, {"score": 11})


class TestFormatting:
    """Test cases for literal rendering."""

    @pytest.mark.parametrize("value,expected", [
        (True, "true"),
        (False, "false"),
        (None, "null"),
        (18, "18"),
        (0.5, "0.5"),
        (1e-07, "0.0000001"),
        ("CA", '"CA"'),
    ])
    def test_format_literal(self, value, expected):
        """Test literals render in condition syntax."""
        assert format_literal(value) == expected
