"""
Rule condition compilation and evaluation.

Conditions are compiled once at configuration load time into a typed
Comparison; evaluation never parses text and is fail-closed.
"""

from decimal import Decimal

import pytest

from p2p_config.condition_ast import (
    compile_condition,
    evaluate_condition,
    validate_condition_expression,
)
from p2p_kernel.domain.condition import Comparison, ComparisonOp, FieldRef
from p2p_kernel.exceptions import ConditionSyntaxError


class TestCompileCondition:
    """Text -> Comparison."""

    def test_simple_greater_than(self):
        comparison = compile_condition("totalAmount > 1000")
        assert comparison.field.name == "totalAmount"
        assert comparison.op == ComparisonOp.GT
        assert comparison.value == Decimal("1000")

    def test_literal_is_decimal_not_float(self):
        comparison = compile_condition("totalAmount >= 999.99")
        assert isinstance(comparison.value, Decimal)
        assert comparison.value == Decimal("999.99")

    def test_negative_literal(self):
        assert compile_condition("totalAmount > -5").value == Decimal("-5")

    def test_mirrored_form_flips_operator(self):
        """``1000 < totalAmount`` means ``totalAmount > 1000``."""
        comparison = compile_condition("1000 < totalAmount")
        assert comparison.op == ComparisonOp.GT
        assert comparison.value == Decimal("1000")

    @pytest.mark.parametrize("text,op", [
        ("totalAmount < 1", ComparisonOp.LT),
        ("totalAmount <= 1", ComparisonOp.LE),
        ("totalAmount > 1", ComparisonOp.GT),
        ("totalAmount >= 1", ComparisonOp.GE),
        ("totalAmount == 1", ComparisonOp.EQ),
        ("totalAmount != 1", ComparisonOp.NE),
    ])
    def test_all_operators(self, text, op):
        assert compile_condition(text).op == op

    def test_render_round_trips_meaning(self):
        assert compile_condition("totalAmount > 1000").render() == "totalAmount > 1000"


class TestRejectedConditions:
    """Anything outside a single field-vs-number comparison is refused."""

    @pytest.mark.parametrize("text", [
        "",
        "   ",
        "totalAmount >",
        "totalAmount",
        "totalAmount > 1000 and totalAmount < 5000",
        "0 < totalAmount < 10",
        "unknownField > 5",
        "totalAmount > 'abc'",
        "totalAmount in [1, 2]",
        "__import__('os').system('true') > 1",
        "totalAmount > otherField",
    ])
    def test_invalid_condition_raises(self, text):
        with pytest.raises(ConditionSyntaxError):
            compile_condition(text)

    def test_validate_lists_errors_without_raising(self):
        errors = validate_condition_expression("unknownField > 5")
        assert errors
        assert "totalAmount" in errors[0].message

    def test_validate_accepts_valid_expression(self):
        assert validate_condition_expression("totalAmount > 1000") == []


class TestEvaluation:
    """Comparison.evaluate is total and fail-closed."""

    def test_above_threshold(self):
        assert compile_condition("totalAmount > 1000").evaluate(
            {"totalAmount": Decimal("1500")}
        )

    def test_below_threshold(self):
        assert not compile_condition("totalAmount > 1000").evaluate(
            {"totalAmount": Decimal("550")}
        )

    def test_boundary_is_not_greater(self):
        assert not compile_condition("totalAmount > 1000").evaluate(
            {"totalAmount": Decimal("1000.00")}
        )

    def test_missing_attribute_is_false(self):
        assert not compile_condition("totalAmount > 0").evaluate({})

    def test_non_numeric_attribute_is_false(self):
        assert not compile_condition("totalAmount > 0").evaluate({"totalAmount": "lots"})

    def test_bool_attribute_is_false(self):
        assert not compile_condition("totalAmount > 0").evaluate({"totalAmount": True})

    def test_string_number_is_coerced(self):
        assert compile_condition("totalAmount > 10").evaluate({"totalAmount": "10.5"})

    def test_evaluate_condition_text_unparseable_is_false(self):
        assert evaluate_condition("totalAmount >>> 3", {"totalAmount": Decimal("5")}) is False

    def test_evaluate_condition_text(self):
        assert evaluate_condition("totalAmount > 3", {"totalAmount": Decimal("5")}) is True


class TestFieldRegistry:

    def test_unknown_field_ref_rejected(self):
        with pytest.raises(ValueError, match="Unknown condition field"):
            FieldRef("vendorRisk")

    def test_comparison_constructed_directly(self):
        comparison = Comparison(FieldRef("totalAmount"), ComparisonOp.LE, Decimal("10"))
        assert comparison.evaluate({"totalAmount": Decimal("10")})
