"""
Unit tests for ConditionEvaluator
Tests every operator, numeric coercion and the never-throw guarantee
"""

import unittest

from stepflow.pipeline.conditions import ConditionEvaluator, compare, deep_equal, to_number
from stepflow.pipeline.models import (
    Condition,
    ConditionOperator,
    ResolutionContext,
    StepResult,
    StepStatus,
)
from stepflow.utils.exceptions import ConfigurationError


def make_context(output, status=StepStatus.COMPLETED):
    return ResolutionContext(steps={
        "check": StepResult(step_name="check", status=status, output=output),
    })


def make_condition(field, operator, value):
    return Condition(step="check", field=field, operator=ConditionOperator.parse(operator), value=value, goto="end")


class TestConditionEvaluator(unittest.TestCase):
    """Test suite for ConditionEvaluator"""

    def setUp(self):
        """Set up test fixtures"""
        self.evaluator = ConditionEvaluator()
        self.context = make_context({
            "ok": True,
            "score": 0.75,
            "count": "12",
            "label": "needs review",
            "tags": ["urgent", {"k": 1}],
            "nested": {"level": 3},
        })

    def evaluate(self, field, operator, value):
        return self.evaluator.evaluate(make_condition(field, operator, value), self.context)

    def test_eq_and_neq(self):
        self.assertTrue(self.evaluate("ok", "eq", True))
        self.assertFalse(self.evaluate("ok", "neq", True))
        self.assertTrue(self.evaluate("nested", "eq", {"level": 3}))
        self.assertTrue(self.evaluate("nested.level", "equals", 3))
        self.assertTrue(self.evaluate("label", "not-equals", "done"))

    def test_eq_keeps_booleans_distinct_from_numbers(self):
        self.assertFalse(self.evaluate("ok", "eq", 1))
        self.assertTrue(self.evaluate("ok", "neq", 1))

    def test_gt_is_strict(self):
        self.assertTrue(self.evaluate("score", "gt", 0.5))
        self.assertFalse(self.evaluate("score", "gt", 0.75))
        self.assertTrue(self.evaluate("score", "gte", 0.75))

    def test_numeric_strings_are_coerced(self):
        self.assertTrue(self.evaluate("count", "gt", 10))
        self.assertTrue(self.evaluate("count", "lte", "12"))
        self.assertFalse(self.evaluate("count", "lt", 12))

    def test_non_numeric_operands_evaluate_false(self):
        """Numeric operators never raise on bad data"""
        for operator in ("gt", "lt", "gte", "lte"):
            self.assertFalse(self.evaluate("label", operator, 1))
            self.assertFalse(self.evaluate("tags", operator, 1))
            self.assertFalse(self.evaluate("ok", operator, 0))
            self.assertFalse(self.evaluate("score", operator, "abc"))

    def test_huge_integers_compare_exactly(self):
        context = make_context({"big": 10 ** 400})
        gt = make_condition("big", "gt", 5)
        lt = make_condition("big", "lt", 5)
        self.assertTrue(self.evaluator.evaluate(gt, context))
        self.assertFalse(self.evaluator.evaluate(lt, context))
        self.assertTrue(self.evaluator.evaluate(make_condition("big", "gt", 10 ** 400 - 1), context))

    def test_non_ascii_digit_list_index_is_false(self):
        self.assertFalse(self.evaluate("tags.\u00b2", "eq", "urgent"))
        self.assertTrue(self.evaluate("tags.0", "eq", "urgent"))

    def test_contains(self):
        self.assertTrue(self.evaluate("label", "contains", "review"))
        self.assertFalse(self.evaluate("label", "contains", "approved"))
        self.assertTrue(self.evaluate("tags", "contains", "urgent"))
        self.assertTrue(self.evaluate("tags", "contains", {"k": 1}))
        self.assertFalse(self.evaluate("score", "contains", 0.75))

    def test_missing_field_is_false(self):
        self.assertFalse(self.evaluate("nope", "eq", None))
        self.assertFalse(self.evaluate("nested.deeper.x", "neq", 1))

    def test_failed_step_is_false(self):
        context = make_context(None, status=StepStatus.FAILED)
        self.assertFalse(self.evaluator.evaluate(make_condition("ok", "eq", True), context))

    def test_unexecuted_step_raises_configuration_error(self):
        condition = Condition(step="later", field="x", operator=ConditionOperator.EQ, value=1, goto="end")
        with self.assertRaises(ConfigurationError):
            self.evaluator.evaluate(condition, self.context)


class TestComparisonHelpers(unittest.TestCase):
    """Test operator helpers directly"""

    def test_operator_aliases(self):
        self.assertIs(ConditionOperator.parse(">="), ConditionOperator.GTE)
        self.assertIs(ConditionOperator.parse("greater-than"), ConditionOperator.GT)
        self.assertIs(ConditionOperator.parse("LESS_OR_EQUAL"), ConditionOperator.LTE)
        with self.assertRaises(ValueError):
            ConditionOperator.parse("between")

    def test_to_number(self):
        self.assertEqual(to_number(3), 3.0)
        self.assertEqual(to_number(" 4.5 "), 4.5)
        self.assertIsNone(to_number(True))
        self.assertIsNone(to_number(None))
        self.assertIsNone(to_number("nan"))
        self.assertIsNone(to_number([1]))
        self.assertEqual(to_number(10 ** 400), 10 ** 400)

    def test_deep_equal(self):
        self.assertTrue(deep_equal({"a": [1, 2]}, {"a": [1, 2]}))
        self.assertFalse(deep_equal({"a": [1, 2]}, {"a": [2, 1]}))
        self.assertTrue(deep_equal(1, 1.0))
        self.assertFalse(deep_equal(0, False))
        self.assertFalse(deep_equal([1], {"0": 1}))

    def test_compare_gt_matches_numeric_semantics(self):
        for actual, expected, outcome in [(5, 4, True), (4, 4, False), ("7", 6.5, True), ("x", 1, False)]:
            self.assertEqual(compare(actual, ConditionOperator.GT, expected), outcome)


if __name__ == '__main__':
    unittest.main()
