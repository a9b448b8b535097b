"""
ConditionEvaluator - Decides whether a step's branch should be taken.
"""

import logging
import math
from typing import Any, Optional, Union

from stepflow.pipeline.models import Condition, ConditionOperator, ResolutionContext, StepStatus
from stepflow.pipeline.resolver import get_field
from stepflow.utils.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

_MISSING = object()


class ConditionEvaluator:
    """
    Evaluates a Condition against the output of an already-settled step.

    Data problems (missing field, non-numeric operand, failed step) make the
    condition false. Only a reference to a step with no recorded result is an
    error, because validation should have ruled it out.
    """

    def evaluate(self, condition: Condition, context: ResolutionContext) -> bool:
        """
        Args:
            condition: Branch rule
            context: Settled results so far

        Returns:
            True when the engine should jump to ``condition.goto``

        Raises:
            ConfigurationError: The referenced step has no result
        """
        result = context.get_result(condition.step)
        if result is None:
            raise ConfigurationError(
                f"Condition references step \"{condition.step}\" which has not executed"
            )

        if result.status is not StepStatus.COMPLETED:
            logger.debug(f"Condition on \"{condition.step}\" is false: step status {result.status.value}")
            return False

        actual = get_field(result.output, condition.field, default=_MISSING)
        if actual is _MISSING:
            logger.debug(f"Condition field \"{condition.field}\" not found in output of \"{condition.step}\"")
            return False

        outcome = compare(actual, ConditionOperator.parse(condition.operator), condition.value)
        logger.debug(
            f"Condition {condition.step}.{condition.field} {condition.operator} {condition.value!r} "
            f"(actual={actual!r}) -> {outcome}"
        )
        return outcome


def compare(actual: Any, operator: ConditionOperator, expected: Any) -> bool:
    """Apply one operator. Never raises for data-dependent reasons."""
    if operator is ConditionOperator.EQ:
        return deep_equal(actual, expected)
    if operator is ConditionOperator.NEQ:
        return not deep_equal(actual, expected)

    if operator is ConditionOperator.CONTAINS:
        if isinstance(actual, str):
            return isinstance(expected, str) and expected in actual
        if isinstance(actual, (list, tuple)):
            return any(deep_equal(item, expected) for item in actual)
        return False

    left = to_number(actual)
    right = to_number(expected)
    if left is None or right is None:
        return False

    if operator is ConditionOperator.GT:
        return left > right
    if operator is ConditionOperator.LT:
        return left < right
    if operator is ConditionOperator.GTE:
        return left >= right
    if operator is ConditionOperator.LTE:
        return left <= right

    return False


def to_number(value: Any) -> Optional[Union[int, float]]:
    """Coerce ints, floats and numeric strings; None when impossible."""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, int):
        # Compared exactly; float() overflows past ~1e308
        return value
    if isinstance(value, float):
        number = value
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    return None if math.isnan(number) else number


def deep_equal(a: Any, b: Any) -> bool:
    """Structural equality that keeps booleans distinct from numbers."""
    if isinstance(a, bool) or isinstance(b, bool):
        return isinstance(a, bool) and isinstance(b, bool) and a == b

    if isinstance(a, dict) and isinstance(b, dict):
        if a.keys() != b.keys():
            return False
        return all(deep_equal(a[key], b[key]) for key in a)

    if isinstance(a, (list, tuple)) and isinstance(b, (list, tuple)):
        if len(a) != len(b):
            return False
        return all(deep_equal(x, y) for x, y in zip(a, b))

    if isinstance(a, (dict, list, tuple)) or isinstance(b, (dict, list, tuple)):
        return False

    return a == b
