"""Evaluation of step conditions against execution variables."""
from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Mapping, Optional, Sequence

from fleet.workflow.interpolation import lookup
from fleet.workflow.models import ConditionOperator, LogicalOperator, WorkflowCondition

logger = logging.getLogger(__name__)


def _same(left: Any, right: Any) -> bool:
    # Booleans never compare equal to numbers.
    if isinstance(left, bool) != isinstance(right, bool):
        return False
    return left == right


def _number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _numeric(compare: Callable[[float, float], bool]) -> Callable[[Any, Any], bool]:
    def check(actual: Any, expected: Any) -> bool:
        left, right = _number(actual), _number(expected)
        if left is None or right is None:
            return False
        return compare(left, right)

    return check


def _member(actual: Any, expected: Any) -> bool:
    if isinstance(expected, (list, tuple, set, frozenset)):
        return any(_same(actual, item) for item in expected)
    return False


def _contains(actual: Any, expected: Any) -> bool:
    if isinstance(actual, str):
        return str(expected) in actual
    if isinstance(actual, Mapping):
        return expected in actual
    if isinstance(actual, (list, tuple, set, frozenset)):
        return any(_same(item, expected) for item in actual)
    return False


COMPARATORS: Dict[ConditionOperator, Callable[[Any, Any], bool]] = {
    ConditionOperator.EQ: _same,
    ConditionOperator.NE: lambda actual, expected: not _same(actual, expected),
    ConditionOperator.GT: _numeric(lambda left, right: left > right),
    ConditionOperator.LT: _numeric(lambda left, right: left < right),
    ConditionOperator.GTE: _numeric(lambda left, right: left >= right),
    ConditionOperator.LTE: _numeric(lambda left, right: left <= right),
    ConditionOperator.IN: _member,
    ConditionOperator.CONTAINS: _contains,
}


def evaluate_condition(condition: WorkflowCondition, variables: Mapping[str, Any]) -> bool:
    _, actual = lookup(variables, condition.field)
    return COMPARATORS[condition.operator](actual, condition.value)


def evaluate_conditions(conditions: Sequence[WorkflowCondition], variables: Mapping[str, Any]) -> bool:
    """Fold conditions left to right.

    The first result seeds the accumulator; every later result is combined
    with it using that condition's own logical operator. No conditions means
    the step runs.
    """
    result: Optional[bool] = None
    for condition in conditions:
        outcome = evaluate_condition(condition, variables)
        if result is None:
            result = outcome
        elif condition.logical_operator is LogicalOperator.OR:
            result = result or outcome
        else:
            result = result and outcome
    if result is None:
        return True
    logger.debug("Conditions on %s evaluated to %s", [c.field for c in conditions], result)
    return result
