from __future__ import annotations

import pytest

from fleet.workflow.conditions import evaluate_condition, evaluate_conditions
from fleet.workflow.models import WorkflowCondition

VARIABLES = {
    "tier": "gold",
    "score": 42,
    "ratio": "0.5",
    "active": True,
    "tags": ["vip", "beta"],
    "profile": {"country": "PL", "age": 31},
    "note": "priority customer",
}


def _condition(field: str, operator: str, value=None, logical: str = "and") -> WorkflowCondition:
    return WorkflowCondition.from_dict(
        {"field": field, "operator": operator, "value": value, "logicalOperator": logical}
    )


@pytest.mark.parametrize(
    "field, operator, value, expected",
    [
        ("tier", "eq", "gold", True),
        ("tier", "ne", "gold", False),
        ("score", "gt", 40, True),
        ("score", "lte", 41, False),
        ("ratio", "lt", 1, True),
        ("profile.age", "gte", 31, True),
        ("profile.country", "in", ["PL", "DE"], True),
        ("tier", "in", "gold", False),
        ("tags", "contains", "vip", True),
        ("note", "contains", "priority", True),
        ("profile", "contains", "country", True),
        ("missing", "eq", None, True),
    ],
)
def test_single_condition(field, operator, value, expected) -> None:
    assert evaluate_condition(_condition(field, operator, value), VARIABLES) is expected


def test_booleans_never_equal_numbers() -> None:
    assert evaluate_condition(_condition("active", "eq", 1), VARIABLES) is False
    assert evaluate_condition(_condition("active", "eq", True), VARIABLES) is True


def test_numeric_comparison_rejects_non_numbers() -> None:
    assert evaluate_condition(_condition("tier", "gt", 1), VARIABLES) is False
    assert evaluate_condition(_condition("active", "gt", 0), VARIABLES) is False
    assert evaluate_condition(_condition("missing", "lt", 10), VARIABLES) is False


def test_conditions_fold_left_to_right() -> None:
    conditions = [
        _condition("tier", "eq", "silver"),
        _condition("score", "gt", 10, logical="or"),
        _condition("active", "eq", False, logical="and"),
    ]
    # (False or True) and False
    assert evaluate_conditions(conditions, VARIABLES) is False
    assert evaluate_conditions(conditions[:2], VARIABLES) is True


def test_first_condition_logical_operator_is_ignored() -> None:
    conditions = [_condition("tier", "eq", "gold", logical="or")]
    assert evaluate_conditions(conditions, VARIABLES) is True


def test_no_conditions_means_run() -> None:
    assert evaluate_conditions([], VARIABLES) is True


@pytest.mark.parametrize("score, expected", [(15, True), (5, False)])
def test_score_threshold_and_active_flag(score, expected) -> None:
    conditions = [
        _condition("score", "gt", 10, logical="and"),
        WorkflowCondition.from_dict({"field": "active", "operator": "eq", "value": True}),
    ]
    assert evaluate_conditions(conditions, {"score": score, "active": True}) is expected
