from __future__ import annotations

import pytest

from fleet.core.errors import InvalidStateError, NotFoundError, ValidationError
from fleet.core.models import BackoffType
from fleet.workflow.models import (
    ExecutionStatus,
    StepType,
    WorkflowDefinition,
    WorkflowExecution,
    WorkflowTemplate,
)


def _definition(steps, **extra) -> WorkflowDefinition:
    return WorkflowDefinition.from_dict({"name": "wf", "steps": steps, **extra})


def test_definition_accepts_camel_case_keys() -> None:
    workflow = _definition(
        [
            {
                "id": "fetch",
                "type": "agent",
                "agentId": "fetcher",
                "onSuccess": ["notify"],
                "onFailure": ["alert"],
                "retry": {"maxAttempts": 2, "backoffType": "linear", "initialDelay": 50},
                "conditions": [{"field": "enabled", "operator": "eq", "value": True}],
            },
            {"id": "notify", "type": "webhook", "config": {"url": "http://hooks.local/done"}},
            {"id": "alert", "type": "delay"},
        ],
        settings={"maxExecutionTime": 5000, "maxRetries": 1, "notificationSettings": {"channels": ["ops"]}},
    )

    fetch = workflow.step("fetch")
    assert fetch.agent_id == "fetcher"
    assert fetch.on_success == ("notify",)
    assert fetch.retry.max_attempts == 2
    assert fetch.retry.backoff_type is BackoffType.LINEAR
    assert workflow.settings.max_execution_time_ms == 5000
    assert workflow.settings.max_retries == 1
    assert workflow.settings.notification_channels == ("ops",)
    assert [step.id for step in workflow.root_steps()] == ["fetch"]
    workflow.validate()


@pytest.mark.parametrize(
    "steps, message",
    [
        ([], "no steps"),
        ([{"id": "a", "type": "delay"}, {"id": "a", "type": "delay"}], "Duplicate step id"),
        ([{"id": "a", "type": "agent"}], "requires an agent id"),
        ([{"id": "a", "type": "webhook"}], "requires a url"),
        ([{"id": "a", "type": "parallel"}], "nothing to run"),
        ([{"id": "a", "type": "delay", "on_success": ["ghost"]}], "unknown step ghost"),
        (
            [
                {"id": "a", "type": "delay", "on_success": ["b"]},
                {"id": "b", "type": "delay", "on_success": ["a"]},
            ],
            "no root step",
        ),
    ],
)
def test_invalid_definitions_are_rejected(steps, message) -> None:
    with pytest.raises(ValidationError, match=message):
        _definition(steps).validate()


def test_unknown_step_type_is_a_validation_error() -> None:
    with pytest.raises(ValidationError):
        _definition([{"id": "a", "type": "teleport"}])


def test_find_step_searches_parallel_sub_steps() -> None:
    workflow = _definition(
        [
            {
                "id": "fan",
                "type": "parallel",
                "config": {"steps": [{"id": "left", "type": "delay"}, {"id": "right", "type": "delay"}]},
            }
        ]
    )
    workflow.validate()
    assert workflow.find_step("right").type is StepType.DELAY
    with pytest.raises(NotFoundError):
        workflow.find_step("missing")


def test_execution_transitions_are_monotonic() -> None:
    execution = WorkflowExecution(id="e1", workflow_id="wf")

    execution.transition(ExecutionStatus.RUNNING)
    execution.transition(ExecutionStatus.PAUSED)
    execution.transition(ExecutionStatus.RUNNING)
    execution.transition(ExecutionStatus.COMPLETED)
    assert execution.is_terminal

    for target in ExecutionStatus:
        with pytest.raises(InvalidStateError):
            execution.transition(target)


def test_pending_execution_cannot_pause() -> None:
    execution = WorkflowExecution(id="e1", workflow_id="wf")
    with pytest.raises(InvalidStateError):
        execution.transition(ExecutionStatus.PAUSED)


def test_execution_snapshot_round_trip_keeps_progress() -> None:
    execution = WorkflowExecution(id="e1", workflow_id="wf", variables={"a": 1}, input={"a": 1})
    execution.transition(ExecutionStatus.RUNNING)
    execution.transition(ExecutionStatus.PAUSED)
    execution.completed_steps.append("first")
    execution.resume_steps.append("second")

    restored = WorkflowExecution.from_dict(execution.to_dict())

    assert restored.status is ExecutionStatus.PAUSED
    assert restored.completed_steps == ["first"]
    assert restored.resume_steps == ["second"]
    assert restored.variables == {"a": 1}
    assert restored.correlation_id == execution.correlation_id


def test_template_parameters_resolve_defaults_and_require_values() -> None:
    template = WorkflowTemplate.from_dict(
        {
            "name": "greeter",
            "parameters": [
                {"name": "agent", "required": True},
                {"name": "greeting", "default": "hi"},
            ],
            "template": {"name": "greet", "steps": [{"id": "wait", "type": "delay"}]},
        }
    )

    assert template.resolve_parameters({"agent": "echo"}) == {"agent": "echo", "greeting": "hi"}
    with pytest.raises(ValidationError, match="agent"):
        template.resolve_parameters({})
