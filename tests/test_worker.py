from __future__ import annotations

import asyncio
from typing import Any, List

import pytest
from pydantic import BaseModel

from fleet.agents.base import AgentBehavior
from fleet.agents.echo import EchoAgent
from fleet.agents.worker import Worker
from fleet.core.clock import ManualClock
from fleet.core.errors import (
    AgentError,
    CapabilityMismatchError,
    InvalidStateError,
    NotFoundError,
    OrchestratorError,
    ValidationError,
)
from fleet.core.event_bus import EventBus
from fleet.core.models import (
    AgentConfig,
    AgentEvent,
    AgentEventType,
    AgentStatus,
    AgentTask,
    HealthStatus,
    TaskStatus,
)


class WorkPayload(BaseModel):
    value: int = 0


class GatedAgent(AgentBehavior):
    """Holds every task until ``gate`` is set."""

    payload_schemas = {"work": WorkPayload}

    def __init__(self) -> None:
        self.gate = asyncio.Event()

    async def execute(self, task: AgentTask) -> Any:
        await self.gate.wait()
        return {"value": task.payload.get("value", 0)}


class FlakyAgent(AgentBehavior):
    payload_schemas = {"work": WorkPayload}

    def __init__(self, failures: int) -> None:
        self.failures = failures
        self.calls = 0

    async def execute(self, task: AgentTask) -> Any:
        self.calls += 1
        if self.calls <= self.failures:
            raise OrchestratorError("transient failure", code="TRANSIENT", retryable=True)
        return {"calls": self.calls}


class CrashingAgent(AgentBehavior):
    payload_schemas = {"work": WorkPayload}

    def __init__(self, error: Exception) -> None:
        self.error = error
        self.calls = 0

    async def execute(self, task: AgentTask) -> Any:
        self.calls += 1
        raise self.error


class BrokenConfigAgent(EchoAgent):
    def validate_config(self, config: AgentConfig) -> None:
        raise ValidationError("missing api key", field="settings")


def _config(agent_id: str = "agent-1", **overrides: Any) -> AgentConfig:
    return AgentConfig(id=agent_id, name=agent_id, **overrides)


def _collect(bus: EventBus) -> List[AgentEvent]:
    events: List[AgentEvent] = []

    async def listener(event: AgentEvent) -> None:
        events.append(event)

    bus.add_listener(listener)
    return events


@pytest.mark.anyio
async def test_lifecycle_transitions_emit_events(bus: EventBus) -> None:
    events = _collect(bus)
    worker = Worker(_config(), EchoAgent(), bus=bus)

    await worker.initialize()
    assert worker.status is AgentStatus.IDLE

    await worker.start()
    assert worker.status is AgentStatus.RUNNING

    await worker.pause()
    assert worker.status is AgentStatus.PAUSED
    with pytest.raises(InvalidStateError):
        await worker.pause()

    await worker.resume()
    assert worker.status is AgentStatus.RUNNING

    await worker.stop()
    assert worker.status is AgentStatus.STOPPED
    assert [event.type for event in events] == [
        AgentEventType.AGENT_STARTED,
        AgentEventType.AGENT_PAUSED,
        AgentEventType.AGENT_RESUMED,
        AgentEventType.AGENT_STOPPED,
    ]
    await worker.shutdown()


@pytest.mark.anyio
async def test_submitted_task_completes_and_updates_metrics(bus: EventBus) -> None:
    events = _collect(bus)
    worker = Worker(_config(), EchoAgent(name="echo-1"), bus=bus)
    await worker.start()

    task_id = await worker.submit_task("echo", {"content": "hi"})
    task = await worker.wait_for_task(task_id, timeout=2)

    assert task.status is TaskStatus.COMPLETED
    assert task.result == {"echo": "echo-1 heard hi"}
    assert task.metadata.actual_duration_ms is not None

    metrics = await worker.get_metrics()
    assert metrics.tasks_processed == 1
    assert metrics.tasks_successful == 1
    assert metrics.error_rate == 0.0
    assert metrics.custom_metrics == {"echo.handled": 1.0}

    task_events = [event.type for event in events if event.data.get("task_id") == task_id]
    assert task_events == [
        AgentEventType.TASK_CREATED,
        AgentEventType.TASK_STARTED,
        AgentEventType.TASK_COMPLETED,
    ]
    await worker.shutdown()


@pytest.mark.anyio
async def test_unsupported_task_type_is_rejected(bus: EventBus) -> None:
    worker = Worker(_config(), EchoAgent(), bus=bus)
    await worker.start()

    with pytest.raises(CapabilityMismatchError) as info:
        await worker.submit_task("translate", {"text": "hola"})
    assert info.value.status_code == 400

    foreign = AgentTask.create("someone-else", "echo", {"content": "x"})
    with pytest.raises(ValidationError):
        await worker.process_task(foreign)
    await worker.shutdown()


@pytest.mark.anyio
async def test_invalid_payload_is_rejected_before_queueing(bus: EventBus) -> None:
    worker = Worker(_config(), EchoAgent(), bus=bus)
    await worker.start()

    with pytest.raises(ValidationError) as info:
        await worker.submit_task("echo", {"content": ["not", "text"]})
    assert info.value.details["errors"]
    assert worker.queue.get_stats()["waiting"] == 0
    await worker.shutdown()


@pytest.mark.anyio
async def test_task_exceeding_timeout_fails_with_timeout_code(bus: EventBus) -> None:
    events = _collect(bus)
    worker = Worker(_config(timeout_ms=20, retry_attempts=0), EchoAgent(), bus=bus, drain_timeout=1)
    await worker.start()

    task_id = await worker.submit_task("echo", {"content": "slow", "delay_ms": 1000})
    with pytest.raises(AgentError) as info:
        await worker.wait_for_task(task_id, timeout=2)

    assert info.value.code == "TIMEOUT"
    task = worker.get_task(task_id)
    assert task.status is TaskStatus.FAILED
    assert task.error is not None and task.error.code == "TIMEOUT"
    assert (await worker.get_metrics()).tasks_failed == 1
    assert AgentEventType.TASK_TIMEOUT in [event.type for event in events]
    await worker.shutdown()


@pytest.mark.anyio
async def test_retryable_failure_is_retried_with_backoff(bus: EventBus, clock: ManualClock, settle) -> None:
    events = _collect(bus)
    behavior = FlakyAgent(failures=1)
    worker = Worker(_config(retry_attempts=2, retry_delay_ms=100), behavior, bus=bus, clock=clock)
    await worker.start()

    task_id = await worker.submit_task("work", {"value": 1})
    await settle()
    assert worker.get_task(task_id).status is TaskStatus.RETRY
    assert AgentEventType.TASK_RETRY in [event.type for event in events]

    await clock.advance(0.1)
    task = await worker.wait_for_task(task_id, timeout=1)
    assert task.status is TaskStatus.COMPLETED
    assert task.retry_count == 1
    assert task.result == {"calls": 2}
    await worker.shutdown()


@pytest.mark.anyio
async def test_only_pending_tasks_can_be_cancelled(bus: EventBus, settle) -> None:
    behavior = GatedAgent()
    worker = Worker(_config(max_concurrent_tasks=1), behavior, bus=bus)
    await worker.start()

    running_id = await worker.submit_task("work", {"value": 1})
    pending_id = await worker.submit_task("work", {"value": 2})
    await settle()

    with pytest.raises(InvalidStateError):
        await worker.cancel_task(running_id)

    cancelled = await worker.cancel_task(pending_id)
    assert cancelled.status is TaskStatus.CANCELLED
    assert (await worker.wait_for_task(pending_id, timeout=1)).status is TaskStatus.CANCELLED

    behavior.gate.set()
    assert (await worker.wait_for_task(running_id, timeout=1)).result == {"value": 1}
    with pytest.raises(InvalidStateError):
        await worker.cancel_task(running_id)
    with pytest.raises(NotFoundError):
        worker.get_task("unknown")
    await worker.shutdown()


@pytest.mark.anyio
async def test_update_config_rejects_id_change(bus: EventBus) -> None:
    worker = Worker(_config(), EchoAgent(), bus=bus)

    with pytest.raises(ValidationError):
        await worker.update_config(id="other")
    with pytest.raises(ValidationError):
        await worker.update_config(max_concurrent_tasks=0)

    updated = await worker.update_config(max_concurrent_tasks=3, tags=["edge"])
    assert updated.tags == ("edge",)
    assert worker.queue.config.max_concurrency == 3


@pytest.mark.anyio
async def test_health_reflects_running_state(bus: EventBus) -> None:
    worker = Worker(_config(), EchoAgent(), bus=bus)
    await worker.start()

    health = await worker.get_health()
    assert health.status is HealthStatus.HEALTHY
    assert {check.name for check in health.checks} >= {"basic-health", "resource-health"}

    await worker.stop()
    assert await worker.perform_health_check() is False
    await worker.shutdown()


@pytest.mark.anyio
async def test_heartbeat_emits_health_event(bus: EventBus, clock: ManualClock) -> None:
    events = _collect(bus)
    worker = Worker(_config(), EchoAgent(), bus=bus, clock=clock, heartbeat_interval=5)
    await worker.start()
    before = worker.last_heartbeat

    await clock.advance(5)

    beats = [event for event in events if event.type is AgentEventType.AGENT_HEALTH_CHECK]
    assert len(beats) == 1
    assert worker.last_heartbeat > before
    await worker.shutdown()


@pytest.mark.anyio
async def test_initialization_failure_marks_agent_errored(bus: EventBus) -> None:
    events = _collect(bus)
    worker = Worker(_config(), BrokenConfigAgent(), bus=bus)

    with pytest.raises(ValidationError):
        await worker.initialize()
    assert worker.status is AgentStatus.ERROR
    assert events[-1].type is AgentEventType.AGENT_ERROR


@pytest.mark.anyio
async def test_plain_exceptions_use_every_retry_attempt(bus: EventBus, clock: ManualClock, settle) -> None:
    behavior = CrashingAgent(RuntimeError("connection reset"))
    worker = Worker(_config(retry_attempts=3, retry_delay_ms=100), behavior, bus=bus, clock=clock)
    await worker.start()

    task_id = await worker.submit_task("work", {"value": 1})
    await settle()
    assert behavior.calls == 1
    await clock.advance(0.1)
    await settle()
    assert behavior.calls == 2
    await clock.advance(0.2)

    with pytest.raises(AgentError) as info:
        await worker.wait_for_task(task_id, timeout=1)
    assert behavior.calls == 3
    assert info.value.code == "RuntimeError"
    task = worker.get_task(task_id)
    assert task.status is TaskStatus.FAILED
    assert task.retry_count == 2
    await worker.shutdown()


@pytest.mark.anyio
async def test_validation_failures_are_not_retried(bus: EventBus, clock: ManualClock, settle) -> None:
    behavior = CrashingAgent(ValidationError("unknown account", field="account"))
    worker = Worker(_config(retry_attempts=3, retry_delay_ms=100), behavior, bus=bus, clock=clock)
    await worker.start()

    task_id = await worker.submit_task("work", {"value": 1})
    with pytest.raises(AgentError) as info:
        await worker.wait_for_task(task_id, timeout=1)
    assert info.value.code == "VALIDATION_ERROR"
    assert behavior.calls == 1
    await worker.shutdown()
