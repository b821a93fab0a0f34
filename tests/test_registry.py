from __future__ import annotations

from typing import Any, List

import pytest

from fleet.agents.echo import EchoAgent
from fleet.agents.worker import Worker
from fleet.core.clock import ManualClock
from fleet.core.errors import AgentNotFoundError, DuplicateIdError, NotFoundError, ValidationError
from fleet.core.event_bus import EventBus
from fleet.core.models import AgentConfig, AgentEvent, AgentEventType, AgentStatus, HealthStatus, TaskStatus
from fleet.orchestration.registry import AgentRegistry


class StubbornAgent(EchoAgent):
    async def on_stop(self) -> None:
        raise RuntimeError("refuses to stop")


class UnconfigurableAgent(EchoAgent):
    def validate_config(self, config: AgentConfig) -> None:
        raise ValidationError("unsupported settings", field="settings")


def _worker(bus: EventBus, agent_id: str, behavior=None, clock=None, **config: Any) -> Worker:
    return Worker(
        AgentConfig(id=agent_id, name=agent_id, **config),
        behavior or EchoAgent(name=agent_id),
        bus=bus,
        clock=clock,
        heartbeat_interval=1000,
    )


def _collect(bus: EventBus) -> List[AgentEvent]:
    events: List[AgentEvent] = []

    async def listener(event: AgentEvent) -> None:
        events.append(event)

    bus.add_listener(listener)
    return events


@pytest.mark.anyio
async def test_register_initializes_and_rejects_duplicates(bus: EventBus) -> None:
    events = _collect(bus)
    registry = AgentRegistry(bus=bus)
    worker = _worker(bus, "alpha")

    registration = await registry.register(worker, {"owner": "ops"})
    assert worker.initialized
    assert registration.status is AgentStatus.IDLE
    assert registration.metadata == {"owner": "ops"}
    assert registry.get_agent("alpha") is worker
    assert AgentEventType.AGENT_REGISTERED in [event.type for event in events]

    with pytest.raises(DuplicateIdError):
        await registry.register(_worker(bus, "alpha"))
    await registry.cleanup()


@pytest.mark.anyio
async def test_failed_initialization_rolls_back_registration(bus: EventBus) -> None:
    registry = AgentRegistry(bus=bus)

    with pytest.raises(ValidationError):
        await registry.register(_worker(bus, "broken", UnconfigurableAgent()))

    assert registry.get_agent("broken") is None
    assert registry.get_agents_by_capability("echo") == []
    with pytest.raises(AgentNotFoundError):
        registry.require_agent("broken")


@pytest.mark.anyio
async def test_lookup_by_tag_capability_and_criteria(bus: EventBus) -> None:
    registry = AgentRegistry(bus=bus)
    alpha = _worker(bus, "alpha", tags=["edge", "eu"], capabilities=["summarize"])
    beta = _worker(bus, "beta", tags=["edge"])
    gamma = _worker(bus, "gamma", enabled=False)
    for worker in (alpha, beta, gamma):
        await registry.register(worker)
    await registry.start_agent("beta")

    assert registry.get_agents_by_tag("edge") == [alpha, beta]
    assert registry.get_agents_by_capability("summarize") == [alpha]
    assert registry.get_agents_by_capability("echo") == [alpha, beta, gamma]
    assert registry.find_agents(tags=["edge"], capabilities=["echo"], status=AgentStatus.RUNNING) == [beta]
    assert registry.find_agents(enabled=False) == [gamma]
    assert registry.find_agents(name="alp") == [alpha]

    discovered = {entry.id: entry for entry in registry.discover_agents()}
    assert discovered["alpha"].capabilities == ("summarize", "echo", "execute")
    assert discovered["beta"].status is AgentStatus.RUNNING

    await registry.update_agent_config("alpha", tags=["apac"])
    assert registry.get_agents_by_tag("edge") == [beta]
    assert registry.get_agents_by_tag("apac") == [alpha]
    await registry.cleanup()


@pytest.mark.anyio
async def test_lifecycle_operations_track_status(bus: EventBus) -> None:
    registry = AgentRegistry(bus=bus)
    await registry.register(_worker(bus, "alpha"))
    await registry.register(_worker(bus, "beta"))

    await registry.start_all()
    assert {reg.status for reg in map(registry.get_registration, ["alpha", "beta"])} == {AgentStatus.RUNNING}

    await registry.stop_agent("alpha")
    assert registry.get_registration("alpha").status is AgentStatus.STOPPED

    await registry.restart_agent("alpha")
    assert registry.get_agent("alpha").status is AgentStatus.RUNNING

    await registry.stop_all()
    assert registry.find_agents(status=AgentStatus.RUNNING) == []

    with pytest.raises(AgentNotFoundError):
        await registry.start_agent("missing")
    await registry.cleanup()


@pytest.mark.anyio
async def test_heartbeat_timeout_and_recovery(bus: EventBus, clock: ManualClock) -> None:
    events = _collect(bus)
    registry = AgentRegistry(bus=bus, clock=clock, heartbeat_check_interval=10, heartbeat_timeout=30)
    worker = _worker(bus, "alpha", clock=clock)
    await registry.register(worker)
    await registry.start_agent("alpha")
    registry.start_monitoring()

    await clock.advance(30)
    assert registry.get_registration("alpha").status is AgentStatus.RUNNING

    await clock.advance(10)
    registration = registry.get_registration("alpha")
    assert registration.status is AgentStatus.ERROR
    assert registration.timed_out
    timeouts = [event for event in events if event.type is AgentEventType.AGENT_HEARTBEAT_TIMEOUT]
    assert len(timeouts) == 1

    await clock.advance(10)
    assert len([event for event in events if event.type is AgentEventType.AGENT_HEARTBEAT_TIMEOUT]) == 1

    await worker.emit(AgentEventType.AGENT_HEALTH_CHECK)
    assert registration.status is AgentStatus.RUNNING
    assert not registration.timed_out
    await registry.cleanup()


@pytest.mark.anyio
async def test_events_from_private_bus_are_forwarded(bus: EventBus) -> None:
    events = _collect(bus)
    registry = AgentRegistry(bus=bus)
    worker = _worker(EventBus(), "isolated")
    await registry.register(worker)

    await registry.start_agent("isolated")
    assert AgentEventType.AGENT_STARTED in [event.type for event in events]

    await registry.unregister("isolated")
    count = len(events)
    await worker.emit(AgentEventType.AGENT_HEALTH_CHECK)
    assert len(events) == count


@pytest.mark.anyio
async def test_cleanup_reports_agents_that_fail_to_shut_down(bus: EventBus) -> None:
    registry = AgentRegistry(bus=bus)
    await registry.register(_worker(bus, "good"))
    await registry.register(_worker(bus, "stubborn", StubbornAgent()))
    await registry.start_all()

    failures = await registry.cleanup()

    assert list(failures) == ["stubborn"]
    assert isinstance(failures["stubborn"], RuntimeError)
    assert registry.list_agents() == []


@pytest.mark.anyio
async def test_system_health_and_metrics(bus: EventBus) -> None:
    registry = AgentRegistry(bus=bus)
    await registry.register(_worker(bus, "running"))
    await registry.register(_worker(bus, "idle"))
    await registry.start_agent("running")

    health = await registry.get_system_health()
    assert health.overall is HealthStatus.UNHEALTHY
    assert health.summary["total"] == 2
    assert health.summary["healthy"] == 1
    assert health.summary["unhealthy"] == 1

    task_id = await registry.submit_task("running", "echo", {"content": "ping"})
    await registry.wait_for_task(task_id, timeout=2)
    metrics = await registry.get_system_metrics()
    assert metrics.total_tasks_processed == 1
    assert metrics.total_tasks_successful == 1
    await registry.cleanup()


@pytest.mark.anyio
async def test_task_routing_through_registry(bus: EventBus) -> None:
    registry = AgentRegistry(bus=bus)
    await registry.register(_worker(bus, "alpha"))
    await registry.start_agent("alpha")

    task_id = await registry.submit_task("alpha", "execute", {"n": 1})
    task = await registry.wait_for_task(task_id, timeout=2)
    assert task.result == {"n": 1, "handled_by": "alpha"}
    assert registry.get_task_status(task_id).status is TaskStatus.COMPLETED

    with pytest.raises(NotFoundError):
        registry.get_task_status("unknown")
    with pytest.raises(AgentNotFoundError):
        await registry.submit_task("missing", "echo", {})
    await registry.cleanup()
