"""Tests for backoff, clock, event bus, errors and logging helpers."""
from __future__ import annotations

import asyncio
import io
import json
import logging

import pytest

from fleet.core.backoff import calculate_delay
from fleet.core.clock import ManualClock, Ticker, wait_with_timeout
from fleet.core.errors import AgentError, OperationTimeoutError, ValidationError
from fleet.core.event_bus import EventBus
from fleet.core.log import JSONFormatter
from fleet.core.models import AgentEvent, AgentEventType, AgentTask, BackoffType, RetryPolicy, TaskStatus


def test_fixed_backoff_ignores_attempt() -> None:
    policy = RetryPolicy(backoff_type=BackoffType.FIXED, initial_delay_ms=250)
    assert [calculate_delay(policy, attempt) for attempt in range(3)] == [250, 250, 250]


def test_linear_backoff_grows_by_initial_delay() -> None:
    policy = RetryPolicy(backoff_type="linear", initial_delay_ms=100, max_delay_ms=250)
    assert [calculate_delay(policy, attempt) for attempt in range(4)] == [100, 200, 250, 250]


def test_exponential_backoff_is_capped() -> None:
    policy = RetryPolicy(initial_delay_ms=100, multiplier=2.0, max_delay_ms=1000)
    assert [calculate_delay(policy, attempt) for attempt in range(5)] == [100, 200, 400, 800, 1000]
    assert calculate_delay(policy, 10_000) == 1000


@pytest.mark.parametrize(
    "attempt, expected",
    [(0, 1000), (1, 2000), (2, 4000), (3, 8000), (4, 16000), (5, 32000), (6, 60000), (7, 60000)],
)
def test_exponential_backoff_sequence_from_one_second(attempt, expected) -> None:
    policy = RetryPolicy.from_dict({"initialDelay": 1000, "multiplier": 2, "maxDelay": 60000, "backoffType": "exponential"})
    assert calculate_delay(policy, attempt) == expected


def test_retry_policy_accepts_camel_case() -> None:
    policy = RetryPolicy.from_dict({"maxAttempts": 2, "backoffType": "fixed", "initialDelay": 10})
    assert policy.max_attempts == 2
    assert policy.backoff_type is BackoffType.FIXED
    assert policy.initial_delay_ms == 10


def test_agent_error_wrap_keeps_orchestrator_fields() -> None:
    wrapped = AgentError.wrap(OperationTimeoutError("too slow"))
    assert wrapped.code == "TIMEOUT"
    assert wrapped.retryable is True

    plain = AgentError.wrap(RuntimeError("boom"))
    assert plain.code == "RuntimeError"
    assert plain.retryable is True
    assert isinstance(plain.__cause__, RuntimeError)


def test_validation_error_info() -> None:
    info = ValidationError("bad", field="payload", details={"errors": []}).to_info()
    assert info.code == "VALIDATION_ERROR"
    assert info.to_dict()["details"] == {"errors": []}


def test_task_status_timestamps() -> None:
    task = AgentTask.create("agent-1", "echo", {"content": "hi"})
    task.set_status(TaskStatus.RUNNING)
    task.set_status(TaskStatus.COMPLETED)
    assert task.started_at is not None
    assert task.completed_at is not None
    assert task.to_dict()["status"] == "completed"


@pytest.mark.anyio
async def test_manual_clock_wakes_sleepers_in_deadline_order(clock: ManualClock) -> None:
    woken = []

    async def sleeper(name: str, seconds: float) -> None:
        await clock.sleep(seconds)
        woken.append((name, clock.now()))

    start = clock.now()
    tasks = [asyncio.create_task(sleeper("late", 5)), asyncio.create_task(sleeper("early", 1))]
    await clock.advance(0)
    assert clock.pending_sleepers == 2

    await clock.advance(2)
    assert woken == [("early", start + 1)]

    await clock.advance(10)
    assert [name for name, _ in woken] == ["early", "late"]
    assert woken[1][1] == start + 5
    await asyncio.gather(*tasks)


@pytest.mark.anyio
async def test_wait_with_timeout(clock: ManualClock) -> None:
    event = asyncio.Event()
    waiter = asyncio.create_task(wait_with_timeout(clock, event, 3))
    await clock.advance(3)
    assert await waiter is False

    waiter = asyncio.create_task(wait_with_timeout(clock, event, 3))
    await clock.advance(1)
    event.set()
    assert await waiter is True


@pytest.mark.anyio
async def test_ticker_fires_once_per_interval(clock: ManualClock) -> None:
    ticks = []

    async def tick() -> None:
        ticks.append(clock.now())

    ticker = Ticker(clock, 10, tick, name="test")
    ticker.start()
    await clock.advance(35)
    assert len(ticks) == 3
    await ticker.stop()
    assert not ticker.running
    await clock.advance(20)
    assert len(ticks) == 3


@pytest.mark.anyio
async def test_ticker_survives_failing_callback(clock: ManualClock) -> None:
    calls = []

    async def tick() -> None:
        calls.append(1)
        raise RuntimeError("tick failed")

    ticker = Ticker(clock, 1, tick)
    ticker.start()
    await clock.advance(3)
    await ticker.stop()
    assert len(calls) == 3


@pytest.mark.anyio
async def test_event_bus_listener_failure_does_not_block_others(bus: EventBus) -> None:
    received = []

    async def broken(event: AgentEvent) -> None:
        raise RuntimeError("listener down")

    async def healthy(event: AgentEvent) -> None:
        received.append(event.type)

    bus.add_listener(broken)
    bus.add_listener(healthy)
    bus.add_listener(healthy)

    await bus.publish(AgentEvent(agent_id="a", type=AgentEventType.AGENT_STARTED))
    assert received == [AgentEventType.AGENT_STARTED]


@pytest.mark.anyio
async def test_event_bus_subscription(bus: EventBus) -> None:
    async with bus.subscribe() as inbox:
        await bus.publish(AgentEvent(agent_id="a", type=AgentEventType.TASK_CREATED))
        event = await asyncio.wait_for(inbox.get(), timeout=1)
    assert event.type is AgentEventType.TASK_CREATED

    await bus.publish(AgentEvent(agent_id="a", type=AgentEventType.TASK_FAILED))
    assert inbox.empty()


def test_json_formatter_includes_extra_fields() -> None:
    stream = io.StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(JSONFormatter())
    logger = logging.getLogger("tests.json")
    logger.handlers = [handler]
    logger.propagate = False
    logger.warning("queued %s", "job-1", extra={"queue": "agent:a"})

    line = json.loads(stream.getvalue())
    assert line["message"] == "queued job-1"
    assert line["level"] == "WARNING"
    assert line["queue"] == "agent:a"
