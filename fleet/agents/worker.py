"""Runtime hosting one agent: lifecycle, task execution, health and metrics."""
from __future__ import annotations

import asyncio
import logging
import os
import resource
import sys
import time
from dataclasses import replace
from typing import Any, Dict, List, Optional

from fleet.agents.base import AgentBehavior
from fleet.agents.metrics import MetricsCollector
from fleet.core.clock import Clock, SystemClock, Ticker, wait_with_timeout
from fleet.core.errors import (
    AgentError,
    CapabilityMismatchError,
    InvalidStateError,
    NotFoundError,
    OperationTimeoutError,
    ValidationError,
)
from fleet.core.event_bus import EventBus
from fleet.core.models import (
    AgentConfig,
    AgentEvent,
    AgentEventType,
    AgentHealth,
    AgentMetrics,
    AgentPriority,
    AgentStatus,
    AgentTask,
    BackoffType,
    CheckStatus,
    EventSeverity,
    HealthCheck,
    HealthStatus,
    ResourceUsage,
    RetryPolicy,
    TaskContext,
    TaskStatus,
)
from fleet.queues.task_queue import Job, JobState, QueueConfig, TaskQueue

logger = logging.getLogger(__name__)

MEMORY_THRESHOLD_BYTES = 1024 * 1024 * 1024
TASK_HISTORY_LIMIT = 1000


def _memory_used_bytes() -> int:
    usage = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss
    # ru_maxrss is kilobytes on Linux and bytes on macOS.
    return usage if sys.platform == "darwin" else usage * 1024


class Worker:
    """Hosts an ``AgentBehavior`` and drives it through ``IDLE -> RUNNING <-> PAUSED -> STOPPED``."""

    def __init__(
        self,
        config: AgentConfig,
        behavior: AgentBehavior,
        *,
        bus: Optional[EventBus] = None,
        clock: Optional[Clock] = None,
        heartbeat_interval: float = 30.0,
        drain_timeout: Optional[float] = None,
        queue_max_size: int = 1000,
        memory_threshold_bytes: int = MEMORY_THRESHOLD_BYTES,
    ) -> None:
        self.config = config
        self.behavior = behavior
        self.bus = bus or EventBus()
        self.clock = clock or SystemClock()
        self.status = AgentStatus.IDLE
        self.is_running = False
        self.initialized = False
        self.healthy = True
        self.metrics = MetricsCollector(config.id)
        self._heartbeat_interval = heartbeat_interval
        self._drain_timeout = drain_timeout
        self._queue_max_size = queue_max_size
        self._memory_threshold = memory_threshold_bytes
        self.queue = self._build_queue()
        self._heartbeat = Ticker(self.clock, heartbeat_interval, self._beat, name=f"heartbeat:{config.id}")
        self.started_at = self.clock.now()
        self.last_heartbeat = self.clock.utcnow()
        self._current_tasks: Dict[str, AgentTask] = {}
        self._idle = asyncio.Event()
        self._idle.set()
        self._tasks: Dict[str, AgentTask] = {}
        self._jobs: Dict[str, Job] = {}
        self._health_checks: Dict[str, HealthCheck] = {}
        self._reset_counters()

    @property
    def id(self) -> str:
        return self.config.id

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def capabilities(self):
        return self.behavior.capabilities

    @property
    def current_task_count(self) -> int:
        return len(self._current_tasks)

    # ------------------------------------------------------------------ lifecycle

    async def initialize(self) -> None:
        """Validate configuration and run the behavior's setup hook. Status stays IDLE."""
        logger.info("Initializing agent %s", self.name)
        try:
            self._validate_config(self.config)
            await self.behavior.on_initialize()
        except Exception as exc:
            logger.error("Failed to initialize agent %s: %s", self.name, exc)
            await self._fail(exc)
            raise
        self.initialized = True
        self.status = AgentStatus.IDLE

    async def start(self) -> None:
        if self.is_running:
            logger.warning("Agent %s is already running", self.name)
            return
        logger.info("Starting agent %s", self.name)
        try:
            if not self.initialized:
                await self.initialize()
            if self.queue.closed:
                self.queue = self._build_queue()
            await self.behavior.on_start()
            self.queue.start()
        except Exception as exc:
            logger.error("Failed to start agent %s: %s", self.name, exc)
            await self._fail(exc)
            raise
        self.is_running = True
        self.status = AgentStatus.RUNNING
        self.started_at = self.clock.now()
        self.last_heartbeat = self.clock.utcnow()
        self._heartbeat.start()
        await self.emit(AgentEventType.AGENT_STARTED)

    async def stop(self) -> None:
        """Stop pulling work and wait (bounded) for in-flight tasks."""
        if not self.is_running:
            logger.warning("Agent %s is not running", self.name)
            return
        logger.info("Stopping agent %s", self.name)
        self.is_running = False
        self.status = AgentStatus.STOPPED
        self.queue.pause()
        timeout = self._drain_timeout
        if timeout is None:
            timeout = self.config.timeout_ms / 1000
        if not await wait_with_timeout(self.clock, self._idle, timeout):
            logger.warning(
                "Agent %s stopped with %s task(s) still running after %ss",
                self.name, len(self._current_tasks), timeout,
            )
        try:
            await self.behavior.on_stop()
        finally:
            await self._heartbeat.stop()
        await self.emit(AgentEventType.AGENT_STOPPED)

    async def pause(self) -> None:
        if self.status is not AgentStatus.RUNNING:
            raise InvalidStateError(f"Cannot pause agent {self.name}: not running")
        self.status = AgentStatus.PAUSED
        self.queue.pause()
        await self.behavior.on_pause()
        await self.emit(AgentEventType.AGENT_PAUSED)

    async def resume(self) -> None:
        if self.status is not AgentStatus.PAUSED:
            raise InvalidStateError(f"Cannot resume agent {self.name}: not paused")
        self.status = AgentStatus.RUNNING
        self.queue.resume()
        await self.behavior.on_resume()
        await self.emit(AgentEventType.AGENT_RESUMED)

    async def cleanup(self) -> None:
        await self.behavior.on_cleanup()
        self._health_checks.clear()

    async def shutdown(self) -> None:
        logger.info("Shutting down agent %s", self.name)
        await self.stop()
        await self.cleanup()
        await self.queue.close()

    async def reset(self) -> None:
        """Stop, clear counters, re-initialize and start again."""
        await self.stop()
        self._reset_counters()
        self.metrics.reset()
        self._health_checks.clear()
        self.initialized = False
        await self.initialize()
        await self.start()

    async def update_config(self, **changes: Any) -> AgentConfig:
        if "id" in changes and changes["id"] != self.config.id:
            raise ValidationError("Agent id cannot be changed", field="id")
        updated = self.config.updated(**changes)
        self._validate_config(updated)
        self.config = updated
        if updated.max_concurrent_tasks != self.queue.config.max_concurrency:
            self.queue.update_config(max_concurrency=updated.max_concurrent_tasks)
        await self.behavior.on_config_update(updated)
        logger.info("Configuration updated for agent %s", self.name)
        return updated

    # ------------------------------------------------------------------ tasks

    async def process_task(self, task: AgentTask) -> Any:
        """Validate and execute one task under the agent timeout."""
        self._validate_task(task)
        if not self.behavior.can_handle(task):
            raise CapabilityMismatchError(self.id, task.type)
        self.behavior.validate_payload(task)

        started = time.perf_counter()
        task.set_status(TaskStatus.RUNNING)
        self._current_tasks[task.id] = task
        self._idle.clear()
        self._processed += 1
        await self.emit(
            AgentEventType.TASK_STARTED,
            {"task_id": task.id, "task_type": task.type},
            correlation_id=task.context.correlation_id,
        )
        timeout = self.config.timeout_ms / 1000
        try:
            try:
                result = await asyncio.wait_for(self.behavior.execute(task), timeout=timeout)
            except asyncio.TimeoutError as exc:
                await self.emit(
                    AgentEventType.TASK_TIMEOUT,
                    {"task_id": task.id, "task_type": task.type, "timeout_ms": self.config.timeout_ms},
                    severity=EventSeverity.WARN,
                    correlation_id=task.context.correlation_id,
                )
                raise OperationTimeoutError(
                    f"Task {task.id} timed out after {self.config.timeout_ms}ms",
                    details={"task_id": task.id, "timeout_ms": self.config.timeout_ms},
                ) from exc
        except Exception as exc:
            error = AgentError.wrap(exc)
            duration = self._finish(task, started, success=False)
            task.error = error.to_info()
            task.set_status(TaskStatus.FAILED)
            logger.error("Task %s failed on agent %s: %s", task.id, self.name, error.message)
            await self.emit(
                AgentEventType.TASK_FAILED,
                {"task_id": task.id, "task_type": task.type, "duration_ms": duration, "error": task.error.to_dict()},
                severity=EventSeverity.ERROR,
                correlation_id=task.context.correlation_id,
            )
            raise error
        duration = self._finish(task, started, success=True)
        task.result = result
        task.error = None
        task.set_status(TaskStatus.COMPLETED)
        await self.emit(
            AgentEventType.TASK_COMPLETED,
            {"task_id": task.id, "task_type": task.type, "duration_ms": duration},
            correlation_id=task.context.correlation_id,
        )
        return result

    async def submit_task(
        self,
        task_type: str,
        payload: Optional[Dict[str, Any]] = None,
        *,
        priority: AgentPriority = AgentPriority.MEDIUM,
        context: Optional[TaskContext] = None,
    ) -> str:
        """Queue a task for this agent and return its id."""
        task = AgentTask.create(
            self.id,
            task_type,
            payload,
            priority=priority,
            context=context,
            max_retries=self.config.retry_attempts,
        )
        self._validate_task(task)
        if not self.behavior.can_handle(task):
            raise CapabilityMismatchError(self.id, task.type)
        self.behavior.validate_payload(task)
        attempts = max(self.config.retry_attempts, 1)
        options = replace(
            self.queue.config.default_options,
            attempts=attempts,
            backoff=RetryPolicy(
                max_attempts=attempts,
                backoff_type=BackoffType.EXPONENTIAL,
                initial_delay_ms=self.config.retry_delay_ms,
            ),
            priority=int(task.priority),
            job_id=task.id,
        )
        job = await self.queue.add_job(task, options)
        self._remember(task, job)
        await self.emit(
            AgentEventType.TASK_CREATED,
            {"task_id": task.id, "task_type": task.type, "priority": int(task.priority)},
            correlation_id=task.context.correlation_id,
        )
        return task.id

    def get_task(self, task_id: str) -> AgentTask:
        task = self._tasks.get(task_id)
        if task is None:
            raise NotFoundError("Task", task_id)
        return task

    def has_task(self, task_id: str) -> bool:
        return task_id in self._tasks

    async def wait_for_task(self, task_id: str, timeout: Optional[float] = None) -> AgentTask:
        """Block until the task finishes. Raises the task's ``AgentError`` on failure."""
        task = self.get_task(task_id)
        job = self._jobs[task_id]
        try:
            if timeout is None:
                await job.wait()
            else:
                await asyncio.wait_for(job.wait(), timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise OperationTimeoutError(f"Timed out waiting for task {task_id}") from exc
        except InvalidStateError:
            if task.status is TaskStatus.CANCELLED:
                return task
            raise
        return task

    async def cancel_task(self, task_id: str) -> AgentTask:
        """Cancel a task that has not started yet."""
        task = self.get_task(task_id)
        job = self._jobs[task_id]
        if job.finished or job.state is JobState.ACTIVE:
            raise InvalidStateError(f"Task {task_id} is {task.status.value} and cannot be cancelled")
        task.set_status(TaskStatus.CANCELLED)
        await self.queue.remove_job(task_id)
        await self.emit(
            AgentEventType.TASK_CANCELLED,
            {"task_id": task.id, "task_type": task.type},
            correlation_id=task.context.correlation_id,
        )
        return task

    # ------------------------------------------------------------------ health & metrics

    async def perform_health_check(self) -> bool:
        try:
            checks: List[HealthCheck] = [self._check_basic()]
            checks.extend(await self._check_dependencies())
            checks.append(self._check_resources())
            checks.extend(await self.behavior.health_checks())
        except Exception as exc:  # noqa: BLE001
            logger.error("Health check failed for agent %s: %s", self.name, exc)
            self.healthy = False
            return False
        for check in checks:
            self._health_checks[check.name] = check
        self.healthy = not any(check.status is CheckStatus.FAIL for check in checks)
        return self.healthy

    async def get_health(self) -> AgentHealth:
        await self.perform_health_check()
        return AgentHealth(
            agent_id=self.id,
            status=HealthStatus.HEALTHY if self.healthy else HealthStatus.UNHEALTHY,
            uptime_seconds=self.clock.now() - self.started_at,
            last_heartbeat=self.last_heartbeat,
            checks=list(self._health_checks.values()),
            resources=ResourceUsage(
                memory_used_bytes=_memory_used_bytes(),
                memory_threshold_bytes=self._memory_threshold,
                cpu_cores=os.cpu_count() or 0,
            ),
            dependencies=await self.behavior.dependency_statuses(),
        )

    async def get_metrics(self) -> AgentMetrics:
        uptime_minutes = (self.clock.now() - self.started_at) / 60
        return AgentMetrics(
            agent_id=self.id,
            status=self.status,
            tasks_processed=self._processed,
            tasks_successful=self._successful,
            tasks_failed=self._failed,
            average_task_duration_ms=self._total_ms / self._processed if self._processed else 0.0,
            error_rate=self._failed / self._processed if self._processed else 0.0,
            throughput=self._successful / max(uptime_minutes, 1),
            queue_length=self.queue.get_stats()["waiting"],
            custom_metrics=await self.behavior.custom_metrics(),
        )

    # ------------------------------------------------------------------ events

    async def emit(
        self,
        event_type: AgentEventType,
        data: Optional[Dict[str, Any]] = None,
        *,
        severity: EventSeverity = EventSeverity.INFO,
        correlation_id: Optional[str] = None,
    ) -> None:
        await self.bus.publish(
            AgentEvent(
                agent_id=self.id,
                type=event_type,
                data=data or {},
                source=self.name,
                severity=severity,
                correlation_id=correlation_id,
            )
        )

    # ------------------------------------------------------------------ internals

    def _build_queue(self) -> TaskQueue:
        queue = TaskQueue(
            QueueConfig(
                name=f"agent:{self.config.id}",
                max_size=self._queue_max_size,
                max_concurrency=self.config.max_concurrent_tasks,
            ),
            self._process_job,
            clock=self.clock,
        )
        queue.on("retrying", self._on_job_retrying)
        return queue

    async def _process_job(self, job: Job) -> Any:
        task: AgentTask = job.data
        if job.attempts_made > 1:
            task.retry_count = job.attempts_made - 1
        return await self.process_task(task)

    async def _on_job_retrying(self, job: Job) -> None:
        task: AgentTask = job.data
        task.set_status(TaskStatus.RETRY)
        await self.emit(
            AgentEventType.TASK_RETRY,
            {"task_id": task.id, "task_type": task.type, "attempt": job.attempts_made},
            severity=EventSeverity.WARN,
            correlation_id=task.context.correlation_id,
        )

    async def _beat(self) -> None:
        if not self.is_running:
            return
        self.last_heartbeat = self.clock.utcnow()
        await self.emit(
            AgentEventType.AGENT_HEALTH_CHECK,
            {"healthy": self.healthy, "status": self.status.value},
            severity=EventSeverity.DEBUG,
        )

    async def _fail(self, exc: Exception) -> None:
        self.status = AgentStatus.ERROR
        await self.emit(
            AgentEventType.AGENT_ERROR,
            {"error": str(exc), "error_type": exc.__class__.__name__},
            severity=EventSeverity.ERROR,
        )

    def _finish(self, task: AgentTask, started: float, *, success: bool) -> float:
        duration = (time.perf_counter() - started) * 1000
        self._current_tasks.pop(task.id, None)
        if not self._current_tasks:
            self._idle.set()
        self._total_ms += duration
        if success:
            self._successful += 1
        else:
            self._failed += 1
        task.metadata.actual_duration_ms = duration
        self.metrics.record_task_completion(task.type, duration, success)
        return duration

    def _reset_counters(self) -> None:
        self._processed = 0
        self._successful = 0
        self._failed = 0
        self._total_ms = 0.0

    def _remember(self, task: AgentTask, job: Job) -> None:
        self._tasks[task.id] = task
        self._jobs[task.id] = job
        if len(self._tasks) <= TASK_HISTORY_LIMIT:
            return
        for task_id, old in list(self._tasks.items()):
            if len(self._tasks) <= TASK_HISTORY_LIMIT:
                break
            if old.status in (TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED):
                del self._tasks[task_id]
                self._jobs.pop(task_id, None)

    def _validate_task(self, task: AgentTask) -> None:
        if not task.id:
            raise ValidationError("Task id is required", field="id")
        if not task.type:
            raise ValidationError("Task type is required", field="type")
        if not task.agent_id:
            raise ValidationError("Task agent id is required", field="agent_id")
        if task.agent_id != self.id:
            raise ValidationError(
                f"Task {task.id} targets agent {task.agent_id}, not {self.id}", field="agent_id"
            )

    def _validate_config(self, config: AgentConfig) -> None:
        if not config.id or not config.name:
            raise ValidationError("Agent config requires id and name", field="id")
        if config.max_concurrent_tasks < 1:
            raise ValidationError("max_concurrent_tasks must be at least 1", field="max_concurrent_tasks")
        if config.timeout_ms <= 0:
            raise ValidationError("timeout_ms must be positive", field="timeout_ms")
        if config.retry_attempts < 0 or config.retry_delay_ms < 0:
            raise ValidationError("Retry settings must not be negative", field="retry_attempts")
        self.behavior.validate_config(config)

    def _check_basic(self) -> HealthCheck:
        started = time.perf_counter()
        ok = self.is_running and self.status is not AgentStatus.ERROR
        return HealthCheck(
            name="basic-health",
            status=CheckStatus.PASS if ok else CheckStatus.FAIL,
            message="Agent is running normally" if ok else "Agent is not running",
            duration_ms=(time.perf_counter() - started) * 1000,
        )

    async def _check_dependencies(self) -> List[HealthCheck]:
        checks = []
        for dependency in await self.behavior.dependency_statuses():
            failing = dependency.status in ("unhealthy", "disconnected")
            checks.append(
                HealthCheck(
                    name=f"dependency:{dependency.name}",
                    status=CheckStatus.FAIL if failing else CheckStatus.PASS,
                    message=f"{dependency.type} {dependency.status}",
                    duration_ms=dependency.response_time_ms or 0.0,
                )
            )
        return checks

    def _check_resources(self) -> HealthCheck:
        started = time.perf_counter()
        used = _memory_used_bytes()
        ok = used < self._memory_threshold
        return HealthCheck(
            name="resource-health",
            status=CheckStatus.PASS if ok else CheckStatus.WARN,
            message="Resource usage normal" if ok else "High memory usage detected",
            duration_ms=(time.perf_counter() - started) * 1000,
        )
