"""Registry responsible for tracking, indexing and supervising agents."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from fleet.agents.worker import Worker
from fleet.core.clock import Clock, SystemClock, Ticker
from fleet.core.errors import AgentNotFoundError, DuplicateIdError, NotFoundError
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
    EventSeverity,
    HealthStatus,
    TaskContext,
)

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class AgentRegistration:
    worker: Worker
    config: AgentConfig
    registered_at: datetime
    last_heartbeat: datetime
    status: AgentStatus
    metadata: Dict[str, Any] = field(default_factory=dict)
    timed_out: bool = False


@dataclass(frozen=True)
class AgentDiscovery:
    id: str
    name: str
    version: str
    capabilities: Tuple[str, ...]
    tags: Tuple[str, ...]
    status: AgentStatus


@dataclass(slots=True)
class SystemHealth:
    overall: HealthStatus
    agents: List[AgentHealth]
    summary: Dict[str, int]


@dataclass(slots=True)
class SystemMetrics:
    agents: List[AgentMetrics]
    total_tasks_processed: int = 0
    total_tasks_successful: int = 0
    total_tasks_failed: int = 0
    average_error_rate: float = 0.0
    total_throughput: float = 0.0


def capability_names(worker: Worker) -> Tuple[str, ...]:
    """Capabilities declared in the config followed by those the behavior exposes."""
    names = list(worker.config.capabilities)
    for capability in worker.capabilities:
        if capability.name not in names:
            names.append(capability.name)
    return tuple(names)


class AgentRegistry:
    """Single source of truth for which agents exist and what state they are in."""

    def __init__(
        self,
        *,
        bus: EventBus,
        clock: Optional[Clock] = None,
        heartbeat_check_interval: float = 60.0,
        heartbeat_timeout: Optional[float] = None,
        health_check_interval: float = 300.0,
    ) -> None:
        self.bus = bus
        self.clock = clock or SystemClock()
        self.heartbeat_timeout = (
            heartbeat_timeout if heartbeat_timeout is not None else heartbeat_check_interval * 3
        )
        self._agents: Dict[str, AgentRegistration] = {}
        self._by_tag: Dict[str, Set[str]] = {}
        self._by_capability: Dict[str, Set[str]] = {}
        self._forwarders: Dict[str, Any] = {}
        self._task_owners: Dict[str, str] = {}
        self._lock = asyncio.Lock()
        self._heartbeat_ticker = Ticker(
            self.clock, heartbeat_check_interval, self._on_heartbeat_tick, name="registry:heartbeats"
        )
        self._health_ticker = Ticker(
            self.clock, health_check_interval, self.perform_health_checks, name="registry:health"
        )
        self.bus.add_listener(self._handle_event)

    # ------------------------------------------------------------------ monitoring

    def start_monitoring(self) -> None:
        self._heartbeat_ticker.start()
        self._health_ticker.start()

    async def stop_monitoring(self) -> None:
        await self._heartbeat_ticker.stop()
        await self._health_ticker.stop()

    async def check_heartbeats(self) -> List[str]:
        """Flag running agents whose last heartbeat is older than the timeout."""
        now = self.clock.now()
        expired = []
        for agent_id, registration in list(self._agents.items()):
            if not registration.worker.is_running or registration.timed_out:
                continue
            elapsed = now - registration.last_heartbeat.timestamp()
            if elapsed <= self.heartbeat_timeout:
                continue
            logger.warning("Agent %s heartbeat timeout (%.0fs)", registration.worker.name, elapsed)
            registration.status = AgentStatus.ERROR
            registration.timed_out = True
            expired.append(agent_id)
            await self._publish(
                agent_id,
                AgentEventType.AGENT_HEARTBEAT_TIMEOUT,
                {
                    "agent_name": registration.worker.name,
                    "last_heartbeat": registration.last_heartbeat.isoformat(),
                },
                severity=EventSeverity.WARN,
            )
        return expired

    async def perform_health_checks(self) -> Dict[str, bool]:
        results = {}
        for worker in self.list_agents():
            try:
                healthy = await worker.perform_health_check()
            except Exception as exc:  # noqa: BLE001
                logger.error("Health check error for agent %s: %s", worker.name, exc)
                healthy = False
            if not healthy:
                logger.warning("Agent %s health check failed", worker.name)
            results[worker.id] = healthy
        return results

    # ------------------------------------------------------------------ registration

    async def register(self, worker: Worker, metadata: Optional[Dict[str, Any]] = None) -> AgentRegistration:
        async with self._lock:
            if worker.id in self._agents:
                raise DuplicateIdError("Agent", worker.id)
            now = self.clock.utcnow()
            registration = AgentRegistration(
                worker=worker,
                config=worker.config,
                registered_at=now,
                last_heartbeat=now,
                status=worker.status,
                metadata=dict(metadata or {}),
            )
            self._agents[worker.id] = registration
            self._index(worker)
            if worker.bus is not self.bus:
                forwarder = self._forwarder_for(worker.id)
                worker.bus.add_listener(forwarder)
                self._forwarders[worker.id] = forwarder

        if worker.status is AgentStatus.IDLE and not worker.initialized:
            try:
                await worker.initialize()
            except Exception:
                await self._discard(worker.id)
                raise
            registration.status = worker.status

        logger.info("Agent registered: %s (%s)", worker.name, worker.id)
        await self._publish(worker.id, AgentEventType.AGENT_REGISTERED, {"agent_name": worker.name})
        return registration

    async def unregister(self, agent_id: str) -> None:
        registration = self._require(agent_id)
        worker = registration.worker
        try:
            await worker.shutdown()
        finally:
            await self._discard(agent_id)
        logger.info("Agent unregistered: %s (%s)", worker.name, agent_id)
        await self._publish(agent_id, AgentEventType.AGENT_UNREGISTERED, {"agent_name": worker.name})

    async def cleanup(self) -> Dict[str, Exception]:
        """Stop monitoring and unregister every agent. Returns per-agent failures."""
        await self.stop_monitoring()
        failures: Dict[str, Exception] = {}
        for agent_id in list(self._agents):
            try:
                await self.unregister(agent_id)
            except Exception as exc:  # noqa: BLE001
                logger.error("Error unregistering agent %s: %s", agent_id, exc)
                failures[agent_id] = exc
        self._agents.clear()
        self._by_tag.clear()
        self._by_capability.clear()
        self._forwarders.clear()
        self._task_owners.clear()
        return failures

    # ------------------------------------------------------------------ lookup

    def get_agent(self, agent_id: str) -> Optional[Worker]:
        registration = self._agents.get(agent_id)
        return registration.worker if registration else None

    def require_agent(self, agent_id: str) -> Worker:
        return self._require(agent_id).worker

    def get_registration(self, agent_id: str) -> AgentRegistration:
        return self._require(agent_id)

    def list_agents(self) -> List[Worker]:
        return [registration.worker for registration in self._agents.values()]

    def get_agents_by_tag(self, tag: str) -> List[Worker]:
        return self._in_order(self._by_tag.get(tag, set()))

    def get_agents_by_capability(self, capability: str) -> List[Worker]:
        return self._in_order(self._by_capability.get(capability, set()))

    def find_agents(
        self,
        *,
        name: Optional[str] = None,
        status: Optional[AgentStatus] = None,
        tags: Iterable[str] = (),
        capabilities: Iterable[str] = (),
        enabled: Optional[bool] = None,
    ) -> List[Worker]:
        """All criteria are ANDed. Results keep registration order."""
        tags = tuple(tags)
        capabilities = tuple(capabilities)
        matches = []
        for worker in self.list_agents():
            if name and name not in worker.name:
                continue
            if status is not None and worker.status is not status:
                continue
            if enabled is not None and worker.config.enabled is not enabled:
                continue
            if tags and not all(tag in worker.config.tags for tag in tags):
                continue
            if capabilities:
                declared = capability_names(worker)
                if not all(capability in declared for capability in capabilities):
                    continue
            matches.append(worker)
        return matches

    def discover_agents(self) -> List[AgentDiscovery]:
        return [
            AgentDiscovery(
                id=registration.worker.id,
                name=registration.worker.name,
                version=registration.config.version,
                capabilities=capability_names(registration.worker),
                tags=registration.config.tags,
                status=registration.status,
            )
            for registration in self._agents.values()
        ]

    # ------------------------------------------------------------------ lifecycle

    async def start_agent(self, agent_id: str) -> None:
        registration = self._require(agent_id)
        await registration.worker.start()
        registration.status = registration.worker.status
        registration.last_heartbeat = self.clock.utcnow()
        registration.timed_out = False
        logger.info("Started agent: %s", registration.worker.name)

    async def stop_agent(self, agent_id: str) -> None:
        registration = self._require(agent_id)
        await registration.worker.stop()
        registration.status = AgentStatus.STOPPED
        logger.info("Stopped agent: %s", registration.worker.name)

    async def restart_agent(self, agent_id: str) -> None:
        await self.stop_agent(agent_id)
        await self.start_agent(agent_id)

    async def start_all(self) -> None:
        await self._fan_out(self.start_agent, "start")

    async def stop_all(self) -> None:
        await self._fan_out(self.stop_agent, "stop")

    async def update_agent_config(self, agent_id: str, **changes: Any) -> AgentConfig:
        registration = self._require(agent_id)
        worker = registration.worker
        self._unindex(worker)
        try:
            updated = await worker.update_config(**changes)
        finally:
            self._index(worker)
        registration.config = updated
        logger.info("Updated configuration for agent: %s", worker.name)
        return updated

    # ------------------------------------------------------------------ health & metrics

    async def get_system_health(self) -> SystemHealth:
        workers = self.list_agents()
        results = await asyncio.gather(*(worker.get_health() for worker in workers), return_exceptions=True)
        reports: List[AgentHealth] = []
        for worker, result in zip(workers, results):
            if isinstance(result, BaseException):
                logger.error("Health report failed for agent %s: %s", worker.name, result)
                result = AgentHealth(
                    agent_id=worker.id,
                    status=HealthStatus.UNHEALTHY,
                    uptime_seconds=0.0,
                    last_heartbeat=worker.last_heartbeat,
                )
            reports.append(result)
        summary = {"total": len(reports)}
        for status in HealthStatus:
            summary[status.value] = sum(1 for report in reports if report.status is status)
        overall = HealthStatus.HEALTHY
        if summary[HealthStatus.UNHEALTHY.value]:
            overall = HealthStatus.UNHEALTHY
        elif summary[HealthStatus.DEGRADED.value]:
            overall = HealthStatus.DEGRADED
        return SystemHealth(overall=overall, agents=reports, summary=summary)

    async def get_system_metrics(self) -> SystemMetrics:
        metrics = list(await asyncio.gather(*(worker.get_metrics() for worker in self.list_agents())))
        aggregated = SystemMetrics(agents=metrics)
        for item in metrics:
            aggregated.total_tasks_processed += item.tasks_processed
            aggregated.total_tasks_successful += item.tasks_successful
            aggregated.total_tasks_failed += item.tasks_failed
            aggregated.total_throughput += item.throughput
        if metrics:
            aggregated.average_error_rate = sum(item.error_rate for item in metrics) / len(metrics)
        return aggregated

    # ------------------------------------------------------------------ tasks

    async def submit_task(
        self,
        agent_id: str,
        task_type: str,
        payload: Optional[Dict[str, Any]] = None,
        *,
        priority: AgentPriority = AgentPriority.MEDIUM,
        context: Optional[TaskContext] = None,
    ) -> str:
        worker = self.require_agent(agent_id)
        task_id = await worker.submit_task(task_type, payload, priority=priority, context=context)
        self._task_owners[task_id] = agent_id
        return task_id

    def get_task_status(self, task_id: str) -> AgentTask:
        return self._task_worker(task_id).get_task(task_id)

    async def wait_for_task(self, task_id: str, timeout: Optional[float] = None) -> AgentTask:
        return await self._task_worker(task_id).wait_for_task(task_id, timeout=timeout)

    async def cancel_task(self, task_id: str) -> AgentTask:
        return await self._task_worker(task_id).cancel_task(task_id)

    # ------------------------------------------------------------------ internals

    async def _handle_event(self, event: AgentEvent) -> None:
        registration = self._agents.get(event.agent_id)
        if registration is None:
            return
        if event.type is AgentEventType.AGENT_STARTED:
            registration.status = AgentStatus.RUNNING
            registration.last_heartbeat = self.clock.utcnow()
        elif event.type is AgentEventType.AGENT_STOPPED:
            registration.status = AgentStatus.STOPPED
        elif event.type is AgentEventType.AGENT_PAUSED:
            registration.status = AgentStatus.PAUSED
        elif event.type is AgentEventType.AGENT_RESUMED:
            registration.status = AgentStatus.RUNNING
        elif event.type is AgentEventType.AGENT_ERROR:
            registration.status = AgentStatus.ERROR
        elif event.type is AgentEventType.AGENT_HEALTH_CHECK:
            registration.last_heartbeat = self.clock.utcnow()
            if registration.timed_out:
                registration.timed_out = False
                registration.status = registration.worker.status
                logger.info("Agent %s heartbeat recovered", registration.worker.name)

    def _forwarder_for(self, agent_id: str):
        async def forward(event: AgentEvent) -> None:
            if event.agent_id == agent_id:
                await self.bus.publish(event)

        return forward

    async def _on_heartbeat_tick(self) -> None:
        await self.check_heartbeats()

    async def _publish(
        self,
        agent_id: str,
        event_type: AgentEventType,
        data: Dict[str, Any],
        *,
        severity: EventSeverity = EventSeverity.INFO,
    ) -> None:
        await self.bus.publish(
            AgentEvent(agent_id=agent_id, type=event_type, data=data, source="registry", severity=severity)
        )

    async def _discard(self, agent_id: str) -> None:
        async with self._lock:
            registration = self._agents.pop(agent_id, None)
            if registration is None:
                return
            self._unindex(registration.worker)
            forwarder = self._forwarders.pop(agent_id, None)
            if forwarder is not None:
                registration.worker.bus.remove_listener(forwarder)
            for task_id in [tid for tid, owner in self._task_owners.items() if owner == agent_id]:
                del self._task_owners[task_id]

    async def _fan_out(self, operation, verb: str) -> None:
        agent_ids = list(self._agents)
        results = await asyncio.gather(*(operation(agent_id) for agent_id in agent_ids), return_exceptions=True)
        errors = [result for result in results if isinstance(result, BaseException)]
        for agent_id, result in zip(agent_ids, results):
            if isinstance(result, BaseException):
                logger.error("Failed to %s agent %s: %s", verb, agent_id, result)
        if errors:
            raise errors[0]
        logger.info("%s %s agents", "Started" if verb == "start" else "Stopped", len(agent_ids))

    def _require(self, agent_id: str) -> AgentRegistration:
        registration = self._agents.get(agent_id)
        if registration is None:
            raise AgentNotFoundError(agent_id)
        return registration

    def _task_worker(self, task_id: str) -> Worker:
        agent_id = self._task_owners.get(task_id)
        if agent_id is None or agent_id not in self._agents:
            raise NotFoundError("Task", task_id)
        return self._agents[agent_id].worker

    def _in_order(self, ids: Set[str]) -> List[Worker]:
        return [registration.worker for agent_id, registration in self._agents.items() if agent_id in ids]

    def _index(self, worker: Worker) -> None:
        for tag in worker.config.tags:
            self._by_tag.setdefault(tag, set()).add(worker.id)
        for capability in capability_names(worker):
            self._by_capability.setdefault(capability, set()).add(worker.id)

    def _unindex(self, worker: Worker) -> None:
        for index in (self._by_tag, self._by_capability):
            for key in list(index):
                index[key].discard(worker.id)
                if not index[key]:
                    del index[key]
