"""Application runtime composition helpers."""
from __future__ import annotations

import logging
from functools import lru_cache
from typing import Dict, Type

from fleet.agents.base import AgentBehavior
from fleet.agents.echo import EchoAgent
from fleet.agents.worker import Worker
from fleet.agents.workflow_coordinator import WorkflowCoordinatorAgent
from fleet.config import config
from fleet.core.clock import Clock, SystemClock
from fleet.core.errors import ValidationError
from fleet.core.event_bus import EventBus
from fleet.core.log import configure_logging
from fleet.core.models import AgentConfig
from fleet.orchestration.registry import AgentRegistry
from fleet.workflow.engine import WorkflowEngine

logger = logging.getLogger(__name__)

_AGENT_CATALOG: Dict[str, Type[AgentBehavior]] = {
    "echo": EchoAgent,
}

COORDINATOR_AGENT_ID = "workflow-coordinator"


@lru_cache
def get_bus() -> EventBus:
    return EventBus()


@lru_cache
def get_clock() -> Clock:
    return SystemClock()


@lru_cache
def get_registry() -> AgentRegistry:
    settings = config.orchestrator
    return AgentRegistry(
        bus=get_bus(),
        clock=get_clock(),
        heartbeat_check_interval=settings.health_check_interval,
        heartbeat_timeout=settings.heartbeat_timeout,
    )


@lru_cache
def get_engine() -> WorkflowEngine:
    return WorkflowEngine(
        get_registry(),
        clock=get_clock(),
        max_concurrent_executions=config.orchestrator.max_concurrent_executions,
        environment=config.environment,
    )


def create_behavior(role: str, name: str) -> AgentBehavior:
    try:
        behavior_cls = _AGENT_CATALOG[role]
    except KeyError as exc:
        raise ValidationError(f"Unknown agent role: {role}", field="role") from exc
    return behavior_cls(name=name)


def build_worker(agent_config: AgentConfig, behavior: AgentBehavior) -> Worker:
    settings = config.orchestrator
    return Worker(
        agent_config,
        behavior,
        bus=get_bus(),
        clock=get_clock(),
        heartbeat_interval=settings.heartbeat_interval,
        drain_timeout=settings.drain_timeout,
        queue_max_size=settings.queue_max_size,
    )


async def start_runtime() -> None:
    """Register and start the workflow coordinator, then start monitoring."""
    configure_logging(config.logging.level, config.logging.format)
    registry = get_registry()
    if registry.get_agent(COORDINATOR_AGENT_ID) is None:
        coordinator = build_worker(
            AgentConfig(
                id=COORDINATOR_AGENT_ID,
                name="workflow-coordinator",
                description="Runs workflow definitions across registered agents",
                max_concurrent_tasks=config.orchestrator.queue_max_concurrency,
                tags=("workflow", "system"),
            ),
            WorkflowCoordinatorAgent(get_engine()),
        )
        await registry.register(coordinator, metadata={"system": True})
    await registry.start_agent(COORDINATOR_AGENT_ID)
    registry.start_monitoring()
    logger.info("Runtime started", extra={"environment": config.environment})


async def stop_runtime() -> None:
    failures = await get_registry().cleanup()
    for agent_id, exc in failures.items():
        logger.warning("Agent %s did not shut down cleanly: %s", agent_id, exc)
    logger.info("Runtime stopped")


def reset_runtime() -> None:
    """Drop the cached singletons so the next call builds fresh ones."""
    get_engine.cache_clear()
    get_registry.cache_clear()
    get_clock.cache_clear()
    get_bus.cache_clear()
