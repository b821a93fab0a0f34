"""Behavior contracts plugged into a ``Worker``.

A worker owns the runtime concerns (lifecycle, queue, heartbeats, metrics);
the behavior only says which task types it accepts and how to run them.
"""
from __future__ import annotations

import abc
from typing import Dict, List, Tuple, Type

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from fleet.core.errors import ValidationError
from fleet.core.models import AgentConfig, AgentTask, Capability, DependencyStatus, HealthCheck


class TaskExecutor(abc.ABC):
    """Task-level contract: accept, validate and execute tasks."""

    # Task type -> payload model. Membership defines what the agent can handle.
    payload_schemas: Dict[str, Type[BaseModel]] = {}

    def can_handle(self, task: AgentTask) -> bool:
        return task.type in self.payload_schemas

    def validate_payload(self, task: AgentTask) -> BaseModel:
        """Validate ``task.payload`` against the model registered for its type."""
        schema = self.payload_schemas.get(task.type)
        if schema is None:
            raise ValidationError(f"No payload schema for task type: {task.type}", field="type")
        try:
            return schema.model_validate(task.payload)
        except PydanticValidationError as exc:
            raise ValidationError(
                f"Invalid payload for task type {task.type}",
                field="payload",
                details={"errors": exc.errors(include_url=False)},
            ) from exc

    @abc.abstractmethod
    async def execute(self, task: AgentTask) -> object:
        """Run the task and return its result."""

    async def custom_metrics(self) -> Dict[str, float]:
        return {}


class Lifecycle:
    """Hooks invoked by the worker around state transitions."""

    def validate_config(self, config: AgentConfig) -> None:
        """Raise ``ValidationError`` when ``config`` is unusable for this behavior."""
        return None

    async def on_initialize(self) -> None:
        return None

    async def on_start(self) -> None:
        return None

    async def on_stop(self) -> None:
        return None

    async def on_pause(self) -> None:
        return None

    async def on_resume(self) -> None:
        return None

    async def on_cleanup(self) -> None:
        return None

    async def on_config_update(self, config: AgentConfig) -> None:
        return None


class HealthReporter:
    async def health_checks(self) -> List[HealthCheck]:
        """Extra checks merged into the worker's health report."""
        return []

    async def dependency_statuses(self) -> List[DependencyStatus]:
        return []


class AgentBehavior(TaskExecutor, Lifecycle, HealthReporter):
    """Base class for concrete agent implementations."""

    capabilities: Tuple[Capability, ...] = ()
