"""Persistence seam for workflow definitions, templates and execution snapshots."""
from __future__ import annotations

import abc
import logging
from typing import Dict, List

from fleet.workflow.models import (
    ExecutionStatus,
    WorkflowDefinition,
    WorkflowExecution,
    WorkflowTemplate,
)

logger = logging.getLogger(__name__)


class WorkflowStore(abc.ABC):
    @abc.abstractmethod
    async def save_workflow_definition(self, workflow: WorkflowDefinition) -> None: ...

    @abc.abstractmethod
    async def delete_workflow_definition(self, workflow_id: str) -> None: ...

    @abc.abstractmethod
    async def save_template(self, template: WorkflowTemplate) -> None: ...

    @abc.abstractmethod
    async def save_execution_state(self, execution: WorkflowExecution) -> None: ...

    @abc.abstractmethod
    async def load_workflow_definitions(self) -> List[WorkflowDefinition]: ...

    @abc.abstractmethod
    async def load_templates(self) -> List[WorkflowTemplate]: ...

    @abc.abstractmethod
    async def load_scheduled_executions(self) -> List[WorkflowExecution]:
        """Executions that were pending or paused when the engine last stopped."""


class NullWorkflowStore(WorkflowStore):
    """Keeps nothing. The engine's in-memory state is the only copy."""

    async def save_workflow_definition(self, workflow: WorkflowDefinition) -> None:
        return None

    async def delete_workflow_definition(self, workflow_id: str) -> None:
        return None

    async def save_template(self, template: WorkflowTemplate) -> None:
        return None

    async def save_execution_state(self, execution: WorkflowExecution) -> None:
        return None

    async def load_workflow_definitions(self) -> List[WorkflowDefinition]:
        return []

    async def load_templates(self) -> List[WorkflowTemplate]:
        return []

    async def load_scheduled_executions(self) -> List[WorkflowExecution]:
        return []


class InMemoryWorkflowStore(WorkflowStore):
    """Snapshot store backed by dicts. Executions are kept as plain dicts so
    later mutation of the live record never leaks into a saved snapshot."""

    def __init__(self) -> None:
        self.workflows: Dict[str, WorkflowDefinition] = {}
        self.templates: Dict[str, WorkflowTemplate] = {}
        self.executions: Dict[str, dict] = {}

    async def save_workflow_definition(self, workflow: WorkflowDefinition) -> None:
        self.workflows[workflow.id] = workflow

    async def delete_workflow_definition(self, workflow_id: str) -> None:
        self.workflows.pop(workflow_id, None)

    async def save_template(self, template: WorkflowTemplate) -> None:
        self.templates[template.id] = template

    async def save_execution_state(self, execution: WorkflowExecution) -> None:
        self.executions[execution.id] = execution.to_dict()
        logger.debug("Saved execution %s (%s)", execution.id, execution.status.value)

    async def load_workflow_definitions(self) -> List[WorkflowDefinition]:
        return list(self.workflows.values())

    async def load_templates(self) -> List[WorkflowTemplate]:
        return list(self.templates.values())

    async def load_scheduled_executions(self) -> List[WorkflowExecution]:
        scheduled = (ExecutionStatus.PENDING.value, ExecutionStatus.PAUSED.value)
        return [
            WorkflowExecution.from_dict(snapshot)
            for snapshot in self.executions.values()
            if snapshot["status"] in scheduled
        ]
