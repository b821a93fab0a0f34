"""Agent behavior exposing the workflow engine through the task interface."""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from fleet.agents.base import AgentBehavior
from fleet.core.models import AgentTask, Capability, CheckStatus, HealthCheck
from fleet.workflow.engine import WorkflowEngine

logger = logging.getLogger(__name__)


class _Payload(BaseModel):
    # Accept both snake_case and the camelCase keys used by API clients.
    model_config = ConfigDict(populate_by_name=True)


class ExecuteWorkflowPayload(_Payload):
    workflow_id: Optional[str] = Field(default=None, alias="workflowId")
    workflow: Optional[Dict[str, Any]] = None
    input: Any = None

    @model_validator(mode="after")
    def _needs_workflow(self) -> "ExecuteWorkflowPayload":
        if not self.workflow_id and not self.workflow:
            raise ValueError("workflow_id or workflow is required")
        return self


class ExecutionPayload(_Payload):
    execution_id: str = Field(alias="executionId", min_length=1)


class WorkflowBodyPayload(_Payload):
    workflow_id: Optional[str] = Field(default=None, alias="workflowId")
    workflow: Dict[str, Any]


class WorkflowIdPayload(_Payload):
    workflow_id: str = Field(alias="workflowId", min_length=1)


class HistoryPayload(_Payload):
    limit: int = Field(default=50, ge=1, le=1000)
    offset: int = Field(default=0, ge=0)


class RetryStepPayload(_Payload):
    execution_id: str = Field(alias="executionId", min_length=1)
    step_id: str = Field(alias="stepId", min_length=1)


class TemplateBodyPayload(_Payload):
    template: Dict[str, Any]


class ExecuteTemplatePayload(_Payload):
    template_id: str = Field(alias="templateId", min_length=1)
    parameters: Dict[str, Any] = Field(default_factory=dict)
    input: Any = None


class WorkflowCoordinatorAgent(AgentBehavior):
    """Creates, runs and manages workflows on behalf of other agents and the API."""

    payload_schemas = {
        "execute-workflow": ExecuteWorkflowPayload,
        "pause-workflow": ExecutionPayload,
        "resume-workflow": ExecutionPayload,
        "cancel-workflow": ExecutionPayload,
        "get-workflow-status": ExecutionPayload,
        "create-workflow": WorkflowBodyPayload,
        "update-workflow": WorkflowBodyPayload,
        "delete-workflow": WorkflowIdPayload,
        "get-execution-history": HistoryPayload,
        "retry-failed-step": RetryStepPayload,
        "create-template": TemplateBodyPayload,
        "execute-template": ExecuteTemplatePayload,
    }
    capabilities = (
        Capability(
            name="workflow-execution",
            description="Execute workflows with multiple steps",
            requirements=("agent registry access",),
            limitations=("limited by agent availability",),
        ),
        Capability(
            name="workflow-orchestration",
            description="Coordinate several agents within one workflow",
            requirements=("agent registry access",),
            limitations=("limited by agent capabilities",),
        ),
        Capability(name="workflow-management", description="Create, update and delete workflow definitions"),
    )

    def __init__(self, engine: WorkflowEngine) -> None:
        self.engine = engine

    async def on_start(self) -> None:
        await self.engine.start()

    async def on_stop(self) -> None:
        await self.engine.stop()

    async def execute(self, task: AgentTask) -> Any:
        payload = self.validate_payload(task)
        context = {
            "correlation_id": task.context.correlation_id,
            "session_id": task.context.session_id,
            "user_id": task.context.user_id,
            "priority": task.priority,
        }
        engine = self.engine

        if task.type == "execute-workflow":
            if payload.workflow_id:
                execution = await engine.execute_workflow(payload.workflow_id, payload.input, **context)
            else:
                execution = await engine.execute_inline(payload.workflow, payload.input, **context)
            return {"execution_id": execution.id, "workflow_id": execution.workflow_id, "status": execution.status.value}
        if task.type == "pause-workflow":
            execution = await engine.pause_workflow(payload.execution_id)
            return {"execution_id": execution.id, "status": execution.status.value}
        if task.type == "resume-workflow":
            execution = await engine.resume_workflow(payload.execution_id)
            return {"execution_id": execution.id, "status": execution.status.value}
        if task.type == "cancel-workflow":
            execution = await engine.cancel_workflow(payload.execution_id)
            return {"execution_id": execution.id, "status": execution.status.value}
        if task.type == "get-workflow-status":
            return engine.get_workflow_status(payload.execution_id)
        if task.type == "create-workflow":
            workflow = await engine.create_workflow(payload.workflow)
            return {"workflow_id": workflow.id, "workflow": workflow.to_dict()}
        if task.type == "update-workflow":
            workflow_id = payload.workflow_id or payload.workflow.get("id")
            workflow = await engine.update_workflow(workflow_id, payload.workflow)
            return {"workflow_id": workflow.id, "workflow": workflow.to_dict()}
        if task.type == "delete-workflow":
            await engine.delete_workflow(payload.workflow_id)
            return {"workflow_id": payload.workflow_id, "deleted": True}
        if task.type == "get-execution-history":
            return engine.get_execution_history(payload.limit, payload.offset)
        if task.type == "retry-failed-step":
            execution = await engine.retry_failed_step(payload.execution_id, payload.step_id)
            return {
                "execution_id": execution.id,
                "parent_execution_id": execution.parent_execution_id,
                "status": execution.status.value,
            }
        if task.type == "create-template":
            template = await engine.create_template(payload.template)
            return {"template_id": template.id, "template": template.to_dict()}
        # execute-template
        execution = await engine.execute_template(payload.template_id, payload.parameters, payload.input, **context)
        return {
            "execution_id": execution.id,
            "template_id": payload.template_id,
            "workflow_id": execution.workflow_id,
            "status": execution.status.value,
        }

    async def custom_metrics(self) -> Dict[str, float]:
        return self.engine.metrics()

    async def health_checks(self) -> List[HealthCheck]:
        if self.engine.running:
            return [HealthCheck(name="workflow-engine", status=CheckStatus.PASS, message="Dispatcher running")]
        return [HealthCheck(name="workflow-engine", status=CheckStatus.WARN, message="Dispatcher idle")]
