"""HTTP API for workflow definitions, executions and templates."""
from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, Depends, Query, status
from pydantic import BaseModel, Field

from fleet.api.routes import http_error
from fleet.core.errors import OrchestratorError
from fleet.core.models import AgentPriority
from fleet.runtime import get_engine
from fleet.workflow.engine import WorkflowEngine
from fleet.workflow.models import WorkflowExecution

router = APIRouter(prefix="/workflows", tags=["workflows"])
executions_router = APIRouter(prefix="/executions", tags=["workflows"])
templates_router = APIRouter(prefix="/templates", tags=["workflows"])


class ExecuteRequest(BaseModel):
    input: Any = None
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    correlation_id: Optional[str] = None
    priority: AgentPriority = AgentPriority.MEDIUM

    def context(self) -> Dict[str, Any]:
        return self.model_dump(exclude={"input"})


class TemplateExecuteRequest(ExecuteRequest):
    parameters: Dict[str, Any] = Field(default_factory=dict)

    def context(self) -> Dict[str, Any]:
        return self.model_dump(exclude={"input", "parameters"})


class ExecutionAccepted(BaseModel):
    execution_id: str
    workflow_id: str
    status: str
    parent_execution_id: Optional[str] = None

    @classmethod
    def from_execution(cls, execution: WorkflowExecution) -> "ExecutionAccepted":
        return cls(
            execution_id=execution.id,
            workflow_id=execution.workflow_id,
            status=execution.status.value,
            parent_execution_id=execution.parent_execution_id,
        )


# ---------------------------------------------------------------------- definitions


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_workflow(
    definition: Dict[str, Any] = Body(...),
    engine: WorkflowEngine = Depends(get_engine),
) -> Dict[str, Any]:
    try:
        return (await engine.create_workflow(definition)).to_dict()
    except OrchestratorError as exc:
        raise http_error(exc) from exc


@router.get("")
async def list_workflows(engine: WorkflowEngine = Depends(get_engine)) -> List[Dict[str, Any]]:
    return [workflow.to_dict() for workflow in engine.list_workflows()]


@router.get("/{workflow_id}")
async def get_workflow(workflow_id: str, engine: WorkflowEngine = Depends(get_engine)) -> Dict[str, Any]:
    try:
        return engine.get_workflow(workflow_id).to_dict()
    except OrchestratorError as exc:
        raise http_error(exc) from exc


@router.put("/{workflow_id}")
async def update_workflow(
    workflow_id: str,
    definition: Dict[str, Any] = Body(...),
    engine: WorkflowEngine = Depends(get_engine),
) -> Dict[str, Any]:
    try:
        return (await engine.update_workflow(workflow_id, definition)).to_dict()
    except OrchestratorError as exc:
        raise http_error(exc) from exc


@router.delete("/{workflow_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_workflow(workflow_id: str, engine: WorkflowEngine = Depends(get_engine)) -> None:
    try:
        await engine.delete_workflow(workflow_id)
    except OrchestratorError as exc:
        raise http_error(exc) from exc


@router.post("/{workflow_id}/execute", response_model=ExecutionAccepted, status_code=status.HTTP_202_ACCEPTED)
async def execute_workflow(
    workflow_id: str,
    request: ExecuteRequest,
    engine: WorkflowEngine = Depends(get_engine),
) -> ExecutionAccepted:
    try:
        execution = await engine.execute_workflow(workflow_id, request.input, **request.context())
    except OrchestratorError as exc:
        raise http_error(exc) from exc
    return ExecutionAccepted.from_execution(execution)


@router.get("/{workflow_id}/executions")
async def workflow_history(workflow_id: str, engine: WorkflowEngine = Depends(get_engine)) -> List[Dict[str, Any]]:
    return engine.get_workflow_history(workflow_id)


# ---------------------------------------------------------------------- executions


@executions_router.get("")
async def execution_history(
    limit: int = Query(default=50, ge=1, le=1000),
    offset: int = Query(default=0, ge=0),
    engine: WorkflowEngine = Depends(get_engine),
) -> Dict[str, Any]:
    return engine.get_execution_history(limit, offset)


@executions_router.get("/{execution_id}")
async def execution_status(execution_id: str, engine: WorkflowEngine = Depends(get_engine)) -> Dict[str, Any]:
    try:
        return engine.get_workflow_status(execution_id)
    except OrchestratorError as exc:
        raise http_error(exc) from exc


@executions_router.post("/{execution_id}/pause", response_model=ExecutionAccepted)
async def pause_execution(execution_id: str, engine: WorkflowEngine = Depends(get_engine)) -> ExecutionAccepted:
    try:
        return ExecutionAccepted.from_execution(await engine.pause_workflow(execution_id))
    except OrchestratorError as exc:
        raise http_error(exc) from exc


@executions_router.post("/{execution_id}/resume", response_model=ExecutionAccepted)
async def resume_execution(execution_id: str, engine: WorkflowEngine = Depends(get_engine)) -> ExecutionAccepted:
    try:
        return ExecutionAccepted.from_execution(await engine.resume_workflow(execution_id))
    except OrchestratorError as exc:
        raise http_error(exc) from exc


@executions_router.post("/{execution_id}/cancel", response_model=ExecutionAccepted)
async def cancel_execution(execution_id: str, engine: WorkflowEngine = Depends(get_engine)) -> ExecutionAccepted:
    try:
        return ExecutionAccepted.from_execution(await engine.cancel_workflow(execution_id))
    except OrchestratorError as exc:
        raise http_error(exc) from exc


@executions_router.post(
    "/{execution_id}/steps/{step_id}/retry",
    response_model=ExecutionAccepted,
    status_code=status.HTTP_202_ACCEPTED,
)
async def retry_step(
    execution_id: str,
    step_id: str,
    engine: WorkflowEngine = Depends(get_engine),
) -> ExecutionAccepted:
    try:
        return ExecutionAccepted.from_execution(await engine.retry_failed_step(execution_id, step_id))
    except OrchestratorError as exc:
        raise http_error(exc) from exc


# ---------------------------------------------------------------------- templates


@templates_router.post("", status_code=status.HTTP_201_CREATED)
async def create_template(
    template: Dict[str, Any] = Body(...),
    engine: WorkflowEngine = Depends(get_engine),
) -> Dict[str, Any]:
    try:
        return (await engine.create_template(template)).to_dict()
    except OrchestratorError as exc:
        raise http_error(exc) from exc


@templates_router.get("")
async def list_templates(engine: WorkflowEngine = Depends(get_engine)) -> List[Dict[str, Any]]:
    return [template.to_dict() for template in engine.list_templates()]


@templates_router.post(
    "/{template_id}/execute",
    response_model=ExecutionAccepted,
    status_code=status.HTTP_202_ACCEPTED,
)
async def execute_template(
    template_id: str,
    request: TemplateExecuteRequest,
    engine: WorkflowEngine = Depends(get_engine),
) -> ExecutionAccepted:
    try:
        execution = await engine.execute_template(
            template_id, request.parameters, request.input, **request.context()
        )
    except OrchestratorError as exc:
        raise http_error(exc) from exc
    return ExecutionAccepted.from_execution(execution)
