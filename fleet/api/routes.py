"""HTTP API exposing agent registration, lifecycle and task submission."""
from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from fleet.agents.worker import Worker
from fleet.core.errors import AgentError, OrchestratorError
from fleet.core.models import AgentConfig, AgentPriority, AgentStatus, new_id
from fleet.orchestration.registry import AgentRegistry, capability_names
from fleet.runtime import build_worker, create_behavior, get_registry

router = APIRouter(prefix="/agents", tags=["agents"])
tasks_router = APIRouter(prefix="/tasks", tags=["tasks"])


def http_error(exc: OrchestratorError) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail=exc.to_dict())


class AgentCreateRequest(BaseModel):
    id: Optional[str] = Field(default=None, description="Agent id; generated when omitted")
    name: str = Field(..., description="Logical agent name")
    role: str = Field(..., description="Catalog role to instantiate")
    description: str = ""
    max_concurrent_tasks: int = Field(default=5, ge=1)
    retry_attempts: int = Field(default=3, ge=0)
    retry_delay_ms: int = Field(default=1000, ge=0)
    timeout_ms: int = Field(default=30000, gt=0)
    priority: AgentPriority = AgentPriority.MEDIUM
    tags: List[str] = Field(default_factory=list)
    capabilities: List[str] = Field(default_factory=list)
    settings: Dict[str, Any] = Field(default_factory=dict)
    start: bool = True


class AgentConfigUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    enabled: Optional[bool] = None
    max_concurrent_tasks: Optional[int] = Field(default=None, ge=1)
    retry_attempts: Optional[int] = Field(default=None, ge=0)
    retry_delay_ms: Optional[int] = Field(default=None, ge=0)
    timeout_ms: Optional[int] = Field(default=None, gt=0)
    tags: Optional[List[str]] = None
    settings: Optional[Dict[str, Any]] = None


class AgentResponse(BaseModel):
    agent_id: str
    name: str
    version: str
    status: str
    enabled: bool
    healthy: bool
    tags: List[str]
    capabilities: List[str]
    task_count: int

    @classmethod
    def from_worker(cls, worker: Worker) -> "AgentResponse":
        return cls(
            agent_id=worker.id,
            name=worker.name,
            version=worker.config.version,
            status=worker.status.value,
            enabled=worker.config.enabled,
            healthy=worker.healthy,
            tags=list(worker.config.tags),
            capabilities=list(capability_names(worker)),
            task_count=worker.current_task_count,
        )


class TaskSubmitRequest(BaseModel):
    type: str = Field(..., description="Task type the agent must handle")
    payload: Dict[str, Any] = Field(default_factory=dict)
    priority: AgentPriority = AgentPriority.MEDIUM


class TaskAccepted(BaseModel):
    task_id: str
    agent_id: str


@router.post("", response_model=AgentResponse, status_code=status.HTTP_201_CREATED)
async def create_agent(
    request: AgentCreateRequest,
    registry: AgentRegistry = Depends(get_registry),
) -> AgentResponse:
    try:
        config = AgentConfig(
            id=request.id or new_id(),
            name=request.name,
            description=request.description,
            max_concurrent_tasks=request.max_concurrent_tasks,
            retry_attempts=request.retry_attempts,
            retry_delay_ms=request.retry_delay_ms,
            timeout_ms=request.timeout_ms,
            priority=request.priority,
            tags=request.tags,
            capabilities=request.capabilities,
            settings=request.settings,
        )
        worker = build_worker(config, create_behavior(request.role, request.name))
        await registry.register(worker, metadata={"role": request.role})
        if request.start:
            await registry.start_agent(worker.id)
    except OrchestratorError as exc:
        raise http_error(exc) from exc
    return AgentResponse.from_worker(worker)


@router.get("", response_model=List[AgentResponse])
async def list_agents(
    tag: Optional[str] = None,
    capability: Optional[str] = None,
    agent_status: Optional[AgentStatus] = Query(default=None, alias="status"),
    registry: AgentRegistry = Depends(get_registry),
) -> List[AgentResponse]:
    workers = registry.find_agents(
        status=agent_status,
        tags=[tag] if tag else (),
        capabilities=[capability] if capability else (),
    )
    return [AgentResponse.from_worker(worker) for worker in workers]


@router.get("/discover")
async def discover_agents(registry: AgentRegistry = Depends(get_registry)) -> List[Dict[str, Any]]:
    return [
        {
            "id": item.id,
            "name": item.name,
            "version": item.version,
            "capabilities": list(item.capabilities),
            "tags": list(item.tags),
            "status": item.status.value,
        }
        for item in registry.discover_agents()
    ]


@router.get("/{agent_id}", response_model=AgentResponse)
async def get_agent(agent_id: str, registry: AgentRegistry = Depends(get_registry)) -> AgentResponse:
    try:
        return AgentResponse.from_worker(registry.require_agent(agent_id))
    except OrchestratorError as exc:
        raise http_error(exc) from exc


@router.delete("/{agent_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_agent(agent_id: str, registry: AgentRegistry = Depends(get_registry)) -> None:
    try:
        await registry.unregister(agent_id)
    except OrchestratorError as exc:
        raise http_error(exc) from exc


@router.post("/{agent_id}/start", response_model=AgentResponse)
async def start_agent(agent_id: str, registry: AgentRegistry = Depends(get_registry)) -> AgentResponse:
    try:
        await registry.start_agent(agent_id)
        return AgentResponse.from_worker(registry.require_agent(agent_id))
    except OrchestratorError as exc:
        raise http_error(exc) from exc


@router.post("/{agent_id}/stop", response_model=AgentResponse)
async def stop_agent(agent_id: str, registry: AgentRegistry = Depends(get_registry)) -> AgentResponse:
    try:
        await registry.stop_agent(agent_id)
        return AgentResponse.from_worker(registry.require_agent(agent_id))
    except OrchestratorError as exc:
        raise http_error(exc) from exc


@router.post("/{agent_id}/restart", response_model=AgentResponse)
async def restart_agent(agent_id: str, registry: AgentRegistry = Depends(get_registry)) -> AgentResponse:
    try:
        await registry.restart_agent(agent_id)
        return AgentResponse.from_worker(registry.require_agent(agent_id))
    except OrchestratorError as exc:
        raise http_error(exc) from exc


@router.patch("/{agent_id}/config")
async def update_agent_config(
    agent_id: str,
    request: AgentConfigUpdate,
    registry: AgentRegistry = Depends(get_registry),
) -> Dict[str, Any]:
    try:
        updated = await registry.update_agent_config(agent_id, **request.model_dump(exclude_none=True))
    except OrchestratorError as exc:
        raise http_error(exc) from exc
    return updated.to_dict()


@router.get("/{agent_id}/health")
async def agent_health(agent_id: str, registry: AgentRegistry = Depends(get_registry)) -> Any:
    try:
        return await registry.require_agent(agent_id).get_health()
    except OrchestratorError as exc:
        raise http_error(exc) from exc


@router.get("/{agent_id}/metrics")
async def agent_metrics(agent_id: str, registry: AgentRegistry = Depends(get_registry)) -> Any:
    try:
        return await registry.require_agent(agent_id).get_metrics()
    except OrchestratorError as exc:
        raise http_error(exc) from exc


@router.post("/{agent_id}/tasks", response_model=TaskAccepted, status_code=status.HTTP_202_ACCEPTED)
async def submit_task(
    agent_id: str,
    request: TaskSubmitRequest,
    registry: AgentRegistry = Depends(get_registry),
) -> TaskAccepted:
    try:
        task_id = await registry.submit_task(agent_id, request.type, request.payload, priority=request.priority)
    except OrchestratorError as exc:
        raise http_error(exc) from exc
    return TaskAccepted(task_id=task_id, agent_id=agent_id)


@tasks_router.get("/{task_id}")
async def get_task(task_id: str, registry: AgentRegistry = Depends(get_registry)) -> Dict[str, Any]:
    try:
        return registry.get_task_status(task_id).to_dict()
    except OrchestratorError as exc:
        raise http_error(exc) from exc


@tasks_router.get("/{task_id}/result")
async def wait_for_task(
    task_id: str,
    timeout: float = 30.0,
    registry: AgentRegistry = Depends(get_registry),
) -> Dict[str, Any]:
    """Block until the task finishes; a failed task is returned with its error."""
    try:
        task = await registry.wait_for_task(task_id, timeout=timeout)
    except AgentError:
        return registry.get_task_status(task_id).to_dict()
    except OrchestratorError as exc:
        raise http_error(exc) from exc
    return task.to_dict()


@tasks_router.post("/{task_id}/cancel")
async def cancel_task(task_id: str, registry: AgentRegistry = Depends(get_registry)) -> Dict[str, Any]:
    try:
        return (await registry.cancel_task(task_id)).to_dict()
    except OrchestratorError as exc:
        raise http_error(exc) from exc
