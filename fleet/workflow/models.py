"""Workflow definitions, executions and templates."""
from __future__ import annotations

import copy
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Sequence, Tuple

from fleet.core.errors import InvalidStateError, NotFoundError, ValidationError
from fleet.core.models import AgentErrorInfo, AgentPriority, EventSeverity, RetryPolicy, new_id, utcnow


def _pick(data: Mapping[str, Any], *keys: str, default: Any = None) -> Any:
    """First present key wins; accepts snake_case and camelCase spellings."""
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return default


class StepType(str, Enum):
    AGENT = "agent"
    CONDITION = "condition"
    PARALLEL = "parallel"
    DELAY = "delay"
    WEBHOOK = "webhook"


class ConditionOperator(str, Enum):
    EQ = "eq"
    NE = "ne"
    GT = "gt"
    LT = "lt"
    GTE = "gte"
    LTE = "lte"
    IN = "in"
    CONTAINS = "contains"


class LogicalOperator(str, Enum):
    AND = "and"
    OR = "or"


class ExecutionStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES: FrozenSet[ExecutionStatus] = frozenset(
    {ExecutionStatus.COMPLETED, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED}
)

EXECUTION_TRANSITIONS: Dict[ExecutionStatus, FrozenSet[ExecutionStatus]] = {
    ExecutionStatus.PENDING: frozenset(
        {ExecutionStatus.RUNNING, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED}
    ),
    ExecutionStatus.RUNNING: frozenset(
        {
            ExecutionStatus.PAUSED,
            ExecutionStatus.COMPLETED,
            ExecutionStatus.FAILED,
            ExecutionStatus.CANCELLED,
        }
    ),
    ExecutionStatus.PAUSED: frozenset(
        {ExecutionStatus.RUNNING, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED}
    ),
    ExecutionStatus.COMPLETED: frozenset(),
    ExecutionStatus.FAILED: frozenset(),
    ExecutionStatus.CANCELLED: frozenset(),
}


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class WorkflowCondition:
    field: str
    operator: ConditionOperator
    value: Any = None
    logical_operator: LogicalOperator = LogicalOperator.AND

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "WorkflowCondition":
        if isinstance(data, WorkflowCondition):
            return data
        try:
            return cls(
                field=data["field"],
                operator=ConditionOperator(_pick(data, "operator", "op")),
                value=data.get("value"),
                logical_operator=LogicalOperator(
                    _pick(data, "logical_operator", "logicalOperator", default="and")
                ),
            )
        except (KeyError, ValueError) as exc:
            raise ValidationError(f"Invalid condition: {data!r}", field="conditions") from exc

    def to_dict(self) -> Dict[str, Any]:
        return {
            "field": self.field,
            "operator": self.operator.value,
            "value": copy.deepcopy(self.value),
            "logical_operator": self.logical_operator.value,
        }


@dataclass(frozen=True)
class WorkflowStep:
    """One node of the workflow graph. Edges are step ids."""

    id: str
    name: str = ""
    type: StepType = StepType.AGENT
    agent_id: Optional[str] = None
    config: Mapping[str, Any] = field(default_factory=dict)
    dependencies: Tuple[str, ...] = ()
    on_success: Tuple[str, ...] = ()
    on_failure: Tuple[str, ...] = ()
    retry: Optional[RetryPolicy] = None
    conditions: Tuple[WorkflowCondition, ...] = ()

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "WorkflowStep":
        if isinstance(data, WorkflowStep):
            return data
        if not data.get("id"):
            raise ValidationError("Workflow step requires an id", field="steps")
        try:
            step_type = StepType(data.get("type", "agent"))
        except ValueError as exc:
            raise ValidationError(f"Unsupported step type: {data.get('type')}", field="type") from exc
        retry = _pick(data, "retry")
        return cls(
            id=data["id"],
            name=data.get("name") or data["id"],
            type=step_type,
            agent_id=_pick(data, "agent_id", "agentId"),
            config=dict(data.get("config") or {}),
            dependencies=tuple(data.get("dependencies") or ()),
            on_success=tuple(_pick(data, "on_success", "onSuccess", default=())),
            on_failure=tuple(_pick(data, "on_failure", "onFailure", default=())),
            retry=retry if isinstance(retry, RetryPolicy) or retry is None else RetryPolicy.from_dict(retry),
            conditions=tuple(WorkflowCondition.from_dict(item) for item in data.get("conditions") or ()),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type.value,
            "agent_id": self.agent_id,
            "config": copy.deepcopy(dict(self.config)),
            "dependencies": list(self.dependencies),
            "on_success": list(self.on_success),
            "on_failure": list(self.on_failure),
            "retry": self.retry.to_dict() if self.retry else None,
            "conditions": [condition.to_dict() for condition in self.conditions],
        }


@dataclass(frozen=True)
class WorkflowTrigger:
    type: str = "manual"
    config: Mapping[str, Any] = field(default_factory=dict)
    enabled: bool = True

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "WorkflowTrigger":
        if isinstance(data, WorkflowTrigger):
            return data
        trigger_type = data.get("type", "manual")
        if trigger_type not in ("schedule", "webhook", "event", "manual"):
            raise ValidationError(f"Unsupported trigger type: {trigger_type}", field="triggers")
        return cls(type=trigger_type, config=dict(data.get("config") or {}), enabled=data.get("enabled", True))

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "config": copy.deepcopy(dict(self.config)), "enabled": self.enabled}


@dataclass(frozen=True)
class WorkflowSettings:
    max_execution_time_ms: Optional[float] = None
    max_retries: int = 3
    enable_logging: bool = True
    enable_metrics: bool = True
    notify_on_success: bool = False
    notify_on_failure: bool = True
    notification_channels: Tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "WorkflowSettings":
        if isinstance(data, WorkflowSettings):
            return data
        data = data or {}
        notifications = _pick(data, "notification_settings", "notificationSettings", default={})
        return cls(
            max_execution_time_ms=_pick(data, "max_execution_time_ms", "maxExecutionTime"),
            max_retries=int(_pick(data, "max_retries", "maxRetries", default=3)),
            enable_logging=bool(_pick(data, "enable_logging", "enableLogging", default=True)),
            enable_metrics=bool(_pick(data, "enable_metrics", "enableMetrics", default=True)),
            notify_on_success=bool(_pick(notifications, "on_success", "onSuccess", default=False)),
            notify_on_failure=bool(_pick(notifications, "on_failure", "onFailure", default=True)),
            notification_channels=tuple(notifications.get("channels") or ()),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "max_execution_time_ms": self.max_execution_time_ms,
            "max_retries": self.max_retries,
            "enable_logging": self.enable_logging,
            "enable_metrics": self.enable_metrics,
            "notification_settings": {
                "on_success": self.notify_on_success,
                "on_failure": self.notify_on_failure,
                "channels": list(self.notification_channels),
            },
        }


@dataclass(frozen=True)
class WorkflowDefinition:
    """Immutable workflow graph. Build changed copies with ``dataclasses.replace``."""

    id: str
    name: str
    description: str = ""
    version: str = "1.0.0"
    steps: Tuple[WorkflowStep, ...] = ()
    triggers: Tuple[WorkflowTrigger, ...] = ()
    variables: Mapping[str, Any] = field(default_factory=dict)
    settings: WorkflowSettings = field(default_factory=WorkflowSettings)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "WorkflowDefinition":
        if isinstance(data, WorkflowDefinition):
            return data
        if not data.get("name"):
            raise ValidationError("Workflow requires a name", field="name")
        return cls(
            id=data.get("id") or "",
            name=data["name"],
            description=data.get("description", ""),
            version=data.get("version", "1.0.0"),
            steps=tuple(WorkflowStep.from_dict(step) for step in data.get("steps") or ()),
            triggers=tuple(WorkflowTrigger.from_dict(trigger) for trigger in data.get("triggers") or ()),
            variables=dict(data.get("variables") or {}),
            settings=WorkflowSettings.from_dict(data.get("settings")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "version": self.version,
            "steps": [step.to_dict() for step in self.steps],
            "triggers": [trigger.to_dict() for trigger in self.triggers],
            "variables": copy.deepcopy(dict(self.variables)),
            "settings": self.settings.to_dict(),
        }

    def with_id(self, workflow_id: str) -> "WorkflowDefinition":
        return replace(self, id=workflow_id)

    def step(self, step_id: str) -> Optional[WorkflowStep]:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    def all_steps(self) -> List[WorkflowStep]:
        """Top-level steps followed by the sub-steps embedded in parallel steps."""
        found = list(self.steps)
        for parent in self.steps:
            if parent.type is StepType.PARALLEL:
                found.extend(steps_from_config(parent.config.get("steps") or ()))
        return found

    def find_step(self, step_id: str) -> WorkflowStep:
        """Like ``step`` but also searches sub-steps embedded in parallel steps."""
        for step in self.all_steps():
            if step.id == step_id:
                return step
        raise NotFoundError("Step", step_id)

    def root_steps(self) -> List[WorkflowStep]:
        """Steps no other step points at, in declaration order."""
        targets = set()
        for step in self.steps:
            targets.update(step.on_success)
            targets.update(step.on_failure)
        return [step for step in self.steps if step.id not in targets]

    def validate(self) -> None:
        if not self.steps:
            raise ValidationError(f"Workflow {self.name} has no steps", field="steps")
        seen = set()
        for step in self.steps:
            if step.id in seen:
                raise ValidationError(f"Duplicate step id: {step.id}", field="steps")
            seen.add(step.id)
        for step in self.steps:
            _validate_step(step, seen)
            if step.type is StepType.PARALLEL:
                for sub in steps_from_config(step.config.get("steps") or ()):
                    _validate_step(sub, seen)
        if not self.root_steps():
            raise ValidationError(f"Workflow {self.name} has no root step", field="steps")


def _validate_step(step: WorkflowStep, known: set) -> None:
    if step.type is StepType.AGENT and not step.agent_id:
        raise ValidationError(f"Agent step {step.id} requires an agent id", field="agent_id")
    if step.type is StepType.WEBHOOK and not step.config.get("url"):
        raise ValidationError(f"Webhook step {step.id} requires a url", field="config")
    if step.type is StepType.PARALLEL and not step.config.get("steps") and not step.on_success:
        raise ValidationError(f"Parallel step {step.id} has nothing to run", field="config")
    for target in step.on_success + step.on_failure:
        if target not in known:
            raise ValidationError(f"Step {step.id} points at unknown step {target}", field="steps")


@dataclass(slots=True)
class StepExecution:
    """Progress of one step within one execution. Identity is (execution_id, step_id)."""

    step_id: str
    execution_id: str
    status: StepStatus = StepStatus.PENDING
    attempt: int = 0
    retry_count: int = 0
    agent_id: Optional[str] = None
    task_id: Optional[str] = None
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    duration_ms: Optional[float] = None
    output: Any = None
    error: Optional[AgentErrorInfo] = None
    errors: List[AgentErrorInfo] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "step_id": self.step_id,
            "status": self.status.value,
            "attempt": self.attempt,
            "retry_count": self.retry_count,
            "agent_id": self.agent_id,
            "task_id": self.task_id,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
            "duration_ms": self.duration_ms,
            "error": self.error.message if self.error else None,
        }


@dataclass(slots=True)
class WorkflowExecution:
    """Runtime record of one run of a workflow."""

    id: str
    workflow_id: str
    status: ExecutionStatus = ExecutionStatus.PENDING
    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    duration_ms: Optional[float] = None
    current_step: Optional[str] = None
    completed_steps: List[str] = field(default_factory=list)
    failed_steps: List[str] = field(default_factory=list)
    step_results: Dict[str, Any] = field(default_factory=dict)
    step_errors: Dict[str, AgentErrorInfo] = field(default_factory=dict)
    variables: Dict[str, Any] = field(default_factory=dict)
    retry_count: int = 0
    max_retries: int = 3
    input: Any = None
    output: Any = None
    correlation_id: str = field(default_factory=new_id)
    session_id: str = field(default_factory=new_id)
    user_id: Optional[str] = None
    parent_execution_id: Optional[str] = None
    priority: AgentPriority = AgentPriority.MEDIUM
    environment: str = "development"
    last_error: Optional[AgentErrorInfo] = None
    # Step ids still to walk when a paused execution resumes.
    resume_steps: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.status.terminal

    def transition(self, status: ExecutionStatus) -> None:
        if status not in EXECUTION_TRANSITIONS[self.status]:
            raise InvalidStateError(
                f"Execution {self.id} cannot move from {self.status.value} to {status.value}",
                details={"execution_id": self.id, "from": self.status.value, "to": status.value},
            )
        self.status = status

    def summary(self) -> Dict[str, Any]:
        return {
            "execution_id": self.id,
            "workflow_id": self.workflow_id,
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
            "duration_ms": self.duration_ms,
            "completed_steps": len(self.completed_steps),
            "failed_steps": len(self.failed_steps),
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "workflow_id": self.workflow_id,
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
            "duration_ms": self.duration_ms,
            "current_step": self.current_step,
            "completed_steps": list(self.completed_steps),
            "failed_steps": list(self.failed_steps),
            "step_results": copy.deepcopy(self.step_results),
            "step_errors": {key: info.to_dict() for key, info in self.step_errors.items()},
            "variables": copy.deepcopy(self.variables),
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "input": copy.deepcopy(self.input),
            "output": copy.deepcopy(self.output),
            "correlation_id": self.correlation_id,
            "session_id": self.session_id,
            "user_id": self.user_id,
            "parent_execution_id": self.parent_execution_id,
            "priority": int(self.priority),
            "environment": self.environment,
            "last_error": self.last_error.to_dict() if self.last_error else None,
            "resume_steps": list(self.resume_steps),
            "metadata": copy.deepcopy(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "WorkflowExecution":
        def when(key: str) -> Optional[datetime]:
            value = data.get(key)
            return datetime.fromisoformat(value) if value else None

        return cls(
            id=data["id"],
            workflow_id=data["workflow_id"],
            status=ExecutionStatus(data.get("status", "pending")),
            created_at=when("created_at") or utcnow(),
            started_at=when("started_at"),
            ended_at=when("ended_at"),
            duration_ms=data.get("duration_ms"),
            current_step=data.get("current_step"),
            completed_steps=list(data.get("completed_steps") or ()),
            failed_steps=list(data.get("failed_steps") or ()),
            step_results=copy.deepcopy(dict(data.get("step_results") or {})),
            step_errors={
                key: _error_info(value) for key, value in (data.get("step_errors") or {}).items()
            },
            variables=copy.deepcopy(dict(data.get("variables") or {})),
            retry_count=data.get("retry_count", 0),
            max_retries=data.get("max_retries", 3),
            input=copy.deepcopy(data.get("input")),
            output=copy.deepcopy(data.get("output")),
            correlation_id=data.get("correlation_id") or new_id(),
            session_id=data.get("session_id") or new_id(),
            user_id=data.get("user_id"),
            parent_execution_id=data.get("parent_execution_id"),
            priority=AgentPriority(data.get("priority", AgentPriority.MEDIUM)),
            environment=data.get("environment", "development"),
            last_error=_error_info(data["last_error"]) if data.get("last_error") else None,
            resume_steps=list(data.get("resume_steps") or ()),
            metadata=copy.deepcopy(dict(data.get("metadata") or {})),
        )


def _error_info(data: Mapping[str, Any]) -> AgentErrorInfo:
    return AgentErrorInfo(
        code=data["code"],
        message=data["message"],
        retryable=data.get("retryable", False),
        severity=EventSeverity(data.get("severity", "error")),
        timestamp=datetime.fromisoformat(data["timestamp"]) if data.get("timestamp") else utcnow(),
        details=dict(data.get("details") or {}),
    )


@dataclass(frozen=True)
class TemplateParameter:
    name: str
    type: str = "string"
    required: bool = False
    default: Any = None
    description: str = ""

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "TemplateParameter":
        if isinstance(data, TemplateParameter):
            return data
        return cls(
            name=data["name"],
            type=data.get("type", "string"),
            required=bool(data.get("required", False)),
            default=data.get("default"),
            description=data.get("description", ""),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "type": self.type,
            "required": self.required,
            "default": self.default,
            "description": self.description,
        }


@dataclass(frozen=True)
class WorkflowTemplate:
    """Reusable workflow whose strings may carry ``{{param}}`` placeholders."""

    id: str
    name: str
    template: WorkflowDefinition
    description: str = ""
    category: str = "general"
    version: str = "1.0.0"
    parameters: Tuple[TemplateParameter, ...] = ()
    tags: Tuple[str, ...] = ()
    created_by: str = "system"
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "WorkflowTemplate":
        if isinstance(data, WorkflowTemplate):
            return data
        if not data.get("name") or not data.get("template"):
            raise ValidationError("Template requires a name and a workflow template", field="template")
        return cls(
            id=data.get("id") or "",
            name=data["name"],
            template=WorkflowDefinition.from_dict(data["template"]),
            description=data.get("description", ""),
            category=data.get("category", "general"),
            version=data.get("version", "1.0.0"),
            parameters=tuple(TemplateParameter.from_dict(item) for item in data.get("parameters") or ()),
            tags=tuple(data.get("tags") or ()),
            created_by=_pick(data, "created_by", "createdBy", default="system"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "category": self.category,
            "version": self.version,
            "template": self.template.to_dict(),
            "parameters": [parameter.to_dict() for parameter in self.parameters],
            "tags": list(self.tags),
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    def resolve_parameters(self, supplied: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
        """Apply defaults and reject missing required parameters."""
        values = dict(supplied or {})
        for parameter in self.parameters:
            if parameter.name in values:
                continue
            if parameter.required:
                raise ValidationError(
                    f"Template {self.name} requires parameter {parameter.name}", field=parameter.name
                )
            if parameter.default is not None:
                values[parameter.name] = parameter.default
        return values


def steps_from_config(items: Sequence[Any]) -> List[WorkflowStep]:
    return [WorkflowStep.from_dict(item) for item in items]
