"""Core data models shared across orchestrator components."""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Any, Dict, List, Mapping, Optional, Tuple


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class AgentStatus(str, Enum):
    """Lifecycle states for an agent managed by the registry."""

    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    ERROR = "error"
    STOPPED = "stopped"


class AgentPriority(IntEnum):
    LOW = 1
    MEDIUM = 2
    HIGH = 3
    CRITICAL = 4


class TaskStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    RETRY = "retry"


class EventSeverity(str, Enum):
    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"
    CRITICAL = "critical"


class AgentEventType(str, Enum):
    # Lifecycle
    AGENT_REGISTERED = "agent.registered"
    AGENT_UNREGISTERED = "agent.unregistered"
    AGENT_STARTED = "agent.started"
    AGENT_STOPPED = "agent.stopped"
    AGENT_PAUSED = "agent.paused"
    AGENT_RESUMED = "agent.resumed"
    AGENT_ERROR = "agent.error"
    AGENT_HEALTH_CHECK = "agent.health_check"
    AGENT_HEARTBEAT_TIMEOUT = "agent.heartbeat_timeout"

    # Tasks
    TASK_CREATED = "task.created"
    TASK_STARTED = "task.started"
    TASK_COMPLETED = "task.completed"
    TASK_FAILED = "task.failed"
    TASK_RETRY = "task.retry"
    TASK_CANCELLED = "task.cancelled"
    TASK_TIMEOUT = "task.timeout"

    # Workflows
    WORKFLOW_QUEUED = "workflow.queued"
    WORKFLOW_STARTED = "workflow.started"
    WORKFLOW_PAUSED = "workflow.paused"
    WORKFLOW_RESUMED = "workflow.resumed"
    WORKFLOW_COMPLETED = "workflow.completed"
    WORKFLOW_FAILED = "workflow.failed"
    WORKFLOW_CANCELLED = "workflow.cancelled"
    STEP_STARTED = "workflow.step.started"
    STEP_COMPLETED = "workflow.step.completed"
    STEP_FAILED = "workflow.step.failed"
    STEP_SKIPPED = "workflow.step.skipped"
    STEP_RETRY = "workflow.step.retry"


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class CheckStatus(str, Enum):
    PASS = "pass"
    FAIL = "fail"
    WARN = "warn"


class BackoffType(str, Enum):
    FIXED = "fixed"
    LINEAR = "linear"
    EXPONENTIAL = "exponential"


@dataclass(frozen=True)
class Capability:
    """A named, versioned unit of functionality an agent declares."""

    name: str
    version: str = "1.0.0"
    description: str = ""
    input_schema: Mapping[str, Any] = field(default_factory=dict)
    output_schema: Mapping[str, Any] = field(default_factory=dict)
    requirements: Tuple[str, ...] = ()
    limitations: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "version": self.version,
            "description": self.description,
            "input_schema": dict(self.input_schema),
            "output_schema": dict(self.output_schema),
            "requirements": list(self.requirements),
            "limitations": list(self.limitations),
        }


@dataclass(frozen=True)
class AgentConfig:
    """Immutable configuration of one agent. Use ``updated`` to derive a changed copy."""

    id: str
    name: str
    version: str = "1.0.0"
    description: str = ""
    enabled: bool = True
    max_concurrent_tasks: int = 5
    retry_attempts: int = 3
    retry_delay_ms: int = 1000
    timeout_ms: int = 30000
    priority: AgentPriority = AgentPriority.MEDIUM
    tags: Tuple[str, ...] = ()
    capabilities: Tuple[str, ...] = ()
    dependencies: Tuple[str, ...] = ()
    settings: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        # Accept lists from callers while keeping the value immutable.
        for name in ("tags", "capabilities", "dependencies"):
            value = getattr(self, name)
            if not isinstance(value, tuple):
                object.__setattr__(self, name, tuple(value))

    def updated(self, **changes: Any) -> "AgentConfig":
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "version": self.version,
            "description": self.description,
            "enabled": self.enabled,
            "max_concurrent_tasks": self.max_concurrent_tasks,
            "retry_attempts": self.retry_attempts,
            "retry_delay_ms": self.retry_delay_ms,
            "timeout_ms": self.timeout_ms,
            "priority": int(self.priority),
            "tags": list(self.tags),
            "capabilities": list(self.capabilities),
            "dependencies": list(self.dependencies),
            "settings": dict(self.settings),
        }


@dataclass(slots=True)
class TaskContext:
    """Correlation data carried by every task."""

    correlation_id: str = field(default_factory=new_id)
    request_id: str = field(default_factory=new_id)
    source: str = "api"
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    workflow_id: Optional[str] = None
    parent_task_id: Optional[str] = None
    environment: str = "development"
    custom_data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "correlation_id": self.correlation_id,
            "request_id": self.request_id,
            "source": self.source,
            "user_id": self.user_id,
            "session_id": self.session_id,
            "workflow_id": self.workflow_id,
            "parent_task_id": self.parent_task_id,
            "environment": self.environment,
            "custom_data": dict(self.custom_data),
        }


@dataclass(slots=True)
class TaskMetadata:
    tags: List[str] = field(default_factory=list)
    labels: Dict[str, str] = field(default_factory=dict)
    estimated_duration_ms: Optional[float] = None
    actual_duration_ms: Optional[float] = None


@dataclass(frozen=True)
class AgentErrorInfo:
    """Error record attached to the task or step that produced it."""

    code: str
    message: str
    retryable: bool = False
    severity: EventSeverity = EventSeverity.ERROR
    timestamp: datetime = field(default_factory=utcnow)
    details: Mapping[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
            "severity": self.severity.value,
            "timestamp": self.timestamp.isoformat(),
            "details": dict(self.details),
        }


@dataclass(slots=True)
class AgentTask:
    """One discrete unit of work submitted to a specific agent."""

    id: str
    agent_id: str
    type: str
    payload: Dict[str, Any] = field(default_factory=dict)
    status: TaskStatus = TaskStatus.PENDING
    priority: AgentPriority = AgentPriority.MEDIUM
    context: TaskContext = field(default_factory=TaskContext)
    metadata: TaskMetadata = field(default_factory=TaskMetadata)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    scheduled_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    retry_count: int = 0
    max_retries: int = 0
    result: Any = None
    error: Optional[AgentErrorInfo] = None

    @classmethod
    def create(
        cls,
        agent_id: str,
        task_type: str,
        payload: Optional[Dict[str, Any]] = None,
        *,
        priority: AgentPriority = AgentPriority.MEDIUM,
        context: Optional[TaskContext] = None,
        max_retries: int = 0,
    ) -> "AgentTask":
        return cls(
            id=new_id(),
            agent_id=agent_id,
            type=task_type,
            payload=dict(payload or {}),
            priority=AgentPriority(priority),
            context=context or TaskContext(),
            max_retries=max_retries,
        )

    def set_status(self, status: TaskStatus) -> None:
        now = utcnow()
        self.status = status
        self.updated_at = now
        if status is TaskStatus.RUNNING:
            self.started_at = now
        elif status is TaskStatus.COMPLETED:
            self.completed_at = now
        elif status is TaskStatus.FAILED:
            self.failed_at = now

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "agent_id": self.agent_id,
            "type": self.type,
            "status": self.status.value,
            "priority": int(self.priority),
            "payload": self.payload,
            "context": self.context.to_dict(),
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "failed_at": self.failed_at.isoformat() if self.failed_at else None,
            "duration_ms": self.metadata.actual_duration_ms,
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "result": self.result,
            "error": self.error.to_dict() if self.error else None,
        }


@dataclass(slots=True)
class AgentEvent:
    """Structured notification emitted on every lifecycle and task transition."""

    agent_id: str
    type: AgentEventType
    data: Dict[str, Any] = field(default_factory=dict)
    source: str = ""
    severity: EventSeverity = EventSeverity.INFO
    correlation_id: Optional[str] = None
    id: str = field(default_factory=new_id)
    timestamp: datetime = field(default_factory=utcnow)


@dataclass(slots=True)
class HealthCheck:
    name: str
    status: CheckStatus
    message: str = ""
    duration_ms: float = 0.0
    timestamp: datetime = field(default_factory=utcnow)


@dataclass(slots=True)
class DependencyStatus:
    name: str
    type: str
    status: str
    response_time_ms: Optional[float] = None
    last_check: datetime = field(default_factory=utcnow)
    error_count: int = 0


@dataclass(slots=True)
class ResourceUsage:
    memory_used_bytes: int = 0
    memory_threshold_bytes: int = 0
    cpu_cores: int = 0

    @property
    def memory_percentage(self) -> float:
        if not self.memory_threshold_bytes:
            return 0.0
        return self.memory_used_bytes / self.memory_threshold_bytes * 100


@dataclass(slots=True)
class AgentHealth:
    agent_id: str
    status: HealthStatus
    uptime_seconds: float
    last_heartbeat: datetime
    checks: List[HealthCheck] = field(default_factory=list)
    resources: ResourceUsage = field(default_factory=ResourceUsage)
    dependencies: List[DependencyStatus] = field(default_factory=list)
    timestamp: datetime = field(default_factory=utcnow)


@dataclass(slots=True)
class AgentMetrics:
    agent_id: str
    status: AgentStatus
    tasks_processed: int = 0
    tasks_successful: int = 0
    tasks_failed: int = 0
    average_task_duration_ms: float = 0.0
    error_rate: float = 0.0
    throughput: float = 0.0
    queue_length: int = 0
    custom_metrics: Dict[str, float] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class RetryPolicy:
    """Delay-growth policy applied between retry attempts. Delays are milliseconds."""

    max_attempts: int = 3
    backoff_type: BackoffType = BackoffType.EXPONENTIAL
    initial_delay_ms: float = 1000
    max_delay_ms: float = 60000
    multiplier: float = 2.0

    def __post_init__(self) -> None:
        if not isinstance(self.backoff_type, BackoffType):
            object.__setattr__(self, "backoff_type", BackoffType(self.backoff_type))

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "RetryPolicy":
        """Build a policy from snake_case or camelCase keys."""

        def pick(*keys: str, default: Any) -> Any:
            for key in keys:
                if key in data and data[key] is not None:
                    return data[key]
            return default

        return cls(
            max_attempts=int(pick("max_attempts", "maxAttempts", default=3)),
            backoff_type=BackoffType(pick("backoff_type", "backoffType", default="exponential")),
            initial_delay_ms=float(pick("initial_delay_ms", "initial_delay", "initialDelay", default=1000)),
            max_delay_ms=float(pick("max_delay_ms", "max_delay", "maxDelay", default=60000)),
            multiplier=float(pick("multiplier", default=2.0)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "max_attempts": self.max_attempts,
            "backoff_type": self.backoff_type.value,
            "initial_delay_ms": self.initial_delay_ms,
            "max_delay_ms": self.max_delay_ms,
            "multiplier": self.multiplier,
        }
