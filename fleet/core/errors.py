"""Exception taxonomy shared by the registry, workers, queues and workflow engine."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fleet.core.models import AgentErrorInfo, EventSeverity


class OrchestratorError(Exception):
    """Base exception for every failure raised by the orchestration core."""

    code = "ORCHESTRATOR_ERROR"
    retryable = False
    severity = EventSeverity.ERROR
    status_code = 500

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        retryable: Optional[bool] = None,
        severity: Optional[EventSeverity] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if retryable is not None:
            self.retryable = retryable
        if severity is not None:
            self.severity = severity
        self.details: Dict[str, Any] = details or {}
        self.timestamp = datetime.now(timezone.utc)

    def to_info(self) -> AgentErrorInfo:
        """Freeze the error into the record attached to tasks and steps."""
        return AgentErrorInfo(
            code=self.code,
            message=self.message,
            retryable=self.retryable,
            severity=self.severity,
            timestamp=self.timestamp,
            details=dict(self.details),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.__class__.__name__,
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
            "details": self.details,
        }


class ValidationError(OrchestratorError):
    """Malformed input: task, config or workflow definition."""

    code = "VALIDATION_ERROR"
    status_code = 422

    def __init__(self, message: str, field: Optional[str] = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.field = field


class NotFoundError(OrchestratorError):
    """Unknown agent, task, workflow, execution or step id."""

    code = "NOT_FOUND"
    status_code = 404

    def __init__(self, resource: str, identifier: str, **kwargs: Any) -> None:
        super().__init__(f"{resource} not found: {identifier}", **kwargs)
        self.resource = resource
        self.identifier = identifier


class AgentNotFoundError(NotFoundError):
    code = "AGENT_NOT_FOUND"

    def __init__(self, agent_id: str, **kwargs: Any) -> None:
        super().__init__("Agent", agent_id, **kwargs)


class WorkflowNotFoundError(NotFoundError):
    code = "WORKFLOW_NOT_FOUND"

    def __init__(self, workflow_id: str, **kwargs: Any) -> None:
        super().__init__("Workflow", workflow_id, **kwargs)


class ExecutionNotFoundError(NotFoundError):
    code = "EXECUTION_NOT_FOUND"

    def __init__(self, execution_id: str, **kwargs: Any) -> None:
        super().__init__("Execution", execution_id, **kwargs)


class DuplicateIdError(OrchestratorError):
    """An id that must be unique is already taken."""

    code = "DUPLICATE_ID"
    status_code = 409

    def __init__(self, resource: str, identifier: str, **kwargs: Any) -> None:
        super().__init__(f"{resource} already registered: {identifier}", **kwargs)
        self.resource = resource
        self.identifier = identifier


class CapabilityMismatchError(OrchestratorError):
    """The agent cannot handle the task type it was given."""

    code = "CAPABILITY_MISMATCH"
    status_code = 400

    def __init__(self, agent_id: str, task_type: str, **kwargs: Any) -> None:
        super().__init__(f"Agent {agent_id} cannot handle task type: {task_type}", **kwargs)
        self.agent_id = agent_id
        self.task_type = task_type


class InvalidStateError(OrchestratorError):
    """The requested transition is not allowed from the current state."""

    code = "INVALID_STATE"
    status_code = 409


class AgentError(OrchestratorError):
    """Wraps a failure raised while an agent executed a task."""

    code = "AGENT_ERROR"

    @classmethod
    def wrap(cls, exc: BaseException, *, retryable: bool = True) -> "AgentError":
        """Orchestrator errors keep their own flags; anything else is treated as transient."""
        if isinstance(exc, AgentError):
            return exc
        if isinstance(exc, OrchestratorError):
            wrapped = cls(
                exc.message,
                code=exc.code,
                retryable=exc.retryable,
                severity=exc.severity,
                details=exc.details,
            )
        else:
            wrapped = cls(
                str(exc) or exc.__class__.__name__,
                code=exc.__class__.__name__,
                retryable=retryable,
            )
        wrapped.__cause__ = exc
        return wrapped


class OperationTimeoutError(OrchestratorError):
    """A drain, task or execution time budget was exceeded."""

    code = "TIMEOUT"
    retryable = True
    status_code = 504


class ConcurrencyLimitReached(OrchestratorError):
    """Soft signal: the work was queued instead of started."""

    code = "CONCURRENCY_LIMIT_REACHED"
    retryable = True
    severity = EventSeverity.WARN
    status_code = 429


class QueueFullError(OrchestratorError):
    code = "QUEUE_FULL"
    retryable = True
    status_code = 429
