"""Workflow execution engine.

Executions are queued and admitted by a single dispatcher task, which keeps
the number of running executions at or below ``max_concurrent_executions``.
Each admitted execution walks its step graph depth first along success and
failure edges. Retries are scheduled as separate tasks and joined by the run
before it finalizes.
"""
from __future__ import annotations

import asyncio
import copy
import logging
from collections import Counter, deque
from dataclasses import dataclass, field, replace
from typing import Any, Deque, Dict, List, Mapping, Optional, Sequence, Set, Tuple

import httpx

from fleet.core.backoff import calculate_delay
from fleet.core.clock import Clock, wait_with_timeout
from fleet.core.errors import (
    AgentError,
    ConcurrencyLimitReached,
    DuplicateIdError,
    ExecutionNotFoundError,
    InvalidStateError,
    NotFoundError,
    OperationTimeoutError,
    OrchestratorError,
    ValidationError,
    WorkflowNotFoundError,
)
from fleet.core.event_bus import EventBus
from fleet.core.models import (
    AgentErrorInfo,
    AgentEvent,
    AgentEventType,
    AgentPriority,
    AgentTask,
    EventSeverity,
    TaskContext,
    new_id,
)
from fleet.orchestration.registry import AgentRegistry
from fleet.workflow.conditions import evaluate_conditions
from fleet.workflow.interpolation import interpolate, substitute_parameters
from fleet.workflow.models import (
    ExecutionStatus,
    StepExecution,
    StepStatus,
    StepType,
    WorkflowCondition,
    WorkflowDefinition,
    WorkflowExecution,
    WorkflowStep,
    WorkflowTemplate,
    steps_from_config,
)
from fleet.workflow.store import NullWorkflowStore, WorkflowStore

logger = logging.getLogger(__name__)

_FINAL_EVENTS = {
    ExecutionStatus.COMPLETED: AgentEventType.WORKFLOW_COMPLETED,
    ExecutionStatus.FAILED: AgentEventType.WORKFLOW_FAILED,
    ExecutionStatus.CANCELLED: AgentEventType.WORKFLOW_CANCELLED,
}


class StepFailedError(AgentError):
    """A step failed with no failure edge and no retry budget left."""

    code = "STEP_FAILED"

    def __init__(self, step_id: str, info: AgentErrorInfo) -> None:
        super().__init__(
            f"Step {step_id} failed: {info.message}",
            details={**dict(info.details), "step_id": step_id, "cause": info.code},
        )
        self.step_id = step_id


class ExecutionTimeoutError(OperationTimeoutError):
    code = "EXECUTION_TIMEOUT"
    retryable = False


@dataclass(eq=False)
class _RunState:
    """Engine-side bookkeeping for one execution."""

    workflow: WorkflowDefinition
    done: asyncio.Event = field(default_factory=asyncio.Event)
    # Set on pause, cancel and finalization; wakes retries waiting out backoff.
    interrupt: asyncio.Event = field(default_factory=asyncio.Event)
    retries: Set["asyncio.Task[None]"] = field(default_factory=set)
    # Clock time at which each step waiting out a retry backoff becomes due.
    retry_due: Dict[str, float] = field(default_factory=dict)
    unrecovered: List[AgentErrorInfo] = field(default_factory=list)
    resuming: bool = False


class WorkflowEngine:
    def __init__(
        self,
        registry: AgentRegistry,
        *,
        bus: Optional[EventBus] = None,
        clock: Optional[Clock] = None,
        store: Optional[WorkflowStore] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        max_concurrent_executions: int = 10,
        environment: str = "development",
        name: str = "workflow-engine",
    ) -> None:
        self.registry = registry
        self.bus = bus or registry.bus
        self.clock = clock or registry.clock
        self.store = store or NullWorkflowStore()
        self.max_concurrent_executions = max_concurrent_executions
        self.environment = environment
        self.name = name
        self.current_executions = 0
        self._http = http_client
        self._owns_http = http_client is None
        self._workflows: Dict[str, WorkflowDefinition] = {}
        self._templates: Dict[str, WorkflowTemplate] = {}
        self._executions: Dict[str, WorkflowExecution] = {}
        self._states: Dict[str, _RunState] = {}
        self._step_records: Dict[Tuple[str, str], StepExecution] = {}
        self._pending: Deque[str] = deque()
        self._active: Dict[str, "asyncio.Task[None]"] = {}
        self._wakeup = asyncio.Event()
        self._dispatcher: Optional["asyncio.Task[None]"] = None
        self._started = False
        self._stopping = False

    # ------------------------------------------------------------------ lifecycle

    @property
    def running(self) -> bool:
        return self._dispatcher is not None and not self._dispatcher.done()

    async def start(self) -> None:
        """Load persisted state and start admitting executions."""
        if self._started:
            return
        for workflow in await self.store.load_workflow_definitions():
            self._workflows.setdefault(workflow.id, workflow)
        for template in await self.store.load_templates():
            self._templates.setdefault(template.id, template)
        for execution in await self.store.load_scheduled_executions():
            self._adopt(execution)
        self._started = True
        self._ensure_dispatcher()
        logger.info(
            "Workflow engine started",
            extra={"workflows": len(self._workflows), "queued": len(self._pending)},
        )

    async def stop(self) -> None:
        """Stop dispatching, pause running executions and let in-flight steps finish.

        Pending executions are saved, not started.
        """
        self._stopping = True
        try:
            if self._dispatcher is not None:
                self._dispatcher.cancel()
                try:
                    await self._dispatcher
                except asyncio.CancelledError:
                    pass
                self._dispatcher = None
            for execution in list(self._executions.values()):
                if execution.status is ExecutionStatus.RUNNING:
                    await self.pause_workflow(execution.id)
            if self._active:
                await asyncio.gather(*self._active.values(), return_exceptions=True)
            for execution_id in self._pending:
                await self.store.save_execution_state(self._executions[execution_id])
        finally:
            self._stopping = False
        if self._owns_http and self._http is not None:
            await self._http.aclose()
            self._http = None
        self._started = False
        logger.info("Workflow engine stopped")

    # ------------------------------------------------------------------ definitions

    async def create_workflow(self, definition: Any) -> WorkflowDefinition:
        workflow = WorkflowDefinition.from_dict(definition)
        if not workflow.id:
            workflow = workflow.with_id(new_id())
        elif workflow.id in self._workflows:
            raise DuplicateIdError("Workflow", workflow.id)
        workflow.validate()
        self._workflows[workflow.id] = workflow
        await self.store.save_workflow_definition(workflow)
        logger.info("Workflow created: %s (%s)", workflow.name, workflow.id)
        return workflow

    async def update_workflow(self, workflow_id: str, definition: Any) -> WorkflowDefinition:
        """Replace a definition. Executions already queued keep the old one."""
        self.get_workflow(workflow_id)
        workflow = WorkflowDefinition.from_dict(definition).with_id(workflow_id)
        workflow.validate()
        self._workflows[workflow_id] = workflow
        await self.store.save_workflow_definition(workflow)
        logger.info("Workflow updated: %s (%s)", workflow.name, workflow_id)
        return workflow

    async def delete_workflow(self, workflow_id: str) -> None:
        self.get_workflow(workflow_id)
        del self._workflows[workflow_id]
        await self.store.delete_workflow_definition(workflow_id)
        logger.info("Workflow deleted: %s", workflow_id)

    def get_workflow(self, workflow_id: str) -> WorkflowDefinition:
        workflow = self._workflows.get(workflow_id)
        if workflow is None:
            raise WorkflowNotFoundError(workflow_id)
        return workflow

    def list_workflows(self) -> List[WorkflowDefinition]:
        return list(self._workflows.values())

    # ------------------------------------------------------------------ templates

    async def create_template(self, template: Any) -> WorkflowTemplate:
        template = WorkflowTemplate.from_dict(template)
        if not template.id:
            template = replace(template, id=new_id())
        elif template.id in self._templates:
            raise DuplicateIdError("Template", template.id)
        template.template.validate()
        self._templates[template.id] = template
        await self.store.save_template(template)
        logger.info("Template created: %s (%s)", template.name, template.id)
        return template

    def get_template(self, template_id: str) -> WorkflowTemplate:
        template = self._templates.get(template_id)
        if template is None:
            raise NotFoundError("Template", template_id)
        return template

    def list_templates(self) -> List[WorkflowTemplate]:
        return list(self._templates.values())

    def instantiate_template(
        self, template_id: str, parameters: Optional[Mapping[str, Any]] = None
    ) -> WorkflowDefinition:
        """Build a fresh definition from a template; the template is left untouched."""
        template = self.get_template(template_id)
        data = substitute_parameters(template.template.to_dict(), template.resolve_parameters(parameters))
        data["id"] = new_id()
        workflow = WorkflowDefinition.from_dict(data)
        workflow.validate()
        return workflow

    async def execute_template(
        self,
        template_id: str,
        parameters: Optional[Mapping[str, Any]] = None,
        input: Any = None,
        **context: Any,
    ) -> WorkflowExecution:
        workflow = self.instantiate_template(template_id, parameters)
        execution = self._new_execution(workflow, input, **context)
        execution.metadata["template_id"] = template_id
        await self._submit(execution, workflow)
        return execution

    # ------------------------------------------------------------------ executions

    async def execute_workflow(self, workflow_id: str, input: Any = None, **context: Any) -> WorkflowExecution:
        """Queue a run of a stored workflow and return the pending execution."""
        workflow = self.get_workflow(workflow_id)
        execution = self._new_execution(workflow, input, **context)
        await self._submit(execution, workflow)
        return execution

    async def execute_inline(self, definition: Any, input: Any = None, **context: Any) -> WorkflowExecution:
        """Queue a run of a definition that is not stored in the engine."""
        workflow = WorkflowDefinition.from_dict(definition)
        if not workflow.id:
            workflow = workflow.with_id(new_id())
        workflow.validate()
        execution = self._new_execution(workflow, input, **context)
        execution.metadata["inline"] = True
        await self._submit(execution, workflow)
        return execution

    async def pause_workflow(self, execution_id: str) -> WorkflowExecution:
        execution = self.get_execution(execution_id)
        if execution.status is not ExecutionStatus.RUNNING:
            raise InvalidStateError(
                f"Execution {execution_id} is {execution.status.value}; only running executions can be paused"
            )
        execution.transition(ExecutionStatus.PAUSED)
        self._states[execution_id].interrupt.set()
        await self.store.save_execution_state(execution)
        await self._emit(execution, AgentEventType.WORKFLOW_PAUSED, {"current_step": execution.current_step})
        logger.info("Execution %s paused", execution_id)
        return execution

    async def resume_workflow(self, execution_id: str) -> WorkflowExecution:
        execution = self.get_execution(execution_id)
        state = self._states[execution_id]
        if execution.status is not ExecutionStatus.PAUSED:
            raise InvalidStateError(
                f"Execution {execution_id} is {execution.status.value}; only paused executions can be resumed"
            )
        if state.resuming:
            return execution
        state.interrupt.clear()
        if execution_id in self._active:
            # The run has not exited yet and picks up the stashed steps itself.
            execution.transition(ExecutionStatus.RUNNING)
            await self._emit(execution, AgentEventType.WORKFLOW_RESUMED, {"resume_steps": list(execution.resume_steps)})
        else:
            state.resuming = True
            self._enqueue(execution_id)
        logger.info("Execution %s resumed", execution_id)
        return execution

    async def cancel_workflow(self, execution_id: str) -> WorkflowExecution:
        """Cancel a queued, running or paused execution.

        Steps already in flight finish, but their results are discarded.
        """
        execution = self.get_execution(execution_id)
        if execution.is_terminal:
            raise InvalidStateError(f"Execution {execution_id} already {execution.status.value}")
        state = self._states[execution_id]
        state.resuming = False
        if execution_id in self._pending:
            self._pending.remove(execution_id)
        await self._finalize(execution, ExecutionStatus.CANCELLED)
        return execution

    async def retry_failed_step(self, execution_id: str, step_id: str) -> WorkflowExecution:
        """Start a follow-up execution that re-runs ``step_id`` and continues from it.

        The new execution inherits the results and variables of the finished
        one; the original record stays terminal.
        """
        execution = self.get_execution(execution_id)
        if not execution.is_terminal:
            raise InvalidStateError(
                f"Execution {execution_id} is {execution.status.value}; retry steps once it has finished"
            )
        if step_id not in execution.failed_steps:
            raise InvalidStateError(f"Step {step_id} did not fail in execution {execution_id}")
        workflow = self._states[execution_id].workflow
        workflow.find_step(step_id)
        retry = self._new_execution(
            workflow,
            execution.input,
            correlation_id=execution.correlation_id,
            session_id=execution.session_id,
            user_id=execution.user_id,
            priority=execution.priority,
        )
        retry.parent_execution_id = execution.id
        retry.variables = copy.deepcopy(execution.variables)
        retry.step_results = copy.deepcopy(execution.step_results)
        retry.completed_steps = list(execution.completed_steps)
        retry.resume_steps = [step_id]
        await self._submit(retry, workflow)
        logger.info("Retrying step %s of execution %s as %s", step_id, execution_id, retry.id)
        return retry

    async def wait_for_execution(self, execution_id: str, timeout: Optional[float] = None) -> WorkflowExecution:
        execution = self.get_execution(execution_id)
        try:
            await asyncio.wait_for(self._states[execution_id].done.wait(), timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise OperationTimeoutError(f"Timed out waiting for execution {execution_id}") from exc
        return execution

    # ------------------------------------------------------------------ queries

    def get_execution(self, execution_id: str) -> WorkflowExecution:
        execution = self._executions.get(execution_id)
        if execution is None:
            raise ExecutionNotFoundError(execution_id)
        return execution

    def get_step_executions(self, execution_id: str) -> List[StepExecution]:
        self.get_execution(execution_id)
        return [record for (owner, _), record in self._step_records.items() if owner == execution_id]

    def get_workflow_status(self, execution_id: str) -> Dict[str, Any]:
        execution = self.get_execution(execution_id)
        workflow = self._states[execution_id].workflow
        status = execution.summary()
        status.update(
            {
                "current_step": execution.current_step,
                "progress": {
                    "completed": len(execution.completed_steps),
                    "failed": len(execution.failed_steps),
                    "total": len(workflow.all_steps()),
                },
                "steps": [record.to_dict() for record in self.get_step_executions(execution_id)],
                "last_error": execution.last_error.to_dict() if execution.last_error else None,
            }
        )
        return status

    def get_workflow_history(self, workflow_id: str) -> List[Dict[str, Any]]:
        executions = [e for e in self._executions.values() if e.workflow_id == workflow_id]
        return [execution.summary() for execution in self._newest_first(executions)]

    def get_execution_history(self, limit: int = 50, offset: int = 0) -> Dict[str, Any]:
        executions = self._newest_first(self._executions.values())
        page = executions[offset : offset + limit]
        return {
            "executions": [execution.summary() for execution in page],
            "total": len(executions),
            "limit": limit,
            "offset": offset,
        }

    def metrics(self) -> Dict[str, float]:
        counts = Counter(execution.status for execution in self._executions.values())
        metrics = {
            "workflows.total": float(len(self._workflows)),
            "templates.total": float(len(self._templates)),
            "executions.total": float(len(self._executions)),
            "executions.active": float(self.current_executions),
            "executions.queued": float(len(self._pending)),
        }
        for status in ExecutionStatus:
            metrics[f"executions.{status.value}"] = float(counts.get(status, 0))
        return metrics

    # ------------------------------------------------------------------ dispatching

    def _new_execution(
        self,
        workflow: WorkflowDefinition,
        input: Any,
        *,
        correlation_id: Optional[str] = None,
        session_id: Optional[str] = None,
        user_id: Optional[str] = None,
        priority: AgentPriority = AgentPriority.MEDIUM,
    ) -> WorkflowExecution:
        variables = copy.deepcopy(dict(workflow.variables))
        if isinstance(input, Mapping):
            variables.update(copy.deepcopy(dict(input)))
        return WorkflowExecution(
            id=new_id(),
            workflow_id=workflow.id,
            created_at=self.clock.utcnow(),
            variables=variables,
            max_retries=workflow.settings.max_retries,
            input=copy.deepcopy(input),
            correlation_id=correlation_id or new_id(),
            session_id=session_id or new_id(),
            user_id=user_id,
            priority=AgentPriority(priority),
            environment=self.environment,
        )

    async def _submit(self, execution: WorkflowExecution, workflow: WorkflowDefinition) -> None:
        self._executions[execution.id] = execution
        self._states[execution.id] = _RunState(workflow=workflow)
        if self.current_executions >= self.max_concurrent_executions:
            limit = ConcurrencyLimitReached(
                f"{self.current_executions} executions running; {execution.id} queued",
                details={"execution_id": execution.id, "limit": self.max_concurrent_executions},
            )
            execution.metadata["queued_reason"] = limit.code
            logger.info(limit.message)
        await self.store.save_execution_state(execution)
        await self._emit(execution, AgentEventType.WORKFLOW_QUEUED, {"name": workflow.name})
        self._enqueue(execution.id)

    def _adopt(self, execution: WorkflowExecution) -> None:
        if execution.id in self._executions:
            return
        workflow = self._workflows.get(execution.workflow_id)
        if workflow is None:
            logger.warning("Skipping stored execution %s: workflow %s is gone", execution.id, execution.workflow_id)
            return
        self._executions[execution.id] = execution
        self._states[execution.id] = _RunState(workflow=workflow)
        if execution.status is ExecutionStatus.PENDING:
            self._pending.append(execution.id)

    def _enqueue(self, execution_id: str) -> None:
        self._pending.append(execution_id)
        self._ensure_dispatcher()
        self._wakeup.set()

    def _ensure_dispatcher(self) -> None:
        if self._stopping:
            return
        if self._dispatcher is None or self._dispatcher.done():
            self._dispatcher = asyncio.create_task(self._dispatch_loop(), name=f"{self.name}:dispatcher")

    async def _dispatch_loop(self) -> None:
        while True:
            self._wakeup.clear()
            while self._pending and self.current_executions < self.max_concurrent_executions:
                execution_id = self._pending.popleft()
                execution = self._executions.get(execution_id)
                if execution is None or not self._admissible(execution):
                    continue
                self.current_executions += 1
                self._active[execution_id] = asyncio.create_task(
                    self._run(execution), name=f"workflow:{execution_id}"
                )
            await self._wakeup.wait()

    def _admissible(self, execution: WorkflowExecution) -> bool:
        if execution.id in self._active:
            return False
        if execution.status is ExecutionStatus.PENDING:
            return True
        return execution.status is ExecutionStatus.PAUSED and self._states[execution.id].resuming

    async def _run(self, execution: WorkflowExecution) -> None:
        try:
            await self._execute(execution)
        finally:
            self._active.pop(execution.id, None)
            self.current_executions -= 1
            self._wakeup.set()
        if execution.status is ExecutionStatus.PAUSED:
            await self.store.save_execution_state(execution)

    async def _execute(self, execution: WorkflowExecution) -> None:
        state = self._states[execution.id]
        if execution.status is ExecutionStatus.PENDING:
            execution.transition(ExecutionStatus.RUNNING)
            execution.started_at = self.clock.utcnow()
            if not execution.resume_steps:
                execution.resume_steps = [step.id for step in state.workflow.root_steps()]
            await self.store.save_execution_state(execution)
            await self._emit(execution, AgentEventType.WORKFLOW_STARTED, {"name": state.workflow.name})
            self._log(state, logging.INFO, "Execution %s of %s started", execution.id, state.workflow.name)
        else:
            state.resuming = False
            execution.transition(ExecutionStatus.RUNNING)
            await self._emit(execution, AgentEventType.WORKFLOW_RESUMED, {"resume_steps": list(execution.resume_steps)})

        try:
            while True:
                if execution.status is ExecutionStatus.RUNNING and execution.resume_steps:
                    step_ids, execution.resume_steps = execution.resume_steps, []
                    ready = []
                    for step in (state.workflow.find_step(s) for s in step_ids):
                        if step.id in state.retry_due:
                            self._spawn_retry(execution, state, step)
                        else:
                            ready.append(step)
                    await self._walk(execution, state, ready)
                    continue
                if state.retries:
                    batch = list(state.retries)
                    outcomes = await asyncio.gather(*batch, return_exceptions=True)
                    state.retries.difference_update(batch)
                    for outcome in outcomes:
                        if isinstance(outcome, Exception):
                            raise outcome
                    continue
                break
        except OrchestratorError as exc:
            await self._finalize(execution, ExecutionStatus.FAILED, exc.to_info())
            return
        except Exception as exc:
            logger.exception("Execution %s crashed", execution.id)
            await self._finalize(execution, ExecutionStatus.FAILED, AgentError.wrap(exc).to_info())
            return

        # Paused runs return here without awaiting so a resume cannot slip in
        # between the decision to exit and leaving ``_active``.
        if execution.status is ExecutionStatus.RUNNING:
            if state.unrecovered:
                await self._finalize(execution, ExecutionStatus.FAILED, state.unrecovered[-1])
            else:
                await self._finalize(execution, ExecutionStatus.COMPLETED)

    async def _finalize(
        self,
        execution: WorkflowExecution,
        status: ExecutionStatus,
        error: Optional[AgentErrorInfo] = None,
    ) -> None:
        if execution.is_terminal:
            return
        execution.transition(status)
        state = self._states[execution.id]
        state.interrupt.set()
        ended = self.clock.utcnow()
        execution.ended_at = ended
        if execution.started_at is not None:
            execution.duration_ms = (ended - execution.started_at).total_seconds() * 1000
        if error is not None:
            execution.last_error = error
        if status is ExecutionStatus.COMPLETED:
            execution.output = self._build_output(execution)
        await self.store.save_execution_state(execution)

        data: Dict[str, Any] = {"duration_ms": execution.duration_ms}
        severity = EventSeverity.INFO
        if status is ExecutionStatus.FAILED:
            severity = EventSeverity.ERROR
            data["error"] = execution.last_error.to_dict() if execution.last_error else None
            logger.error(
                "Execution %s failed: %s",
                execution.id,
                execution.last_error.message if execution.last_error else "unknown error",
            )
        else:
            self._log(state, logging.INFO, "Execution %s %s", execution.id, status.value)
        await self._emit(execution, _FINAL_EVENTS[status], data, severity=severity)
        state.done.set()

    @staticmethod
    def _build_output(execution: WorkflowExecution) -> Dict[str, Any]:
        output: Dict[str, Any] = dict(execution.step_results)
        output["_variables"] = dict(execution.variables)
        output["_metadata"] = {
            "execution_id": execution.id,
            "workflow_id": execution.workflow_id,
            "duration_ms": execution.duration_ms,
            "completed_steps": len(execution.completed_steps),
            "failed_steps": len(execution.failed_steps),
        }
        return output

    # ------------------------------------------------------------------ graph walking

    async def _walk(self, execution: WorkflowExecution, state: _RunState, steps: Sequence[WorkflowStep]) -> None:
        for index, step in enumerate(steps):
            if not self._checkpoint(execution, state, steps[index:]):
                return
            if step.id in execution.completed_steps:
                continue
            await self._visit(execution, state, step)

    def _checkpoint(self, execution: WorkflowExecution, state: _RunState, remaining: Sequence[WorkflowStep]) -> bool:
        """Return whether the walk may continue; stash ``remaining`` when paused."""
        if execution.status is ExecutionStatus.PAUSED:
            execution.resume_steps.extend(s.id for s in remaining if s.id not in execution.resume_steps)
            return False
        if execution.status is not ExecutionStatus.RUNNING:
            return False
        budget = state.workflow.settings.max_execution_time_ms
        if budget and execution.started_at is not None:
            elapsed_ms = (self.clock.now() - execution.started_at.timestamp()) * 1000
            if elapsed_ms > budget:
                raise ExecutionTimeoutError(
                    f"Execution {execution.id} exceeded its time budget of {budget}ms",
                    details={"execution_id": execution.id, "elapsed_ms": elapsed_ms},
                )
        return True

    async def _visit(self, execution: WorkflowExecution, state: _RunState, step: WorkflowStep) -> None:
        if step.conditions and not evaluate_conditions(step.conditions, execution.variables):
            await self._skip(execution, step)
            return
        attempt = await self._begin(execution, step)
        try:
            result = await self._dispatch(execution, state, step)
        except (StepFailedError, ExecutionTimeoutError):
            raise
        except Exception as exc:
            if not self._is_current(execution, step, attempt):
                return
            info = await self._record_failure(execution, state, step, exc)
            await self._handle_failure(execution, state, step, info)
            return
        if not self._is_current(execution, step, attempt):
            logger.debug("Discarding late result of step %s in execution %s", step.id, execution.id)
            return
        await self._record_success(execution, state, step, result)
        await self._follow_success(execution, state, step)

    async def _follow_success(self, execution: WorkflowExecution, state: _RunState, step: WorkflowStep) -> None:
        targets = [state.workflow.find_step(target) for target in step.on_success]
        if not targets:
            return
        if step.type is StepType.PARALLEL:
            await self._run_parallel(execution, state, targets)
        else:
            await self._walk(execution, state, targets)

    async def _handle_failure(
        self,
        execution: WorkflowExecution,
        state: _RunState,
        step: WorkflowStep,
        info: AgentErrorInfo,
    ) -> None:
        if step.on_failure:
            await self._walk(execution, state, [state.workflow.find_step(t) for t in step.on_failure])
            return
        if await self._schedule_retry(execution, state, step):
            return
        raise StepFailedError(step.id, info)

    async def _schedule_retry(self, execution: WorkflowExecution, state: _RunState, step: WorkflowStep) -> bool:
        policy = step.retry
        if policy is None:
            return False
        record = self._step_record(execution, step.id)
        if record.retry_count >= policy.max_attempts or execution.retry_count >= execution.max_retries:
            return False
        delay_ms = calculate_delay(policy, record.retry_count)
        record.retry_count += 1
        execution.retry_count += 1
        state.retry_due[step.id] = self.clock.now() + delay_ms / 1000
        self._spawn_retry(execution, state, step)
        self._log(state, logging.INFO, "Retrying step %s in %.0fms (attempt %d)", step.id, delay_ms, record.retry_count)
        await self._emit(
            execution,
            AgentEventType.STEP_RETRY,
            {"step_id": step.id, "retry": record.retry_count, "delay_ms": delay_ms},
            severity=EventSeverity.WARN,
        )
        return True

    def _spawn_retry(self, execution: WorkflowExecution, state: _RunState, step: WorkflowStep) -> None:
        state.retries.add(
            asyncio.create_task(
                self._retry_step(execution, state, step),
                name=f"workflow:{execution.id}:retry:{step.id}",
            )
        )

    async def _retry_step(self, execution: WorkflowExecution, state: _RunState, step: WorkflowStep) -> None:
        # A pause keeps the due time; the walk below stashes the step until resume.
        due = state.retry_due.get(step.id, self.clock.now())
        while execution.status is ExecutionStatus.RUNNING:
            remaining = due - self.clock.now()
            if remaining <= 0:
                state.retry_due.pop(step.id, None)
                break
            await wait_with_timeout(self.clock, state.interrupt, remaining)
        await self._walk(execution, state, [step])

    async def _run_parallel(
        self,
        execution: WorkflowExecution,
        state: _RunState,
        steps: Sequence[WorkflowStep],
    ) -> Tuple[int, int]:
        """Dispatch ``steps`` together; one failure never cancels its siblings.

        Outcomes are recorded after the join, then each step's own edges are
        walked in declaration order. Sibling failures that nothing recovers
        are remembered and fail the execution when it finishes.
        """
        if not self._checkpoint(execution, state, steps):
            return 0, 0
        runnable: List[Tuple[WorkflowStep, int]] = []
        for step in steps:
            if step.id in execution.completed_steps:
                continue
            if step.conditions and not evaluate_conditions(step.conditions, execution.variables):
                await self._skip(execution, step)
                continue
            runnable.append((step, await self._begin(execution, step)))

        outcomes = await asyncio.gather(
            *(self._dispatch(execution, state, step) for step, _ in runnable),
            return_exceptions=True,
        )
        succeeded: List[WorkflowStep] = []
        failed: List[Tuple[WorkflowStep, AgentErrorInfo]] = []
        for (step, attempt), outcome in zip(runnable, outcomes):
            if isinstance(outcome, (StepFailedError, ExecutionTimeoutError)):
                raise outcome
            if isinstance(outcome, BaseException) and not isinstance(outcome, Exception):
                raise outcome
            if not self._is_current(execution, step, attempt):
                continue
            if isinstance(outcome, Exception):
                failed.append((step, await self._record_failure(execution, state, step, outcome)))
            else:
                await self._record_success(execution, state, step, outcome)
                succeeded.append(step)

        for step in succeeded:
            await self._follow_success(execution, state, step)
        for step, info in failed:
            try:
                await self._handle_failure(execution, state, step, info)
            except StepFailedError as exc:
                state.unrecovered.append(exc.to_info())
                execution.last_error = state.unrecovered[-1]
        return len(succeeded), len(failed)

    # ------------------------------------------------------------------ step types

    async def _dispatch(self, execution: WorkflowExecution, state: _RunState, step: WorkflowStep) -> Any:
        if step.type is StepType.AGENT:
            return await self._run_agent_step(execution, state.workflow, step)
        if step.type is StepType.CONDITION:
            conditions = [WorkflowCondition.from_dict(item) for item in step.config.get("conditions") or ()]
            return evaluate_conditions(conditions, execution.variables)
        if step.type is StepType.PARALLEL:
            completed, failed = await self._run_parallel(
                execution, state, steps_from_config(step.config.get("steps") or ())
            )
            return {"parallel_completed": completed, "parallel_failed": failed}
        if step.type is StepType.DELAY:
            config = interpolate(dict(step.config), execution.variables)
            try:
                delay_ms = float(config.get("delay", 1000))
            except (TypeError, ValueError) as exc:
                raise ValidationError(
                    f"Delay step {step.id} needs a numeric delay, got {config.get('delay')!r}", field="config"
                ) from exc
            await self.clock.sleep(delay_ms / 1000)
            return {"delayed": delay_ms}
        if step.type is StepType.WEBHOOK:
            return await self._call_webhook(execution, step)
        raise ValidationError(f"Unsupported step type: {step.type}", field="type")

    async def _run_agent_step(self, execution: WorkflowExecution, workflow: WorkflowDefinition, step: WorkflowStep) -> Any:
        if not step.agent_id:
            raise ValidationError(f"Agent step {step.id} requires an agent id", field="agent_id")
        worker = self.registry.require_agent(step.agent_id)
        payload = interpolate(dict(step.config), execution.variables)
        task_type = payload.pop("task_type", None)
        alias = payload.pop("taskType", None)
        task = AgentTask.create(
            step.agent_id,
            task_type or alias or "execute",
            payload,
            priority=execution.priority,
            context=TaskContext(
                correlation_id=execution.correlation_id,
                source=self.name,
                user_id=execution.user_id,
                session_id=execution.session_id,
                workflow_id=workflow.id,
                environment=execution.environment,
                custom_data={"execution_id": execution.id, "step_id": step.id},
            ),
        )
        task.metadata.tags.extend([workflow.id, step.id])
        self._step_record(execution, step.id).task_id = task.id
        return await worker.process_task(task)

    async def _call_webhook(self, execution: WorkflowExecution, step: WorkflowStep) -> Any:
        config = interpolate(dict(step.config), execution.variables)
        url = config.get("url")
        if not url:
            raise ValidationError(f"Webhook step {step.id} requires a url", field="config")
        method = str(config.get("method", "POST")).upper()
        headers = config.get("headers") or {}
        data = config.get("data")
        if data is None or method in ("GET", "HEAD", "DELETE"):
            response = await self._client().request(method, url, headers=headers)
        else:
            response = await self._client().request(method, url, headers=headers, json=data)
        response.raise_for_status()
        try:
            return response.json()
        except ValueError:
            return response.text

    def _client(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=30.0)
        return self._http

    # ------------------------------------------------------------------ step bookkeeping

    def _step_record(self, execution: WorkflowExecution, step_id: str) -> StepExecution:
        key = (execution.id, step_id)
        record = self._step_records.get(key)
        if record is None:
            record = self._step_records[key] = StepExecution(step_id=step_id, execution_id=execution.id)
        return record

    def _is_current(self, execution: WorkflowExecution, step: WorkflowStep, attempt: int) -> bool:
        return not execution.is_terminal and self._step_record(execution, step.id).attempt == attempt

    async def _begin(self, execution: WorkflowExecution, step: WorkflowStep) -> int:
        record = self._step_record(execution, step.id)
        record.attempt += 1
        record.status = StepStatus.RUNNING
        record.agent_id = step.agent_id
        record.started_at = self.clock.utcnow()
        record.ended_at = None
        record.duration_ms = None
        execution.current_step = step.id
        await self._emit(
            execution,
            AgentEventType.STEP_STARTED,
            {"step_id": step.id, "step_type": step.type.value, "attempt": record.attempt},
        )
        return record.attempt

    def _close_record(self, record: StepExecution, status: StepStatus) -> None:
        record.status = status
        record.ended_at = self.clock.utcnow()
        if record.started_at is not None:
            record.duration_ms = (record.ended_at - record.started_at).total_seconds() * 1000

    async def _record_success(
        self, execution: WorkflowExecution, state: _RunState, step: WorkflowStep, result: Any
    ) -> None:
        record = self._step_record(execution, step.id)
        self._close_record(record, StepStatus.COMPLETED)
        record.output = result
        record.error = None
        execution.step_results[step.id] = result
        if step.id in execution.failed_steps:
            execution.failed_steps.remove(step.id)
            execution.step_errors.pop(step.id, None)
        if step.id not in execution.completed_steps:
            execution.completed_steps.append(step.id)
        if isinstance(result, Mapping):
            execution.variables.update(result)
        else:
            execution.variables[step.id] = result
        self._log(state, logging.DEBUG, "Step %s of execution %s completed", step.id, execution.id)
        await self._emit(
            execution,
            AgentEventType.STEP_COMPLETED,
            {"step_id": step.id, "duration_ms": record.duration_ms},
        )

    async def _record_failure(
        self, execution: WorkflowExecution, state: _RunState, step: WorkflowStep, exc: Exception
    ) -> AgentErrorInfo:
        error = exc if isinstance(exc, OrchestratorError) else AgentError.wrap(exc)
        info = error.to_info()
        record = self._step_record(execution, step.id)
        self._close_record(record, StepStatus.FAILED)
        record.error = info
        record.errors.append(info)
        if step.id not in execution.failed_steps:
            execution.failed_steps.append(step.id)
        execution.step_errors[step.id] = info
        self._log(state, logging.WARNING, "Step %s of execution %s failed: %s", step.id, execution.id, info.message)
        await self._emit(
            execution,
            AgentEventType.STEP_FAILED,
            {"step_id": step.id, "attempt": record.attempt, "error": info.to_dict()},
            severity=EventSeverity.ERROR,
        )
        return info

    async def _skip(self, execution: WorkflowExecution, step: WorkflowStep) -> None:
        record = self._step_record(execution, step.id)
        record.status = StepStatus.SKIPPED
        await self._emit(execution, AgentEventType.STEP_SKIPPED, {"step_id": step.id})

    # ------------------------------------------------------------------ helpers

    @staticmethod
    def _newest_first(executions: Any) -> List[WorkflowExecution]:
        return sorted(executions, key=lambda e: e.started_at or e.created_at, reverse=True)

    @staticmethod
    def _log(state: _RunState, level: int, message: str, *args: Any) -> None:
        if state.workflow.settings.enable_logging or level >= logging.WARNING:
            logger.log(level, message, *args)

    async def _emit(
        self,
        execution: WorkflowExecution,
        event_type: AgentEventType,
        data: Optional[Dict[str, Any]] = None,
        *,
        severity: EventSeverity = EventSeverity.INFO,
    ) -> None:
        payload: Dict[str, Any] = {
            "execution_id": execution.id,
            "workflow_id": execution.workflow_id,
            "status": execution.status.value,
        }
        payload.update(data or {})
        await self.bus.publish(
            AgentEvent(
                agent_id=self.name,
                type=event_type,
                data=payload,
                source=self.name,
                severity=severity,
                correlation_id=execution.correlation_id,
            )
        )
