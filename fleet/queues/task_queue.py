"""Named, concurrency-bounded job queue with priorities and retry backoff."""
from __future__ import annotations

import asyncio
import heapq
import itertools
import logging
from collections import defaultdict
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set, Tuple

from fleet.core.backoff import calculate_delay
from fleet.core.clock import Clock, SystemClock
from fleet.core.errors import InvalidStateError, QueueFullError
from fleet.core.models import AgentPriority, BackoffType, RetryPolicy, new_id, utcnow

logger = logging.getLogger(__name__)


class JobState(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    DELAYED = "delayed"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class JobOptions:
    """Per-job overrides. ``remove_on_*`` are retention counts for finished jobs."""

    attempts: int = 1
    backoff: RetryPolicy = RetryPolicy(
        max_attempts=1, backoff_type=BackoffType.EXPONENTIAL, initial_delay_ms=1000
    )
    priority: int = int(AgentPriority.MEDIUM)
    delay_ms: float = 0
    remove_on_complete: int = 100
    remove_on_fail: int = 50
    job_id: Optional[str] = None


@dataclass(frozen=True)
class QueueConfig:
    name: str
    max_size: int = 1000
    max_concurrency: int = 5
    default_options: JobOptions = JobOptions()


@dataclass(eq=False)
class Job:
    """Handle for one queued unit of work. ``await job.wait()`` yields its result."""

    id: str
    data: Any
    options: JobOptions
    state: JobState = JobState.WAITING
    attempts_made: int = 0
    result: Any = None
    error: Optional[BaseException] = None
    created_at: datetime = field(default_factory=utcnow)
    processed_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    _done: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    @property
    def finished(self) -> bool:
        return self._done.is_set()

    async def wait(self) -> Any:
        await self._done.wait()
        if self.state is JobState.FAILED and self.error is not None:
            raise self.error
        return self.result


JobProcessor = Callable[[Job], Awaitable[Any]]
JobListener = Callable[[Job], Awaitable[None]]

_EVENTS = {"active", "completed", "failed", "retrying", "removed"}


class TaskQueue:
    """Single dispatch coroutine pulling the highest priority job while slots are free."""

    def __init__(
        self,
        config: QueueConfig,
        processor: JobProcessor,
        *,
        clock: Optional[Clock] = None,
    ) -> None:
        self.config = config
        self._processor = processor
        self._clock = clock or SystemClock()
        self._jobs: Dict[str, Job] = {}
        self._waiting: List[Tuple[int, int, str]] = []
        self._seq = itertools.count()
        self._active: Set[str] = set()
        self._delayed: Dict[str, asyncio.Task[None]] = {}
        self._completed: List[str] = []
        self._failed: List[str] = []
        self._running: Set[asyncio.Task[None]] = set()
        self._listeners: Dict[str, List[JobListener]] = defaultdict(list)
        self._wakeup = asyncio.Event()
        self._changed = asyncio.Event()
        self._dispatcher: Optional[asyncio.Task[None]] = None
        self._paused = False
        self._closed = False

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def paused(self) -> bool:
        return self._paused

    @property
    def closed(self) -> bool:
        return self._closed

    def update_config(self, **changes: Any) -> None:
        """Apply new limits; a raised concurrency ceiling takes effect immediately."""
        self.config = replace(self.config, **changes)
        self._wake()

    def on(self, event: str, listener: JobListener) -> None:
        if event not in _EVENTS:
            raise ValueError(f"Unknown queue event: {event}")
        self._listeners[event].append(listener)

    def start(self) -> None:
        """Begin pulling jobs. Jobs added before ``start`` wait until then."""
        if self._closed:
            raise InvalidStateError(f"Queue {self.name} is closed")
        self._paused = False
        if self._dispatcher is None or self._dispatcher.done():
            self._dispatcher = asyncio.create_task(self._dispatch_loop(), name=f"queue:{self.name}")
        self._wake()

    async def add_job(self, data: Any, options: Optional[JobOptions] = None) -> Job:
        if self._closed:
            raise InvalidStateError(f"Queue {self.name} is closed")
        pending = len(self._waiting_ids()) + len(self._delayed)
        if pending >= self.config.max_size:
            raise QueueFullError(
                f"Queue {self.name} is full ({self.config.max_size} jobs)",
                details={"queue": self.name},
            )
        options = options or self.config.default_options
        job = Job(id=options.job_id or new_id(), data=data, options=options)
        if job.id in self._jobs:
            raise InvalidStateError(f"Job already exists: {job.id}")
        self._jobs[job.id] = job
        if options.delay_ms > 0:
            self._schedule(job, options.delay_ms)
        else:
            self._enqueue(job)
        return job

    async def add_jobs(self, items: Iterable[Tuple[Any, Optional[JobOptions]]]) -> List[Job]:
        return [await self.add_job(data, options) for data, options in items]

    def get_job(self, job_id: str) -> Optional[Job]:
        return self._jobs.get(job_id)

    def get_jobs_by_status(self, state: JobState) -> List[Job]:
        return [job for job in self._jobs.values() if job.state is state]

    async def remove_job(self, job_id: str) -> bool:
        """Drop a job that is not currently being processed."""
        job = self._jobs.get(job_id)
        if job is None:
            return False
        if job.state is JobState.ACTIVE:
            raise InvalidStateError(f"Job {job_id} is active and cannot be removed")
        timer = self._delayed.pop(job_id, None)
        if timer is not None:
            timer.cancel()
        self._forget(job_id)
        if not job.finished:
            job.state = JobState.FAILED
            job.error = InvalidStateError(f"Job {job_id} was removed")
            job.finished_at = utcnow()
            job._done.set()
        await self._emit("removed", job)
        self._notify()
        return True

    async def retry_job(self, job_id: str) -> Job:
        """Move a failed job back to waiting with a fresh attempt budget."""
        job = self._jobs.get(job_id)
        if job is None or job.state is not JobState.FAILED:
            raise InvalidStateError(f"Job {job_id} is not failed")
        if job_id in self._failed:
            self._failed.remove(job_id)
        job.attempts_made = 0
        job.error = None
        job.finished_at = None
        job._done = asyncio.Event()
        self._enqueue(job)
        return job

    def pause(self) -> None:
        """Stop pulling new jobs. In-flight jobs continue."""
        self._paused = True

    def resume(self) -> None:
        self._paused = False
        self._wake()

    async def drain(self, delayed: bool = False) -> None:
        """Wait until nothing is waiting or active (and nothing delayed if asked)."""
        while True:
            changed = self._changed
            busy = bool(self._waiting_ids()) or bool(self._active)
            if delayed:
                busy = busy or bool(self._delayed)
            if not busy:
                return
            await changed.wait()

    def clean_completed(self, keep: int = 0) -> int:
        return self._prune(self._completed, keep)

    def clean_failed(self, keep: int = 0) -> int:
        return self._prune(self._failed, keep)

    async def empty(self) -> int:
        """Remove every waiting and delayed job."""
        ids = self._waiting_ids() + list(self._delayed)
        for job_id in ids:
            await self.remove_job(job_id)
        self._waiting.clear()
        return len(ids)

    async def close(self) -> None:
        """Stop dispatching, let active jobs finish and fail anything still pending."""
        if self._closed:
            return
        self._closed = True
        self._paused = True
        if self._dispatcher is not None:
            self._dispatcher.cancel()
            try:
                await self._dispatcher
            except asyncio.CancelledError:
                pass
            self._dispatcher = None
        if self._running:
            await asyncio.gather(*list(self._running), return_exceptions=True)
        for job_id in self._waiting_ids() + list(self._delayed):
            timer = self._delayed.pop(job_id, None)
            if timer is not None:
                timer.cancel()
            job = self._jobs[job_id]
            job.state = JobState.FAILED
            job.error = InvalidStateError(f"Queue {self.name} closed")
            job.finished_at = utcnow()
            job._done.set()
        self._waiting.clear()
        self._notify()

    def get_stats(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "waiting": len(self._waiting_ids()),
            "active": len(self._active),
            "completed": len(self._completed),
            "failed": len(self._failed),
            "delayed": len(self._delayed),
            "paused": self._paused,
        }

    def _waiting_ids(self) -> List[str]:
        return [job_id for _, _, job_id in self._waiting if self._is_waiting(job_id)]

    def _is_waiting(self, job_id: str) -> bool:
        job = self._jobs.get(job_id)
        return job is not None and job.state is JobState.WAITING

    def _enqueue(self, job: Job) -> None:
        job.state = JobState.WAITING
        # Highest priority first, FIFO within a priority.
        heapq.heappush(self._waiting, (-int(job.options.priority), next(self._seq), job.id))
        self._wake()
        self._notify()

    def _schedule(self, job: Job, delay_ms: float) -> None:
        job.state = JobState.DELAYED
        self._delayed[job.id] = asyncio.create_task(self._promote_later(job, delay_ms))
        self._notify()

    async def _promote_later(self, job: Job, delay_ms: float) -> None:
        await self._clock.sleep(delay_ms / 1000)
        if self._delayed.pop(job.id, None) is None or job.state is not JobState.DELAYED:
            return
        self._enqueue(job)

    async def _dispatch_loop(self) -> None:
        while not self._closed:
            while not self._paused and self._waiting and len(self._active) < self.config.max_concurrency:
                _, _, job_id = heapq.heappop(self._waiting)
                if self._is_waiting(job_id):
                    self._start(self._jobs[job_id])
            self._wakeup.clear()
            await self._wakeup.wait()

    def _start(self, job: Job) -> None:
        job.state = JobState.ACTIVE
        job.attempts_made += 1
        job.processed_at = utcnow()
        self._active.add(job.id)
        runner = asyncio.create_task(self._run(job))
        self._running.add(runner)
        runner.add_done_callback(self._running.discard)

    async def _run(self, job: Job) -> None:
        await self._emit("active", job)
        try:
            result = await self._processor(job)
        except Exception as exc:  # noqa: BLE001
            self._active.discard(job.id)
            await self._handle_failure(job, exc)
        else:
            self._active.discard(job.id)
            job.state = JobState.COMPLETED
            job.result = result
            job.finished_at = utcnow()
            self._completed.append(job.id)
            self._prune(self._completed, job.options.remove_on_complete)
            job._done.set()
            await self._emit("completed", job)
        finally:
            self._active.discard(job.id)
            self._wake()
            self._notify()

    async def _handle_failure(self, job: Job, exc: Exception) -> None:
        retryable = getattr(exc, "retryable", True) is not False
        if retryable and job.attempts_made < job.options.attempts:
            delay = calculate_delay(job.options.backoff, job.attempts_made - 1)
            job.error = exc
            logger.info(
                "Job %s on %s failed (attempt %s/%s), retrying in %sms",
                job.id, self.name, job.attempts_made, job.options.attempts, delay,
            )
            self._schedule(job, delay)
            await self._emit("retrying", job)
            return
        job.state = JobState.FAILED
        job.error = exc
        job.finished_at = utcnow()
        self._failed.append(job.id)
        self._prune(self._failed, job.options.remove_on_fail)
        job._done.set()
        logger.warning("Job %s on %s failed: %s", job.id, self.name, exc)
        await self._emit("failed", job)

    def _prune(self, ids: List[str], keep: int) -> int:
        removed = 0
        while len(ids) > max(keep, 0):
            self._jobs.pop(ids.pop(0), None)
            removed += 1
        return removed

    def _forget(self, job_id: str) -> None:
        self._jobs.pop(job_id, None)
        for bucket in (self._completed, self._failed):
            if job_id in bucket:
                bucket.remove(job_id)

    async def _emit(self, event: str, job: Job) -> None:
        for listener in list(self._listeners[event]):
            try:
                await listener(job)
            except Exception:  # noqa: BLE001
                logger.exception("Queue %s listener for %s failed", self.name, event)

    def _wake(self) -> None:
        self._wakeup.set()

    def _notify(self) -> None:
        self._changed.set()
        self._changed = asyncio.Event()
