"""
Job Queue Scheduler

Runs registered handlers for queued jobs on the asyncio event loop.

Features:
- Concurrency ceiling (config.concurrency simultaneously RUNNING jobs)
- Strict priority with FIFO tie-break (priority desc, created_at asc)
- Bounded retries: a failed attempt re-queues the job as PENDING
- Timeout sweep: RUNNING jobs past their timeout are failed (one retry consumed)
- Progress reporting persisted and broadcast to listeners
- Every transition persisted through Storage; crash recovery on start()

Handlers are never interrupted. Cancelling a RUNNING job or timing it out
releases its slot and discards the handler's eventual outcome, but the
handler itself keeps running until it returns, so a misbehaving handler can
exceed the concurrency ceiling until then.

All bookkeeping (pending heap, running map, active set) is mutated from
callbacks on a single event loop, which never interleave. A JobQueue must
only be used from the thread running its loop.
"""

import asyncio
import heapq
import inspect
import itertools
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Set, Tuple, Union

from pydantic import ValidationError

from .config import QueueConfig, load_config
from .exceptions import (
    AdmissionError,
    HandlerNotFoundError,
    InvalidKeyError,
    JobTimeoutError,
    StorageError,
)
from .handler_registry import HandlerRegistry, JobHandler
from .job_model import Job, JobCreationParams, JobStatus
from .storage import JOBS_COLLECTION, Storage, create_storage

logger = logging.getLogger("job_queue")

JobListener = Callable[[str, Job], None]

EVENT_CREATED = "created"
EVENT_STARTED = "started"
EVENT_PROGRESS = "progress"
EVENT_COMPLETED = "completed"
EVENT_RETRYING = "retrying"
EVENT_FAILED = "failed"
EVENT_TIMEOUT = "timeout"
EVENT_CANCELLED = "cancelled"

INTERRUPTED_MESSAGE = "Job interrupted by scheduler restart"


@dataclass
class _Execution:
    """One dispatched attempt of a job."""
    job: Job
    task: Optional[asyncio.Task] = None


class _AttemptView:
    """
    The job as seen by the handler of one attempt.

    Attribute reads go to the live Job. Progress reports are dropped once the
    attempt no longer owns the job (cancelled, timed out or superseded by a
    retry), so a detached handler cannot touch the next attempt's progress.
    """

    def __init__(self, queue: "JobQueue", execution: _Execution):
        self._queue = queue
        self._execution = execution

    def __getattr__(self, name: str) -> Any:
        return getattr(self._execution.job, name)

    def __repr__(self) -> str:
        return f"<attempt of {self._execution.job!r}>"

    def update_progress(self, value: Union[int, float]) -> None:
        self._queue._report_progress(self._execution, value)


def _normalize_filter(filter: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """Map enum values and the 'type' alias onto stored document values."""
    normalized = {}
    for key, value in (filter or {}).items():
        if key == "type":
            key = "job_type"
        normalized[key] = value.value if isinstance(value, Enum) else value
    return normalized


def _matches(document: Dict[str, Any], filter: Dict[str, Any]) -> bool:
    return all(key in document and document[key] == value for key, value in filter.items())


class JobQueue:
    """
    In-memory scheduler with durable job state.

    Example:
        storage = FileStorage("./data")
        queue = JobQueue(storage, QueueConfig(concurrency=2))
        queue.register_handler("code-fixer", fix_project)
        queue.start()
        job = queue.enqueue({"name": "Fix build", "type": "code-fixer", "payload": {...}})
    """

    def __init__(
        self,
        storage: Storage,
        config: Optional[QueueConfig] = None,
        registry: Optional[HandlerRegistry] = None,
    ):
        self._storage = storage
        self._config = (config or QueueConfig()).validate()
        self._registry = registry or HandlerRegistry()

        self._jobs: Dict[str, Job] = {}  # active set: PENDING + RUNNING
        self._pending: List[Tuple[int, float, int, str]] = []  # heap
        self._sequence = itertools.count()
        self._executions: Dict[str, _Execution] = {}  # RUNNING, holding a slot
        self._detached: Set[asyncio.Task] = set()  # cancelled/timed out, still running
        self._unpersisted: Dict[str, Job] = {}
        self._listeners: List[JobListener] = []

        self._running = False
        self._recovered = False
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._sweep_task: Optional[asyncio.Task] = None
        self._tick_handle: Optional[asyncio.Handle] = None

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def config(self) -> QueueConfig:
        return self._config

    @property
    def registry(self) -> HandlerRegistry:
        return self._registry

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def active_count(self) -> int:
        """Jobs currently holding a concurrency slot."""
        return len(self._executions)

    @property
    def pending_count(self) -> int:
        return sum(1 for job in self._jobs.values() if job.status == JobStatus.PENDING)

    # -------------------------------------------------------------------------
    # Handlers & Listeners
    # -------------------------------------------------------------------------

    def register_handler(self, job_type: str, handler: JobHandler) -> None:
        """Register the handler for a job type, replacing any previous one."""
        self._registry.register(job_type, handler)

    def unregister_handler(self, job_type: str) -> bool:
        return self._registry.unregister(job_type)

    def add_listener(self, listener: JobListener) -> None:
        """Subscribe to job events: listener(event, job)."""
        self._listeners.append(listener)

    def remove_listener(self, listener: JobListener) -> bool:
        try:
            self._listeners.remove(listener)
            return True
        except ValueError:
            return False

    def _emit(self, event: str, job: Job) -> None:
        for listener in list(self._listeners):
            try:
                listener(event, job)
            except Exception as e:
                logger.error(f"Listener error on '{event}' for job {job.id}: {e}", exc_info=True)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def start(self) -> None:
        """
        Start scheduling and the timeout sweep.

        Must be called from a running event loop. Persisted jobs are
        recovered the first time the queue starts.
        """
        if self._running:
            logger.warning("Job queue already running")
            return

        self._loop = asyncio.get_running_loop()
        self._running = True
        self._recover()
        self._sweep_task = self._loop.create_task(self._sweep_loop())

        logger.info(f"Job queue started with concurrency of {self._config.concurrency}")
        self._request_tick()

    async def stop(self, wait: bool = False, timeout: Optional[float] = None) -> None:
        """
        Stop dispatching new jobs.

        In-flight handlers are never aborted. With wait=True, wait (up to
        timeout seconds) for them to settle.
        """
        if not self._running:
            return

        self._running = False

        if self._tick_handle is not None:
            self._tick_handle.cancel()
            self._tick_handle = None

        if self._sweep_task:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None

        if wait:
            await self.drain(timeout)

        logger.info("Job queue stopped")

    async def drain(self, timeout: Optional[float] = None) -> bool:
        """
        Wait for tracked in-flight handlers to settle.

        Returns:
            True if nothing is left running
        """
        tasks = [e.task for e in self._executions.values() if e.task is not None]
        if not tasks:
            return True

        logger.info(f"Waiting for {len(tasks)} running jobs...")
        _, still_running = await asyncio.wait(tasks, timeout=timeout)
        if still_running:
            logger.warning(f"Drain timeout ({timeout}s), {len(still_running)} jobs still running")
            return False
        return True

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def enqueue(self, params: Union[JobCreationParams, Mapping[str, Any]]) -> Job:
        """
        Admit a new job.

        Validates the parameters, persists the PENDING job and returns it
        without waiting for execution.

        Raises:
            AdmissionError: If the parameters are malformed
        """
        if not isinstance(params, JobCreationParams):
            try:
                params = JobCreationParams.model_validate(params)
            except ValidationError as e:
                raise AdmissionError([
                    f"{'.'.join(str(part) for part in error['loc']) or 'params'}: {error['msg']}"
                    for error in e.errors()
                ]) from e

        job = Job.from_params(
            params,
            default_retries=self._config.retries,
            default_timeout_ms=self._config.timeout_ms,
        )

        self._jobs[job.id] = job
        self._persist(job)
        self._push_pending(job)

        logger.info(f"Created job: {job.id} ({job.name}, type={job.job_type}, priority={job.priority.name})")
        self._emit(EVENT_CREATED, job)
        self._request_tick()
        return job

    def cancel(self, job_id: str) -> Optional[Job]:
        """
        Cancel a job.

        PENDING jobs are never dispatched. For RUNNING jobs cancellation is
        advisory: the slot is released and the handler's outcome discarded.
        Terminal jobs are returned unchanged; unknown ids return None.
        """
        job = self._jobs.get(job_id)
        if job is None:
            # Not tracked: terminal, unknown, or persisted but not yet recovered
            job = self.get_job(job_id)
            if job is None or job.is_complete():
                return job
            job.cancel("Cancelled before execution")
            self._persist(job)
            logger.info(f"Cancelled job: {job.id} ({job.name})")
            self._emit(EVENT_CANCELLED, job)
            return job

        if job.status == JobStatus.RUNNING:
            execution = self._executions.pop(job_id, None)
            if execution is not None:
                self._detach(execution)
            job.attach_progress_listener(None)
            job.cancel("Cancelled by user")
        else:
            job.cancel("Cancelled before execution")

        del self._jobs[job_id]
        self._persist(job)

        logger.info(f"Cancelled job: {job.id} ({job.name})")
        self._emit(EVENT_CANCELLED, job)
        self._request_tick()
        return job

    def get_job(self, job_id: str) -> Optional[Job]:
        """Get a job by id from memory, falling back to storage."""
        job = self._jobs.get(job_id) or self._unpersisted.get(job_id)
        if job is not None:
            return job

        try:
            record = self._storage.find_by_id(JOBS_COLLECTION, job_id)
        except InvalidKeyError:
            return None
        except StorageError as e:
            logger.error(f"Failed to load job {job_id}: {e}")
            return None
        if not record:
            return None

        try:
            return Job.from_dict(record)
        except (KeyError, TypeError, ValueError) as e:
            logger.error(f"Malformed job record {job_id}: {e}")
            return None

    def list_jobs(
        self,
        filter: Optional[Mapping[str, Any]] = None,
        limit: Optional[int] = None,
    ) -> List[Job]:
        """
        List jobs, newest first.

        Args:
            filter: Field equality filter, e.g. {"status": JobStatus.FAILED}
            limit: Maximum number of jobs returned
        """
        normalized = _normalize_filter(filter)

        try:
            records = self._storage.find(JOBS_COLLECTION, normalized or None)
        except StorageError as e:
            logger.error(f"Failed to list persisted jobs, returning in-memory jobs only: {e}")
            records = []

        jobs: Dict[str, Job] = {}
        for record in records:
            try:
                job = Job.from_dict(record)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed job record {record.get('id')}: {e}")
                continue
            jobs[job.id] = job

        # In-memory state is authoritative for jobs the scheduler still tracks
        for job in list(self._unpersisted.values()) + list(self._jobs.values()):
            if _matches(job.to_dict(), normalized):
                jobs[job.id] = job
            else:
                jobs.pop(job.id, None)

        result = sorted(jobs.values(), key=lambda j: j.created_at, reverse=True)
        return result[:limit] if limit else result

    def get_status(self) -> Dict[str, Any]:
        """Scheduler status summary with queue details."""
        pending = sorted(
            (job for job in self._jobs.values() if job.status == JobStatus.PENDING),
            key=lambda j: j.get_priority_sort_key(),
        )
        return {
            "running": self._running,
            "concurrency": self._config.concurrency,
            "active_jobs": [job_id for job_id in self._executions],
            "available_slots": max(self._config.concurrency - len(self._executions), 0),
            "detached_handlers": len(self._detached),
            "pending_jobs": len(pending),
            "queue": [
                {
                    "position": position,
                    "job_id": job.id,
                    "name": job.name,
                    "job_type": job.job_type,
                    "priority": int(job.priority),
                    "priority_label": job.priority.name,
                    "retries": job.retries,
                    "wait_time_seconds": round(job.get_wait_time_seconds(), 2),
                }
                for position, job in enumerate(pending, start=1)
            ],
            "unpersisted_jobs": len(self._unpersisted),
            "handlers": self._registry.job_types(),
        }

    def purge_jobs(self, older_than_hours: float = 24) -> int:
        """
        Delete terminal job records completed more than older_than_hours ago.

        Returns:
            Number of records removed
        """
        cutoff = datetime.now(timezone.utc) - timedelta(hours=older_than_hours)
        removed = 0
        for record in self._storage.find(JOBS_COLLECTION):
            try:
                job = Job.from_dict(record)
            except (KeyError, TypeError, ValueError):
                continue
            if job.id in self._jobs or not job.is_complete():
                continue
            if job.completed_at and job.completed_at < cutoff:
                if self._storage.delete_by_id(JOBS_COLLECTION, job.id):
                    removed += 1

        if removed:
            logger.info(f"Purged {removed} completed jobs older than {older_than_hours}h")
        return removed

    def clear_jobs(self) -> int:
        """
        Remove every persisted job record.

        Jobs the scheduler still tracks are written back so none disappear.
        """
        removed = self._storage.delete_all(JOBS_COLLECTION)
        for job in self._jobs.values():
            self._persist(job)
        logger.info(f"Cleared {removed} job records")
        return removed

    def sweep_timeouts(self) -> List[Job]:
        """
        Fail every RUNNING job that exceeded its timeout.

        Returns:
            The jobs that timed out
        """
        now = datetime.now(timezone.utc)
        timed_out = []

        for execution in list(self._executions.values()):
            job = execution.job
            if job.status != JobStatus.RUNNING or not job.has_timed_out(now):
                continue

            del self._executions[job.id]
            self._detach(execution)

            logger.error(f"Job timed out: {job.id} ({job.name}) after {job.timeout}ms")
            self._handle_failure(job, JobTimeoutError(job.id, job.timeout))
            self._emit(EVENT_TIMEOUT, job)
            timed_out.append(job)

        if timed_out:
            self._request_tick()
        return timed_out

    # -------------------------------------------------------------------------
    # Scheduling
    # -------------------------------------------------------------------------

    def _push_pending(self, job: Job) -> None:
        heapq.heappush(
            self._pending,
            (-int(job.priority), job.created_at.timestamp(), next(self._sequence), job.id),
        )

    def _request_tick(self) -> None:
        """Schedule one scheduling tick on the loop (coalesced)."""
        if not self._running or self._loop is None or self._tick_handle is not None:
            return
        self._tick_handle = self._loop.call_soon(self._tick)

    def _tick(self) -> None:
        """Fill free concurrency slots from the pending heap."""
        self._tick_handle = None
        if not self._running:
            return

        self._flush_unpersisted()

        while len(self._executions) < self._config.concurrency and self._pending:
            _, _, _, job_id = heapq.heappop(self._pending)
            job = self._jobs.get(job_id)
            if job is None or job.status != JobStatus.PENDING:
                # Cancelled while queued
                continue
            self._dispatch(job)

    def _dispatch(self, job: Job) -> None:
        job.start()
        self._persist(job)
        logger.info(
            f"Starting job: {job.id} ({job.name}) "
            f"attempt {job.retries + 1}/{job.max_retries + 1}"
        )
        self._emit(EVENT_STARTED, job)

        if job.status != JobStatus.RUNNING:
            # A listener cancelled the job during the started event
            logger.info(f"Job {job.id} left RUNNING before its handler was launched")
            return

        try:
            handler = self._registry.get(job.job_type)
        except HandlerNotFoundError as e:
            logger.error(f"Handler not found for job {job.id}: {job.job_type}")
            self._handle_failure(job, e)
            return

        execution = _Execution(job=job)
        self._executions[job.id] = execution
        job.attach_progress_listener(self._on_progress)
        execution.task = self._loop.create_task(self._run_handler(execution, handler))

    async def _run_handler(self, execution: _Execution, handler: JobHandler) -> None:
        try:
            outcome = handler(_AttemptView(self, execution))
            if inspect.isawaitable(outcome):
                outcome = await outcome
        except asyncio.CancelledError:
            self._settle(execution, error="Job handler was cancelled")
            raise
        except Exception as e:
            self._settle(execution, error=e)
        else:
            self._settle(execution, result=outcome)

    def _settle(
        self,
        execution: _Execution,
        result: Any = None,
        error: Optional[Union[BaseException, str]] = None,
    ) -> None:
        job = execution.job
        if self._executions.get(job.id) is not execution:
            logger.info(f"Discarding late outcome of job {job.id} (status: {job.status.value})")
            return

        del self._executions[job.id]

        if error is None:
            job.attach_progress_listener(None)
            job.complete(result)
            self._persist(job)
            self._jobs.pop(job.id, None)
            logger.info(f"Completed job: {job.id} ({job.name})")
            self._emit(EVENT_COMPLETED, job)
        else:
            self._handle_failure(job, error)

        self._request_tick()

    def _handle_failure(self, job: Job, error: Union[BaseException, str]) -> None:
        """Route a failed attempt through Job.fail() and requeue or finalize."""
        job.attach_progress_listener(None)
        job.fail(error)
        self._persist(job)

        if job.status == JobStatus.PENDING:
            logger.warning(
                f"Job {job.id} ({job.name}) failed, retrying "
                f"({job.retries}/{job.max_retries}): {job.error}"
            )
            self._push_pending(job)
            self._emit(EVENT_RETRYING, job)
        else:
            logger.error(f"Failed job: {job.id} ({job.name}): {job.error}")
            self._jobs.pop(job.id, None)
            self._emit(EVENT_FAILED, job)

    def _detach(self, execution: _Execution) -> None:
        """Stop tracking a handler that keeps running in the background."""
        task = execution.task
        if task is not None and not task.done():
            self._detached.add(task)
            task.add_done_callback(self._detached.discard)

    def _report_progress(self, execution: _Execution, value: Union[int, float]) -> None:
        job = execution.job
        if self._executions.get(job.id) is not execution:
            logger.debug(f"Ignoring progress from a detached attempt of job {job.id}")
            return
        job.update_progress(value)

    def _on_progress(self, job: Job) -> None:
        self._persist(job)
        self._emit(EVENT_PROGRESS, job)

    async def _sweep_loop(self) -> None:
        """Periodic timeout sweep; also retries pending persistence."""
        interval = self._config.sweep_interval_ms / 1000
        while self._running:
            try:
                await asyncio.sleep(interval)
                self.sweep_timeouts()
                self._request_tick()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Timeout sweep error: {e}", exc_info=True)

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    def _persist(self, job: Job) -> bool:
        """
        Write the job's current state.

        On failure the job is remembered and re-written on the next tick;
        in-memory state stays authoritative meanwhile.
        """
        document = job.to_dict()
        try:
            if self._storage.update_by_id(JOBS_COLLECTION, job.id, document) is None:
                self._storage.create(JOBS_COLLECTION, document)
        except Exception as e:
            logger.error(f"Failed to persist job {job.id} ({job.status.value}): {e}")
            self._unpersisted[job.id] = job
            return False

        self._unpersisted.pop(job.id, None)
        return True

    def _flush_unpersisted(self) -> None:
        for job in list(self._unpersisted.values()):
            self._persist(job)

    def _recover(self) -> None:
        """Reload persisted jobs after a restart."""
        if self._recovered:
            return
        self._recovered = True

        try:
            records = self._storage.find(JOBS_COLLECTION)
        except Exception as e:
            logger.error(f"Failed to load persisted jobs: {e}")
            return

        jobs = []
        for record in records:
            try:
                jobs.append(Job.from_dict(record))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed job record {record.get('id')}: {e}")
        jobs.sort(key=lambda j: j.created_at)

        recovered = 0
        for job in jobs:
            if job.id in self._jobs or not job.is_active():
                continue

            if job.status == JobStatus.RUNNING:
                logger.warning(f"Found interrupted job {job.id} ({job.name})")
                job.fail(INTERRUPTED_MESSAGE)
                self._persist(job)
                if job.status != JobStatus.PENDING:
                    self._emit(EVENT_FAILED, job)
                    continue

            self._jobs[job.id] = job
            self._push_pending(job)
            recovered += 1

        if recovered:
            logger.info(f"Recovered {recovered} pending jobs")


# -----------------------------------------------------------------------------
# Bootstrap
# -----------------------------------------------------------------------------
async def initialize_job_queue(
    storage: Optional[Storage] = None,
    config: Optional[QueueConfig] = None,
    handlers: Optional[Mapping[str, JobHandler]] = None,
) -> JobQueue:
    """
    Build a job queue from configuration.

    Args:
        storage: Storage backend (default: created from config)
        config: Queue configuration (default: load_config())
        handlers: job_type -> handler mapping to register

    Returns:
        The JobQueue, already started unless config.autostart is false
    """
    config = config or load_config()
    queue = JobQueue(storage or create_storage(config), config)

    for job_type, handler in (handlers or {}).items():
        queue.register_handler(job_type, handler)

    if config.autostart:
        queue.start()

    return queue
