"""
Job Model

Defines the Job entity (one schedulable unit of work), its status/priority
enums and the validated creation parameters accepted by the queue.

State machine:

    PENDING → RUNNING → COMPLETED
                 ↓  ↘
                 ↓    FAILED      (no retries left)
                 ↓
              PENDING             (retry: retries < max_retries)

    PENDING / RUNNING → CANCELLED  (explicit cancellation)

Retry is a status revert to PENDING; the retries counter is the only trace
of earlier attempts.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Optional, Set, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from .config import DEFAULT_RETRIES, DEFAULT_TIMEOUT_MS


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_datetime(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# -----------------------------------------------------------------------------
# Enums
# -----------------------------------------------------------------------------
class JobStatus(str, Enum):
    """Job lifecycle states."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @classmethod
    def terminal_states(cls) -> Set["JobStatus"]:
        """Return states that indicate job completion."""
        return {cls.COMPLETED, cls.FAILED, cls.CANCELLED}

    @classmethod
    def active_states(cls) -> Set["JobStatus"]:
        """Return states where the scheduler still owns the job."""
        return {cls.PENDING, cls.RUNNING}


class JobPriority(int, Enum):
    """
    Job priority levels for scheduling.

    Ordering: CRITICAL (3) > HIGH (2) > NORMAL (1) > LOW (0)
    """
    LOW = 0
    NORMAL = 1
    HIGH = 2
    CRITICAL = 3

    @classmethod
    def parse(cls, value: Any) -> "JobPriority":
        """Accept an enum member, its int value or its (case-insensitive) name."""
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            text = value.strip()
            if text.lstrip("-").isdigit():
                return cls(int(text))
            try:
                return cls[text.upper()]
            except KeyError:
                raise ValueError(f"unknown priority: {value!r}")
        if isinstance(value, bool):
            raise ValueError(f"unknown priority: {value!r}")
        return cls(value)


# -----------------------------------------------------------------------------
# Job Creation Parameters
# -----------------------------------------------------------------------------
class JobCreationParams(BaseModel):
    """
    Caller-supplied parameters for a new job.

    max_retries and timeout default to the queue configuration when omitted.
    """
    name: str = Field(..., min_length=1, description="Human readable label")
    job_type: str = Field(
        ...,
        min_length=1,
        validation_alias=AliasChoices("type", "job_type"),
        description="Selects the handler",
    )
    priority: JobPriority = JobPriority.NORMAL
    payload: Any = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    max_retries: Optional[int] = Field(
        None,
        ge=0,
        validation_alias=AliasChoices("max_retries", "maxRetries"),
    )
    timeout: Optional[int] = Field(None, gt=0, description="Milliseconds allowed while running")

    model_config = ConfigDict(extra="forbid")

    @field_validator("name", "job_type")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must not be blank")
        return value

    @field_validator("priority", mode="before")
    @classmethod
    def _parse_priority(cls, value: Any) -> JobPriority:
        return JobPriority.parse(value)


# -----------------------------------------------------------------------------
# Job Entity
# -----------------------------------------------------------------------------
@dataclass
class Job:
    """
    One unit of schedulable work.

    The id never changes. Status, progress, timestamps, result/error and
    retry bookkeeping are mutated by the scheduler; progress is also reported
    by the handler through update_progress().
    """
    name: str
    job_type: str
    payload: Any = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    priority: JobPriority = JobPriority.NORMAL
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: JobStatus = JobStatus.PENDING
    progress: int = 0
    created_at: datetime = field(default_factory=_utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    result: Any = None
    error: Optional[str] = None
    retries: int = 0
    max_retries: int = DEFAULT_RETRIES
    timeout: int = DEFAULT_TIMEOUT_MS
    _progress_listener: Optional[Callable[["Job"], None]] = field(
        default=None, init=False, repr=False, compare=False
    )

    def __setattr__(self, name: str, value: Any) -> None:
        if name == "id" and "id" in self.__dict__:
            raise AttributeError("Job id is immutable")
        super().__setattr__(name, value)

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    def start(self) -> None:
        """PENDING → RUNNING. The scheduler only calls this on pending jobs."""
        self.status = JobStatus.RUNNING
        self.started_at = _utcnow()
        self.completed_at = None
        self.progress = 0

    def complete(self, result: Any = None) -> None:
        """Finish successfully."""
        self.status = JobStatus.COMPLETED
        self.completed_at = _utcnow()
        self.progress = 100
        self.result = result
        self.error = None

    def fail(self, error: Union[BaseException, str]) -> None:
        """
        Record a failed attempt.

        Re-queues the job as PENDING while retries remain, otherwise the job
        ends FAILED.
        """
        self.error = error if isinstance(error, str) else (str(error) or error.__class__.__name__)
        self.result = None
        self.completed_at = _utcnow()

        if self.retries < self.max_retries:
            self.retries += 1
            self.status = JobStatus.PENDING
            self.started_at = None
            self.completed_at = None
        else:
            self.status = JobStatus.FAILED

    def cancel(self, reason: str = "Cancelled by user") -> None:
        """Mark the job CANCELLED."""
        self.status = JobStatus.CANCELLED
        self.completed_at = _utcnow()
        self.result = None
        self.error = reason

    def update_progress(self, value: Union[int, float]) -> None:
        """Store progress clamped into [0, 100]."""
        self.progress = int(min(max(value, 0), 100))
        if self._progress_listener is not None:
            self._progress_listener(self)

    def attach_progress_listener(self, listener: Optional[Callable[["Job"], None]]) -> None:
        """Set (or clear with None) the callback invoked on every progress update."""
        self._progress_listener = listener

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def is_active(self) -> bool:
        return self.status in JobStatus.active_states()

    def is_complete(self) -> bool:
        return self.status in JobStatus.terminal_states()

    def has_timed_out(self, now: Optional[datetime] = None) -> bool:
        """True if the job has been running longer than its timeout."""
        if self.started_at is None:
            return False
        elapsed_ms = ((now or _utcnow()) - self.started_at).total_seconds() * 1000
        return elapsed_ms > self.timeout

    def get_wait_time_seconds(self) -> float:
        """Time spent since creation while still PENDING."""
        if self.status != JobStatus.PENDING:
            return 0.0
        return (_utcnow() - self.created_at).total_seconds()

    def get_priority_sort_key(self) -> tuple:
        """
        Sort key for queue ordering.

        1. Highest priority first (-priority for descending)
        2. Oldest job first (created_at)
        """
        return (-int(self.priority), self.created_at.timestamp())

    # -------------------------------------------------------------------------
    # Serialization
    # -------------------------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a JSON-safe document."""
        return {
            "id": self.id,
            "name": self.name,
            "job_type": self.job_type,
            "status": self.status.value,
            "priority": int(self.priority),
            "payload": self.payload,
            "metadata": self.metadata,
            "progress": self.progress,
            "result": self.result,
            "error": self.error,
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "retries": self.retries,
            "max_retries": self.max_retries,
            "timeout": self.timeout,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Job":
        """Rebuild a job from a stored document (unknown keys are ignored)."""
        return cls(
            id=data["id"],
            name=data["name"],
            job_type=data["job_type"],
            status=JobStatus(data.get("status", JobStatus.PENDING.value)),
            priority=JobPriority.parse(data.get("priority", JobPriority.NORMAL.value)),
            payload=data.get("payload"),
            metadata=data.get("metadata") or {},
            progress=data.get("progress", 0),
            result=data.get("result"),
            error=data.get("error"),
            created_at=_parse_datetime(data.get("created_at")) or _utcnow(),
            started_at=_parse_datetime(data.get("started_at")),
            completed_at=_parse_datetime(data.get("completed_at")),
            retries=data.get("retries", 0),
            max_retries=data.get("max_retries", DEFAULT_RETRIES),
            timeout=data.get("timeout", DEFAULT_TIMEOUT_MS),
        )

    @classmethod
    def from_params(
        cls,
        params: JobCreationParams,
        default_retries: int = DEFAULT_RETRIES,
        default_timeout_ms: int = DEFAULT_TIMEOUT_MS,
    ) -> "Job":
        """Construct a PENDING job from validated creation parameters."""
        return cls(
            name=params.name,
            job_type=params.job_type,
            payload=params.payload,
            metadata=dict(params.metadata),
            priority=params.priority,
            max_retries=default_retries if params.max_retries is None else params.max_retries,
            timeout=default_timeout_ms if params.timeout is None else params.timeout,
        )
