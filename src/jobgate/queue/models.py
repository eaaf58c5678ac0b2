"""Domain models for the job queue and its execution."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class JobQueue(str, Enum):
    """Named priority classes of deferred work."""

    HIGH = "HIGH"
    DEFAULT = "DEFAULT"
    LOW = "LOW"
    BULK = "BULK"
    SCREENSHOT = "SCREENSHOT"

    @classmethod
    def parse(cls, value: str) -> JobQueue:
        try:
            return cls(value.strip().upper())
        except ValueError as error:
            allowed = ", ".join(item.value for item in cls)
            raise ValueError(f"Unknown queue {value!r}; expected one of: {allowed}") from error


# Shared-pool ranking, most urgent first. SCREENSHOT runs in its own pool.
SHARED_QUEUE_ORDER: tuple[JobQueue, ...] = (
    JobQueue.HIGH,
    JobQueue.DEFAULT,
    JobQueue.LOW,
    JobQueue.BULK,
)


class JobState(str, Enum):
    """Durable job lifecycle states."""

    PENDING = "pending"
    LEASED = "leased"
    DONE = "done"
    DEAD = "dead"


class FailureClass(str, Enum):
    """Normalized failure classes persisted on the job."""

    HANDLER_TRANSIENT = "handler_transient"
    HANDLER_TERMINAL = "handler_terminal"
    HANDLER_CRASHED = "handler_crashed"
    TIMEOUT = "timeout"
    LEASE_LOST = "lease_lost"
    UNKNOWN_HANDLER = "unknown_handler"
    BUDGET_DEFERRED = "budget_deferred"


@dataclass(slots=True)
class JobCreate:
    """Input payload for enqueuing a job."""

    queue: JobQueue
    handler_type: str
    payload: bytes
    idempotency_key: str
    run_at: datetime | None = None
    max_attempts: int | None = None
    priority: int = 100
    job_id: str | None = None


@dataclass(slots=True)
class JobView:
    """Readable job view for workers, admin and CLI."""

    job_id: str
    queue: JobQueue
    handler_type: str
    payload: bytes
    idempotency_key: str
    priority: int
    state: JobState
    run_at: datetime
    lease_owner: str | None
    lease_expires_at: datetime | None
    attempts: int
    max_attempts: int
    backoff_base_seconds: float
    timeout_seconds: int
    last_error: str | None
    failure_class: FailureClass | None
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None
    failed_at: datetime | None


@dataclass(slots=True)
class EnqueueResult:
    """Enqueue outcome; `created` is False when an idempotent duplicate was found."""

    job: JobView
    created: bool

    @property
    def job_id(self) -> str:
        return self.job.job_id


@dataclass(slots=True)
class JobEventView:
    """Job event entry for the audit trail."""

    event_id: int
    job_id: str
    event_type: str
    state_from: JobState | None
    state_to: JobState | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class JobDetails:
    """Job with its event stream."""

    job: JobView
    events: list[JobEventView]


@dataclass(slots=True)
class QueueDepthView:
    """Per-queue counts by state."""

    queue: JobQueue
    pending: int = 0
    ready: int = 0
    leased: int = 0
    done: int = 0
    dead: int = 0
    paused: bool = False


@dataclass(slots=True)
class QueueStateView:
    queue: JobQueue
    paused: bool
    reason: str | None
    updated_at: datetime | None
