"""Task and status models for the recomputation queue."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, Optional, Tuple
from uuid import uuid4

from matchengine.utils.timestamps import utc_now

PAIR_SEPARATOR = "::"


class SubjectType(str, Enum):
    """What a recompute task is about."""

    STUDENT = "STUDENT"
    OPPORTUNITY = "OPPORTUNITY"
    PAIR = "PAIR"


class Reason(str, Enum):
    """Why a recompute was requested."""

    DATA_CHANGED = "DATA_CHANGED"
    EXPLICIT_REQUEST = "EXPLICIT_REQUEST"
    BATCH_SWEEP = "BATCH_SWEEP"

    @property
    def rank(self) -> int:
        """Higher rank wins when duplicate tasks are merged."""
        return _REASON_RANK[self]


_REASON_RANK = {
    Reason.BATCH_SWEEP: 0,
    Reason.DATA_CHANGED: 1,
    Reason.EXPLICIT_REQUEST: 2,
}


class Priority(str, Enum):
    """Queue bucket; buckets are served strictly HIGH, then NORMAL, then LOW."""

    HIGH = "HIGH"
    NORMAL = "NORMAL"
    LOW = "LOW"

    @property
    def rank(self) -> int:
        """Higher rank is served first."""
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {
    Priority.LOW: 0,
    Priority.NORMAL: 1,
    Priority.HIGH: 2,
}

# Serving order for claims
PRIORITY_ORDER = (Priority.HIGH, Priority.NORMAL, Priority.LOW)


class TaskStatus(str, Enum):
    """Task lifecycle: PENDING -> PROCESSING -> DONE | FAILED."""

    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    DONE = "DONE"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.DONE, TaskStatus.FAILED)


class TaskOutcome(str, Enum):
    """How a task ended."""

    COMPUTED = "COMPUTED"
    NO_OP = "NO_OP"
    SUBJECT_GONE = "SUBJECT_GONE"
    EXPANDED = "EXPANDED"
    CANCELLED = "CANCELLED"
    EVICTED = "EVICTED"
    SUPERSEDED = "SUPERSEDED"
    DEAD_LETTERED = "DEAD_LETTERED"


def pair_subject_id(student_id: str, opportunity_id: str) -> str:
    """Encode a (student, opportunity) pair as a PAIR subject id."""
    return f"{student_id}{PAIR_SEPARATOR}{opportunity_id}"


def split_pair_subject_id(subject_id: str) -> Tuple[str, str]:
    """Decode a PAIR subject id back into (student_id, opportunity_id).

    Raises:
        ValueError: If the id does not contain exactly one separator
    """
    parts = subject_id.split(PAIR_SEPARATOR)
    if len(parts) != 2 or not all(parts):
        raise ValueError(f"Invalid pair subject id: {subject_id!r}")
    return parts[0], parts[1]


@dataclass
class RecomputationTask:
    """
    A unit of recompute work.

    Attributes:
        subject_type: STUDENT, OPPORTUNITY or PAIR
        subject_id: Entity id, or "<student>::<opportunity>" for PAIR tasks
        reason: Why the recompute was requested
        priority: Queue bucket
        task_id: Unique id (generated)
        status: Lifecycle state
        attempts: Failed attempts so far
        created_at: When the task was created (UTC)
        outcome: Set once the task is terminal
        last_error: Message of the most recent failure
        not_before: Monotonic time before which a retry must not be claimed
        discard: Set when a PROCESSING task is cancelled
        finished_at: When the task became terminal (UTC)
    """

    subject_type: SubjectType
    subject_id: str
    reason: Reason = Reason.DATA_CHANGED
    priority: Priority = Priority.NORMAL
    task_id: str = field(default_factory=lambda: uuid4().hex)
    status: TaskStatus = TaskStatus.PENDING
    attempts: int = 0
    created_at: datetime = field(default_factory=utc_now)
    outcome: Optional[TaskOutcome] = None
    last_error: Optional[str] = None
    not_before: float = 0.0
    discard: bool = False
    finished_at: Optional[datetime] = None

    def __post_init__(self):
        self.subject_type = SubjectType(self.subject_type)
        self.reason = Reason(self.reason)
        self.priority = Priority(self.priority)
        if self.subject_type is SubjectType.PAIR:
            split_pair_subject_id(self.subject_id)

    @classmethod
    def for_pair(cls, student_id: str, opportunity_id: str, **kwargs) -> "RecomputationTask":
        """Build a PAIR task."""
        return cls(SubjectType.PAIR, pair_subject_id(student_id, opportunity_id), **kwargs)

    @property
    def subject_key(self) -> Tuple[SubjectType, str]:
        """Deduplication and exclusion key."""
        return (self.subject_type, self.subject_id)

    @property
    def pair(self) -> Tuple[str, str]:
        """(student_id, opportunity_id) of a PAIR task."""
        return split_pair_subject_id(self.subject_id)

    def log_fields(self) -> Dict[str, object]:
        """Fields attached to every log line about this task."""
        return {
            "task_id": self.task_id,
            "subject_type": self.subject_type.value,
            "subject_id": self.subject_id,
            "priority": self.priority.value,
            "reason": self.reason.value,
            "attempts": self.attempts,
        }


@dataclass(frozen=True)
class CancelResult:
    """
    Answer to a cancel request.

    Attributes:
        task_id: Task the request named
        cancelled: True if the task was removed, or will be discarded on completion
        state: Task status at the time of the request (None for unknown ids)
    """

    task_id: str
    cancelled: bool
    state: Optional[TaskStatus]

    def __bool__(self) -> bool:
        return self.cancelled


@dataclass
class QueueStatus:
    """
    Snapshot of queue health.

    Attributes:
        pending_by_priority: PENDING task counts per bucket
        processing: Tasks currently held by workers
        failed_last_24h: Tasks that ended FAILED in the last 24 hours, evictions excluded
        evicted_last_24h: LOW tasks dropped by backpressure in the last 24 hours
        completed_last_24h: Tasks that ended DONE in the last 24 hours
        oldest_pending_age_seconds: Age of the oldest PENDING task
        workers: Size of the worker pool
        accepting: Whether new enqueues are accepted
    """

    pending_by_priority: Dict[str, int] = field(default_factory=dict)
    processing: int = 0
    failed_last_24h: int = 0
    evicted_last_24h: int = 0
    completed_last_24h: int = 0
    oldest_pending_age_seconds: Optional[float] = None
    workers: int = 0
    accepting: bool = True

    @property
    def pending(self) -> int:
        """Total PENDING tasks across buckets."""
        return sum(self.pending_by_priority.values())
