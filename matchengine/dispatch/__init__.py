"""Recomputation queue, worker pool and dispatcher."""

from .dispatcher import Dispatcher
from .executor import TaskExecutor
from .locking import KeyedLock
from .models import (
    PRIORITY_ORDER,
    CancelResult,
    Priority,
    QueueStatus,
    Reason,
    RecomputationTask,
    SubjectType,
    TaskOutcome,
    TaskStatus,
    pair_subject_id,
    split_pair_subject_id,
)
from .queue import RecomputationQueue
from .workers import Attempt, WorkerPool, run_with_budget

__all__ = [
    "Dispatcher",
    "TaskExecutor",
    "KeyedLock",
    "RecomputationQueue",
    "WorkerPool",
    "Attempt",
    "run_with_budget",
    "RecomputationTask",
    "CancelResult",
    "QueueStatus",
    "SubjectType",
    "Reason",
    "Priority",
    "PRIORITY_ORDER",
    "TaskStatus",
    "TaskOutcome",
    "pair_subject_id",
    "split_pair_subject_id",
]
