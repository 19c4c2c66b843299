"""Storage interfaces for match scores and finished tasks."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional
from uuid import uuid4

from matchengine.dispatch.models import (
    Priority,
    Reason,
    RecomputationTask,
    SubjectType,
    TaskOutcome,
    TaskStatus,
)
from matchengine.domain.models import EntityType, MatchScore
from matchengine.utils.timestamps import utc_now


@dataclass(frozen=True)
class RankedMatch:
    """A stored score with its 1-based position in a ranked lookup."""

    rank: int
    score: MatchScore


@dataclass(frozen=True)
class ScoreStats:
    """Aggregate figures over stored scores."""

    total_scores: int
    computed_since: int
    average_overall: Optional[float]


@dataclass(frozen=True)
class TaskRecord:
    """Immutable record of a task that reached DONE or FAILED."""

    task_id: str
    subject_type: SubjectType
    subject_id: str
    reason: Reason
    priority: Priority
    status: TaskStatus
    outcome: Optional[TaskOutcome]
    attempts: int
    last_error: Optional[str]
    created_at: datetime
    finished_at: datetime

    @classmethod
    def from_task(cls, task: RecomputationTask) -> "TaskRecord":
        return cls(
            task_id=task.task_id,
            subject_type=task.subject_type,
            subject_id=task.subject_id,
            reason=task.reason,
            priority=task.priority,
            status=task.status,
            outcome=task.outcome,
            attempts=task.attempts,
            last_error=task.last_error,
            created_at=task.created_at,
            finished_at=task.finished_at or utc_now(),
        )


class RunType(str, Enum):
    """What started a run recorded in the run log."""

    STUDENT_UPDATE = "STUDENT_UPDATE"
    OPPORTUNITY_UPDATE = "OPPORTUNITY_UPDATE"
    MANUAL_TRIGGER = "MANUAL_TRIGGER"
    SCHEDULED_BATCH = "SCHEDULED_BATCH"


@dataclass(frozen=True)
class RunRecord:
    """
    One entry in the run log: a sweep, an explicit recompute request, or a
    ranked lookup that had to ask for recomputation.

    Attributes:
        run_type: What started the run
        input_count: Subjects or stored scores the run looked at
        output_count: Tasks enqueued or results returned
        runtime_ms: Wall-clock time spent in the run
        success: False if the run raised
        error: Error message for failed runs
        triggered_by: Free-form origin ("scheduler", "manual", a user id)
    """

    run_type: RunType
    input_count: int
    output_count: int
    runtime_ms: int
    success: bool = True
    error: Optional[str] = None
    triggered_by: Optional[str] = None
    run_id: str = field(default_factory=lambda: uuid4().hex)
    created_at: datetime = field(default_factory=utc_now)


class ScoreStore(ABC):
    """
    Versioned cache of match scores keyed by (student_id, opportunity_id).

    A put replaces the whole score; readers see either the previous or the new
    score, never a mix. Reads never wait on recomputation.
    """

    @abstractmethod
    def get(self, student_id: str, opportunity_id: str) -> Optional[MatchScore]:
        """Stored score for a pair, or None if never computed."""

    @abstractmethod
    def put(self, score: MatchScore) -> None:
        """Create or overwrite the score for score.pair."""

    @abstractmethod
    def current_data_version(self, entity_type: EntityType, entity_id: str) -> Optional[int]:
        """Highest data-version of the entity reflected by any stored score, or None."""

    @abstractmethod
    def top_for_student(self, student_id: str, limit: int = 10) -> List[RankedMatch]:
        """Best-scoring opportunities for a student, overall score descending."""

    @abstractmethod
    def top_for_opportunity(self, opportunity_id: str, limit: int = 10) -> List[RankedMatch]:
        """Best-scoring students for an opportunity, overall score descending."""

    @abstractmethod
    def stats(self, since: datetime) -> ScoreStats:
        """Totals over all scores, and how many were computed at or after `since`."""

    @abstractmethod
    def top_matches(self, limit: int = 10) -> List[RankedMatch]:
        """Highest overall scores across all pairs."""


class TaskLedger(ABC):
    """Record of finished tasks, used for status reporting and auditing."""

    @abstractmethod
    def record(self, task: RecomputationTask) -> None:
        """Store a terminal task. Recording the same task id again overwrites it."""

    @abstractmethod
    def get(self, task_id: str) -> Optional[TaskRecord]:
        """Finished task by id, or None."""

    @abstractmethod
    def count_since(self, status: TaskStatus, since: datetime, outcome: Optional[TaskOutcome] = None) -> int:
        """Tasks that finished with `status` (and `outcome`, if given) at or after `since`."""

    @abstractmethod
    def record_run(self, run: RunRecord) -> None:
        """Append an entry to the run log."""

    @abstractmethod
    def recent_runs(self, limit: int = 50) -> List[RunRecord]:
        """Newest run log entries first."""

    @abstractmethod
    def cleanup(self, cutoff: datetime) -> int:
        """Delete task records and runs older than `cutoff`; returns the count removed."""


def rank(scores: List[MatchScore], limit: int) -> List[RankedMatch]:
    """Order scores by overall descending (ties by pair) and number them from 1."""
    ordered = sorted(scores, key=lambda s: (-s.overall_score, s.student_id, s.opportunity_id))
    return [RankedMatch(rank=i, score=score) for i, score in enumerate(ordered[: max(limit, 0)], start=1)]
