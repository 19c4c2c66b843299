"""SQLAlchemy-backed score store and task ledger.

Each call runs in its own session from get_session(), so the store is safe to
share between worker threads. init_database() must have been called first.
"""

from datetime import datetime
from typing import List, Optional

from matchengine.dispatch.models import RecomputationTask, TaskOutcome, TaskStatus
from matchengine.domain.models import EntityType, MatchScore

from .base import RankedMatch, RunRecord, ScoreStats, ScoreStore, TaskLedger, TaskRecord, rank
from .database import get_session
from .repositories import MatchScoreRepository, RunRecordRepository, TaskRecordRepository


class SqlScoreStore(ScoreStore):
    """ScoreStore persisted in the match_scores table."""

    def get(self, student_id: str, opportunity_id: str) -> Optional[MatchScore]:
        with get_session() as session:
            return MatchScoreRepository(session).get(student_id, opportunity_id)

    def put(self, score: MatchScore) -> None:
        with get_session() as session:
            MatchScoreRepository(session).upsert(score)

    def current_data_version(self, entity_type: EntityType, entity_id: str) -> Optional[int]:
        entity_type = EntityType(entity_type)
        with get_session() as session:
            repo = MatchScoreRepository(session)
            if entity_type is EntityType.STUDENT:
                return repo.max_student_version(entity_id)
            return repo.max_opportunity_version(entity_id)

    def top_for_student(self, student_id: str, limit: int = 10) -> List[RankedMatch]:
        with get_session() as session:
            scores = MatchScoreRepository(session).top_for_student(student_id, limit)
        return rank(scores, limit)

    def top_for_opportunity(self, opportunity_id: str, limit: int = 10) -> List[RankedMatch]:
        with get_session() as session:
            scores = MatchScoreRepository(session).top_for_opportunity(opportunity_id, limit)
        return rank(scores, limit)

    def top_matches(self, limit: int = 10) -> List[RankedMatch]:
        with get_session() as session:
            scores = MatchScoreRepository(session).top_overall(limit)
        return rank(scores, limit)

    def stats(self, since: datetime) -> ScoreStats:
        with get_session() as session:
            repo = MatchScoreRepository(session)
            total = repo.count()
            recent = repo.count_computed_since(since)
            average = repo.average_overall()
        return ScoreStats(
            total_scores=total,
            computed_since=recent,
            average_overall=float(average) if average is not None else None,
        )


class SqlTaskLedger(TaskLedger):
    """TaskLedger persisted in the recompute_tasks and match_runs tables."""

    def record(self, task: RecomputationTask) -> None:
        with get_session() as session:
            TaskRecordRepository(session).upsert(TaskRecord.from_task(task))

    def get(self, task_id: str) -> Optional[TaskRecord]:
        with get_session() as session:
            return TaskRecordRepository(session).get(task_id)

    def count_since(self, status: TaskStatus, since: datetime, outcome: Optional[TaskOutcome] = None) -> int:
        with get_session() as session:
            return TaskRecordRepository(session).count_since(status, since, outcome)

    def record_run(self, run: RunRecord) -> None:
        with get_session() as session:
            RunRecordRepository(session).add(run)

    def recent_runs(self, limit: int = 50) -> List[RunRecord]:
        with get_session() as session:
            return RunRecordRepository(session).recent(limit)

    def cleanup(self, cutoff: datetime) -> int:
        with get_session() as session:
            deleted = TaskRecordRepository(session).cleanup_before(cutoff)
            return deleted + RunRecordRepository(session).cleanup_before(cutoff)
