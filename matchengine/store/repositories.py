"""Data access layer (repositories) for persistence operations.

Repositories encapsulate SQL for match scores, finished tasks and runs and return
domain models rather than ORM models. Every SQLAlchemy error is logged and
re-raised as a PersistenceError.
"""

import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from matchengine.dispatch.models import TaskOutcome, TaskStatus
from matchengine.domain.models import MatchScore

from .base import RunRecord, TaskRecord
from .exceptions import DataIntegrityError, PersistenceError
from .schema import MatchScoreModel, RunRecordModel, TaskRecordModel, format_datetime

logger = logging.getLogger(__name__)


class MatchScoreRepository:
    """Repository for match score operations."""

    def __init__(self, session: Session):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy session for database operations
        """
        self.session = session

    def get(self, student_id: str, opportunity_id: str) -> Optional[MatchScore]:
        """Retrieve the score for a pair.

        Returns:
            MatchScore if found, None otherwise

        Raises:
            PersistenceError: If database error occurs
        """
        try:
            model = self.session.get(MatchScoreModel, (student_id, opportunity_id))
            return model.to_domain() if model is not None else None

        except SQLAlchemyError as e:
            logger.error(f"Error retrieving score for {student_id}/{opportunity_id}: {e}", exc_info=True)
            raise PersistenceError(f"Failed to retrieve score: {e}") from e

    def upsert(self, score: MatchScore) -> None:
        """Insert a new score or overwrite the existing one for the pair.

        Raises:
            DataIntegrityError: If a concurrent insert for the pair won
            PersistenceError: If database error occurs
        """
        try:
            existing = self.session.get(MatchScoreModel, (score.student_id, score.opportunity_id))

            if existing is not None:
                existing.update_from(score)
            else:
                self.session.add(MatchScoreModel.from_domain(score))
            self.session.flush()

        except IntegrityError as e:
            logger.error(
                f"Integrity error upserting score {score.student_id}/{score.opportunity_id}: {e}",
                exc_info=True,
            )
            raise DataIntegrityError(f"Failed to upsert score due to constraint violation: {e}") from e
        except SQLAlchemyError as e:
            logger.error(
                f"Error upserting score {score.student_id}/{score.opportunity_id}: {e}", exc_info=True
            )
            raise PersistenceError(f"Failed to upsert score: {e}") from e

    def max_student_version(self, student_id: str) -> Optional[int]:
        """Highest student_version recorded for a student, or None."""
        return self._scalar(
            select(func.max(MatchScoreModel.student_version)).where(MatchScoreModel.student_id == student_id),
            f"student version for {student_id}",
        )

    def max_opportunity_version(self, opportunity_id: str) -> Optional[int]:
        """Highest opportunity_version recorded for an opportunity, or None."""
        return self._scalar(
            select(func.max(MatchScoreModel.opportunity_version)).where(
                MatchScoreModel.opportunity_id == opportunity_id
            ),
            f"opportunity version for {opportunity_id}",
        )

    def top_for_student(self, student_id: str, limit: int) -> List[MatchScore]:
        """Scores for a student ordered by overall score descending."""
        stmt = (
            select(MatchScoreModel)
            .where(MatchScoreModel.student_id == student_id)
            .order_by(MatchScoreModel.overall_score.desc(), MatchScoreModel.opportunity_id.asc())
            .limit(limit)
        )
        return self._scores(stmt, f"top opportunities for {student_id}")

    def top_for_opportunity(self, opportunity_id: str, limit: int) -> List[MatchScore]:
        """Scores for an opportunity ordered by overall score descending."""
        stmt = (
            select(MatchScoreModel)
            .where(MatchScoreModel.opportunity_id == opportunity_id)
            .order_by(MatchScoreModel.overall_score.desc(), MatchScoreModel.student_id.asc())
            .limit(limit)
        )
        return self._scores(stmt, f"top students for {opportunity_id}")

    def top_overall(self, limit: int) -> List[MatchScore]:
        """Highest scores across all pairs."""
        stmt = (
            select(MatchScoreModel)
            .order_by(
                MatchScoreModel.overall_score.desc(),
                MatchScoreModel.student_id.asc(),
                MatchScoreModel.opportunity_id.asc(),
            )
            .limit(limit)
        )
        return self._scores(stmt, "top matches")

    def count(self) -> int:
        return self._scalar(select(func.count()).select_from(MatchScoreModel), "score count") or 0

    def count_computed_since(self, since: datetime) -> int:
        stmt = select(func.count()).select_from(MatchScoreModel).where(
            MatchScoreModel.computed_at >= format_datetime(since)
        )
        return self._scalar(stmt, "recent score count") or 0

    def average_overall(self) -> Optional[float]:
        return self._scalar(select(func.avg(MatchScoreModel.overall_score)), "average overall score")

    def _scalar(self, stmt, what: str):
        try:
            return self.session.execute(stmt).scalar()
        except SQLAlchemyError as e:
            logger.error(f"Error retrieving {what}: {e}", exc_info=True)
            raise PersistenceError(f"Failed to retrieve {what}: {e}") from e

    def _scores(self, stmt, what: str) -> List[MatchScore]:
        try:
            return [model.to_domain() for model in self.session.execute(stmt).scalars().all()]
        except SQLAlchemyError as e:
            logger.error(f"Error retrieving {what}: {e}", exc_info=True)
            raise PersistenceError(f"Failed to retrieve {what}: {e}") from e


class TaskRecordRepository:
    """Repository for finished recompute tasks."""

    def __init__(self, session: Session):
        self.session = session

    def upsert(self, record: TaskRecord) -> None:
        """Insert or overwrite a finished task.

        Raises:
            PersistenceError: If database error occurs
        """
        try:
            self.session.merge(TaskRecordModel.from_domain(record))
            self.session.flush()

        except IntegrityError as e:
            logger.error(f"Integrity error recording task {record.task_id}: {e}", exc_info=True)
            raise DataIntegrityError(f"Failed to record task due to constraint violation: {e}") from e
        except SQLAlchemyError as e:
            logger.error(f"Error recording task {record.task_id}: {e}", exc_info=True)
            raise PersistenceError(f"Failed to record task: {e}") from e

    def get(self, task_id: str) -> Optional[TaskRecord]:
        """Retrieve a finished task by id, or None."""
        try:
            model = self.session.get(TaskRecordModel, task_id)
            return model.to_domain() if model is not None else None

        except SQLAlchemyError as e:
            logger.error(f"Error retrieving task {task_id}: {e}", exc_info=True)
            raise PersistenceError(f"Failed to retrieve task: {e}") from e

    def count_since(self, status: TaskStatus, since: datetime, outcome: Optional[TaskOutcome] = None) -> int:
        """Count tasks that finished with `status` (and `outcome`, if given) at or after `since`."""
        try:
            stmt = select(func.count()).select_from(TaskRecordModel).where(
                TaskRecordModel.status == status.value,
                TaskRecordModel.finished_at >= format_datetime(since),
            )
            if outcome is not None:
                stmt = stmt.where(TaskRecordModel.outcome == outcome.value)
            return self.session.execute(stmt).scalar() or 0

        except SQLAlchemyError as e:
            logger.error(f"Error counting {status.value} tasks: {e}", exc_info=True)
            raise PersistenceError(f"Failed to count tasks: {e}") from e

    def cleanup_before(self, cutoff: datetime) -> int:
        """Delete task records that finished before cutoff.

        Returns:
            Count of deleted records
        """
        try:
            stmt = delete(TaskRecordModel).where(TaskRecordModel.finished_at < format_datetime(cutoff))
            result = self.session.execute(stmt)
            self.session.flush()

            deleted_count = result.rowcount
            logger.info(f"Cleaned up {deleted_count} old task records")
            return deleted_count

        except SQLAlchemyError as e:
            logger.error(f"Error cleaning up old task records: {e}", exc_info=True)
            raise PersistenceError(f"Failed to cleanup old task records: {e}") from e


class RunRecordRepository:
    """Repository for the run log."""

    def __init__(self, session: Session):
        self.session = session

    def add(self, run: RunRecord) -> None:
        """Append a run.

        Raises:
            PersistenceError: If database error occurs
        """
        try:
            self.session.add(RunRecordModel.from_domain(run))
            self.session.flush()

        except IntegrityError as e:
            logger.error(f"Integrity error logging run {run.run_id}: {e}", exc_info=True)
            raise DataIntegrityError(f"Failed to log run due to constraint violation: {e}") from e
        except SQLAlchemyError as e:
            logger.error(f"Error logging run {run.run_id}: {e}", exc_info=True)
            raise PersistenceError(f"Failed to log run: {e}") from e

    def recent(self, limit: int) -> List[RunRecord]:
        """Newest runs first."""
        try:
            stmt = (
                select(RunRecordModel)
                .order_by(RunRecordModel.created_at.desc(), RunRecordModel.id.desc())
                .limit(max(limit, 0))
            )
            return [model.to_domain() for model in self.session.execute(stmt).scalars().all()]

        except SQLAlchemyError as e:
            logger.error(f"Error retrieving recent runs: {e}", exc_info=True)
            raise PersistenceError(f"Failed to retrieve runs: {e}") from e

    def cleanup_before(self, cutoff: datetime) -> int:
        """Delete runs logged before cutoff; returns the count removed."""
        try:
            stmt = delete(RunRecordModel).where(RunRecordModel.created_at < format_datetime(cutoff))
            result = self.session.execute(stmt)
            self.session.flush()
            return result.rowcount

        except SQLAlchemyError as e:
            logger.error(f"Error cleaning up old runs: {e}", exc_info=True)
            raise PersistenceError(f"Failed to cleanup old runs: {e}") from e
