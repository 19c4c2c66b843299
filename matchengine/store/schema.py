"""Database schema definition and ORM models.

Defines the SQLAlchemy ORM models for stored match scores and finished
recompute tasks plus the run log, with conversions to and from the domain models.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import Boolean, Column, Float, Index, Integer, String, Text, inspect
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base

from matchengine.dispatch.models import Priority, Reason, SubjectType, TaskOutcome, TaskStatus
from matchengine.domain.models import MatchScore

from .base import RunRecord, RunType, TaskRecord

logger = logging.getLogger(__name__)

Base = declarative_base()


class MatchScoreModel(Base):
    """ORM model for the match_scores table; one row per (student, opportunity) pair."""

    __tablename__ = "match_scores"

    # Composite primary key keeps pairs unique
    student_id = Column(String(255), primary_key=True, nullable=False)
    opportunity_id = Column(String(255), primary_key=True, nullable=False)

    skill_score = Column(Float, nullable=False)
    academic_score = Column(Float, nullable=False)
    experience_score = Column(Float, nullable=False)
    preference_score = Column(Float, nullable=False)
    overall_score = Column(Float, nullable=False)

    student_version = Column(Integer, nullable=False)
    opportunity_version = Column(Integer, nullable=False)
    algorithm_version = Column(String(20), nullable=False)

    # Stored as ISO 8601 string
    computed_at = Column(String(50), nullable=False)

    # JSON-encoded per-dimension details
    breakdown = Column(Text, nullable=False, default="{}")

    __table_args__ = (
        Index("idx_scores_opportunity", "opportunity_id", "overall_score"),
        Index("idx_scores_student_overall", "student_id", "overall_score"),
        Index("idx_scores_computed_at", "computed_at"),
    )

    def to_domain(self) -> MatchScore:
        return MatchScore(
            student_id=self.student_id,
            opportunity_id=self.opportunity_id,
            skill_score=self.skill_score,
            academic_score=self.academic_score,
            experience_score=self.experience_score,
            preference_score=self.preference_score,
            overall_score=self.overall_score,
            student_version=self.student_version,
            opportunity_version=self.opportunity_version,
            algorithm_version=self.algorithm_version,
            computed_at=_parse_datetime(self.computed_at),
            breakdown=json.loads(self.breakdown or "{}"),
        )

    def update_from(self, score: MatchScore) -> None:
        """Overwrite every column from a domain score."""
        self.skill_score = score.skill_score
        self.academic_score = score.academic_score
        self.experience_score = score.experience_score
        self.preference_score = score.preference_score
        self.overall_score = score.overall_score
        self.student_version = score.student_version
        self.opportunity_version = score.opportunity_version
        self.algorithm_version = score.algorithm_version
        self.computed_at = format_datetime(score.computed_at)
        self.breakdown = json.dumps(score.breakdown, sort_keys=True, default=str)

    @classmethod
    def from_domain(cls, score: MatchScore) -> "MatchScoreModel":
        model = cls(student_id=score.student_id, opportunity_id=score.opportunity_id)
        model.update_from(score)
        return model


class TaskRecordModel(Base):
    """ORM model for the recompute_tasks table; one row per finished task."""

    __tablename__ = "recompute_tasks"

    task_id = Column(String(64), primary_key=True, nullable=False)
    subject_type = Column(String(20), nullable=False)
    subject_id = Column(String(512), nullable=False)
    reason = Column(String(32), nullable=False)
    priority = Column(String(10), nullable=False)
    status = Column(String(20), nullable=False)
    outcome = Column(String(32), nullable=True)
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)

    # Timestamps (stored as ISO 8601 strings)
    created_at = Column(String(50), nullable=False)
    finished_at = Column(String(50), nullable=False)

    __table_args__ = (
        Index("idx_tasks_status_finished", "status", "finished_at"),
        Index("idx_tasks_subject", "subject_type", "subject_id"),
    )

    def to_domain(self) -> TaskRecord:
        return TaskRecord(
            task_id=self.task_id,
            subject_type=SubjectType(self.subject_type),
            subject_id=self.subject_id,
            reason=Reason(self.reason),
            priority=Priority(self.priority),
            status=TaskStatus(self.status),
            outcome=TaskOutcome(self.outcome) if self.outcome else None,
            attempts=self.attempts,
            last_error=self.last_error,
            created_at=_parse_datetime(self.created_at),
            finished_at=_parse_datetime(self.finished_at),
        )

    @classmethod
    def from_domain(cls, record: TaskRecord) -> "TaskRecordModel":
        return cls(
            task_id=record.task_id,
            subject_type=record.subject_type.value,
            subject_id=record.subject_id,
            reason=record.reason.value,
            priority=record.priority.value,
            status=record.status.value,
            outcome=record.outcome.value if record.outcome else None,
            attempts=record.attempts,
            last_error=record.last_error,
            created_at=format_datetime(record.created_at),
            finished_at=format_datetime(record.finished_at),
        )


class RunRecordModel(Base):
    """ORM model for the match_runs table; the append-only run log."""

    __tablename__ = "match_runs"

    # Insertion order breaks ties between runs logged in the same microsecond
    id = Column(Integer, primary_key=True, autoincrement=True)
    run_id = Column(String(64), nullable=False, unique=True)
    run_type = Column(String(32), nullable=False)
    input_count = Column(Integer, nullable=False, default=0)
    output_count = Column(Integer, nullable=False, default=0)
    runtime_ms = Column(Integer, nullable=False, default=0)
    success = Column(Boolean, nullable=False, default=True)
    error = Column(Text, nullable=True)
    triggered_by = Column(String(255), nullable=True)
    created_at = Column(String(50), nullable=False)

    __table_args__ = (Index("idx_runs_created_at", "created_at"),)

    def to_domain(self) -> RunRecord:
        return RunRecord(
            run_type=RunType(self.run_type),
            input_count=self.input_count,
            output_count=self.output_count,
            runtime_ms=self.runtime_ms,
            success=bool(self.success),
            error=self.error,
            triggered_by=self.triggered_by,
            run_id=self.run_id,
            created_at=_parse_datetime(self.created_at),
        )

    @classmethod
    def from_domain(cls, run: RunRecord) -> "RunRecordModel":
        return cls(
            run_id=run.run_id,
            run_type=RunType(run.run_type).value,
            input_count=run.input_count,
            output_count=run.output_count,
            runtime_ms=run.runtime_ms,
            success=run.success,
            error=run.error,
            triggered_by=run.triggered_by,
            created_at=format_datetime(run.created_at),
        )


def format_datetime(dt: Optional[datetime]) -> Optional[str]:
    """Format a datetime as a sortable ISO 8601 UTC string for storage."""
    if dt is None:
        return None

    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    else:
        dt = dt.astimezone(timezone.utc)

    return dt.strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def _parse_datetime(dt_str: Optional[str]) -> Optional[datetime]:
    if not dt_str:
        return None

    dt_str = dt_str.rstrip("Z")
    try:
        dt = datetime.strptime(dt_str, "%Y-%m-%dT%H:%M:%S.%f")
    except ValueError:
        dt = datetime.strptime(dt_str, "%Y-%m-%dT%H:%M:%S")

    return dt.replace(tzinfo=timezone.utc)


def create_schema(engine: Engine) -> None:
    """Create all tables and indexes if they don't exist (idempotent)."""
    logger.info("Creating database schema if not exists")

    try:
        Base.metadata.create_all(engine, checkfirst=True)
        tables = inspect(engine).get_table_names()
        logger.info(f"Database schema ready. Tables: {', '.join(tables)}")
    except Exception as e:
        logger.error(f"Failed to create database schema: {e}", exc_info=True)
        raise
