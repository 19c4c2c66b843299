"""Collaborator-facing facade over the dispatcher, store and triggers."""

import time
from dataclasses import dataclass, field
from datetime import timedelta
from typing import List, Optional

from matchengine.config.environment import EnvironmentConfig
from matchengine.config.models import EngineConfig, StorageBackend
from matchengine.dispatch.dispatcher import Dispatcher
from matchengine.dispatch.models import (
    CancelResult,
    Priority,
    QueueStatus,
    Reason,
    RecomputationTask,
    SubjectType,
)
from matchengine.domain.models import EntityType, MatchScore
from matchengine.exceptions import DispatcherStopped, QueueSaturated
from matchengine.logging import get_logger
from matchengine.scoring.computer import ScoreComputer
from matchengine.scoring.insights import MatchInsights, build_insights
from matchengine.sources import DataSource, InMemoryDataSource, load_seed_file
from matchengine.store import (
    InMemoryScoreStore,
    InMemoryTaskLedger,
    RankedMatch,
    RunRecord,
    RunType,
    ScoreStore,
    SqlScoreStore,
    SqlTaskLedger,
    TaskLedger,
    init_database,
)
from matchengine.triggers import TriggerDetector
from matchengine.utils.timestamps import hours_ago, utc_now

logger = get_logger(__name__, component="service")


@dataclass
class MatchingStats:
    """Summary of stored scores and queue load."""

    total_scores: int = 0
    computed_last_24h: int = 0
    pending_tasks: int = 0
    average_overall_score: Optional[float] = None
    top_matches: List[RankedMatch] = field(default_factory=list)


class MatchingService:
    """
    Entry point for collaborators.

    Mutating services call enqueue_recompute (or the hooks on `triggers`);
    readers call get_score and the ranked lookups, which never wait on
    recomputation.
    """

    def __init__(
        self,
        source: DataSource,
        store: ScoreStore,
        dispatcher: Dispatcher,
        computer: Optional[ScoreComputer] = None,
        cleanup_after_days: int = 7,
    ):
        self.source = source
        self.store = store
        self.dispatcher = dispatcher
        self.computer = computer if computer is not None else dispatcher.executor.computer
        self.cleanup_after_days = cleanup_after_days
        self.triggers = TriggerDetector(dispatcher.enqueue, source)

    @property
    def ledger(self) -> TaskLedger:
        return self.dispatcher.ledger

    # -- lifecycle -----------------------------------------------------

    def start(self) -> None:
        self.dispatcher.start()

    def drain(self, timeout: float) -> int:
        return self.dispatcher.drain(timeout)

    def shutdown(self, timeout: Optional[float] = None) -> None:
        self.dispatcher.shutdown(timeout)

    # -- writes --------------------------------------------------------

    def enqueue_recompute(
        self,
        subject_type: SubjectType,
        subject_id: str,
        reason: Reason = Reason.DATA_CHANGED,
        priority: Priority = Priority.NORMAL,
    ) -> str:
        """
        Ask for a recompute of a student, an opportunity, or a "<student>::<opportunity>" pair.

        Returns:
            Id of the task carrying the work

        Raises:
            QueueSaturated: NORMAL/HIGH bucket is full; back off and retry
            DispatcherStopped: The engine is draining or stopped
        """
        task = RecomputationTask(subject_type, subject_id, reason=reason, priority=priority)
        return self.dispatcher.enqueue(task)

    def cancel(self, task_id: str) -> CancelResult:
        return self.dispatcher.cancel(task_id)

    def request_recompute(
        self,
        student_id: Optional[str] = None,
        opportunity_id: Optional[str] = None,
        triggered_by: Optional[str] = None,
    ) -> str:
        """
        Explicit HIGH-priority recompute of a student, an opportunity, or a pair.

        The request is written to the run log as MANUAL_TRIGGER.

        Raises:
            ValueError: If neither id is given
            QueueSaturated: HIGH bucket is full
            DispatcherStopped: The engine is draining or stopped
        """
        started = time.time()
        try:
            task_id = self.triggers.request_recompute(student_id, opportunity_id)
        except (ValueError, QueueSaturated, DispatcherStopped) as e:
            self._log_run(RunType.MANUAL_TRIGGER, 1, 0, started, error=e, triggered_by=triggered_by)
            raise
        self._log_run(RunType.MANUAL_TRIGGER, 1, 1, started, triggered_by=triggered_by)
        return task_id

    def run_sweep(self, triggered_by: str = "scheduler") -> List[str]:
        """Enqueue the LOW-priority batch sweep and log it as SCHEDULED_BATCH."""
        started = time.time()
        try:
            task_ids = self.triggers.schedule_batch_sweep()
        except Exception as e:
            self._log_run(RunType.SCHEDULED_BATCH, 0, 0, started, error=e, triggered_by=triggered_by)
            raise
        self._log_run(
            RunType.SCHEDULED_BATCH, len(task_ids), len(set(task_ids)), started, triggered_by=triggered_by
        )
        return task_ids

    def recent_runs(self, limit: int = 50) -> List[RunRecord]:
        """Newest run log entries first."""
        return self.ledger.recent_runs(limit)

    def cleanup_old_records(self, older_than_days: Optional[int] = None) -> int:
        """Purge finished-task records older than the retention window."""
        days = self.cleanup_after_days if older_than_days is None else older_than_days
        deleted = self.ledger.cleanup(utc_now() - timedelta(days=days))
        logger.info(
            f"Removed {deleted} task records older than {days} days",
            extra={"event": "ledger.cleaned", "deleted": deleted, "older_than_days": days},
        )
        return deleted

    # -- reads ---------------------------------------------------------

    def get_score(self, student_id: str, opportunity_id: str) -> Optional[MatchScore]:
        """Most recently computed score, or None if never computed."""
        return self.store.get(student_id, opportunity_id)

    def request_immediate_score(self, student_id: str, opportunity_id: str, persist: bool = False) -> MatchScore:
        """
        Compute a score synchronously, bypassing the queue.

        Meant for one-off previews. If the stored score is already current it
        is returned as is. With persist=True the result is written under the
        pair lock unless a score at least as fresh is already stored.

        Raises:
            SubjectGone: If either side does not exist
            DataUnavailable: If the data source fails
        """
        student_version = self.source.current_data_version(EntityType.STUDENT, student_id)
        opportunity_version = self.source.current_data_version(EntityType.OPPORTUNITY, opportunity_id)

        stored = self.store.get(student_id, opportunity_id)
        if stored is not None and stored.is_current(student_version, opportunity_version):
            return stored

        candidate = self.source.fetch_candidate_snapshot(student_id)
        opportunity = self.source.fetch_opportunity_snapshot(opportunity_id)
        score = MatchScore.from_components(
            student_id,
            opportunity_id,
            self.computer.compute(candidate, opportunity),
            student_version=student_version,
            opportunity_version=opportunity_version,
            computed_at=utc_now(),
        )

        if persist:
            with self.dispatcher.locks.holding((student_id, opportunity_id)):
                latest = self.store.get(student_id, opportunity_id)
                if latest is None or not latest.covers(student_version, opportunity_version):
                    self.store.put(score)

        logger.info(
            "Immediate score computed",
            extra={
                "event": "score.immediate",
                "student_id": student_id,
                "opportunity_id": opportunity_id,
                "overall_score": round(score.overall_score, 4),
                "persisted": persist,
            },
        )
        return score

    def queue_status(self) -> QueueStatus:
        return self.dispatcher.status()

    def top_opportunities_for_student(
        self,
        student_id: str,
        limit: int = 10,
        compute_if_missing: bool = False,
        force_recompute: bool = False,
    ) -> List[RankedMatch]:
        """
        Best stored matches for a student.

        With compute_if_missing, a student without any stored score gets a
        HIGH recompute; force_recompute asks for one regardless. Either way the
        call returns what is stored now and does not wait.
        """
        ranked = self.store.top_for_student(student_id, limit)
        if force_recompute or (compute_if_missing and not ranked):
            self._recompute_for_lookup(RunType.STUDENT_UPDATE, SubjectType.STUDENT, student_id, len(ranked))
        return ranked

    def top_students_for_opportunity(
        self,
        opportunity_id: str,
        limit: int = 10,
        compute_if_missing: bool = False,
        force_recompute: bool = False,
    ) -> List[RankedMatch]:
        """Best stored matches for an opportunity; recompute options as for students."""
        ranked = self.store.top_for_opportunity(opportunity_id, limit)
        if force_recompute or (compute_if_missing and not ranked):
            self._recompute_for_lookup(
                RunType.OPPORTUNITY_UPDATE, SubjectType.OPPORTUNITY, opportunity_id, len(ranked)
            )
        return ranked

    def match_insights(self, student_id: str, opportunity_id: str) -> Optional[MatchInsights]:
        """Strengths, gaps and recommendations for a stored score, or None if never computed."""
        score = self.store.get(student_id, opportunity_id)
        if score is None:
            return None
        return build_insights(score)

    def matching_stats(self, top: int = 10) -> MatchingStats:
        stats = self.store.stats(hours_ago(24))
        return MatchingStats(
            total_scores=stats.total_scores,
            computed_last_24h=stats.computed_since,
            pending_tasks=self.dispatcher.status().pending,
            average_overall_score=stats.average_overall,
            top_matches=self.store.top_matches(top),
        )

    # -- internals -----------------------------------------------------

    def _recompute_for_lookup(
        self, run_type: RunType, subject_type: SubjectType, subject_id: str, found: int
    ) -> Optional[str]:
        # A full queue or a stopped engine must not fail the read itself
        started = time.time()
        task = RecomputationTask(
            subject_type, subject_id, reason=Reason.EXPLICIT_REQUEST, priority=Priority.HIGH
        )
        try:
            task_id = self.dispatcher.enqueue(task)
        except (QueueSaturated, DispatcherStopped) as e:
            logger.warning(
                f"Could not queue recompute for {subject_type.value} {subject_id}: {e}",
                extra={"event": "lookup.recompute_rejected", "error_type": type(e).__name__, **task.log_fields()},
            )
            self._log_run(run_type, found, 0, started, error=e, triggered_by="lookup")
            return None

        self._log_run(run_type, found, 1, started, triggered_by="lookup")
        return task_id

    def _log_run(
        self,
        run_type: RunType,
        input_count: int,
        output_count: int,
        started: float,
        error: Optional[Exception] = None,
        triggered_by: Optional[str] = None,
    ) -> None:
        run = RunRecord(
            run_type=run_type,
            input_count=input_count,
            output_count=output_count,
            runtime_ms=int((time.time() - started) * 1000),
            success=error is None,
            error=f"{type(error).__name__}: {error}" if error is not None else None,
            triggered_by=triggered_by,
        )
        try:
            self.ledger.record_run(run)
        except Exception as e:
            # Losing an audit entry must not fail the operation it describes
            logger.error(
                f"Failed to log {run_type.value} run: {e}",
                exc_info=True,
                extra={"event": "ledger.run_log_failed", "run_type": run_type.value},
            )
            return

        logger.info(
            f"{run_type.value} run logged: {input_count} in, {output_count} out",
            extra={
                "event": "run.logged",
                "run_type": run_type.value,
                "input_count": input_count,
                "output_count": output_count,
                "runtime_ms": run.runtime_ms,
                "success": run.success,
            },
        )


def build_service(
    engine_config: EngineConfig,
    env_config: EnvironmentConfig,
    source: Optional[DataSource] = None,
) -> MatchingService:
    """
    Wire a MatchingService from configuration.

    Args:
        engine_config: Validated engine configuration
        env_config: Environment configuration (database URL for the sql backend)
        source: Data source; defaults to the seed file, or an empty in-memory source

    Raises:
        DatabaseConnectionError: If the sql backend cannot be initialized
        ConfigurationError: If the seed file is invalid
    """
    if StorageBackend(engine_config.storage.backend) is StorageBackend.SQL:
        init_database(env_config.database_url)
        store: ScoreStore = SqlScoreStore()
        ledger: TaskLedger = SqlTaskLedger()
    else:
        store = InMemoryScoreStore()
        ledger = InMemoryTaskLedger()

    if source is None:
        source = load_seed_file(engine_config.seed_file) if engine_config.seed_file else InMemoryDataSource()

    computer = ScoreComputer(experience_target_months=engine_config.scoring.experience_target_months)
    dispatcher = Dispatcher(
        source,
        store,
        ledger=ledger,
        computer=computer,
        worker_config=engine_config.workers,
        queue_config=engine_config.queue,
        retry_config=engine_config.retry,
    )

    logger.info(
        "Matching service assembled",
        extra={
            "event": "service.built",
            "storage_backend": StorageBackend(engine_config.storage.backend).value,
            "workers": engine_config.workers.count,
        },
    )
    return MatchingService(
        source,
        store,
        dispatcher,
        computer=computer,
        cleanup_after_days=engine_config.sweep.cleanup_after_days,
    )
