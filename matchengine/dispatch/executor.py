"""Execution of a single recompute task attempt."""

from typing import Callable

from matchengine.domain.models import EntityType, MatchScore
from matchengine.exceptions import DataUnavailable, SubjectGone
from matchengine.logging import get_logger
from matchengine.logging.context import log_context
from matchengine.scoring.computer import ScoreComputer
from matchengine.utils.timestamps import utc_now

from .locking import KeyedLock
from .models import RecomputationTask, SubjectType, TaskOutcome
from .workers import Attempt

logger = get_logger(__name__, component="executor")


class TaskExecutor:
    """
    Turns a claimed task into score writes or follow-up tasks.

    PAIR tasks fetch fresh snapshots, compute, and write under the pair lock.
    STUDENT and OPPORTUNITY tasks expand into one PAIR task per active
    counterpart, carrying the same reason and priority.
    """

    def __init__(
        self,
        source,
        store,
        computer: ScoreComputer,
        locks: KeyedLock,
        enqueue: Callable[[RecomputationTask], str],
        lock_timeout: float,
    ):
        """
        Args:
            source: DataSource to read snapshots and versions from
            store: ScoreStore to read and write scores
            computer: Pure score computer
            locks: Per-pair lock registry
            enqueue: Where fan-out PAIR tasks go
            lock_timeout: Seconds to wait for a pair lock
        """
        self.source = source
        self.store = store
        self.computer = computer
        self.locks = locks
        self.enqueue = enqueue
        self.lock_timeout = lock_timeout

    def execute(self, attempt: Attempt) -> TaskOutcome:
        """
        Run one attempt.

        Returns:
            COMPUTED, NO_OP or EXPANDED

        Raises:
            SubjectGone: The student or opportunity no longer exists
            DataUnavailable: Transient collaborator failure
            ComputeTimeout: The attempt was abandoned or a lock wait timed out
            QueueSaturated: Fan-out could not be enqueued
        """
        task = attempt.task
        if task.subject_type is SubjectType.PAIR:
            return self._compute_pair(attempt)
        return self._expand(attempt)

    def _compute_pair(self, attempt: Attempt) -> TaskOutcome:
        student_id, opportunity_id = attempt.task.pair

        with log_context(student_id=student_id, opportunity_id=opportunity_id):
            student_version = self._read(self.source.current_data_version, EntityType.STUDENT, student_id)
            opportunity_version = self._read(
                self.source.current_data_version, EntityType.OPPORTUNITY, opportunity_id
            )

            stored = self.store.get(student_id, opportunity_id)
            if stored is not None and stored.is_current(student_version, opportunity_version):
                logger.debug(
                    "Stored score already reflects current data",
                    extra={
                        "event": "score.unchanged",
                        "student_version": student_version,
                        "opportunity_version": opportunity_version,
                    },
                )
                return TaskOutcome.NO_OP

            candidate = self._read(self.source.fetch_candidate_snapshot, student_id)
            opportunity = self._read(self.source.fetch_opportunity_snapshot, opportunity_id)
            attempt.check()

            components = self.computer.compute(candidate, opportunity)
            score = MatchScore.from_components(
                student_id,
                opportunity_id,
                components,
                student_version=student_version,
                opportunity_version=opportunity_version,
                computed_at=utc_now(),
            )

            with self.locks.holding((student_id, opportunity_id), timeout=self.lock_timeout):
                with attempt.guard_write():
                    # Either side may have been deleted while we computed
                    self._read(self.source.current_data_version, EntityType.STUDENT, student_id)
                    self._read(self.source.current_data_version, EntityType.OPPORTUNITY, opportunity_id)

                    latest = self.store.get(student_id, opportunity_id)
                    if latest is not None and latest.covers(student_version, opportunity_version):
                        logger.debug(
                            "A score at least as fresh was written meanwhile; skipping write",
                            extra={
                                "event": "score.write_skipped",
                                "stored_student_version": latest.student_version,
                                "stored_opportunity_version": latest.opportunity_version,
                            },
                        )
                        return TaskOutcome.NO_OP

                    self.store.put(score)

            logger.debug(
                f"Score computed: overall={score.overall_score:.3f}",
                extra={
                    "event": "score.computed",
                    "overall_score": round(score.overall_score, 4),
                    "student_version": student_version,
                    "opportunity_version": opportunity_version,
                },
            )
            return TaskOutcome.COMPUTED

    def _expand(self, attempt: Attempt) -> TaskOutcome:
        task = attempt.task

        if task.subject_type is SubjectType.STUDENT:
            self._read(self.source.current_data_version, EntityType.STUDENT, task.subject_id)
            counterparts = self._read(self.source.list_active_opportunity_ids)
            pairs = [(task.subject_id, opportunity_id) for opportunity_id in counterparts]
        else:
            self._read(self.source.current_data_version, EntityType.OPPORTUNITY, task.subject_id)
            counterparts = self._read(self.source.list_eligible_student_ids, task.subject_id)
            pairs = [(student_id, task.subject_id) for student_id in counterparts]

        for student_id, opportunity_id in pairs:
            attempt.check()
            self.enqueue(
                RecomputationTask.for_pair(
                    student_id,
                    opportunity_id,
                    reason=task.reason,
                    priority=task.priority,
                )
            )

        logger.info(
            f"Expanded {task.subject_type.value} {task.subject_id} into {len(pairs)} pair tasks",
            extra={"event": "task.expanded", "pair_count": len(pairs), **task.log_fields()},
        )
        return TaskOutcome.EXPANDED

    @staticmethod
    def _read(fn, *args):
        # Collaborator failures other than SubjectGone count as transient
        try:
            return fn(*args)
        except (SubjectGone, DataUnavailable):
            raise
        except Exception as e:
            raise DataUnavailable(f"{getattr(fn, '__name__', 'read')} failed: {e}") from e

