"""Maps domain mutations to recompute tasks.

Collaborators (profile service, opportunity service, admin tools) call the
on_* hooks after a write. The detector only decides what to recompute and how
urgently; it never computes anything itself.
"""

from typing import Callable, List, Optional
from uuid import uuid4

from matchengine.dispatch.models import Priority, Reason, RecomputationTask, SubjectType
from matchengine.logging import get_logger
from matchengine.logging.context import log_context

logger = get_logger(__name__, component="triggers")

Enqueue = Callable[[RecomputationTask], str]


class TriggerDetector:
    """
    Emits recompute tasks for domain events.

    Priorities:
    - HIGH: skills, experience, documents, opportunity changes, explicit requests
    - NORMAL: profile and academic updates
    - LOW: the periodic batch sweep

    QueueSaturated from the enqueue function propagates to the caller.
    """

    def __init__(self, enqueue: Enqueue, source=None):
        """
        Args:
            enqueue: Function that submits a task and returns its id
            source: DataSource used to enumerate students for the batch sweep
        """
        self._enqueue = enqueue
        self._source = source

    # -- student events ------------------------------------------------

    def on_profile_updated(self, student_id: str) -> str:
        return self._student(student_id, Priority.NORMAL, "profile_updated")

    def on_academic_updated(self, student_id: str) -> str:
        return self._student(student_id, Priority.NORMAL, "academic_updated")

    def on_skills_updated(self, student_id: str) -> str:
        return self._student(student_id, Priority.HIGH, "skills_updated")

    def on_experience_updated(self, student_id: str) -> str:
        return self._student(student_id, Priority.HIGH, "experience_updated")

    def on_document_uploaded(self, student_id: str) -> str:
        return self._student(student_id, Priority.HIGH, "document_uploaded")

    # -- opportunity events --------------------------------------------

    def on_opportunity_updated(self, opportunity_id: str) -> str:
        return self._opportunity(opportunity_id, "opportunity_updated")

    def on_opportunity_skills_updated(self, opportunity_id: str) -> str:
        return self._opportunity(opportunity_id, "opportunity_skills_updated")

    # -- explicit and scheduled ----------------------------------------

    def request_recompute(
        self,
        student_id: Optional[str] = None,
        opportunity_id: Optional[str] = None,
        priority: Priority = Priority.HIGH,
    ) -> str:
        """
        Explicit recompute for a student, an opportunity, or a single pair.

        Raises:
            ValueError: If neither id is given
        """
        if student_id and opportunity_id:
            task = RecomputationTask.for_pair(
                student_id, opportunity_id, reason=Reason.EXPLICIT_REQUEST, priority=priority
            )
        elif student_id:
            task = RecomputationTask(
                SubjectType.STUDENT, student_id, reason=Reason.EXPLICIT_REQUEST, priority=priority
            )
        elif opportunity_id:
            task = RecomputationTask(
                SubjectType.OPPORTUNITY, opportunity_id, reason=Reason.EXPLICIT_REQUEST, priority=priority
            )
        else:
            raise ValueError("request_recompute needs a student_id, an opportunity_id, or both")
        return self._emit(task, "explicit_request")

    def schedule_batch_sweep(self) -> List[str]:
        """
        Enqueue one LOW STUDENT task per eligible student.

        Returns:
            Task ids, one per student (deduplicated ids may repeat)
        """
        if self._source is None:
            raise RuntimeError("Batch sweep needs a data source")

        sweep_id = uuid4().hex
        with log_context(sweep_id=sweep_id):
            student_ids = self._source.list_eligible_student_ids()
            logger.info(
                f"Batch sweep started for {len(student_ids)} students",
                extra={"event": "sweep.started", "student_count": len(student_ids)},
            )
            task_ids = [
                self._emit(
                    RecomputationTask(
                        SubjectType.STUDENT,
                        student_id,
                        reason=Reason.BATCH_SWEEP,
                        priority=Priority.LOW,
                    ),
                    "batch_sweep",
                )
                for student_id in student_ids
            ]
            logger.info(
                f"Batch sweep enqueued {len(task_ids)} tasks",
                extra={"event": "sweep.enqueued", "task_count": len(task_ids)},
            )
        return task_ids

    # -- internals -----------------------------------------------------

    def _student(self, student_id: str, priority: Priority, trigger: str) -> str:
        task = RecomputationTask(SubjectType.STUDENT, student_id, reason=Reason.DATA_CHANGED, priority=priority)
        return self._emit(task, trigger)

    def _opportunity(self, opportunity_id: str, trigger: str) -> str:
        task = RecomputationTask(
            SubjectType.OPPORTUNITY, opportunity_id, reason=Reason.DATA_CHANGED, priority=Priority.HIGH
        )
        return self._emit(task, trigger)

    def _emit(self, task: RecomputationTask, trigger: str) -> str:
        task_id = self._enqueue(task)
        logger.debug(
            f"Trigger {trigger} -> task {task_id}",
            extra={"event": "trigger.fired", "trigger": trigger, **task.log_fields(), "task_id": task_id},
        )
        return task_id
