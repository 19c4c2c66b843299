"""Priority-bucketed, deduplicating recomputation queue.

All state lives behind one Condition, so enqueue, claim, cancel, requeue and
complete are atomic with respect to each other. A task whose subject is
already PROCESSING is never handed out; it stays PENDING until the in-flight
task completes.
"""

import threading
import time
from collections import OrderedDict
from typing import Callable, Dict, List, Optional, Set, Tuple

from matchengine.exceptions import QueueSaturated
from matchengine.logging import get_logger
from matchengine.utils.timestamps import utc_now

from .models import (
    PRIORITY_ORDER,
    CancelResult,
    Priority,
    RecomputationTask,
    SubjectType,
    TaskOutcome,
    TaskStatus,
)

logger = get_logger(__name__, component="queue")

SubjectKey = Tuple[SubjectType, str]
TerminalListener = Callable[[RecomputationTask], None]


class RecomputationQueue:
    """
    Bounded queue of pending recompute tasks.

    Rules:
    - Two PENDING tasks with the same (subject_type, subject_id) collapse into
      one that keeps the higher priority and the stronger reason
    - Buckets are served strictly HIGH, NORMAL, LOW; FIFO within a bucket
    - A full LOW bucket evicts its oldest task; a full NORMAL or HIGH bucket
      rejects the enqueue with QueueSaturated
    - Retries re-enter their bucket even when it is full, since they were
      already admitted once
    """

    def __init__(
        self,
        capacity: Dict[Priority, int],
        on_terminal: Optional[TerminalListener] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the queue.

        Args:
            capacity: Maximum PENDING tasks per priority bucket
            on_terminal: Called (outside the lock) for tasks the queue itself
                finishes: evicted, cancelled while pending, superseded retries
            clock: Monotonic clock, injectable for tests
        """
        self._capacity = {priority: int(capacity[priority]) for priority in PRIORITY_ORDER}
        self._on_terminal = on_terminal
        self._clock = clock
        self._cond = threading.Condition()
        self._buckets: Dict[Priority, "OrderedDict[str, RecomputationTask]"] = {
            priority: OrderedDict() for priority in PRIORITY_ORDER
        }
        self._pending_by_key: Dict[SubjectKey, RecomputationTask] = {}
        self._processing: Dict[str, RecomputationTask] = {}
        self._in_flight_keys: Set[SubjectKey] = set()
        self._closed = False

    # -- producer side -------------------------------------------------

    def enqueue(self, task: RecomputationTask) -> str:
        """
        Add a task, merging it into an equivalent PENDING task if one exists.

        Args:
            task: New task (status PENDING)

        Returns:
            Id of the task that now represents the work (the existing one on merge)

        Raises:
            QueueSaturated: If the target NORMAL/HIGH bucket is full
        """
        finished: List[RecomputationTask] = []
        with self._cond:
            existing = self._pending_by_key.get(task.subject_key)
            if existing is not None:
                task_id = self._merge(existing, task, finished)
            else:
                finished.extend(self._make_room(task.priority))
                task.status = TaskStatus.PENDING
                self._add_pending(task)
                task_id = task.task_id
                logger.debug(
                    f"Task enqueued: {task.subject_type.value} {task.subject_id}",
                    extra={"event": "task.enqueued", **task.log_fields()},
                )
            self._cond.notify_all()

        self._report(finished)
        return task_id

    def requeue(self, task: RecomputationTask, delay: float = 0.0) -> str:
        """
        Return a PROCESSING task to PENDING after a transient failure.

        The task becomes claimable after `delay` seconds. If a newer PENDING
        task for the same subject arrived meanwhile, the retry is folded into
        it and the retried task ends as SUPERSEDED.

        Returns:
            Id of the task that will carry the retry
        """
        finished: List[RecomputationTask] = []
        with self._cond:
            self._release(task)
            existing = self._pending_by_key.get(task.subject_key)
            if existing is not None:
                self._promote(existing, task.priority, check_capacity=False, finished=finished)
                if task.reason.rank > existing.reason.rank:
                    existing.reason = task.reason
                self._finish(task, TaskStatus.DONE, TaskOutcome.SUPERSEDED)
                finished.append(task)
                task_id = existing.task_id
            else:
                task.status = TaskStatus.PENDING
                task.not_before = self._clock() + max(delay, 0.0)
                self._add_pending(task)
                task_id = task.task_id
            self._cond.notify_all()

        self._report(finished)
        return task_id

    # -- consumer side -------------------------------------------------

    def claim(self, timeout: float = 0.0) -> Optional[RecomputationTask]:
        """
        Take the next claimable task and mark it PROCESSING.

        Skips tasks whose subject is already in flight and retries whose
        backoff has not elapsed.

        Args:
            timeout: Seconds to wait for a claimable task

        Returns:
            The claimed task, or None on timeout or when the queue is closed and empty
        """
        deadline = self._clock() + max(timeout, 0.0)
        with self._cond:
            while True:
                now = self._clock()
                task, next_ready = self._next_claimable(now)
                if task is not None:
                    self._take(task)
                    return task

                if self._closed and not self._pending_by_key:
                    return None

                remaining = deadline - now
                if remaining <= 0:
                    return None
                wait_for = remaining if next_ready is None else min(remaining, max(next_ready - now, 0.001))
                self._cond.wait(wait_for)

    def complete(self, task: RecomputationTask, status: TaskStatus, outcome: TaskOutcome) -> None:
        """Mark a PROCESSING task terminal and release its subject."""
        with self._cond:
            self._release(task)
            self._finish(task, status, outcome)
            self._cond.notify_all()

    # -- control -------------------------------------------------------

    def cancel(self, task_id: str) -> CancelResult:
        """
        Cancel a task.

        A PENDING task is removed and ends DONE/CANCELLED. A PROCESSING task is
        flagged for discard: the in-flight attempt finishes, but it is never
        retried. Unknown or already-terminal ids are not cancelled.

        Returns:
            CancelResult carrying the task's status at the time of the request
        """
        cancelled: Optional[RecomputationTask] = None
        with self._cond:
            task = self._processing.get(task_id)
            if task is not None:
                task.discard = True
                result = CancelResult(task_id, True, TaskStatus.PROCESSING)
            else:
                task = self._find_pending(task_id)
                if task is None:
                    return CancelResult(task_id, False, None)
                self._remove_pending(task)
                self._finish(task, TaskStatus.DONE, TaskOutcome.CANCELLED)
                cancelled = task
                result = CancelResult(task_id, True, TaskStatus.PENDING)
            self._cond.notify_all()

        if cancelled is not None:
            self._report([cancelled])
        return result

    def close(self) -> None:
        """Wake every waiter; claims return None once no work remains."""
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    def reopen(self) -> None:
        """Undo close() so workers can be started again."""
        with self._cond:
            self._closed = False

    def wait_idle(self, timeout: float) -> int:
        """
        Block until nothing is PENDING or PROCESSING, or the timeout passes.

        Returns:
            Number of tasks still PENDING or PROCESSING
        """
        deadline = self._clock() + max(timeout, 0.0)
        with self._cond:
            while self._pending_by_key or self._processing:
                remaining = deadline - self._clock()
                if remaining <= 0:
                    break
                self._cond.wait(min(remaining, 0.1))
            return len(self._pending_by_key) + len(self._processing)

    # -- inspection ----------------------------------------------------

    def get(self, task_id: str) -> Optional[RecomputationTask]:
        """Look up a PENDING or PROCESSING task by id."""
        with self._cond:
            return self._processing.get(task_id) or self._find_pending(task_id)

    def pending_counts(self) -> Dict[Priority, int]:
        """PENDING task count per bucket."""
        with self._cond:
            return {priority: len(bucket) for priority, bucket in self._buckets.items()}

    def processing_count(self) -> int:
        """Number of PROCESSING tasks."""
        with self._cond:
            return len(self._processing)

    def processing_subjects(self) -> Set[SubjectKey]:
        """Subjects currently held by workers."""
        with self._cond:
            return set(self._in_flight_keys)

    def oldest_pending_created_at(self):
        """created_at of the oldest PENDING task, or None."""
        with self._cond:
            created = [task.created_at for task in self._pending_by_key.values()]
        return min(created) if created else None

    @property
    def closed(self) -> bool:
        return self._closed

    # -- hooks (called with the queue lock held; must not call back in) --

    def on_claimed(self, task: RecomputationTask) -> None:
        """Hook called when a task turns PROCESSING."""

    def on_released(self, task: RecomputationTask) -> None:
        """Hook called when a PROCESSING task leaves that state."""

    def __len__(self) -> int:
        with self._cond:
            return len(self._pending_by_key)

    # -- internals (caller holds the lock) -----------------------------

    def _merge(
        self,
        existing: RecomputationTask,
        incoming: RecomputationTask,
        finished: List[RecomputationTask],
    ) -> str:
        # Capacity is checked before anything on the existing task changes
        self._promote(existing, incoming.priority, check_capacity=True, finished=finished)
        if incoming.reason.rank >= existing.reason.rank:
            existing.reason = incoming.reason

        logger.debug(
            f"Task deduplicated into {existing.task_id}",
            extra={
                "event": "task.deduplicated",
                "duplicate_task_id": incoming.task_id,
                **existing.log_fields(),
            },
        )
        return existing.task_id

    def _promote(
        self,
        task: RecomputationTask,
        priority: Priority,
        check_capacity: bool,
        finished: List[RecomputationTask],
    ) -> None:
        if priority.rank <= task.priority.rank:
            return
        if check_capacity:
            finished.extend(self._make_room(priority))
        del self._buckets[task.priority][task.task_id]
        task.priority = priority
        self._buckets[priority][task.task_id] = task

    def _make_room(self, priority: Priority) -> List[RecomputationTask]:
        bucket = self._buckets[priority]
        capacity = self._capacity[priority]
        if len(bucket) < capacity:
            return []

        if priority is not Priority.LOW:
            logger.warning(
                f"{priority.value} bucket saturated, rejecting enqueue",
                extra={"event": "queue.saturated", "priority": priority.value, "capacity": capacity},
            )
            raise QueueSaturated(priority, capacity)

        evicted = []
        while len(bucket) >= capacity:
            _, victim = bucket.popitem(last=False)
            del self._pending_by_key[victim.subject_key]
            self._finish(victim, TaskStatus.FAILED, TaskOutcome.EVICTED)
            victim.last_error = "evicted by LOW bucket backpressure"
            evicted.append(victim)
            logger.warning(
                f"Evicted oldest LOW task {victim.task_id}",
                extra={"event": "task.evicted", "capacity": capacity, **victim.log_fields()},
            )
        return evicted

    def _next_claimable(self, now: float) -> Tuple[Optional[RecomputationTask], Optional[float]]:
        next_ready: Optional[float] = None
        for priority in PRIORITY_ORDER:
            for task in self._buckets[priority].values():
                if task.subject_key in self._in_flight_keys:
                    continue
                if task.not_before > now:
                    if next_ready is None or task.not_before < next_ready:
                        next_ready = task.not_before
                    continue
                return task, next_ready
        return None, next_ready

    def _take(self, task: RecomputationTask) -> None:
        self._remove_pending(task)
        task.status = TaskStatus.PROCESSING
        self._processing[task.task_id] = task
        self._in_flight_keys.add(task.subject_key)
        self.on_claimed(task)

    def _add_pending(self, task: RecomputationTask) -> None:
        self._buckets[task.priority][task.task_id] = task
        self._pending_by_key[task.subject_key] = task

    def _remove_pending(self, task: RecomputationTask) -> None:
        del self._buckets[task.priority][task.task_id]
        del self._pending_by_key[task.subject_key]

    def _find_pending(self, task_id: str) -> Optional[RecomputationTask]:
        for bucket in self._buckets.values():
            task = bucket.get(task_id)
            if task is not None:
                return task
        return None

    def _release(self, task: RecomputationTask) -> None:
        if self._processing.pop(task.task_id, None) is not None:
            self._in_flight_keys.discard(task.subject_key)
            self.on_released(task)

    @staticmethod
    def _finish(task: RecomputationTask, status: TaskStatus, outcome: TaskOutcome) -> None:
        task.status = status
        task.outcome = outcome
        task.finished_at = utc_now()

    def _report(self, tasks: List[RecomputationTask]) -> None:
        if self._on_terminal is None:
            return
        for task in tasks:
            self._on_terminal(task)
