"""Dispatcher: owns the queue and the worker pool, and reports task outcomes."""

import threading
from datetime import datetime
from typing import Dict, Optional

from matchengine.config.models import QueueConfig, RetryConfig, WorkerConfig
from matchengine.exceptions import (
    ComputeTimeout,
    DataUnavailable,
    DispatcherStopped,
    QueueSaturated,
    SubjectGone,
)
from matchengine.logging import get_logger
from matchengine.scoring.computer import ScoreComputer
from matchengine.utils.timestamps import hours_ago, utc_now

from .executor import TaskExecutor
from .locking import KeyedLock
from .models import (
    CancelResult,
    Priority,
    QueueStatus,
    RecomputationTask,
    TaskOutcome,
    TaskStatus,
)
from .queue import RecomputationQueue
from .workers import WorkerPool, run_with_budget

logger = get_logger(__name__, component="dispatcher")

TRANSIENT_ERRORS = (DataUnavailable, ComputeTimeout, QueueSaturated)


class Dispatcher:
    """
    Accepts recompute tasks and drives them to DONE or FAILED.

    Outcome handling per attempt:
    - success: DONE with the executor's outcome (COMPUTED, NO_OP, EXPANDED)
    - SubjectGone: DONE with SUBJECT_GONE, nothing written
    - transient error: retried with exponential backoff until the attempt
      budget is spent, then FAILED with DEAD_LETTERED
    - cancelled while PROCESSING: the attempt's result stands but the task is
      never retried
    """

    def __init__(
        self,
        source,
        store,
        ledger=None,
        computer: Optional[ScoreComputer] = None,
        worker_config: Optional[WorkerConfig] = None,
        queue_config: Optional[QueueConfig] = None,
        retry_config: Optional[RetryConfig] = None,
        locks: Optional[KeyedLock] = None,
    ):
        """
        Initialize the dispatcher (workers are not started).

        Args:
            source: DataSource for snapshots and versions
            store: ScoreStore for results
            ledger: TaskLedger for finished tasks (in-memory if omitted)
            computer: Score computer (default settings if omitted)
            worker_config: Pool size, per-attempt budget, poll interval
            queue_config: Per-bucket capacities
            retry_config: Attempt budget and backoff
            locks: Per-pair lock registry
        """
        if ledger is None:
            from matchengine.store.memory import InMemoryTaskLedger

            ledger = InMemoryTaskLedger()

        self.source = source
        self.store = store
        self.ledger = ledger
        self.worker_config = worker_config or WorkerConfig()
        self.retry_config = retry_config or RetryConfig()
        queue_config = queue_config or QueueConfig()

        self.queue = RecomputationQueue(
            capacity={
                Priority.HIGH: queue_config.capacity.high,
                Priority.NORMAL: queue_config.capacity.normal,
                Priority.LOW: queue_config.capacity.low,
            },
            on_terminal=self._record,
        )
        # Registries define __len__, so an empty one is falsy
        self.locks = locks if locks is not None else KeyedLock()
        self.executor = TaskExecutor(
            source=source,
            store=store,
            computer=computer if computer is not None else ScoreComputer(),
            locks=self.locks,
            enqueue=self.queue.enqueue,
            lock_timeout=self.worker_config.task_timeout_seconds,
        )
        self.pool = WorkerPool(
            self.queue,
            self._handle,
            size=self.worker_config.count,
            poll_interval=self.worker_config.poll_interval,
        )
        self._accepting = True
        self._state_lock = threading.Lock()

    # -- lifecycle -----------------------------------------------------

    def start(self) -> None:
        """Start the worker pool and accept work."""
        with self._state_lock:
            self._accepting = True
            self.queue.reopen()
            self.pool.start()

        logger.info(
            "Dispatcher started",
            extra={
                "event": "dispatcher.started",
                "workers": self.worker_config.count,
                "task_timeout_seconds": self.worker_config.task_timeout_seconds,
                "max_attempts": self.retry_config.max_attempts,
            },
        )

    def drain(self, timeout: float) -> int:
        """
        Stop accepting new work and wait for queued work to finish.

        Retries and fan-out of tasks already admitted still run. Workers keep
        running after drain; call shutdown() to stop them.

        Returns:
            Number of tasks still PENDING or PROCESSING when the timeout passed
        """
        with self._state_lock:
            self._accepting = False

        logger.info(
            "Draining dispatcher",
            extra={"event": "dispatcher.draining", "timeout_seconds": timeout, "pending": len(self.queue)},
        )
        remaining = self.queue.wait_idle(timeout)

        log = logger.info if remaining == 0 else logger.warning
        log(
            f"Dispatcher drained with {remaining} tasks remaining",
            extra={"event": "dispatcher.drained", "remaining": remaining},
        )
        return remaining

    def shutdown(self, timeout: Optional[float] = None) -> None:
        """Stop accepting work and stop the workers (in-flight attempts finish first)."""
        with self._state_lock:
            self._accepting = False
            self.queue.close()
        self.pool.stop(timeout)
        logger.info("Dispatcher stopped", extra={"event": "dispatcher.stopped", "pending": len(self.queue)})

    @property
    def accepting(self) -> bool:
        return self._accepting

    # -- operations ----------------------------------------------------

    def enqueue(self, task: RecomputationTask) -> str:
        """
        Submit a task.

        Returns:
            Id of the task that carries the work (an existing one if deduplicated)

        Raises:
            DispatcherStopped: If the dispatcher is draining or stopped
            QueueSaturated: If the NORMAL/HIGH bucket is full
        """
        if not self._accepting:
            raise DispatcherStopped("Dispatcher is not accepting new tasks")
        return self.queue.enqueue(task)

    def cancel(self, task_id: str) -> CancelResult:
        """
        Cancel a task by id.

        Returns:
            CancelResult; for tasks that already finished, cancelled is False
            and state is their final status
        """
        result = self.queue.cancel(task_id)
        if result.state is None:
            record = self.ledger.get(task_id)
            if record is not None:
                result = CancelResult(task_id, False, record.status)

        logger.info(
            f"Cancel requested for task {task_id}",
            extra={
                "event": "task.cancelled" if result.cancelled else "task.cancel_ignored",
                "task_id": task_id,
                "state": result.state.value if result.state else None,
            },
        )
        return result

    def get_task(self, task_id: str):
        """Live RecomputationTask if queued or running, otherwise its TaskRecord, otherwise None."""
        return self.queue.get(task_id) or self.ledger.get(task_id)

    def status(self, now: Optional[datetime] = None) -> QueueStatus:
        """Current queue health."""
        now = now or utc_now()
        since = hours_ago(24, now)
        oldest = self.queue.oldest_pending_created_at()
        pending: Dict[str, int] = {p.value: n for p, n in self.queue.pending_counts().items()}
        failed = self.ledger.count_since(TaskStatus.FAILED, since)
        evicted = self.ledger.count_since(TaskStatus.FAILED, since, outcome=TaskOutcome.EVICTED)

        return QueueStatus(
            pending_by_priority=pending,
            processing=self.queue.processing_count(),
            failed_last_24h=failed - evicted,
            evicted_last_24h=evicted,
            completed_last_24h=self.ledger.count_since(TaskStatus.DONE, since),
            oldest_pending_age_seconds=(now - oldest).total_seconds() if oldest else None,
            workers=self.worker_config.count,
            accepting=self._accepting,
        )

    # -- worker callback -----------------------------------------------

    def _handle(self, task: RecomputationTask) -> None:
        try:
            outcome = run_with_budget(
                self.executor.execute, task, self.worker_config.task_timeout_seconds
            )
        except SubjectGone as e:
            task.last_error = str(e)
            self._finish(task, TaskStatus.DONE, TaskOutcome.SUBJECT_GONE)
        except TRANSIENT_ERRORS as e:
            self._fail_attempt(task, e)
        except Exception as e:
            logger.error(
                f"Unexpected error executing task {task.task_id}: {e}",
                exc_info=True,
                extra={"event": "task.error", **task.log_fields()},
            )
            self._fail_attempt(task, e)
        else:
            self._finish(task, TaskStatus.DONE, outcome)

    def _fail_attempt(self, task: RecomputationTask, error: Exception) -> None:
        task.attempts += 1
        task.last_error = f"{type(error).__name__}: {error}"

        if task.discard:
            self._finish(task, TaskStatus.DONE, TaskOutcome.CANCELLED)
            return

        if task.attempts >= self.retry_config.max_attempts:
            self.queue.complete(task, TaskStatus.FAILED, TaskOutcome.DEAD_LETTERED)
            logger.error(
                f"Task dead-lettered after {task.attempts} attempts: {task.last_error}",
                extra={"event": "task.dead_lettered", "error": task.last_error, **task.log_fields()},
            )
            self._record(task)
            return

        delay = self.retry_config.delay_for(task.attempts)
        carrier = self.queue.requeue(task, delay)
        logger.warning(
            f"Attempt {task.attempts} failed, retrying in {delay:.2f}s: {task.last_error}",
            extra={
                "event": "task.retry_scheduled",
                "delay_seconds": delay,
                "error": task.last_error,
                "carrier_task_id": carrier,
                **task.log_fields(),
            },
        )

    def _finish(self, task: RecomputationTask, status: TaskStatus, outcome: TaskOutcome) -> None:
        self.queue.complete(task, status, outcome)
        logger.info(
            f"Task {outcome.value.lower()}",
            extra={"event": "task.completed", "outcome": outcome.value, **task.log_fields()},
        )
        self._record(task)

    def _record(self, task: RecomputationTask) -> None:
        try:
            self.ledger.record(task)
        except Exception as e:
            # Ledger trouble must not take a worker down
            logger.error(
                f"Failed to record task {task.task_id}: {e}",
                exc_info=True,
                extra={"event": "ledger.record_failed", "task_id": task.task_id},
            )
