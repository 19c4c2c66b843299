"""Fixed-size worker pool and per-attempt wall-clock budget."""

import contextvars
import threading
from contextlib import contextmanager
from typing import Callable, Generator, List, Optional, TypeVar

from matchengine.exceptions import ComputeTimeout
from matchengine.logging import get_logger
from matchengine.logging.context import log_context

from .models import RecomputationTask
from .queue import RecomputationQueue

logger = get_logger(__name__, component="worker")

T = TypeVar("T")


class Attempt:
    """
    Handle for one execution attempt of a task.

    Once the attempt is abandoned (its budget ran out) every guarded write is
    refused, so a late-finishing attempt can never overwrite newer work.
    """

    def __init__(self, task: RecomputationTask):
        self.task = task
        self._lock = threading.Lock()
        self._abandoned = False

    @property
    def abandoned(self) -> bool:
        return self._abandoned

    def check(self) -> None:
        """
        Raises:
            ComputeTimeout: If the attempt has been abandoned
        """
        if self._abandoned:
            raise ComputeTimeout(f"Attempt for task {self.task.task_id} was abandoned")

    @contextmanager
    def guard_write(self) -> Generator[None, None, None]:
        """Run a write only while the attempt is still live; abandon() waits for it."""
        with self._lock:
            self.check()
            yield

    def abandon(self) -> None:
        with self._lock:
            self._abandoned = True


def run_with_budget(
    fn: Callable[[Attempt], T],
    task: RecomputationTask,
    budget_seconds: float,
) -> T:
    """
    Run `fn(attempt)` with a wall-clock budget.

    The call runs in a helper thread carrying the caller's log context. If it
    does not finish in time the attempt is abandoned and the caller gets
    ComputeTimeout straight away; the helper thread is left to finish on its
    own but cannot write.

    Raises:
        ComputeTimeout: If the budget is exceeded
        Exception: Whatever `fn` raised
    """
    attempt = Attempt(task)
    done = threading.Event()
    box = {}
    ctx = contextvars.copy_context()

    def target():
        try:
            box["result"] = ctx.run(fn, attempt)
        except BaseException as exc:
            box["error"] = exc
        finally:
            done.set()

    runner = threading.Thread(target=target, name=f"attempt-{task.task_id[:8]}", daemon=True)
    runner.start()

    if not done.wait(budget_seconds):
        attempt.abandon()
        if not done.is_set():
            logger.warning(
                f"Task attempt exceeded {budget_seconds:.1f}s budget",
                extra={"event": "task.timeout", "budget_seconds": budget_seconds, **task.log_fields()},
            )
            raise ComputeTimeout(f"Task {task.task_id} exceeded {budget_seconds:.1f}s budget")

    if "error" in box:
        raise box["error"]
    return box["result"]


class WorkerPool:
    """
    Fixed number of threads looping claim, execute, report.

    The handler owns execution and reporting; the pool only feeds it tasks.
    Handlers must not raise.
    """

    def __init__(
        self,
        queue: RecomputationQueue,
        handler: Callable[[RecomputationTask], None],
        size: int,
        poll_interval: float = 0.5,
    ):
        """
        Initialize the pool.

        Args:
            queue: Queue to claim from
            handler: Called with each claimed task
            size: Number of worker threads
            poll_interval: Seconds a claim waits before re-checking for shutdown
        """
        if size < 1:
            raise ValueError("Worker pool size must be at least 1")
        self.queue = queue
        self.handler = handler
        self.size = size
        self.poll_interval = poll_interval
        self._stop = threading.Event()
        self._threads: List[threading.Thread] = []

    def start(self) -> None:
        """Spawn the worker threads (no-op if already running)."""
        if self.is_running():
            return
        self._stop.clear()
        self._threads = [
            threading.Thread(target=self._run, name=f"matchengine-worker-{i}", daemon=True)
            for i in range(self.size)
        ]
        for thread in self._threads:
            thread.start()

        logger.info(
            f"Worker pool started with {self.size} workers",
            extra={"event": "workers.started", "workers": self.size},
        )

    def stop(self, timeout: Optional[float] = None) -> None:
        """
        Signal workers to exit and wait for them.

        A worker finishes the task it holds before exiting.
        """
        self._stop.set()
        for thread in self._threads:
            thread.join(timeout)

        alive = [t.name for t in self._threads if t.is_alive()]
        logger.info(
            "Worker pool stopped",
            extra={"event": "workers.stopped", "still_running": len(alive)},
        )
        self._threads = [t for t in self._threads if t.is_alive()]

    def is_running(self) -> bool:
        return any(thread.is_alive() for thread in self._threads)

    def _run(self) -> None:
        name = threading.current_thread().name
        with log_context(worker=name):
            while not self._stop.is_set():
                task = self.queue.claim(self.poll_interval)
                if task is None:
                    if self.queue.closed and len(self.queue) == 0:
                        break
                    continue

                with log_context(task_id=task.task_id):
                    logger.debug(
                        f"Claimed {task.subject_type.value} {task.subject_id}",
                        extra={"event": "task.claimed", **task.log_fields()},
                    )
                    self.handler(task)
