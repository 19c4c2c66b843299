"""Scheduler service for the periodic batch sweep and ledger cleanup."""

import threading
from datetime import datetime, timezone
from typing import Callable, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from matchengine.logging import get_logger

logger = get_logger(__name__, component="scheduler")

SWEEP_JOB_ID = "batch-sweep"
CLEANUP_JOB_ID = "ledger-cleanup"


class SweepScheduler:
    """
    Wraps APScheduler to run the batch sweep and task-record cleanup.

    Uses BackgroundScheduler so jobs run in their own thread while the main
    thread handles signals and coordinates shutdown.
    """

    def __init__(
        self,
        sweep_callable: Callable[[], object],
        cleanup_callable: Optional[Callable[[], object]],
        interval_seconds: float,
        shutdown_event: Optional[threading.Event] = None,
        run_immediately: bool = False,
    ):
        """
        Initialize the scheduler service.

        Args:
            sweep_callable: Enqueues the batch sweep
            cleanup_callable: Purges old task records (None to skip)
            interval_seconds: Interval between runs in seconds
            shutdown_event: Optional event to set on shutdown for coordination
            run_immediately: Fire the first sweep at start instead of after one interval
        """
        self.sweep_callable = sweep_callable
        self.cleanup_callable = cleanup_callable
        self.interval_seconds = interval_seconds
        self.shutdown_event = shutdown_event
        self.run_immediately = run_immediately

        self.scheduler = BackgroundScheduler(
            job_defaults={
                "max_instances": 1,  # Prevent overlapping sweeps
                "coalesce": True,  # A delayed sweep runs once, not once per missed interval
                "misfire_grace_time": max(1, int(interval_seconds)),
            },
            timezone=timezone.utc,
        )

    def start(self) -> None:
        """Register the jobs and start the scheduler thread."""
        trigger = IntervalTrigger(seconds=self.interval_seconds, timezone=timezone.utc)

        sweep_kwargs = {}
        if self.run_immediately:
            sweep_kwargs["next_run_time"] = datetime.now(timezone.utc)

        self.scheduler.add_job(
            func=self.sweep_callable,
            trigger=trigger,
            id=SWEEP_JOB_ID,
            name="Batch score sweep",
            replace_existing=True,
            **sweep_kwargs,
        )

        if self.cleanup_callable is not None:
            self.scheduler.add_job(
                func=self.cleanup_callable,
                trigger=IntervalTrigger(seconds=self.interval_seconds, timezone=timezone.utc),
                id=CLEANUP_JOB_ID,
                name="Task ledger cleanup",
                replace_existing=True,
            )

        self.scheduler.start()

        next_run = self.get_next_run_time()
        logger.info(
            f"Scheduler started with interval: {self.interval_seconds:.0f} seconds",
            extra={
                "event": "scheduler.started",
                "interval_seconds": self.interval_seconds,
                "next_run_time": next_run.isoformat() if next_run else None,
            },
        )

    def shutdown(self, wait: bool = False) -> None:
        """
        Shutdown the scheduler.

        Args:
            wait: If True, wait for running jobs to complete before returning
        """
        logger.info(
            "Shutting down scheduler",
            extra={"event": "scheduler.stopping", "wait_for_jobs": wait},
        )

        if self.scheduler.running:
            self.scheduler.shutdown(wait=wait)

        if self.shutdown_event:
            self.shutdown_event.set()

        logger.info("Scheduler shutdown complete", extra={"event": "scheduler.stopped"})

    def trigger_now(self) -> None:
        """Run the sweep synchronously in the current thread."""
        logger.info("Triggering immediate sweep", extra={"event": "scheduler.trigger_now"})
        self.sweep_callable()

    def is_running(self) -> bool:
        return self.scheduler.running

    def get_next_run_time(self) -> Optional[datetime]:
        """Next scheduled sweep, or None if not scheduled."""
        job = self.scheduler.get_job(SWEEP_JOB_ID)
        return job.next_run_time if job else None
