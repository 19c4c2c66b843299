"""Tests for the dispatcher, worker pool and task executor.

These run real worker threads with short budgets and zero backoff, so every
test finishes well under a second or two.
"""

import threading
import time
from datetime import datetime, timezone
from unittest.mock import Mock

import pytest

from matchengine.config.models import QueueCapacity, QueueConfig, RetryConfig, WorkerConfig
from matchengine.dispatch import (
    Attempt,
    Dispatcher,
    KeyedLock,
    Priority,
    Reason,
    RecomputationTask,
    SubjectType,
    TaskOutcome,
    TaskStatus,
    run_with_budget,
)
from matchengine.domain.models import EntityType
from matchengine.exceptions import ComputeTimeout, DispatcherStopped, QueueSaturated
from matchengine.store import (
    InMemoryScoreStore,
    InMemoryTaskLedger,
    SqlScoreStore,
    SqlTaskLedger,
    close_database,
    init_database,
)
from tests.helpers import FlakySource, InFlightMonitor, InstrumentedLock, make_candidate, seeded_source

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def make_dispatcher(
    source,
    store=None,
    ledger=None,
    workers=2,
    task_timeout="1s",
    max_attempts=3,
    locks=None,
    capacity=None,
):
    return Dispatcher(
        source,
        store if store is not None else InMemoryScoreStore(),
        ledger=ledger if ledger is not None else InMemoryTaskLedger(),
        worker_config=WorkerConfig(count=workers, task_timeout=task_timeout, poll_interval=0.05),
        queue_config=QueueConfig(capacity=capacity or QueueCapacity()),
        retry_config=RetryConfig(max_attempts=max_attempts, initial_delay=0, max_delay=0),
        locks=locks,
    )


def run_to_idle(dispatcher, timeout=5.0):
    """Start the dispatcher, wait for the queue to empty, then stop it."""
    dispatcher.start()
    try:
        remaining = dispatcher.drain(timeout)
    finally:
        dispatcher.shutdown(timeout=2.0)
    assert remaining == 0
    return remaining


def pair(student_id="s-1", opportunity_id="o-1", **kwargs):
    return RecomputationTask.for_pair(student_id, opportunity_id, **kwargs)


class TestPairComputation:
    """Tests for PAIR tasks."""

    def test_pair_task_writes_score(self):
        """Test a PAIR task computes and stores a versioned score."""
        dispatcher = make_dispatcher(seeded_source())
        task_id = dispatcher.enqueue(pair())

        run_to_idle(dispatcher)

        score = dispatcher.store.get("s-1", "o-1")
        assert score is not None
        assert score.student_version == 1
        assert score.opportunity_version == 1
        assert 0.0 <= score.overall_score <= 1.0

        record = dispatcher.ledger.get(task_id)
        assert record.status == TaskStatus.DONE
        assert record.outcome == TaskOutcome.COMPUTED
        assert record.attempts == 0

    def test_current_score_is_not_recomputed(self):
        """Test a second task for unchanged data is a NO_OP and keeps the stored score."""
        dispatcher = make_dispatcher(seeded_source())
        dispatcher.enqueue(pair())
        run_to_idle(dispatcher)
        first = dispatcher.store.get("s-1", "o-1")

        dispatcher.start()
        task_id = dispatcher.enqueue(pair())
        run_to_idle(dispatcher)

        assert dispatcher.ledger.get(task_id).outcome == TaskOutcome.NO_OP
        assert dispatcher.store.get("s-1", "o-1") == first

    def test_new_version_is_recomputed(self):
        """Test a mutation bumps the version and the next task rewrites the score."""
        source = seeded_source()
        dispatcher = make_dispatcher(source)
        dispatcher.enqueue(pair())
        run_to_idle(dispatcher)

        source.upsert_candidate(make_candidate("s-1", gpa=2.0))
        dispatcher.start()
        task_id = dispatcher.enqueue(pair())
        run_to_idle(dispatcher)

        assert dispatcher.ledger.get(task_id).outcome == TaskOutcome.COMPUTED
        assert dispatcher.store.get("s-1", "o-1").student_version == 2

    def test_missing_subject_completes_as_subject_gone(self):
        """Test a pair whose student was deleted ends DONE/SUBJECT_GONE without writing."""
        source = seeded_source()
        source.delete_candidate("s-1")
        dispatcher = make_dispatcher(source)
        task_id = dispatcher.enqueue(pair())

        run_to_idle(dispatcher)

        record = dispatcher.ledger.get(task_id)
        assert record.status == TaskStatus.DONE
        assert record.outcome == TaskOutcome.SUBJECT_GONE
        assert dispatcher.store.get("s-1", "o-1") is None

    def test_deletion_while_computing_prevents_write(self):
        """Test a side deleted between compute and write leaves no score behind."""
        source = seeded_source()

        class DeletingLock(KeyedLock):
            def on_acquired(self, key):
                source.delete_opportunity(key[1])

        dispatcher = make_dispatcher(source, locks=DeletingLock())
        task_id = dispatcher.enqueue(pair())

        run_to_idle(dispatcher)

        assert dispatcher.ledger.get(task_id).outcome == TaskOutcome.SUBJECT_GONE
        assert dispatcher.store.get("s-1", "o-1") is None


class TestFanOut:
    """Tests for STUDENT and OPPORTUNITY expansion."""

    def test_student_task_expands_to_active_opportunities(self):
        """Test a STUDENT task scores the student against every active opportunity."""
        source = seeded_source(students=("s-1",), opportunities=("o-1", "o-2", "o-3"))
        source.set_active(EntityType.OPPORTUNITY, "o-3", False)
        dispatcher = make_dispatcher(source)
        task_id = dispatcher.enqueue(RecomputationTask(SubjectType.STUDENT, "s-1", priority=Priority.HIGH))

        run_to_idle(dispatcher)

        assert dispatcher.ledger.get(task_id).outcome == TaskOutcome.EXPANDED
        assert dispatcher.store.get("s-1", "o-1") is not None
        assert dispatcher.store.get("s-1", "o-2") is not None
        assert dispatcher.store.get("s-1", "o-3") is None

    def test_opportunity_task_expands_to_eligible_students(self):
        """Test an OPPORTUNITY task scores every eligible student."""
        source = seeded_source(students=("s-1", "s-2"), opportunities=("o-1",))
        dispatcher = make_dispatcher(source)
        dispatcher.enqueue(RecomputationTask(SubjectType.OPPORTUNITY, "o-1"))

        run_to_idle(dispatcher)

        assert len(dispatcher.store) == 2
        ranked = dispatcher.store.top_for_opportunity("o-1")
        assert [entry.rank for entry in ranked] == [1, 2]

    def test_fan_out_carries_reason_and_priority(self):
        """Test PAIR tasks inherit the parent's reason and priority."""
        source = seeded_source()
        seen = []
        dispatcher = make_dispatcher(source)
        original_enqueue = dispatcher.executor.enqueue

        def spy(task):
            seen.append(task)
            return original_enqueue(task)

        dispatcher.executor.enqueue = spy
        dispatcher.enqueue(
            RecomputationTask(SubjectType.STUDENT, "s-1", reason=Reason.BATCH_SWEEP, priority=Priority.LOW)
        )

        run_to_idle(dispatcher)

        assert len(seen) == 1
        assert seen[0].subject_type == SubjectType.PAIR
        assert seen[0].reason == Reason.BATCH_SWEEP
        assert seen[0].priority == Priority.LOW

    def test_unknown_student_task_is_subject_gone(self):
        """Test a STUDENT task for a missing student does not fan out."""
        dispatcher = make_dispatcher(seeded_source())
        task_id = dispatcher.enqueue(RecomputationTask(SubjectType.STUDENT, "ghost"))

        run_to_idle(dispatcher)

        assert dispatcher.ledger.get(task_id).outcome == TaskOutcome.SUBJECT_GONE
        assert len(dispatcher.store) == 0


class TestRetries:
    """Tests for transient failures, dead-lettering and timeouts."""

    def test_transient_failure_retried_then_succeeds(self):
        """Test DataUnavailable is retried until the fetch succeeds."""
        source = FlakySource(seeded_source(), fail_times=2)
        dispatcher = make_dispatcher(source, max_attempts=3)
        task_id = dispatcher.enqueue(pair())

        run_to_idle(dispatcher)

        record = dispatcher.ledger.get(task_id)
        assert record.outcome == TaskOutcome.COMPUTED
        assert record.attempts == 2
        assert source.fetch_calls == 3
        assert dispatcher.store.get("s-1", "o-1") is not None

    def test_exhausted_attempts_dead_letter(self):
        """Test a task failing on every attempt ends FAILED/DEAD_LETTERED."""
        source = FlakySource(seeded_source(), fail_times=100)
        dispatcher = make_dispatcher(source, max_attempts=2)
        task_id = dispatcher.enqueue(pair())

        run_to_idle(dispatcher)

        record = dispatcher.ledger.get(task_id)
        assert record.status == TaskStatus.FAILED
        assert record.outcome == TaskOutcome.DEAD_LETTERED
        assert record.attempts == 2
        assert "DataUnavailable" in record.last_error
        assert dispatcher.store.get("s-1", "o-1") is None
        assert dispatcher.status().failed_last_24h == 1

    def test_unexpected_error_is_retried_like_a_transient_one(self):
        """Test an arbitrary exception from a collaborator fails the attempt."""
        source = FlakySource(seeded_source(), error=RuntimeError("boom"))
        dispatcher = make_dispatcher(source, max_attempts=1)
        task_id = dispatcher.enqueue(pair())

        run_to_idle(dispatcher)

        record = dispatcher.ledger.get(task_id)
        assert record.outcome == TaskOutcome.DEAD_LETTERED
        assert "boom" in record.last_error

    def test_timeout_fails_attempt_and_blocks_late_write(self):
        """Test an attempt over budget times out and its late result is never written."""
        source = FlakySource(seeded_source(), delay=0.4)
        dispatcher = make_dispatcher(source, task_timeout="100ms", max_attempts=1)
        task_id = dispatcher.enqueue(pair())

        run_to_idle(dispatcher)

        record = dispatcher.ledger.get(task_id)
        assert record.outcome == TaskOutcome.DEAD_LETTERED
        assert "ComputeTimeout" in record.last_error

        # Let the abandoned attempt finish on its own
        time.sleep(0.6)
        assert dispatcher.store.get("s-1", "o-1") is None


class TestCancel:
    """Tests for cancelling through the dispatcher."""

    def test_cancel_pending_task(self):
        """Test a PENDING task is cancelled and recorded."""
        dispatcher = make_dispatcher(seeded_source())
        task_id = dispatcher.enqueue(pair())

        result = dispatcher.cancel(task_id)
        run_to_idle(dispatcher)

        assert result.cancelled is True
        assert result.state == TaskStatus.PENDING
        assert dispatcher.ledger.get(task_id).outcome == TaskOutcome.CANCELLED
        assert dispatcher.store.get("s-1", "o-1") is None

    def test_cancel_finished_task_reports_final_state(self):
        """Test cancelling a finished task is refused with its final status."""
        dispatcher = make_dispatcher(seeded_source())
        task_id = dispatcher.enqueue(pair())
        run_to_idle(dispatcher)

        result = dispatcher.cancel(task_id)

        assert result.cancelled is False
        assert result.state == TaskStatus.DONE

    def test_cancel_unknown_task(self):
        """Test an unknown id is neither cancelled nor given a state."""
        result = make_dispatcher(seeded_source()).cancel("missing")

        assert result.cancelled is False
        assert result.state is None

    def test_cancel_while_processing_prevents_retry(self):
        """Test a task cancelled mid-attempt is not retried after it fails."""
        source = FlakySource(seeded_source(), fail_times=1)
        dispatcher = make_dispatcher(source, max_attempts=3)
        task_id = dispatcher.enqueue(pair())
        results = []
        source.before_fetch = lambda _: results.append(dispatcher.cancel(task_id))

        run_to_idle(dispatcher)

        assert results[0].state == TaskStatus.PROCESSING
        record = dispatcher.ledger.get(task_id)
        assert record.outcome == TaskOutcome.CANCELLED
        assert record.attempts == 1
        assert source.fetch_calls == 1


class TestConcurrency:
    """Tests for per-subject exclusion under concurrent enqueues."""

    def test_concurrent_enqueues_for_one_pair(self):
        """Test 100 concurrent enqueues of one pair never leave two tasks PROCESSING at once."""
        source = FlakySource(seeded_source(), delay=0.05)
        locks = InstrumentedLock()
        dispatcher = make_dispatcher(source, workers=4, locks=locks)
        monitor = InFlightMonitor().attach(dispatcher.queue)
        dispatcher.start()

        barrier = threading.Barrier(100)
        errors = []

        def submit():
            barrier.wait()
            try:
                dispatcher.enqueue(pair(priority=Priority.HIGH))
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=submit) for _ in range(100)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        remaining = dispatcher.drain(10)
        dispatcher.shutdown(timeout=2.0)

        key = pair().subject_key
        assert errors == []
        assert remaining == 0
        assert monitor.claims[key] >= 1
        assert monitor.peak[key] == 1
        assert monitor.current[key] == 0
        assert len(dispatcher.store) == 1
        assert len(locks) == 0

    def test_concurrent_fan_out_across_pairs(self):
        """Test overlapping STUDENT and OPPORTUNITY tasks keep one PROCESSING task per subject."""
        source = FlakySource(
            seeded_source(students=("s-1", "s-2", "s-3"), opportunities=("o-1", "o-2", "o-3")),
            delay=0.01,
        )
        dispatcher = make_dispatcher(source, workers=6)
        monitor = InFlightMonitor().attach(dispatcher.queue)
        for sid in ("s-1", "s-2", "s-3"):
            dispatcher.enqueue(RecomputationTask(SubjectType.STUDENT, sid))
        for oid in ("o-1", "o-2", "o-3"):
            dispatcher.enqueue(RecomputationTask(SubjectType.OPPORTUNITY, oid))

        run_to_idle(dispatcher)

        pair_keys = [key for key in monitor.claims if key[0] is SubjectType.PAIR]
        assert len(dispatcher.store) == 9
        assert len(pair_keys) == 9
        assert set(monitor.peak.values()) == {1}

    def test_injected_lock_registry_is_used(self):
        """Test an empty caller-supplied registry is kept and shared with the executor."""
        locks = InstrumentedLock()
        dispatcher = make_dispatcher(seeded_source(), locks=locks)

        assert len(locks) == 0
        assert dispatcher.locks is locks
        assert dispatcher.executor.locks is locks

        dispatcher.enqueue(pair())
        run_to_idle(dispatcher)

        assert locks.acquisitions[("s-1", "o-1")] == 1


class TestLifecycle:
    """Tests for start, drain, shutdown and status."""

    def test_enqueue_after_drain_is_rejected(self):
        """Test a draining dispatcher refuses new tasks."""
        dispatcher = make_dispatcher(seeded_source())
        dispatcher.start()
        dispatcher.drain(1.0)

        with pytest.raises(DispatcherStopped):
            dispatcher.enqueue(pair())

        dispatcher.shutdown(timeout=2.0)
        assert not dispatcher.accepting

    def test_drain_without_workers_reports_remaining(self):
        """Test drain times out with the pending count when nothing runs."""
        dispatcher = make_dispatcher(seeded_source())
        dispatcher.enqueue(pair())

        assert dispatcher.drain(0.1) == 1

    def test_evictions_are_reported_apart_from_failures(self):
        """Test a LOW task dropped by backpressure is not counted as failed."""
        dispatcher = make_dispatcher(seeded_source(), capacity=QueueCapacity(high=10, normal=10, low=1))
        evicted_id = dispatcher.enqueue(RecomputationTask(SubjectType.STUDENT, "s-1", priority=Priority.LOW))
        dispatcher.enqueue(RecomputationTask(SubjectType.STUDENT, "s-2", priority=Priority.LOW))

        status = dispatcher.status()

        assert dispatcher.ledger.get(evicted_id).outcome == TaskOutcome.EVICTED
        assert status.evicted_last_24h == 1
        assert status.failed_last_24h == 0
        assert status.pending_by_priority["LOW"] == 1

    def test_saturation_propagates_to_caller(self):
        """Test QueueSaturated reaches the caller of enqueue."""
        dispatcher = make_dispatcher(seeded_source(), capacity=QueueCapacity(high=1, normal=1, low=1))
        dispatcher.enqueue(pair("s-1", "o-1"))

        with pytest.raises(QueueSaturated):
            dispatcher.enqueue(pair("s-2", "o-1"))

    def test_shutdown_stops_workers(self):
        """Test shutdown joins the worker threads."""
        dispatcher = make_dispatcher(seeded_source())
        dispatcher.start()
        assert dispatcher.pool.is_running()

        dispatcher.shutdown(timeout=2.0)

        assert not dispatcher.pool.is_running()

    def test_status_counts(self):
        """Test queue status reports pending work by bucket."""
        dispatcher = make_dispatcher(seeded_source(), workers=3)
        dispatcher.enqueue(pair("s-1", "o-1", priority=Priority.HIGH))
        dispatcher.enqueue(RecomputationTask(SubjectType.STUDENT, "s-1", priority=Priority.LOW))

        status = dispatcher.status()

        assert status.pending_by_priority == {"HIGH": 1, "NORMAL": 0, "LOW": 1}
        assert status.pending == 2
        assert status.processing == 0
        assert status.workers == 3
        assert status.accepting is True
        assert status.oldest_pending_age_seconds >= 0

    def test_get_task_live_then_recorded(self):
        """Test get_task returns the live task, then its ledger record."""
        dispatcher = make_dispatcher(seeded_source())
        task_id = dispatcher.enqueue(pair())

        assert dispatcher.get_task(task_id).status == TaskStatus.PENDING

        run_to_idle(dispatcher)

        assert dispatcher.get_task(task_id).outcome == TaskOutcome.COMPUTED

    def test_ledger_failure_does_not_stop_work(self):
        """Test a failing ledger is logged and the score is still written."""
        ledger = Mock()
        ledger.record.side_effect = RuntimeError("ledger down")
        dispatcher = make_dispatcher(seeded_source(), ledger=ledger)
        dispatcher.enqueue(pair())

        run_to_idle(dispatcher)

        assert dispatcher.store.get("s-1", "o-1") is not None
        assert ledger.record.called


class TestRunWithBudget:
    """Tests for the per-attempt wall-clock budget."""

    def test_returns_result(self):
        """Test a fast call returns its value."""
        assert run_with_budget(lambda attempt: 42, pair(), 1.0) == 42

    def test_reraises_error(self):
        """Test the callable's exception reaches the caller."""
        def fail(attempt):
            raise ValueError("bad")

        with pytest.raises(ValueError, match="bad"):
            run_with_budget(fail, pair(), 1.0)

    def test_timeout_abandons_attempt(self):
        """Test a slow call raises ComputeTimeout and its attempt refuses writes."""
        seen = {}
        finished = threading.Event()

        def slow(attempt):
            seen["attempt"] = attempt
            time.sleep(0.3)
            try:
                with attempt.guard_write():
                    seen["wrote"] = True
            except ComputeTimeout:
                seen["refused"] = True
            finally:
                finished.set()

        with pytest.raises(ComputeTimeout):
            run_with_budget(slow, pair(), 0.05)

        assert finished.wait(2.0)
        assert seen["attempt"].abandoned
        assert seen.get("refused") is True
        assert "wrote" not in seen

    def test_attempt_check(self):
        """Test check raises only once abandoned."""
        attempt = Attempt(pair())
        attempt.check()

        attempt.abandon()

        with pytest.raises(ComputeTimeout):
            attempt.check()


class TestSqlBackedDispatcher:
    """Tests the dispatcher against the SQL score store and ledger."""

    @pytest.fixture(autouse=True)
    def database(self, tmp_path):
        init_database(f"sqlite:///{tmp_path / 'scores.db'}")
        yield
        close_database()

    def test_scores_and_records_persist(self):
        """Test fan-out results and task records land in the database."""
        source = seeded_source(students=("s-1", "s-2"), opportunities=("o-1", "o-2"))
        dispatcher = make_dispatcher(source, store=SqlScoreStore(), ledger=SqlTaskLedger(), workers=1)
        task_id = dispatcher.enqueue(RecomputationTask(SubjectType.OPPORTUNITY, "o-1"))
        dispatcher.enqueue(RecomputationTask(SubjectType.OPPORTUNITY, "o-2"))

        run_to_idle(dispatcher)

        assert dispatcher.store.stats(EPOCH).total_scores == 4
        assert dispatcher.ledger.get(task_id).outcome == TaskOutcome.EXPANDED
        assert dispatcher.store.get("s-2", "o-2").student_version == 1
