"""Tests for the score store and task ledger (in-memory and SQL)."""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import text

from matchengine.dispatch import (
    Priority,
    Reason,
    RecomputationTask,
    SubjectType,
    TaskOutcome,
    TaskStatus,
)
from matchengine.domain.models import EntityType
from matchengine.store import (
    DatabaseConnectionError,
    InMemoryScoreStore,
    InMemoryTaskLedger,
    RunRecord,
    RunType,
    SqlScoreStore,
    SqlTaskLedger,
    TaskRecord,
    close_database,
    get_engine,
    get_session,
    init_database,
)
from matchengine.store.database import _redact_url
from matchengine.store.schema import _parse_datetime, format_datetime
from tests.helpers import make_score

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture(params=["memory", "sql"])
def backend(request, tmp_path):
    """(score store, task ledger) for each backend."""
    if request.param == "sql":
        init_database(f"sqlite:///{tmp_path / 'store.db'}")
        yield SqlScoreStore(), SqlTaskLedger()
        close_database()
    else:
        yield InMemoryScoreStore(), InMemoryTaskLedger()


@pytest.fixture
def store(backend):
    return backend[0]


@pytest.fixture
def ledger(backend):
    return backend[1]


def finished_task(status=TaskStatus.DONE, outcome=TaskOutcome.COMPUTED, finished_at=NOW, subject_id="s-1"):
    task = RecomputationTask(SubjectType.STUDENT, subject_id, reason=Reason.BATCH_SWEEP, priority=Priority.LOW)
    task.status = status
    task.outcome = outcome
    task.finished_at = finished_at
    return task


class TestScoreStore:
    """Tests shared by every ScoreStore."""

    def test_get_missing(self, store):
        """Test a never-computed pair returns None."""
        assert store.get("s-1", "o-1") is None

    def test_put_then_get(self, store):
        """Test a stored score comes back unchanged."""
        score = make_score(overall=0.73, computed_at=NOW)
        store.put(score)

        loaded = store.get("s-1", "o-1")

        assert loaded.overall_score == pytest.approx(0.73)
        assert loaded.student_version == 1
        assert loaded.computed_at == NOW
        assert loaded.algorithm_version == score.algorithm_version

    def test_put_replaces_whole_score(self, store):
        """Test a second put overwrites every field of the pair."""
        store.put(make_score(overall=0.2, student_version=1, computed_at=NOW))
        store.put(make_score(overall=0.9, student_version=3, opportunity_version=2, computed_at=NOW))

        loaded = store.get("s-1", "o-1")

        assert loaded.overall_score == pytest.approx(0.9)
        assert loaded.student_version == 3
        assert loaded.opportunity_version == 2

    def test_current_data_version(self, store):
        """Test the highest recorded version per entity is reported."""
        store.put(make_score("s-1", "o-1", student_version=2, opportunity_version=5))
        store.put(make_score("s-1", "o-2", student_version=4, opportunity_version=1))

        assert store.current_data_version(EntityType.STUDENT, "s-1") == 4
        assert store.current_data_version(EntityType.OPPORTUNITY, "o-1") == 5
        assert store.current_data_version(EntityType.STUDENT, "s-9") is None

    def test_top_for_student(self, store):
        """Test a student's matches come back best first and numbered."""
        store.put(make_score("s-1", "o-1", overall=0.4))
        store.put(make_score("s-1", "o-2", overall=0.9))
        store.put(make_score("s-1", "o-3", overall=0.6))
        store.put(make_score("s-2", "o-1", overall=1.0))

        ranked = store.top_for_student("s-1", limit=2)

        assert [(r.rank, r.score.opportunity_id) for r in ranked] == [(1, "o-2"), (2, "o-3")]

    def test_top_for_opportunity_breaks_ties_by_id(self, store):
        """Test equal scores are ordered by student id."""
        store.put(make_score("s-b", "o-1", overall=0.5))
        store.put(make_score("s-a", "o-1", overall=0.5))

        ranked = store.top_for_opportunity("o-1")

        assert [r.score.student_id for r in ranked] == ["s-a", "s-b"]

    def test_top_matches(self, store):
        """Test the best pairs overall."""
        store.put(make_score("s-1", "o-1", overall=0.1))
        store.put(make_score("s-2", "o-1", overall=0.8))
        store.put(make_score("s-3", "o-2", overall=0.5))

        ranked = store.top_matches(limit=2)

        assert [r.score.pair for r in ranked] == [("s-2", "o-1"), ("s-3", "o-2")]

    def test_stats(self, store):
        """Test totals, recent count and average."""
        store.put(make_score("s-1", "o-1", overall=0.2, computed_at=NOW - timedelta(days=2)))
        store.put(make_score("s-2", "o-1", overall=0.6, computed_at=NOW))

        stats = store.stats(NOW - timedelta(hours=24))

        assert stats.total_scores == 2
        assert stats.computed_since == 1
        assert stats.average_overall == pytest.approx(0.4)

    def test_stats_empty(self, store):
        """Test stats over an empty store."""
        stats = store.stats(NOW)

        assert stats.total_scores == 0
        assert stats.average_overall is None


class TestTaskLedger:
    """Tests shared by every TaskLedger."""

    def test_record_and_get(self, ledger):
        """Test a finished task is stored as a TaskRecord."""
        task = finished_task()
        task.attempts = 2
        task.last_error = "DataUnavailable: down"

        ledger.record(task)
        record = ledger.get(task.task_id)

        assert isinstance(record, TaskRecord)
        assert record.subject_type == SubjectType.STUDENT
        assert record.reason == Reason.BATCH_SWEEP
        assert record.priority == Priority.LOW
        assert record.status == TaskStatus.DONE
        assert record.outcome == TaskOutcome.COMPUTED
        assert record.attempts == 2
        assert record.last_error == "DataUnavailable: down"
        assert record.finished_at == NOW

    def test_get_missing(self, ledger):
        """Test an unknown id returns None."""
        assert ledger.get("nope") is None

    def test_record_overwrites(self, ledger):
        """Test recording the same task id twice keeps the last state."""
        task = finished_task(status=TaskStatus.DONE, outcome=TaskOutcome.NO_OP)
        ledger.record(task)
        task.status = TaskStatus.FAILED
        task.outcome = TaskOutcome.DEAD_LETTERED
        ledger.record(task)

        assert ledger.get(task.task_id).outcome == TaskOutcome.DEAD_LETTERED

    def test_count_since(self, ledger):
        """Test counting by status inside a window."""
        ledger.record(finished_task(TaskStatus.FAILED, TaskOutcome.DEAD_LETTERED, NOW))
        ledger.record(finished_task(TaskStatus.FAILED, TaskOutcome.EVICTED, NOW - timedelta(days=2)))
        ledger.record(finished_task(TaskStatus.DONE, TaskOutcome.COMPUTED, NOW))

        since = NOW - timedelta(hours=24)

        assert ledger.count_since(TaskStatus.FAILED, since) == 1
        assert ledger.count_since(TaskStatus.DONE, since) == 1

    def test_count_since_by_outcome(self, ledger):
        """Test narrowing a status count to one outcome."""
        ledger.record(finished_task(TaskStatus.FAILED, TaskOutcome.DEAD_LETTERED, NOW))
        ledger.record(finished_task(TaskStatus.FAILED, TaskOutcome.EVICTED, NOW))
        ledger.record(finished_task(TaskStatus.FAILED, TaskOutcome.EVICTED, NOW))

        since = NOW - timedelta(hours=24)

        assert ledger.count_since(TaskStatus.FAILED, since) == 3
        assert ledger.count_since(TaskStatus.FAILED, since, outcome=TaskOutcome.EVICTED) == 2
        assert ledger.count_since(TaskStatus.DONE, since, outcome=TaskOutcome.EVICTED) == 0

    def test_cleanup(self, ledger):
        """Test records finished before the cutoff are purged."""
        old = finished_task(finished_at=NOW - timedelta(days=10))
        recent = finished_task(finished_at=NOW - timedelta(days=1))
        ledger.record(old)
        ledger.record(recent)

        deleted = ledger.cleanup(NOW - timedelta(days=7))

        assert deleted == 1
        assert ledger.get(old.task_id) is None
        assert ledger.get(recent.task_id) is not None

    def test_run_log_newest_first(self, ledger):
        """Test runs come back newest first, including runs logged in the same instant."""
        first = RunRecord(RunType.SCHEDULED_BATCH, 5, 5, 12, created_at=NOW, triggered_by="scheduler")
        second = RunRecord(RunType.MANUAL_TRIGGER, 1, 1, 3, created_at=NOW)
        third = RunRecord(
            RunType.STUDENT_UPDATE, 0, 0, 1, success=False, error="QueueSaturated: full", created_at=NOW
        )
        for run in (first, second, third):
            ledger.record_run(run)

        runs = ledger.recent_runs(limit=2)

        assert [run.run_id for run in runs] == [third.run_id, second.run_id]
        assert runs[0].success is False
        assert runs[0].error == "QueueSaturated: full"
        assert runs[0].run_type == RunType.STUDENT_UPDATE
        assert ledger.recent_runs()[-1].triggered_by == "scheduler"
        assert ledger.recent_runs()[-1].created_at == NOW

    def test_cleanup_purges_old_runs(self, ledger):
        """Test the retention cutoff applies to the run log too."""
        ledger.record_run(RunRecord(RunType.SCHEDULED_BATCH, 1, 1, 1, created_at=NOW - timedelta(days=10)))
        kept = RunRecord(RunType.SCHEDULED_BATCH, 1, 1, 1, created_at=NOW)
        ledger.record_run(kept)

        deleted = ledger.cleanup(NOW - timedelta(days=7))

        assert deleted == 1
        assert [run.run_id for run in ledger.recent_runs()] == [kept.run_id]


class TestSqlStore:
    """SQL-specific behaviour."""

    @pytest.fixture(autouse=True)
    def database(self, tmp_path):
        init_database(f"sqlite:///{tmp_path / 'nested' / 'dir' / 'scores.db'}")
        yield
        close_database()

    def test_parent_directories_created(self, tmp_path):
        """Test init_database creates missing directories for a file database."""
        assert (tmp_path / "nested" / "dir" / "scores.db").exists()

    def test_tables_created(self):
        """Test every table exists after initialization."""
        with get_engine().connect() as conn:
            names = {row[0] for row in conn.execute(text("SELECT name FROM sqlite_master WHERE type='table'"))}

        assert {"match_scores", "recompute_tasks", "match_runs"} <= names

    def test_breakdown_round_trip(self):
        """Test the JSON breakdown column survives storage."""
        score = make_score().model_copy(update={"breakdown": {"skill": {"missing_required": ["sql"]}}})
        store = SqlScoreStore()
        store.put(score)

        assert store.get("s-1", "o-1").breakdown == {"skill": {"missing_required": ["sql"]}}

    def test_one_row_per_pair(self):
        """Test repeated puts keep a single row."""
        store = SqlScoreStore()
        for version in range(1, 4):
            store.put(make_score(student_version=version))

        with get_session() as session:
            count = session.execute(text("SELECT COUNT(*) FROM match_scores")).scalar()

        assert count == 1

    def test_reinitialising_is_idempotent(self, tmp_path):
        """Test init_database can run twice against the same file."""
        SqlScoreStore().put(make_score())
        close_database()

        init_database(f"sqlite:///{tmp_path / 'nested' / 'dir' / 'scores.db'}")

        assert SqlScoreStore().get("s-1", "o-1") is not None


class TestDatabaseLifecycle:
    """Tests for database initialization errors and helpers."""

    def test_session_before_init_raises(self):
        """Test get_session without init_database raises."""
        close_database()

        with pytest.raises(DatabaseConnectionError):
            with get_session():
                pass

    def test_invalid_url_raises(self):
        """Test an empty URL is rejected."""
        with pytest.raises(DatabaseConnectionError):
            init_database("")

    def test_in_memory_database(self):
        """Test an in-memory database is usable across sessions."""
        init_database("sqlite:///:memory:")
        try:
            SqlScoreStore().put(make_score())
            assert SqlScoreStore().get("s-1", "o-1") is not None
        finally:
            close_database()

    def test_redact_url(self):
        """Test passwords are hidden before URLs are logged."""
        assert _redact_url("postgresql://user:secret@db:5432/scores") == "postgresql://user:***@db:5432/scores"
        assert _redact_url("sqlite:///./data/match_engine.db") == "sqlite:///./data/match_engine.db"

    def test_datetime_format_round_trip(self):
        """Test stored timestamps sort lexically and parse back to aware UTC."""
        stored = format_datetime(NOW)

        assert stored == "2026-03-01T12:00:00.000000Z"
        assert _parse_datetime(stored) == NOW
        assert format_datetime(None) is None
