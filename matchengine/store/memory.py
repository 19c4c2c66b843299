"""In-memory score store and task ledger."""

import threading
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from matchengine.dispatch.models import RecomputationTask, TaskOutcome, TaskStatus
from matchengine.domain.models import EntityType, MatchScore

from .base import RankedMatch, RunRecord, ScoreStats, ScoreStore, TaskLedger, TaskRecord, rank


class InMemoryScoreStore(ScoreStore):
    """Dict-backed ScoreStore. Scores are immutable, so readers get a consistent object."""

    def __init__(self):
        self._lock = threading.Lock()
        self._scores: Dict[Tuple[str, str], MatchScore] = {}

    def get(self, student_id: str, opportunity_id: str) -> Optional[MatchScore]:
        with self._lock:
            return self._scores.get((student_id, opportunity_id))

    def put(self, score: MatchScore) -> None:
        with self._lock:
            self._scores[score.pair] = score

    def current_data_version(self, entity_type: EntityType, entity_id: str) -> Optional[int]:
        entity_type = EntityType(entity_type)
        with self._lock:
            if entity_type is EntityType.STUDENT:
                versions = [s.student_version for s in self._scores.values() if s.student_id == entity_id]
            else:
                versions = [
                    s.opportunity_version for s in self._scores.values() if s.opportunity_id == entity_id
                ]
        return max(versions) if versions else None

    def top_for_student(self, student_id: str, limit: int = 10) -> List[RankedMatch]:
        with self._lock:
            scores = [s for s in self._scores.values() if s.student_id == student_id]
        return rank(scores, limit)

    def top_for_opportunity(self, opportunity_id: str, limit: int = 10) -> List[RankedMatch]:
        with self._lock:
            scores = [s for s in self._scores.values() if s.opportunity_id == opportunity_id]
        return rank(scores, limit)

    def top_matches(self, limit: int = 10) -> List[RankedMatch]:
        with self._lock:
            scores = list(self._scores.values())
        return rank(scores, limit)

    def stats(self, since: datetime) -> ScoreStats:
        with self._lock:
            scores = list(self._scores.values())
        if not scores:
            return ScoreStats(total_scores=0, computed_since=0, average_overall=None)
        return ScoreStats(
            total_scores=len(scores),
            computed_since=sum(1 for s in scores if s.computed_at >= since),
            average_overall=sum(s.overall_score for s in scores) / len(scores),
        )

    def __len__(self) -> int:
        with self._lock:
            return len(self._scores)


class InMemoryTaskLedger(TaskLedger):
    """Dict-backed TaskLedger with a list for the run log."""

    def __init__(self):
        self._lock = threading.Lock()
        self._records: Dict[str, TaskRecord] = {}
        self._runs: List[RunRecord] = []

    def record(self, task: RecomputationTask) -> None:
        entry = TaskRecord.from_task(task)
        with self._lock:
            self._records[entry.task_id] = entry

    def get(self, task_id: str) -> Optional[TaskRecord]:
        with self._lock:
            return self._records.get(task_id)

    def count_since(self, status: TaskStatus, since: datetime, outcome: Optional[TaskOutcome] = None) -> int:
        with self._lock:
            return sum(
                1
                for r in self._records.values()
                if r.status is status and r.finished_at >= since and (outcome is None or r.outcome is outcome)
            )

    def record_run(self, run: RunRecord) -> None:
        with self._lock:
            self._runs.append(run)

    def recent_runs(self, limit: int = 50) -> List[RunRecord]:
        with self._lock:
            return list(reversed(self._runs))[: max(limit, 0)]

    def cleanup(self, cutoff: datetime) -> int:
        with self._lock:
            stale = [task_id for task_id, r in self._records.items() if r.finished_at < cutoff]
            for task_id in stale:
                del self._records[task_id]
            kept_runs = [run for run in self._runs if run.created_at >= cutoff]
            removed_runs = len(self._runs) - len(kept_runs)
            self._runs = kept_runs
        return len(stale) + removed_runs

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)
