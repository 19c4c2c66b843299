"""Scriptable data source for exercising retries, timeouts and deletions."""

import threading
import time
from typing import List, Optional

from matchengine.domain.models import CandidateSnapshot, EntityType, OpportunitySnapshot
from matchengine.exceptions import DataUnavailable
from matchengine.sources import DataSource, InMemoryDataSource


class FlakySource(DataSource):
    """
    Wraps an InMemoryDataSource and misbehaves on snapshot fetches.

    - fail_times: the next N candidate fetches raise DataUnavailable
    - error: every candidate fetch raises this exception instead
    - delay: every candidate fetch sleeps this long first
    - before_fetch: callable run at the start of each candidate fetch

    Version reads and listings always pass straight through.
    """

    def __init__(self, inner: InMemoryDataSource, fail_times: int = 0, delay: float = 0.0, error: Optional[Exception] = None):
        self.inner = inner
        self.fail_times = fail_times
        self.delay = delay
        self.error = error
        self.before_fetch = None
        self.fetch_calls = 0
        self._lock = threading.Lock()

    def fetch_candidate_snapshot(self, student_id: str) -> CandidateSnapshot:
        with self._lock:
            self.fetch_calls += 1
            should_fail = self.fail_times > 0
            if should_fail:
                self.fail_times -= 1

        if self.before_fetch is not None:
            self.before_fetch(student_id)
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        if should_fail:
            raise DataUnavailable(f"profile store unavailable for {student_id}")
        return self.inner.fetch_candidate_snapshot(student_id)

    def fetch_opportunity_snapshot(self, opportunity_id: str) -> OpportunitySnapshot:
        return self.inner.fetch_opportunity_snapshot(opportunity_id)

    def list_active_opportunity_ids(self) -> List[str]:
        return self.inner.list_active_opportunity_ids()

    def list_eligible_student_ids(self, opportunity_id: Optional[str] = None) -> List[str]:
        return self.inner.list_eligible_student_ids(opportunity_id)

    def current_data_version(self, entity_type: EntityType, entity_id: str) -> int:
        return self.inner.current_data_version(entity_type, entity_id)
