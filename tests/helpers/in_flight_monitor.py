"""Counts PROCESSING tasks per subject by hooking a RecomputationQueue."""

import threading
from collections import defaultdict


class InFlightMonitor:
    """Tracks current and peak PROCESSING tasks per subject key, plus total claims."""

    def __init__(self):
        self._lock = threading.Lock()
        self.current = defaultdict(int)
        self.peak = defaultdict(int)
        self.claims = defaultdict(int)

    def attach(self, queue):
        queue.on_claimed = self._claimed
        queue.on_released = self._released
        return self

    def _claimed(self, task):
        with self._lock:
            key = task.subject_key
            self.current[key] += 1
            self.claims[key] += 1
            self.peak[key] = max(self.peak[key], self.current[key])

    def _released(self, task):
        with self._lock:
            self.current[task.subject_key] -= 1
