"""Test helper utilities for match engine tests."""

from .factories import make_candidate, make_opportunity, make_score, seeded_source
from .flaky_source import FlakySource
from .in_flight_monitor import InFlightMonitor
from .instrumented_lock import InstrumentedLock

__all__ = [
    "FlakySource",
    "InFlightMonitor",
    "InstrumentedLock",
    "make_candidate",
    "make_opportunity",
    "make_score",
    "seeded_source",
]
