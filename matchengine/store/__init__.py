"""Score storage and task ledger.

Public API:
    # Interfaces and value types
    - ScoreStore, TaskLedger, RankedMatch, ScoreStats, TaskRecord, RunRecord, RunType

    # Implementations
    - InMemoryScoreStore, InMemoryTaskLedger
    - SqlScoreStore, SqlTaskLedger (call init_database() first)

    # Database lifecycle
    - init_database(database_url), get_session(), close_database(), get_engine()

    # Exceptions
    - PersistenceError, DatabaseConnectionError, DataIntegrityError

Example usage:
    >>> from matchengine.store import init_database, SqlScoreStore
    >>> init_database("sqlite:///./data/match_engine.db")
    >>> store = SqlScoreStore()
    >>> store.get("s-1", "o-1")
"""

from .base import RankedMatch, RunRecord, RunType, ScoreStats, ScoreStore, TaskLedger, TaskRecord
from .database import close_database, get_engine, get_session, init_database
from .exceptions import DatabaseConnectionError, DataIntegrityError, PersistenceError
from .memory import InMemoryScoreStore, InMemoryTaskLedger
from .sql import SqlScoreStore, SqlTaskLedger

__all__ = [
    # Interfaces
    "ScoreStore",
    "TaskLedger",
    "RankedMatch",
    "ScoreStats",
    "TaskRecord",
    "RunRecord",
    "RunType",
    # Implementations
    "InMemoryScoreStore",
    "InMemoryTaskLedger",
    "SqlScoreStore",
    "SqlTaskLedger",
    # Database functions
    "init_database",
    "get_session",
    "close_database",
    "get_engine",
    # Exceptions
    "PersistenceError",
    "DatabaseConnectionError",
    "DataIntegrityError",
]
