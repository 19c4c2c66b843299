"""Persistence layer exceptions.

All persistence exceptions inherit from PersistenceError so callers can catch
every storage failure with a single except clause.
"""


class PersistenceError(Exception):
    """Base exception for all persistence layer errors."""

    pass


class DatabaseConnectionError(PersistenceError):
    """Raised when database connection or initialization fails.

    Examples:
    - Invalid database URL format
    - Database file not accessible
    - Database not initialized before a session was requested
    """

    pass


class DataIntegrityError(PersistenceError):
    """Raised when a database constraint is violated.

    Examples:
    - Two concurrent inserts for the same (student, opportunity) pair
    - Duplicate task id in the task ledger
    """

    pass
