"""Scoped logging context backed by contextvars.

Workers run on their own threads, and each thread starts with an empty
context, so task fields pushed by one worker never leak into another.
"""

from contextvars import ContextVar, Token
from typing import Any, Dict, Optional

LogContextVar: ContextVar[Dict[str, Any]] = ContextVar("match_engine_log_context", default={})


def get_log_context() -> Dict[str, Any]:
    """Return a copy of the fields active in the current context."""
    return LogContextVar.get().copy()


def push_log_context(**kwargs) -> Token:
    """Merge fields into the current context.

    Returns:
        Token to hand back to pop_log_context()

    Example:
        >>> token = push_log_context(task_id="t-1", worker="worker-0")
        >>> pop_log_context(token)
    """
    return LogContextVar.set({**LogContextVar.get(), **kwargs})


def pop_log_context(token: Token) -> None:
    """Restore the context captured by push_log_context()."""
    LogContextVar.reset(token)


def clear_log_context() -> None:
    """Drop every context field (used by tests)."""
    LogContextVar.set({})


class log_context:
    """Context manager that pushes fields on entry and restores on exit.

    Example:
        >>> with log_context(task_id="t-1", student_id="s-9"):
        ...     logger.info("Computing pair score")
    """

    def __init__(self, **kwargs):
        self.kwargs = {key: value for key, value in kwargs.items() if value is not None}
        self.token: Optional[Token] = None

    def __enter__(self):
        self.token = push_log_context(**self.kwargs)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.token is not None:
            pop_log_context(self.token)
            self.token = None
        return False
