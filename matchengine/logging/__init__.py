"""Structured logging for the match engine."""

import logging
from typing import Optional


class ComponentLoggerAdapter(logging.LoggerAdapter):
    """LoggerAdapter that merges its component field with per-call extras."""

    def process(self, msg, kwargs):
        # Per-call extra wins over the adapter defaults
        kwargs["extra"] = {**self.extra, **kwargs.get("extra", {})}
        return msg, kwargs


def get_logger(name: str, component: Optional[str] = None):
    """Get a logger that stamps every record with a component name.

    Args:
        name: Logger name (typically __name__)
        component: Optional component identifier (e.g. "dispatcher", "worker")

    Returns:
        Logger or ComponentLoggerAdapter instance

    Example:
        >>> logger = get_logger(__name__, component="dispatcher")
        >>> logger.info("Task enqueued", extra={"event": "task.enqueued"})
    """
    logger = logging.getLogger(name)

    if component:
        return ComponentLoggerAdapter(logger, {"component": component})

    return logger
