"""Domain-event hooks that emit recompute tasks."""

from .detector import TriggerDetector

__all__ = ["TriggerDetector"]
