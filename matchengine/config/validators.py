"""Non-fatal configuration checks."""

import os
import warnings
from typing import Any, Dict, List


def check_for_warnings(config_dict: Dict[str, Any]) -> List[str]:
    """
    Inspect a raw configuration dictionary for settings that are legal but risky.

    Args:
        config_dict: Raw configuration dictionary

    Returns:
        List of warning messages
    """
    messages = []

    workers = config_dict.get("workers") or {}
    if isinstance(workers, dict):
        count = workers.get("count", 4)
        cpu_count = os.cpu_count() or 1
        if isinstance(count, int) and count > cpu_count * 8:
            messages.append(
                f"workers.count ({count}) is far above the CPU count ({cpu_count}); "
                "workers spend most time waiting on data fetches, but lock contention will grow"
            )

    queue = config_dict.get("queue") or {}
    capacity = queue.get("capacity") if isinstance(queue, dict) else None
    if isinstance(capacity, dict):
        low = capacity.get("low")
        if isinstance(low, int) and low < 100:
            messages.append(
                f"queue.capacity.low ({low}) is small; batch sweeps will evict most of their tasks"
            )
        high = capacity.get("high")
        normal = capacity.get("normal")
        if isinstance(high, int) and isinstance(normal, int) and high > normal:
            messages.append(
                "queue.capacity.high is larger than queue.capacity.normal; "
                "HIGH is meant for a trickle of urgent work"
            )

    retry = config_dict.get("retry") or {}
    if isinstance(retry, dict) and retry.get("max_attempts") == 1:
        messages.append("retry.max_attempts is 1; transient fetch failures will be dead-lettered immediately")

    sweep = config_dict.get("sweep") or {}
    if isinstance(sweep, dict) and sweep.get("enabled") is False:
        messages.append("Batch sweep is disabled; scores only refresh on explicit triggers")

    return messages


def emit_warnings(warning_messages: List[str]) -> None:
    """Emit warning messages through Python's warnings module."""
    for message in warning_messages:
        warnings.warn(message, UserWarning, stacklevel=2)
