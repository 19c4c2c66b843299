"""Engine error taxonomy.

DataUnavailable and ComputeTimeout are transient: the task is retried with
backoff until its attempt budget runs out. SubjectGone is not a failure at
all; the task completes as a no-op. QueueSaturated is raised synchronously to
the caller of an enqueue.
"""


class MatchEngineError(Exception):
    """Base exception for all match engine errors."""

    pass


class DataUnavailable(MatchEngineError):
    """A snapshot or data-version could not be fetched right now.

    Raised by data sources for transient storage or network trouble.
    """

    pass


class ComputeTimeout(DataUnavailable):
    """A task attempt exceeded its wall-clock budget.

    Handled exactly like DataUnavailable: the attempt fails and may be retried.
    """

    pass


class SubjectGone(MatchEngineError):
    """The student or opportunity no longer exists.

    Data sources raise this for lookups of deleted or unknown entities.
    """

    def __init__(self, entity_type, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        label = getattr(entity_type, "value", entity_type)
        super().__init__(f"{label} {entity_id} not found")


class QueueSaturated(MatchEngineError):
    """A NORMAL or HIGH bucket is full and the enqueue was rejected."""

    def __init__(self, priority, capacity: int):
        self.priority = priority
        self.capacity = capacity
        label = getattr(priority, "value", priority)
        super().__init__(f"{label} queue saturated (capacity {capacity}); retry later")


class DispatcherStopped(MatchEngineError):
    """The dispatcher is draining or stopped and accepts no new work."""

    pass
