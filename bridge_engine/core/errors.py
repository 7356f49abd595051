"""Typed errors raised by the gap, insertion and clustering services."""

from enum import Enum


class MissingTaskError(Exception):
    """Raised when one or more requested task ids do not exist."""

    def __init__(self, missing_ids: list[str], message: str | None = None):
        self.missing_ids = list(missing_ids)
        super().__init__(message or f"Missing tasks for IDs: {', '.join(self.missing_ids)}")


class ClusteringError(ValueError):
    """Raised when a task set cannot be clustered as requested."""


class TaskInsertionErrorCode(str, Enum):
    """Failure codes reported for a bridging task candidate."""

    VALIDATION_ERROR = "VALIDATION_ERROR"
    TASK_NOT_FOUND = "TASK_NOT_FOUND"
    CONTEXT_MISMATCH = "CONTEXT_MISMATCH"
    TASK_ID_EXISTS = "TASK_ID_EXISTS"
    DUPLICATE_TASK = "DUPLICATE_TASK"
    CYCLE_DETECTED = "CYCLE_DETECTED"
    INSERTION_FAILED = "INSERTION_FAILED"


class TaskInsertionError(Exception):
    """Raised when a bridging task cannot be committed to the graph.

    Carries enough context for a caller to act on: the conflicting task for
    DUPLICATE_TASK and the offending path (as task texts) for CYCLE_DETECTED.
    """

    def __init__(
        self,
        message: str,
        code: TaskInsertionErrorCode,
        details: list[str] | None = None,
        *,
        task_id: str | None = None,
        conflicting_task_id: str | None = None,
        cycle_path: list[str] | None = None,
    ):
        super().__init__(message)
        self.code = code
        self.details = details or []
        self.task_id = task_id
        self.conflicting_task_id = conflicting_task_id
        self.cycle_path = cycle_path or []
