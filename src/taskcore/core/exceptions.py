"""Exceptions raised at the store and history boundaries."""

from dataclasses import dataclass, field
from typing import Any, Optional


class TaskCoreError(Exception):
    """Base class for every error raised by the task core."""


class NotInitializedError(TaskCoreError):
    """A component was used before ``initialize()`` completed."""


@dataclass
class ValidationError(TaskCoreError):
    """
    Field-level validation failure.

    The validator itself only returns messages; the store raises this
    when a create, update or import record is rejected.
    """
    errors: list[str]
    warnings: list[str] = field(default_factory=list)

    def __str__(self):
        return ", ".join(self.errors) or "Invalid task data"


@dataclass
class NotFoundError(TaskCoreError):
    """The referenced task (or history version) does not exist."""
    task_id: str
    what: str = "Task"

    def __str__(self):
        return f"{self.what} not found: {self.task_id}"


@dataclass
class StorageError(TaskCoreError):
    """Persistence I/O failed. Never retried automatically."""
    key: str
    operation: str
    cause: Optional[BaseException] = None

    def __str__(self):
        detail = f": {self.cause}" if self.cause else ""
        return f"Storage {self.operation} failed for '{self.key}'{detail}"


@dataclass
class ConflictUnresolvedError(TaskCoreError):
    """Resolutions were applied while some conflicts had no selection."""
    task_id: str
    fields: list[str]

    def __str__(self):
        return f"Unresolved conflicts for task {self.task_id}: {', '.join(self.fields)}"


@dataclass
class BusyError(TaskCoreError):
    """A second mutation was attempted on a task already mid-mutation."""
    task_id: str
    state: Any = "saving"

    def __str__(self):
        state = getattr(self.state, "value", self.state)
        return f"Task {self.task_id} is busy ({state})"


@dataclass
class StaleWriteError(TaskCoreError):
    """The caller's expected version no longer matches the stored record."""
    task_id: str
    expected: int
    actual: int

    def __str__(self):
        return (
            f"Stale write for task {self.task_id}: "
            f"expected version {self.expected}, found {self.actual}"
        )
