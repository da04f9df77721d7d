"""Task records, validation, querying and the repository."""

from .task import FieldChange, Priority, TaskRecord
from .validator import ValidationResult, validate
from .query import TaskQuery
from .repository import ImportResult, TaskStore, UpdateResult

__all__ = [
    "FieldChange",
    "Priority",
    "TaskRecord",
    "ValidationResult",
    "validate",
    "TaskQuery",
    "ImportResult",
    "TaskStore",
    "UpdateResult",
]
