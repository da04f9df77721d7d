"""Core infrastructure: events, exceptions and the application context."""

from .events import Event, EventBus, EventType
from .exceptions import (
    BusyError,
    ConflictUnresolvedError,
    NotFoundError,
    NotInitializedError,
    StaleWriteError,
    StorageError,
    TaskCoreError,
    ValidationError,
)

__all__ = [
    "Event",
    "EventBus",
    "EventType",
    "BusyError",
    "ConflictUnresolvedError",
    "NotFoundError",
    "NotInitializedError",
    "StaleWriteError",
    "StorageError",
    "TaskCoreError",
    "ValidationError",
]
