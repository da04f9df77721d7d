"""Persistence collaborator interface."""

from abc import ABC, abstractmethod
from typing import Any


class StorageBackend(ABC):
    """
    Async key/value persistence.

    Values are JSON-compatible structures. A write either succeeds
    completely or raises StorageError; there are no partial writes.
    """

    @abstractmethod
    async def get(self, key: str, default: Any = None) -> Any:
        """Return the stored value, or default when absent."""

    @abstractmethod
    async def set(self, key: str, value: Any) -> bool:
        """Store a value. Returns True on success."""

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Remove a key. Returns True if it existed."""

    @abstractmethod
    async def keys(self, prefix: str = "") -> list[str]:
        """List stored keys starting with prefix."""

    async def close(self):
        """Release resources held by the backend."""
