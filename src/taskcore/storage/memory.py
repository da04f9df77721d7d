"""In-process storage backend."""

from typing import Any
import json

from .base import StorageBackend
from ..core.exceptions import StorageError


class MemoryBackend(StorageBackend):
    """
    Dictionary-backed storage.

    Values pass through JSON on the way in and out so callers never
    share mutable state with what is stored, matching the file and
    SQLite backends.
    """

    def __init__(self):
        self._data: dict[str, str] = {}

    async def get(self, key: str, default: Any = None) -> Any:
        raw = self._data.get(key)
        if raw is None:
            return default
        return json.loads(raw)

    async def set(self, key: str, value: Any) -> bool:
        try:
            self._data[key] = json.dumps(value, ensure_ascii=False)
        except (TypeError, ValueError) as e:
            raise StorageError(key=key, operation="set", cause=e) from e
        return True

    async def delete(self, key: str) -> bool:
        return self._data.pop(key, None) is not None

    async def keys(self, prefix: str = "") -> list[str]:
        return sorted(k for k in self._data if k.startswith(prefix))
