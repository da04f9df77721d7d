"""JSON file storage backend."""

from pathlib import Path
from typing import Any, Optional
from urllib.parse import quote, unquote
import json
import logging
import uuid
import aiofiles
import aiofiles.os

from .base import StorageBackend
from ..core.exceptions import StorageError
from ..config import config

logger = logging.getLogger(__name__)


class JsonFileBackend(StorageBackend):
    """
    One JSON document per key.

    Storage path: data/store/<quoted key>.json
    Writes go to a temp file that is then renamed over the target,
    so a reader never sees a half-written document.
    """

    SUFFIX = ".json"

    def __init__(self, base_path: Optional[Path] = None):
        self.base_path = base_path or config.paths.store
        self._ensure_directories()

    def _ensure_directories(self):
        """Ensure storage directories exist."""
        self.base_path.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        return self.base_path / (quote(key, safe="") + self.SUFFIX)

    async def get(self, key: str, default: Any = None) -> Any:
        path = self._path(key)
        if not path.exists():
            return default

        try:
            async with aiofiles.open(path, "r", encoding="utf-8") as f:
                return json.loads(await f.read())
        except FileNotFoundError:
            return default
        except (OSError, json.JSONDecodeError) as e:
            logger.exception("Failed to read %s", path)
            raise StorageError(key=key, operation="get", cause=e) from e

    async def set(self, key: str, value: Any) -> bool:
        path = self._path(key)
        tmp_path = path.with_name(f".{path.name}.{uuid.uuid4().hex[:8]}.tmp")
        try:
            data = json.dumps(value, ensure_ascii=False)
            async with aiofiles.open(tmp_path, "w", encoding="utf-8") as f:
                await f.write(data)
            await aiofiles.os.replace(tmp_path, path)
        except (OSError, TypeError, ValueError) as e:
            logger.exception("Failed to write %s", path)
            if tmp_path.exists():
                tmp_path.unlink()
            raise StorageError(key=key, operation="set", cause=e) from e
        return True

    async def delete(self, key: str) -> bool:
        path = self._path(key)
        if not path.exists():
            return False
        try:
            await aiofiles.os.remove(path)
        except FileNotFoundError:
            return False
        except OSError as e:
            raise StorageError(key=key, operation="delete", cause=e) from e
        return True

    async def keys(self, prefix: str = "") -> list[str]:
        keys = []
        for file_path in self.base_path.glob(f"*{self.SUFFIX}"):
            if file_path.name.startswith("."):
                continue
            key = unquote(file_path.name[: -len(self.SUFFIX)])
            if key.startswith(prefix):
                keys.append(key)
        return sorted(keys)
