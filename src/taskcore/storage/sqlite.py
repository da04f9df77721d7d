"""SQLite storage backend."""

import aiosqlite
from pathlib import Path
from typing import Any, Optional
import json

from .base import StorageBackend
from ..core.exceptions import StorageError
from ..config import config


class SqliteBackend(StorageBackend):
    """
    SQLite key/value table.

    Each call opens its own connection, so the backend can be shared
    between interleaved coroutines without holding a connection open.
    """

    def __init__(self, db_path: Optional[Path] = None):
        self.db_path = db_path or config.paths.sqlite
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._initialized = False

    async def initialize(self):
        """Initialize database schema."""
        if self._initialized:
            return

        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute("""
                    CREATE TABLE IF NOT EXISTS kv (
                        key TEXT PRIMARY KEY,
                        value TEXT NOT NULL
                    )
                """)
                await db.commit()
        except aiosqlite.Error as e:
            raise StorageError(key=str(self.db_path), operation="initialize", cause=e) from e

        self._initialized = True

    async def get(self, key: str, default: Any = None) -> Any:
        await self.initialize()

        try:
            async with aiosqlite.connect(self.db_path) as db:
                async with db.execute("SELECT value FROM kv WHERE key = ?", (key,)) as cursor:
                    row = await cursor.fetchone()
        except aiosqlite.Error as e:
            raise StorageError(key=key, operation="get", cause=e) from e

        if row is None:
            return default
        return json.loads(row[0])

    async def set(self, key: str, value: Any) -> bool:
        await self.initialize()

        try:
            data = json.dumps(value, ensure_ascii=False)
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute(
                    "INSERT OR REPLACE INTO kv (key, value) VALUES (?, ?)", (key, data)
                )
                await db.commit()
        except (aiosqlite.Error, TypeError, ValueError) as e:
            raise StorageError(key=key, operation="set", cause=e) from e
        return True

    async def delete(self, key: str) -> bool:
        await self.initialize()

        try:
            async with aiosqlite.connect(self.db_path) as db:
                cursor = await db.execute("DELETE FROM kv WHERE key = ?", (key,))
                await db.commit()
                return cursor.rowcount > 0
        except aiosqlite.Error as e:
            raise StorageError(key=key, operation="delete", cause=e) from e

    async def keys(self, prefix: str = "") -> list[str]:
        await self.initialize()

        escaped = prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        try:
            async with aiosqlite.connect(self.db_path) as db:
                async with db.execute(
                    "SELECT key FROM kv WHERE key LIKE ? ESCAPE '\\' ORDER BY key",
                    (escaped + "%",),
                ) as cursor:
                    rows = await cursor.fetchall()
        except aiosqlite.Error as e:
            raise StorageError(key=prefix, operation="keys", cause=e) from e

        return [row[0] for row in rows]
