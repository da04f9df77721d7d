"""Persistence backends for task records, history and conflicts."""

from typing import Optional

from .base import StorageBackend
from .memory import MemoryBackend
from .json_file import JsonFileBackend
from .sqlite import SqliteBackend
from ..config import Config


def create_backend(cfg: Optional[Config] = None) -> StorageBackend:
    """Create the backend named by configuration."""
    from ..config import config as default_config

    cfg = cfg or default_config
    name = cfg.storage.backend

    if name == "memory":
        return MemoryBackend()
    if name == "sqlite":
        return SqliteBackend(cfg.paths.sqlite)
    if name == "json":
        return JsonFileBackend(cfg.paths.store)

    raise ValueError(f"Unknown storage backend: {name}")


__all__ = [
    "StorageBackend",
    "MemoryBackend",
    "JsonFileBackend",
    "SqliteBackend",
    "create_backend",
]
