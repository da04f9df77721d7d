"""Configuration management for the task core."""

from pathlib import Path
from dataclasses import dataclass, field
import os
from dotenv import load_dotenv

# Load .env file
load_dotenv()


@dataclass
class StorageConfig:
    """Persistence backend configuration."""
    backend: str = "json"  # json, sqlite, memory
    namespace: str = "taskcore"
    max_backups: int = 5


@dataclass
class CacheConfig:
    """Read cache configuration."""
    ttl: float = 3600.0


@dataclass
class HistoryConfig:
    """Edit history configuration."""
    max_history: int = 100
    max_undo: int = 20
    flush_interval: float = 30.0
    autosave_delay: float = 2.0


@dataclass
class ConflictConfig:
    """Conflict detection configuration."""
    history_limit: int = 100
    detection_interval: float = 5.0


@dataclass
class PathConfig:
    """Path configuration."""
    base: Path = field(default_factory=lambda: Path.home() / ".taskcore")

    @property
    def data(self) -> Path:
        return self.base / "data"

    @property
    def store(self) -> Path:
        return self.data / "store"

    @property
    def sqlite(self) -> Path:
        return self.data / "taskcore.db"


@dataclass
class Config:
    """Main configuration class."""
    storage: StorageConfig = field(default_factory=StorageConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    history: HistoryConfig = field(default_factory=HistoryConfig)
    conflicts: ConflictConfig = field(default_factory=ConflictConfig)
    paths: PathConfig = field(default_factory=PathConfig)
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Config":
        """Load configuration from environment variables."""
        data_dir = os.getenv("TASKCORE_DATA_DIR")
        return cls(
            storage=StorageConfig(
                backend=os.getenv("TASKCORE_STORAGE_BACKEND", "json").lower(),
                namespace=os.getenv("TASKCORE_NAMESPACE", "taskcore"),
                max_backups=int(os.getenv("TASKCORE_MAX_BACKUPS", "5")),
            ),
            cache=CacheConfig(
                ttl=float(os.getenv("TASKCORE_CACHE_TTL", "3600")),
            ),
            history=HistoryConfig(
                max_history=int(os.getenv("TASKCORE_HISTORY_LIMIT", "100")),
                max_undo=int(os.getenv("TASKCORE_UNDO_LIMIT", "20")),
                flush_interval=float(os.getenv("TASKCORE_HISTORY_FLUSH_INTERVAL", "30")),
                autosave_delay=float(os.getenv("TASKCORE_AUTOSAVE_DELAY", "2")),
            ),
            conflicts=ConflictConfig(
                history_limit=int(os.getenv("TASKCORE_CONFLICT_HISTORY_LIMIT", "100")),
                detection_interval=float(os.getenv("TASKCORE_CONFLICT_DETECTION_INTERVAL", "5")),
            ),
            paths=PathConfig(base=Path(data_dir)) if data_dir else PathConfig(),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )


# Global config instance (defaults only; components receive explicit arguments)
config = Config.from_env()
