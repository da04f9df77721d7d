"""Application context: one explicitly wired set of core components."""

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional
import logging

from .events import EventBus
from ..config import Config, config as default_config
from ..history import HistoryManager
from ..storage import StorageBackend, create_backend
from ..sync import ConflictResolver
from ..sync.resolver import RemoteFeed
from ..tasks import TaskStore
from ..tasks.task import utc_now

logger = logging.getLogger(__name__)


@dataclass
class AppContext:
    """Everything a consumer needs, passed by reference instead of a global store."""
    config: Config
    events: EventBus
    backend: StorageBackend
    store: TaskStore
    history: HistoryManager
    conflicts: ConflictResolver
    running: bool = False

    async def start(self):
        """Start the history flush and conflict detection timers."""
        await self.history.start()
        await self.conflicts.start()
        self.running = True

    async def close(self):
        """Stop timers, flush history and close the backend."""
        await self.conflicts.stop()
        await self.history.stop()
        self.history.detach()
        self.conflicts.detach()
        self.store.close()
        await self.backend.close()
        self.running = False
        logger.info("Context closed")

    async def __aenter__(self) -> "AppContext":
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()


async def create_context(
    config: Optional[Config] = None,
    backend: Optional[StorageBackend] = None,
    *,
    feed: Optional[RemoteFeed] = None,
    start: bool = False,
    clock: Optional[Callable[[], datetime]] = None,
) -> AppContext:
    """
    Build, initialize and wire the core components.

    Args:
        config: Configuration (defaults to the environment-derived one)
        backend: Storage backend (defaults to the configured one)
        feed: Optional remote-change feed for conflict detection
        start: Also start the periodic timers
        clock: Time source for the store and conflict resolver

    Returns:
        Initialized AppContext
    """
    cfg = config or default_config
    backend = backend or create_backend(cfg)
    events = EventBus()

    store = TaskStore(
        backend,
        events,
        namespace=cfg.storage.namespace,
        cache_ttl=cfg.cache.ttl,
        max_backups=cfg.storage.max_backups,
        clock=clock or utc_now,
    )
    history = HistoryManager(
        store,
        events,
        max_history=cfg.history.max_history,
        max_undo=cfg.history.max_undo,
        flush_interval=cfg.history.flush_interval,
        autosave_delay=cfg.history.autosave_delay,
    )
    conflicts = ConflictResolver(
        store,
        events,
        history_limit=cfg.conflicts.history_limit,
        detection_interval=cfg.conflicts.detection_interval,
        feed=feed,
        clock=clock or utc_now,
    )

    await store.initialize()
    await history.load()
    await conflicts.load()
    history.attach()
    conflicts.attach()

    ctx = AppContext(
        config=cfg,
        events=events,
        backend=backend,
        store=store,
        history=history,
        conflicts=conflicts,
    )
    if start:
        await ctx.start()

    logger.info("Context ready backend=%s", type(backend).__name__)
    return ctx
