import sys
from pathlib import Path

# Ensure src is importable
sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

import pytest
import pytest_asyncio

from taskcore.config import Config, HistoryConfig, PathConfig, StorageConfig
from taskcore.core.context import create_context
from taskcore.storage import MemoryBackend
from taskcore.tasks import TaskStore

from fakes import FakeClock


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def settings(tmp_path: Path) -> Config:
    """Isolated configuration: in-memory storage, paths under tmp_path, long flush interval."""
    return Config(
        storage=StorageConfig(backend="memory"),
        history=HistoryConfig(flush_interval=3600, autosave_delay=0.05),
        paths=PathConfig(base=tmp_path),
    )


@pytest_asyncio.fixture()
async def store(clock: FakeClock):
    store = TaskStore(MemoryBackend(), clock=clock, cache_ttl=60)
    await store.initialize()
    yield store
    store.close()


@pytest_asyncio.fixture()
async def ctx(settings: Config, clock: FakeClock):
    ctx = await create_context(settings, MemoryBackend(), clock=clock)
    yield ctx
    await ctx.close()
