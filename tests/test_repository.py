import sys
from pathlib import Path

# Ensure src is importable
sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

import asyncio

import pytest

from taskcore.core.events import EventType
from taskcore.core.exceptions import (
    BusyError,
    NotFoundError,
    NotInitializedError,
    StaleWriteError,
    StorageError,
    ValidationError,
)
from taskcore.storage import MemoryBackend
from taskcore.tasks import TaskQuery, TaskStore
from taskcore.tasks.task import Priority

from fakes import FailingBackend, FakeClock, SlowBackend


def record_events(store, *types):
    seen = []
    for event_type in types:
        store.on(event_type, lambda e: seen.append(e))
    return seen


@pytest.mark.asyncio
async def test_requires_initialize():
    store = TaskStore(MemoryBackend())

    with pytest.raises(NotInitializedError):
        await store.get_all()


@pytest.mark.asyncio
async def test_create_and_get(store):
    events = record_events(store, EventType.ADDED)

    task = await store.create({"title": "Write tests", "priority": "high", "tags": ["dev"]})

    assert task.version == 1
    assert task.completed_at is None
    assert task.priority == Priority.HIGH

    found = await store.get_by_id(task.id)
    assert found == task
    assert [e.task_id for e in events] == [task.id]


@pytest.mark.asyncio
async def test_create_completed_sets_completed_at(store):
    task = await store.create({"title": "Already done", "completed": True})

    assert task.completed is True
    assert task.completed_at is not None


@pytest.mark.asyncio
async def test_create_rejects_invalid_data(store):
    with pytest.raises(ValidationError) as exc:
        await store.create({"title": ""})

    assert "Title is required" in exc.value.errors
    assert await store.get_all() == []


@pytest.mark.asyncio
async def test_get_by_id_unknown_or_invalid(store):
    assert await store.get_by_id("missing") is None
    assert await store.get_by_id("bad id!") is None


@pytest.mark.asyncio
async def test_update_returns_diff_and_bumps_version(store):
    task = await store.create({"title": "Draft", "tags": ["a"]})
    events = record_events(store, EventType.UPDATED)

    result = await store.update(task.id, {"title": "Final", "priority": "low"})

    assert result.task.version == 2
    assert result.task.title == "Final"
    assert result.task.updated_at > task.updated_at
    assert {c.field: (c.old_value, c.new_value) for c in result.changes} == {
        "title": ("Draft", "Final"),
        "priority": (Priority.MEDIUM, Priority.LOW),
    }
    assert len(events) == 1
    assert events[0].changes == result.changes
    assert events[0].source == "user"


@pytest.mark.asyncio
async def test_update_without_changes_is_a_no_op(store):
    task = await store.create({"title": "Same", "tags": ["a", "b"]})
    events = record_events(store, EventType.UPDATED)

    result = await store.update(task.id, {"title": "Same", "tags": ["b", "a"]})

    assert not result.changed
    assert result.task.version == 1
    assert events == []


@pytest.mark.asyncio
async def test_completion_invariant_across_updates(store):
    task = await store.create({"title": "Toggle me"})

    done = await store.update(task.id, {"completed": True})
    assert done.task.version == 2
    assert done.task.completed_at is not None

    # Re-completing keeps the original completion time
    again = await store.update(task.id, {"completed": True, "title": "Renamed"})
    assert again.task.completed_at == done.task.completed_at

    reopened = await store.update(task.id, {"completed": False})
    assert reopened.task.version == 4
    assert reopened.task.completed_at is None


@pytest.mark.asyncio
async def test_update_missing_task(store):
    with pytest.raises(NotFoundError):
        await store.update("nope", {"title": "x"})


@pytest.mark.asyncio
async def test_update_rejects_invalid_patch(store):
    task = await store.create({"title": "Valid"})

    with pytest.raises(ValidationError):
        await store.update(task.id, {"priority": "urgent"})

    assert (await store.get_by_id(task.id)).version == 1


@pytest.mark.asyncio
async def test_expected_version_rejects_stale_write(store):
    task = await store.create({"title": "v1"})
    await store.update(task.id, {"title": "v2"})

    with pytest.raises(StaleWriteError) as exc:
        await store.update(task.id, {"title": "v3"}, expected_version=1)
    assert exc.value.actual == 2

    ok = await store.update(task.id, {"title": "v3"}, expected_version=2)
    assert ok.task.version == 3


@pytest.mark.asyncio
async def test_last_writer_wins_without_expected_version(store):
    task = await store.create({"title": "start"})

    await store.update(task.id, {"title": "first"})
    result = await store.update(task.id, {"title": "second"})

    assert result.task.title == "second"
    assert result.task.version == 3


@pytest.mark.asyncio
async def test_second_mutation_on_same_task_is_busy(clock):
    backend = SlowBackend()
    store = TaskStore(backend, clock=clock)
    await store.initialize()
    task = await store.create({"title": "Slow"})
    other = await store.create({"title": "Other"})

    backend.gate.clear()
    first = asyncio.create_task(store.update(task.id, {"title": "One"}))
    await asyncio.sleep(0)

    with pytest.raises(BusyError):
        await store.update(task.id, {"title": "Two"})

    # A different task is not blocked
    second = asyncio.create_task(store.update(other.id, {"title": "Other 2"}))
    await asyncio.sleep(0)
    backend.gate.set()

    assert (await first).task.title == "One"
    assert (await second).task.title == "Other 2"
    assert not store.is_busy(task.id)


@pytest.mark.asyncio
async def test_toggle_complete_emits_events_in_order(store):
    task = await store.create({"title": "Flip"})
    seen = []
    store.on("*", lambda e: seen.append(e.type))

    done = await store.toggle_complete(task.id)
    undone = await store.toggle_complete(task.id)

    assert done.completed and done.version == 2
    assert not undone.completed and undone.completed_at is None and undone.version == 3
    assert seen == [
        EventType.UPDATED,
        EventType.COMPLETED,
        EventType.UPDATED,
        EventType.UNCOMPLETED,
    ]


@pytest.mark.asyncio
async def test_hard_delete(store):
    task = await store.create({"title": "Bye"})
    events = record_events(store, EventType.DELETED)

    assert await store.delete(task.id) is True

    assert await store.get_by_id(task.id, include_deleted=True) is None
    assert events[0].hard is True
    assert events[0].payload == {"id": task.id, "record": events[0].task}
    assert len(await store.list_backups()) == 1

    with pytest.raises(NotFoundError):
        await store.delete(task.id)


@pytest.mark.asyncio
async def test_soft_delete_restore_and_purge(store):
    task = await store.create({"title": "Maybe"})
    events = record_events(store, EventType.DELETED)

    await store.delete(task.id, soft=True)

    assert await store.get_by_id(task.id) is None
    hidden = await store.get_by_id(task.id, include_deleted=True)
    assert hidden.deleted and hidden.version == 2
    assert events[0].hard is False

    restored = await store.restore(task.id)
    assert not restored.deleted and restored.version == 3

    await store.delete(task.id, soft=True)
    assert await store.purge_deleted() == 1
    assert await store.get_by_id(task.id, include_deleted=True) is None
    assert events[-1].hard is True


@pytest.mark.asyncio
async def test_delete_completed(store):
    keep = await store.create({"title": "Keep"})
    done = await store.create({"title": "Done", "completed": True})
    events = record_events(store, EventType.DELETED)

    assert await store.delete_completed() == 1
    assert await store.delete_completed() == 0

    remaining = await store.get_all()
    assert [t.id for t in remaining] == [keep.id]
    assert [e.task_id for e in events] == [done.id]

    backup = await store.load_backup((await store.list_backups())[0]["key"])
    assert [t["title"] for t in backup["tasks"]] == ["Done"]


@pytest.mark.asyncio
async def test_delete_all_takes_backup(store):
    for title in ("a", "b", "c"):
        await store.create({"title": title})
    events = record_events(store, EventType.ALL_CLEARED)

    assert await store.delete_all() == 3

    assert await store.get_all() == []
    assert events[0].data == {"count": 3}
    backups = await store.list_backups()
    assert backups[0]["reason"] == "deleteAll"
    assert backups[0]["count"] == 3


@pytest.mark.asyncio
async def test_backups_are_capped(clock):
    store = TaskStore(MemoryBackend(), clock=clock, max_backups=2)
    await store.initialize()

    for i in range(4):
        task = await store.create({"title": f"t{i}"})
        await store.delete(task.id)

    backups = await store.list_backups()
    assert len(backups) == 2
    assert [b["count"] for b in backups] == [1, 1]


@pytest.mark.asyncio
async def test_get_all_filters_and_sort(store):
    await store.create({"title": "b task", "priority": "low", "tags": ["x"]})
    await store.create({"title": "a task", "priority": "high", "tags": ["x", "y"]})
    await store.create({"title": "c task", "completed": True})

    by_title = await store.get_all(sort_by="title")
    assert [t.title for t in by_title] == ["a task", "b task", "c task"]

    tagged = await store.get_all(TaskQuery(tags=["x"], sort_by="priority"))
    assert [t.title for t in tagged] == ["a task", "b task"]

    active = await store.get_all(completed=False)
    assert len(active) == 2

    page = await store.get_all(sort_by="title", page=1, page_size=2)
    assert [t.title for t in page] == ["c task"]


@pytest.mark.asyncio
async def test_search(store):
    await store.create({"title": "Buy milk", "category": "errands"})
    await store.create({"title": "Write report", "tags": ["work"]})

    assert [t.title for t in await store.search("MILK")] == ["Buy milk"]
    assert [t.title for t in await store.search("work")] == ["Write report"]
    assert await store.search("") == []

    query = TaskQuery(completed=True)
    assert await store.search("milk", query) == []
    assert query.search is None


@pytest.mark.asyncio
async def test_stats(store, clock):
    await store.create({"title": "a", "priority": "high", "category": "home", "tags": ["x"]})
    await store.create({"title": "b", "completed": True, "tags": ["y"]})
    await store.create({"title": "c", "dueDate": clock.now.replace(year=2029).isoformat()})

    stats = await store.get_stats()

    assert stats["total"] == 3
    assert stats["completed"] == 1
    assert stats["active"] == 2
    assert stats["overdue"] == 1
    assert stats["byPriority"] == {"high": 1, "medium": 2, "low": 0}
    assert stats["byCategory"] == {"home": 1, "general": 2}
    assert stats["tags"] == ["x", "y"]
    assert stats["lastModified"] is not None


@pytest.mark.asyncio
async def test_export_envelope(store):
    await store.create({"title": "one"})
    await store.create({"title": "two"})

    data = await store.export_data()

    assert data["version"] == TaskStore.SCHEMA_VERSION
    assert data["exportedAt"]
    assert [t["title"] for t in data["tasks"]] == ["one", "two"]
    assert data["metadata"]["totalTasks"] == 2
    assert data["metadata"]["exportFormat"] == TaskStore.EXPORT_FORMAT
    assert data["stats"]["total"] == 2


@pytest.mark.asyncio
async def test_import_counts_valid_and_invalid(store):
    payload = [
        {"id": "keep-me", "title": "Good one", "tags": ["a"]},
        {"title": ""},
        {"title": "Good two", "priority": "nope"},
        "not a record",
        {"title": "Good three", "completed": True},
    ]
    added = record_events(store, EventType.ADDED)

    result = await store.import_data(payload)

    assert result.success
    assert result.imported == 2
    assert result.invalid == 3
    assert result.total == 5
    assert [e["index"] for e in result.errors] == [1, 2, 3]

    tasks = await store.get_all()
    assert [t.title for t in tasks] == ["Good one", "Good three"]
    assert all(t.id != "keep-me" and t.version == 1 for t in tasks)
    assert tasks[1].completed_at is not None
    assert len(added) == 2


@pytest.mark.asyncio
async def test_import_with_no_valid_records_writes_nothing(store):
    await store.create({"title": "existing"})

    result = await store.import_data({"tasks": [{"title": ""}]}, replace_existing=True)

    assert result.success is False
    assert result.imported == 0
    assert result.invalid == 1
    assert [t.title for t in await store.get_all()] == ["existing"]


@pytest.mark.asyncio
async def test_import_rejects_unknown_shape(store):
    with pytest.raises(ValidationError):
        await store.import_data({"records": []})
    with pytest.raises(ValidationError):
        await store.import_data("[]")


@pytest.mark.asyncio
async def test_import_replace_existing(store):
    old = await store.create({"title": "old"})
    seen = []
    store.on("*", lambda e: seen.append(e.type))

    result = await store.import_data({"tasks": [{"title": "new"}]}, replace_existing=True)

    assert result.imported == 1
    assert result.backup_key is not None
    tasks = await store.get_all()
    assert [t.title for t in tasks] == ["new"]
    assert await store.get_by_id(old.id, include_deleted=True) is None
    assert seen == [EventType.ALL_CLEARED, EventType.ADDED]


@pytest.mark.asyncio
async def test_backup_envelope_can_be_reimported(store):
    await store.create({"title": "precious"})
    await store.delete_all()

    backup = await store.load_backup((await store.list_backups())[0]["key"])
    result = await store.import_data(backup, skip_backup=True)

    assert result.imported == 1
    assert [t.title for t in await store.get_all()] == ["precious"]

    with pytest.raises(NotFoundError):
        await store.load_backup("taskcore:backup:missing")


@pytest.mark.asyncio
async def test_reads_see_writes_from_same_store(store):
    task = await store.create({"title": "cached"})
    await store.get_by_id(task.id)

    await store.update(task.id, {"title": "fresh"})

    assert (await store.get_by_id(task.id)).title == "fresh"


@pytest.mark.asyncio
async def test_cache_expires(clock):
    backend = MemoryBackend()
    writer = TaskStore(backend, clock=clock)
    reader = TaskStore(backend, clock=clock, cache_ttl=0)
    await writer.initialize()
    await reader.initialize()

    task = await writer.create({"title": "v1"})
    assert (await reader.get_by_id(task.id)).title == "v1"

    await writer.update(task.id, {"title": "v2"})
    assert (await reader.get_by_id(task.id)).title == "v2"


@pytest.mark.asyncio
async def test_storage_error_propagates(clock):
    backend = FailingBackend()
    store = TaskStore(backend, clock=clock)
    await store.initialize()
    task = await store.create({"title": "ok"})

    backend.fail_writes = True
    with pytest.raises(StorageError):
        await store.update(task.id, {"title": "lost"})

    backend.fail_writes = False
    current = await store.get_by_id(task.id)
    assert current.title == "ok"
    assert current.version == 1
    assert not store.is_busy(task.id)


@pytest.mark.asyncio
async def test_legacy_migration(clock):
    backend = MemoryBackend()
    await backend.set("taskcore:todos", [
        {"id": "old1", "text": "Legacy task", "_version": 3, "completed": True},
        {"title": "No id"},
        {"id": "old3", "title": ""},
    ])
    store = TaskStore(backend, clock=clock)

    await store.initialize()

    tasks = await store.get_all()
    assert [t.title for t in tasks] == ["Legacy task", "No id"]
    assert tasks[0].id == "old1"
    assert tasks[0].version == 3
    assert tasks[0].completed_at is not None
    assert await backend.get("taskcore:todos") is None
    assert await backend.get("taskcore:backup:legacy") is not None
    assert await backend.get("taskcore:meta:schema_version") == TaskStore.SCHEMA_VERSION


@pytest.mark.asyncio
async def test_data_survives_new_store_instance(clock):
    backend = MemoryBackend()
    first = TaskStore(backend, clock=clock)
    await first.initialize()
    task = await first.create({"title": "persisted"})

    second = TaskStore(backend, clock=FakeClock())
    await second.initialize()

    assert (await second.get_by_id(task.id)).title == "persisted"
