import sys
from pathlib import Path

# Ensure src is importable
sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

import asyncio

import pytest

from taskcore.core.context import create_context
from taskcore.core.exceptions import BusyError, TaskCoreError, ValidationError
from taskcore.history import EditState

from fakes import FailingBackend, SlowBackend

# Autosave delay in the test settings is 0.05s
SETTLE = 0.2


@pytest.mark.asyncio
async def test_autosave_is_debounced(ctx):
    task = await ctx.store.create({"title": "Draft"})
    session = ctx.history.edit(task.id)

    session.set_field("title", "Draft 1")
    await asyncio.sleep(0.02)
    session.set_field("title", "Draft 12")
    assert session.autosave_pending
    assert (await ctx.store.get_by_id(task.id)).version == 1

    await asyncio.sleep(SETTLE)

    saved = await ctx.store.get_by_id(task.id)
    assert saved.title == "Draft 12"
    assert saved.version == 2
    assert session.staged == {}
    assert ctx.history.get_history(task.id) == []

    assert await session.save() is None
    entries = ctx.history.get_history(task.id)
    assert len(entries) == 1
    assert entries[0].changes[0].old_value == "Draft"
    assert ctx.history.state(task.id) == EditState.IDLE


@pytest.mark.asyncio
async def test_explicit_save_cancels_pending_autosave(ctx):
    task = await ctx.store.create({"title": "Draft"})
    session = ctx.history.edit(task.id)
    session.update_fields({"title": "Final", "priority": "high"})

    result = await session.save()

    assert result.task.version == 2
    assert session.closed
    assert not session.autosave_pending

    await asyncio.sleep(SETTLE)
    assert (await ctx.store.get_by_id(task.id)).version == 2
    entry = ctx.history.get_history(task.id)[0]
    assert entry.kind == "batch"


@pytest.mark.asyncio
async def test_save_during_autosave_write_is_busy(settings, clock):
    backend = SlowBackend()
    ctx = await create_context(settings, backend, clock=clock)
    try:
        task = await ctx.store.create({"title": "Slow"})
        session = ctx.history.edit(task.id)
        session.set_field("title", "Slower")

        backend.gate.clear()
        await asyncio.sleep(SETTLE)

        with pytest.raises(BusyError) as exc:
            await session.save()
        assert exc.value.state == EditState.SAVING
        assert not session.closed

        backend.gate.set()
        await asyncio.sleep(SETTLE)

        await session.save()
        assert (await ctx.store.get_by_id(task.id)).title == "Slower"
        assert len(ctx.history.get_history(task.id)) == 1
    finally:
        backend.gate.set()
        await ctx.close()


@pytest.mark.asyncio
async def test_staging_during_autosave_write_does_not_drop_it(settings, clock):
    backend = SlowBackend()
    ctx = await create_context(settings, backend, clock=clock)
    try:
        task = await ctx.store.create({"title": "T1"})
        session = ctx.history.edit(task.id)

        # Hold the write that follows the record write
        backend.gate_prefix = "taskcore:tasks:last_modified"
        backend.gate.clear()
        session.set_field("title", "T2")
        await asyncio.sleep(SETTLE)

        session.set_field("description", "details")
        backend.gate.set()
        await asyncio.sleep(SETTLE)

        current = await ctx.store.get_by_id(task.id)
        assert current.title == "T2"
        assert current.description == "details"
        assert current.version == 3

        await session.save()
        entries = ctx.history.get_history(task.id)
        assert len(entries) == 1
        assert sorted(entries[0].fields) == ["description", "title"]

        await ctx.history.undo(task.id)
        reverted = await ctx.store.get_by_id(task.id)
        assert reverted.title == "T1"
        assert reverted.description == ""
    finally:
        backend.gate.set()
        await ctx.close()


@pytest.mark.asyncio
async def test_cancel_during_autosave_write_keeps_it_tracked(settings, clock):
    backend = SlowBackend()
    ctx = await create_context(settings, backend, clock=clock)
    try:
        task = await ctx.store.create({"title": "T1"})
        session = ctx.history.edit(task.id)

        backend.gate_prefix = "taskcore:tasks:last_modified"
        backend.gate.clear()
        session.set_field("title", "T2")
        await asyncio.sleep(SETTLE)

        session.cancel()
        backend.gate.set()
        await asyncio.sleep(SETTLE)

        assert (await ctx.store.get_by_id(task.id)).title == "T2"
        assert ctx.history.can_undo(task.id)
        await ctx.history.undo(task.id)
        assert (await ctx.store.get_by_id(task.id)).title == "T1"
    finally:
        backend.gate.set()
        await ctx.close()


@pytest.mark.asyncio
async def test_failed_save_leaves_task_untouched(ctx):
    task = await ctx.store.create({"title": "Stable"})
    session = ctx.history.edit(task.id)
    session.set_field("priority", "urgent")

    with pytest.raises(ValidationError):
        await session.save()

    assert isinstance(session.error, ValidationError)
    assert session.closed
    assert session.staged == {}
    assert ctx.history.state(task.id) == EditState.IDLE
    assert (await ctx.store.get_by_id(task.id)).version == 1


@pytest.mark.asyncio
async def test_failed_autosave_keeps_values_staged(settings, clock):
    backend = FailingBackend()
    ctx = await create_context(settings, backend, clock=clock)
    try:
        task = await ctx.store.create({"title": "Before"})
        session = ctx.history.edit(task.id)

        backend.fail_prefix = "taskcore:task:"
        backend.fail_writes = True
        session.set_field("title", "After")
        await asyncio.sleep(SETTLE)

        assert session.staged == {"title": "After"}
        assert (await ctx.store.get_by_id(task.id)).title == "Before"

        backend.fail_writes = False
        await session.save()
        assert (await ctx.store.get_by_id(task.id)).title == "After"
    finally:
        await ctx.close()


@pytest.mark.asyncio
async def test_cancel_discards_staged_values(ctx):
    task = await ctx.store.create({"title": "Keep"})
    session = ctx.history.edit(task.id)
    session.set_field("title", "Discard")

    session.cancel()
    await asyncio.sleep(SETTLE)

    assert (await ctx.store.get_by_id(task.id)).title == "Keep"
    assert ctx.history.state(task.id) == EditState.IDLE
    with pytest.raises(TaskCoreError):
        session.set_field("title", "again")

    # The task can be edited again
    ctx.history.edit(task.id).cancel()


@pytest.mark.asyncio
async def test_flush_autosave_runs_immediately(ctx):
    task = await ctx.store.create({"title": "Now"})
    session = ctx.history.edit(task.id, autosave_delay=60)
    session.set_field("title", "Right now")

    await session.flush_autosave()

    assert (await ctx.store.get_by_id(task.id)).title == "Right now"
    assert not session.autosave_pending
    session.cancel()


@pytest.mark.asyncio
async def test_session_as_context_manager(ctx):
    task = await ctx.store.create({"title": "Ctx"})

    async with ctx.history.edit(task.id) as session:
        session.set_field("category", "home")
        assert ctx.history.state(task.id) == EditState.EDITING

    assert (await ctx.store.get_by_id(task.id)).category == "home"
    assert ctx.history.state(task.id) == EditState.IDLE
