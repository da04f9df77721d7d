"""Per-task edit history with undo/redo."""

from typing import Any, Optional
import asyncio
import logging
import uuid

from .session import EditSession
from .types import EditState, HistoryEntry, UndoAction
from ..core.events import Event, EventBus, EventType
from ..core.exceptions import BusyError, NotFoundError, StorageError
from ..tasks.repository import TaskStore
from ..tasks.task import FieldChange, format_datetime, serialize_value, utc_now
from ..config import config

logger = logging.getLogger(__name__)

# Sources whose updates the manager records itself or never records
_UNTRACKED_SOURCES = ("history",)


class _PendingEdit:
    """Auto-saved changes waiting to be folded into the next explicit edit."""

    def __init__(self, base_version: int):
        self.base_version = base_version
        self.version = base_version
        self.changes: dict[str, FieldChange] = {}

    def absorb(self, changes: list[FieldChange], version: int):
        for change in changes:
            pending = self.changes.get(change.field)
            if pending is None:
                self.changes[change.field] = FieldChange(
                    change.field, change.old_value, change.new_value
                )
            else:
                pending.new_value = change.new_value
        self.version = version

    def merged_with(self, changes: list[FieldChange]) -> list[FieldChange]:
        """Combine with a later diff, keeping the earliest old value per field."""
        merged = {f: FieldChange(c.field, c.old_value, c.new_value) for f, c in self.changes.items()}
        for change in changes:
            if change.field in merged:
                merged[change.field].new_value = change.new_value
            else:
                merged[change.field] = change
        return [c for c in merged.values() if c.old_value != c.new_value]


class HistoryManager:
    """
    Records committed task edits and replays them backwards or forwards.

    Features:
    - Append-only per-task log, capped at max_history entries
    - Undo/redo stacks derived from the log; any new edit clears redo
    - Batch edits undo and redo as one unit
    - restore_to_version applies an old state as a new tracked edit
    - Entries are written at commit time; a periodic flush rewrites everything
    """

    def __init__(
        self,
        store: TaskStore,
        events: Optional[EventBus] = None,
        *,
        max_history: Optional[int] = None,
        max_undo: Optional[int] = None,
        flush_interval: Optional[float] = None,
        autosave_delay: Optional[float] = None,
    ):
        self.store = store
        self.events = events or store.events
        self.backend = store.backend
        self.max_history = max_history or config.history.max_history
        self.max_undo = max_undo or config.history.max_undo
        self.flush_interval = flush_interval or config.history.flush_interval
        self.autosave_delay = (
            config.history.autosave_delay if autosave_delay is None else autosave_delay
        )

        self.index_key = f"{store.namespace}:history:index"

        self._logs: dict[str, list[HistoryEntry]] = {}
        self._undo: dict[str, list[UndoAction]] = {}
        self._redo: dict[str, list[UndoAction]] = {}
        self._current: dict[str, int] = {}
        self._states: dict[str, EditState] = {}
        self._pending: dict[str, _PendingEdit] = {}
        self._restoring: dict[str, int] = {}
        self._unsubscribers: list = []
        self._flush_task: Optional[asyncio.Task] = None

    # ---- wiring ----

    def attach(self):
        """Subscribe to store events."""
        if self._unsubscribers:
            return
        self._unsubscribers = [
            self.events.subscribe(EventType.ADDED, self._on_added),
            self.events.subscribe(EventType.UPDATED, self._on_updated, priority=10),
            self.events.subscribe(EventType.DELETED, self._on_deleted),
            self.events.subscribe(EventType.ALL_CLEARED, self._on_all_cleared),
        ]

    def detach(self):
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []

    async def start(self):
        """Start the periodic flush."""
        if self._flush_task is None:
            self._flush_task = asyncio.create_task(self._flush_loop())

    async def stop(self):
        """Stop the periodic flush and write everything once more."""
        if self._flush_task is not None:
            self._flush_task.cancel()
            try:
                await self._flush_task
            except asyncio.CancelledError:
                pass
            self._flush_task = None
        await self.flush()

    async def _flush_loop(self):
        while True:
            await asyncio.sleep(self.flush_interval)
            try:
                await self.flush()
            except Exception:
                logger.exception("Periodic history flush failed")

    # ---- persistence ----

    def _key(self, task_id: str) -> str:
        return f"{self.store.namespace}:history:{task_id}"

    async def load(self):
        """Load logs and stacks from persistence."""
        task_ids = await self.backend.get(self.index_key, [])
        for task_id in task_ids:
            data = await self.backend.get(self._key(task_id))
            if not data:
                continue
            entries = [HistoryEntry.from_dict(e) for e in data.get("entries", [])]
            by_id = {e.id: e for e in entries}
            self._logs[task_id] = entries
            self._undo[task_id] = [
                a for a in (UndoAction.from_dict(d, by_id) for d in data.get("undo", [])) if a
            ]
            self._redo[task_id] = [
                a for a in (UndoAction.from_dict(d, by_id) for d in data.get("redo", [])) if a
            ]
            if data.get("currentVersion") is not None:
                self._current[task_id] = data["currentVersion"]

        logger.info("Loaded edit history for %s tasks", len(self._logs))

    async def save(self, task_id: str):
        """Write one task's log and stacks."""
        data = {
            "taskId": task_id,
            "entries": [e.to_dict() for e in self._logs.get(task_id, [])],
            "undo": [a.to_dict() for a in self._undo.get(task_id, [])],
            "redo": [a.to_dict() for a in self._redo.get(task_id, [])],
            "currentVersion": self._current.get(task_id),
        }
        await self._write(self._key(task_id), data)

    async def _write(self, key: str, value: Any):
        try:
            ok = await self.backend.set(key, value)
        except StorageError:
            logger.exception("History write failed key=%s", key)
            raise
        if not ok:
            raise StorageError(key=key, operation="set")

    async def flush(self):
        """Write every task's history and the index."""
        for task_id in list(self._logs):
            await self.save(task_id)
        await self._write(self.index_key, list(self._logs))

    # ---- event handlers ----

    def _on_added(self, event: Event):
        if event.task is not None:
            self._current[event.task_id] = event.task.version

    async def _on_updated(self, event: Event):
        task_id = event.task_id
        if event.source in _UNTRACKED_SOURCES or not event.changes:
            return

        if event.auto_save:
            pending = self._pending.get(task_id)
            if pending is None:
                pending = _PendingEdit(self._base_version(task_id, event))
                self._pending[task_id] = pending
            pending.absorb(event.changes, event.task.version)
            return

        changes = list(event.changes)
        base_version = self._base_version(task_id, event)
        pending = self._pending.pop(task_id, None)
        if pending is not None:
            changes = pending.merged_with(changes)
            base_version = pending.base_version
            if not changes:
                self._current[task_id] = event.task.version
                return

        if event.source == "restore":
            kind = "restore"
        elif len(changes) > 1:
            kind = "batch"
        else:
            kind = "edit"

        entry = HistoryEntry(
            id=f"hist_{uuid.uuid4().hex[:12]}",
            task_id=task_id,
            changes=changes,
            timestamp=event.task.updated_at,
            version=event.task.version,
            base_version=base_version,
            kind=kind,
            source=event.source,
            restored_from=self._restoring.get(task_id),
        )
        await self._record(entry)

    async def _on_deleted(self, event: Event):
        if event.hard:
            await self.purge(event.task_id)
        else:
            # Soft deletes are ordinary edits of the deleted flag
            await self._on_updated(event)

    async def _on_all_cleared(self, event: Event):
        for task_id in list(self._logs):
            await self.purge(task_id)
        self._current.clear()
        self._pending.clear()

    def _base_version(self, task_id: str, event: Event) -> int:
        current = self._current.get(task_id)
        return current if current is not None else event.task.version - 1

    async def _record(self, entry: HistoryEntry):
        task_id = entry.task_id
        log = self._logs.setdefault(task_id, [])
        log.append(entry)
        if len(log) > self.max_history:
            evicted = log.pop(0)
            self._drop_actions(task_id, evicted.id)

        undo = self._undo.setdefault(task_id, [])
        undo.append(UndoAction(entry=entry, values=entry.inverse()))
        if len(undo) > self.max_undo:
            undo.pop(0)
        self._redo[task_id] = []
        self._current[task_id] = entry.version

        logger.debug(
            "History entry %s task=%s kind=%s fields=%s",
            entry.id,
            task_id,
            entry.kind,
            entry.fields,
        )
        await self.save(task_id)
        if len(log) == 1:
            await self._write(self.index_key, list(self._logs))

    def _drop_actions(self, task_id: str, entry_id: str):
        for stacks in (self._undo, self._redo):
            if task_id in stacks:
                stacks[task_id] = [a for a in stacks[task_id] if a.entry.id != entry_id]

    # ---- state machine ----

    def state(self, task_id: str) -> EditState:
        return self._states.get(task_id, EditState.IDLE)

    def set_state(self, task_id: str, state: EditState):
        if state == EditState.IDLE:
            self._states.pop(task_id, None)
        else:
            self._states[task_id] = state

    def _ensure_idle(self, task_id: str):
        state = self.state(task_id)
        if state != EditState.IDLE or self.store.is_busy(task_id):
            raise BusyError(task_id=task_id, state=state)

    def edit(self, task_id: str, autosave_delay: Optional[float] = None) -> EditSession:
        """
        Open an edit session for a task.

        Raises:
            BusyError: If the task is not idle
        """
        self._ensure_idle(task_id)
        self.set_state(task_id, EditState.EDITING)
        delay = self.autosave_delay if autosave_delay is None else autosave_delay
        return EditSession(self, task_id, autosave_delay=delay)

    # ---- undo / redo ----

    async def commit_autosaved(self, task_id: str) -> Optional[HistoryEntry]:
        """Log auto-saved changes that no explicit edit has absorbed yet."""
        pending = self._pending.pop(task_id, None)
        if pending is None or not pending.changes:
            return None

        changes = pending.merged_with([])
        if not changes:
            return None

        entry = HistoryEntry(
            id=f"hist_{uuid.uuid4().hex[:12]}",
            task_id=task_id,
            changes=changes,
            timestamp=utc_now(),
            version=pending.version,
            base_version=pending.base_version,
            kind="batch" if len(changes) > 1 else "edit",
            source="editor",
        )
        await self._record(entry)
        return entry

    async def undo(self, task_id: str) -> Optional[HistoryEntry]:
        """
        Revert the most recent edit of a task.

        Returns:
            The undone entry, or None if there is nothing to undo

        Raises:
            BusyError: If the task has another mutation in progress
        """
        self._ensure_idle(task_id)
        await self.commit_autosaved(task_id)

        stack = self._undo.get(task_id)
        if not stack:
            return None

        action = stack.pop()
        self.set_state(task_id, EditState.UNDOING)
        try:
            result = await self.store.update(task_id, self._patch(action.values), source="history")
        except Exception:
            stack.append(action)
            logger.error("Undo failed for task %s entry %s", task_id, action.entry.id)
            raise
        finally:
            self.set_state(task_id, EditState.IDLE)

        entry = action.entry
        redo_values = {c.field: c.old_value for c in result.changes} or entry.forward()
        self._redo.setdefault(task_id, []).append(UndoAction(entry=entry, values=redo_values))
        self._current[task_id] = entry.base_version
        await self.save(task_id)

        logger.info("Undid %s on task %s -> v%s", entry.id, task_id, entry.base_version)
        await self.events.publish(Event(
            EventType.HISTORY_UNDO,
            task=result.task,
            task_id=task_id,
            changes=result.changes,
            source="history",
            data={"entryId": entry.id, "version": entry.base_version},
        ))
        return entry

    async def redo(self, task_id: str) -> Optional[HistoryEntry]:
        """
        Reapply the most recently undone edit of a task.

        Returns:
            The redone entry, or None if there is nothing to redo
        """
        self._ensure_idle(task_id)

        stack = self._redo.get(task_id)
        if not stack:
            return None

        action = stack.pop()
        self.set_state(task_id, EditState.REDOING)
        try:
            result = await self.store.update(task_id, self._patch(action.values), source="history")
        except Exception:
            stack.append(action)
            logger.error("Redo failed for task %s entry %s", task_id, action.entry.id)
            raise
        finally:
            self.set_state(task_id, EditState.IDLE)

        entry = action.entry
        undo_values = {c.field: c.old_value for c in result.changes} or entry.inverse()
        self._undo.setdefault(task_id, []).append(UndoAction(entry=entry, values=undo_values))
        self._current[task_id] = entry.version
        await self.save(task_id)

        logger.info("Redid %s on task %s -> v%s", entry.id, task_id, entry.version)
        await self.events.publish(Event(
            EventType.HISTORY_REDO,
            task=result.task,
            task_id=task_id,
            changes=result.changes,
            source="history",
            data={"entryId": entry.id, "version": entry.version},
        ))
        return entry

    async def restore_to_version(self, task_id: str, version: int) -> HistoryEntry:
        """
        Apply the state captured before the entry for ``version``.

        The restore is logged as a new entry; the log is never rewritten.

        Raises:
            NotFoundError: If no entry carries that version
        """
        self._ensure_idle(task_id)
        await self.commit_autosaved(task_id)

        entry = next((e for e in self._logs.get(task_id, []) if e.version == version), None)
        if entry is None:
            raise NotFoundError(task_id=f"{task_id}@v{version}", what="History version")

        self._restoring[task_id] = version
        try:
            result = await self.store.update(task_id, self._patch(entry.inverse()), source="restore")
        finally:
            self._restoring.pop(task_id, None)

        log = self._logs.get(task_id, [])
        if result.changes and log:
            return log[-1]
        return entry

    @staticmethod
    def _patch(values: dict[str, Any]) -> dict[str, Any]:
        return {name: serialize_value(value) for name, value in values.items()}

    # ---- queries ----

    def current_version(self, task_id: str) -> Optional[int]:
        """History version the task currently reflects."""
        return self._current.get(task_id)

    def get_history(self, task_id: str, limit: Optional[int] = None) -> list[HistoryEntry]:
        """Entries for a task, newest first."""
        entries = list(reversed(self._logs.get(task_id, [])))
        return entries[:limit] if limit else entries

    def can_undo(self, task_id: str) -> bool:
        return bool(self._undo.get(task_id)) or task_id in self._pending

    def can_redo(self, task_id: str) -> bool:
        return bool(self._redo.get(task_id))

    def export_history(self, task_id: str) -> dict:
        """JSON-ready envelope of a task's log."""
        return {
            "taskId": task_id,
            "exportTime": format_datetime(utc_now()),
            "currentVersion": self._current.get(task_id),
            "history": [e.to_dict() for e in self._logs.get(task_id, [])],
        }

    async def clear_history(self, task_id: str):
        """Drop a task's log and stacks but keep its current version."""
        self._logs[task_id] = []
        self._undo[task_id] = []
        self._redo[task_id] = []
        self._pending.pop(task_id, None)
        await self.save(task_id)

    async def purge(self, task_id: str):
        """Forget a task entirely."""
        had_log = task_id in self._logs
        for state in (self._logs, self._undo, self._redo, self._current, self._pending, self._states):
            state.pop(task_id, None)
        await self.backend.delete(self._key(task_id))
        if had_log:
            await self._write(self.index_key, list(self._logs))
        logger.debug("Purged history for task %s", task_id)
