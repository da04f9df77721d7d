"""Task repository: the canonical, persisted collection of task records."""

from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Callable, Optional, Union
import asyncio
import logging
import time

from .task import (
    MUTABLE_FIELDS,
    FieldChange,
    Priority,
    TaskRecord,
    format_datetime,
    normalize_keys,
    utc_now,
)
from .query import TaskQuery
from .validator import is_valid_id, validate
from ..core.events import Event, EventBus, EventType, Handler
from ..core.exceptions import (
    BusyError,
    NotFoundError,
    NotInitializedError,
    StaleWriteError,
    StorageError,
    ValidationError,
)
from ..storage.base import StorageBackend
from ..config import config

logger = logging.getLogger(__name__)


@dataclass
class UpdateResult:
    """Outcome of an update: the committed record and the applied diff."""
    task: TaskRecord
    changes: list[FieldChange] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.changes)


@dataclass
class ImportResult:
    """Outcome of an import."""
    success: bool
    imported: int
    total: int
    invalid: int
    errors: list[dict] = field(default_factory=list)
    backup_key: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "imported": self.imported,
            "total": self.total,
            "invalid": self.invalid,
            "errors": self.errors,
            "backupKey": self.backup_key,
        }


class TaskStore:
    """
    Owns task identity and persistence.

    Layout under the namespace:
    - tasks:index            ordered list of task ids
    - task:<id>              one record per key
    - tasks:last_modified    ISO timestamp of the last mutation
    - backup:<stamp>         snapshot taken before destructive operations
    - meta:schema_version    layout version, used for migration

    Every committed mutation bumps ``version`` by exactly one and publishes
    an event on ``self.events``. Writes are last-writer-wins unless the
    caller passes ``expected_version``. A second mutation on a task that
    already has one in flight fails with BusyError.
    """

    SCHEMA_VERSION = "2.0.0"
    EXPORT_FORMAT = "taskcore-json"

    def __init__(
        self,
        backend: StorageBackend,
        events: Optional[EventBus] = None,
        *,
        namespace: Optional[str] = None,
        cache_ttl: Optional[float] = None,
        max_backups: Optional[int] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.backend = backend
        self.events = events or EventBus()
        self.namespace = namespace or config.storage.namespace
        self.cache_ttl = config.cache.ttl if cache_ttl is None else cache_ttl
        self.max_backups = config.storage.max_backups if max_backups is None else max_backups
        self._clock = clock

        self.index_key = f"{self.namespace}:tasks:index"
        self.last_modified_key = f"{self.namespace}:tasks:last_modified"
        self.schema_key = f"{self.namespace}:meta:schema_version"
        self.backups_key = f"{self.namespace}:backups:index"
        self.legacy_key = f"{self.namespace}:todos"

        self._cache: dict[str, tuple[TaskRecord, float]] = {}
        self._in_flight: set[str] = set()
        self._index_lock = asyncio.Lock()
        self._initialized = False

    # ---- lifecycle ----

    async def initialize(self):
        """Check the stored layout, migrate if needed and mark the store ready."""
        if self._initialized:
            return

        stored_version = await self._read(self.schema_key)
        if stored_version != self.SCHEMA_VERSION:
            await self._migrate(stored_version)
            await self._write(self.schema_key, self.SCHEMA_VERSION)

        self._initialized = True
        logger.info("TaskStore ready namespace=%s", self.namespace)

    def close(self):
        self._invalidate()
        self._initialized = False

    def on(self, event_type: Union[EventType, str], handler: Handler) -> Callable[[], None]:
        """Subscribe to store events. Returns the unsubscribe callable."""
        return self.events.subscribe(event_type, handler)

    # ---- reads ----

    async def get_by_id(self, task_id: str, include_deleted: bool = False) -> Optional[TaskRecord]:
        """
        Get task by ID.

        Args:
            task_id: Task ID
            include_deleted: Also return soft-deleted records

        Returns:
            A copy of the record, or None if absent
        """
        self._ensure_initialized()
        if not is_valid_id(task_id):
            return None

        task = await self._load_record(task_id)
        if task is None or (task.deleted and not include_deleted):
            return None
        return task

    async def get_all(self, query: Optional[TaskQuery] = None, **filters) -> list[TaskRecord]:
        """
        List tasks.

        Args:
            query: TaskQuery with filters, sort key and pagination
            **filters: Alternatively, TaskQuery fields as keywords

        Returns:
            Matching records in index order unless a sort key is given
        """
        self._ensure_initialized()
        if query is None:
            query = TaskQuery.from_filters(**filters)

        tasks = await self._load_all()
        return query.apply(tasks, now=self._clock())

    async def search(self, term: str, query: Optional[TaskQuery] = None) -> list[TaskRecord]:
        """Case-insensitive search over title, description, category and tags."""
        if not term or not isinstance(term, str):
            return []

        query = replace(query, search=term) if query else TaskQuery(search=term)
        return await self.get_all(query)

    async def get_stats(self) -> dict:
        """Get counts by status, priority and category plus the tag vocabulary."""
        self._ensure_initialized()
        now = self._clock()
        tasks = [t for t in await self._load_all() if not t.deleted]

        by_category: dict[str, int] = {}
        tags: set[str] = set()
        for task in tasks:
            by_category[task.category] = by_category.get(task.category, 0) + 1
            tags.update(task.tags)

        return {
            "total": len(tasks),
            "completed": sum(1 for t in tasks if t.completed),
            "active": sum(1 for t in tasks if not t.completed),
            "overdue": sum(1 for t in tasks if t.is_overdue(now)),
            "dueSoon": sum(1 for t in tasks if t.is_due_soon(now=now)),
            "byPriority": {
                p.value: sum(1 for t in tasks if t.priority == p)
                for p in (Priority.HIGH, Priority.MEDIUM, Priority.LOW)
            },
            "byCategory": by_category,
            "tags": sorted(tags),
            "lastModified": await self._read(self.last_modified_key),
        }

    # ---- mutations ----

    async def create(self, data: dict, source: str = "user") -> TaskRecord:
        """
        Validate and persist a new task.

        Raises:
            ValidationError: If the data is rejected by the validator
            StorageError: If persistence fails
        """
        self._ensure_initialized()
        now = self._clock()

        result = validate(data, is_update=False, now=now)
        if not result.is_valid:
            raise ValidationError(errors=result.errors, warnings=result.warnings)

        task = self._build_record(result.cleaned_data, now)
        await self._write(self._task_key(task.id), task.to_dict())
        async with self._index_lock:
            ids = await self._load_index()
            ids.append(task.id)
            await self._write(self.index_key, ids)
        await self._touch(now)

        logger.info("Task created id=%s", task.id)
        await self._emit(Event(EventType.ADDED, task=task.copy(), task_id=task.id, source=source))
        return task.copy()

    async def update(
        self,
        task_id: str,
        changes: dict,
        *,
        expected_version: Optional[int] = None,
        source: str = "user",
        auto_save: bool = False,
    ) -> UpdateResult:
        """
        Apply a partial patch to a task.

        Args:
            task_id: Task ID
            changes: Field values to change (absent fields are left alone)
            expected_version: If given, reject the write when the stored
                version differs
            source: Who is writing (user, editor, history, restore, conflict)
            auto_save: Marks debounced auto-save writes

        Returns:
            UpdateResult with the committed record and the applied diff.
            When nothing changed the record is returned untouched.

        Raises:
            NotFoundError, ValidationError, StaleWriteError, BusyError, StorageError
        """
        self._ensure_initialized()

        with self._mutation(task_id):
            current = await self._load_record(task_id) if is_valid_id(task_id) else None
            if current is None:
                raise NotFoundError(task_id=task_id)

            if expected_version is not None and expected_version != current.version:
                raise StaleWriteError(
                    task_id=task_id, expected=expected_version, actual=current.version
                )

            now = self._clock()
            result = validate(changes, is_update=True, now=now, created_at=current.created_at)
            if not result.is_valid:
                raise ValidationError(errors=result.errors, warnings=result.warnings)

            explicit = normalize_keys(changes) if isinstance(changes, dict) else {}
            updated, diff = self._apply(current, result.cleaned_data, explicit, now)
            if not diff:
                return UpdateResult(task=current, warnings=result.warnings)

            updated.updated_at = now
            updated.version = current.version + 1
            await self._write(self._task_key(task_id), updated.to_dict())
            self._invalidate(task_id)
            await self._touch(now)

        logger.debug(
            "Task updated id=%s version=%s fields=%s source=%s",
            task_id,
            updated.version,
            [c.field for c in diff],
            source,
        )
        await self._emit(Event(
            EventType.UPDATED,
            task=updated.copy(),
            task_id=task_id,
            changes=diff,
            source=source,
            auto_save=auto_save,
        ))
        return UpdateResult(task=updated.copy(), changes=diff, warnings=result.warnings)

    async def toggle_complete(self, task_id: str, source: str = "user") -> TaskRecord:
        """Flip the completed flag; publishes completed/uncompleted after updated."""
        current = await self.get_by_id(task_id, include_deleted=True)
        if current is None:
            raise NotFoundError(task_id=task_id)

        result = await self.update(task_id, {"completed": not current.completed}, source=source)
        task = result.task
        event_type = EventType.COMPLETED if task.completed else EventType.UNCOMPLETED
        await self._emit(Event(event_type, task=task.copy(), task_id=task_id, source=source))
        return task

    async def delete(self, task_id: str, soft: bool = False, source: str = "user") -> bool:
        """
        Delete a task.

        Args:
            task_id: Task ID
            soft: Only mark the record deleted (reversible with restore)

        Returns:
            True once the task is deleted

        Raises:
            NotFoundError: If the task does not exist
        """
        self._ensure_initialized()

        with self._mutation(task_id):
            current = await self._load_record(task_id) if is_valid_id(task_id) else None
            if current is None:
                raise NotFoundError(task_id=task_id)

            now = self._clock()
            if soft:
                if current.deleted:
                    return True
                removed = current.copy()
                removed.deleted = True
                removed.updated_at = now
                removed.version = current.version + 1
                await self._write(self._task_key(task_id), removed.to_dict())
                changes = [FieldChange("deleted", False, True)]
            else:
                removed = current
                await self._backup_data([current], reason="delete")
                async with self._index_lock:
                    ids = [i for i in await self._load_index() if i != task_id]
                    await self._write(self.index_key, ids)
                await self._remove(self._task_key(task_id))
                changes = []

            self._invalidate(task_id)
            await self._touch(now)

        logger.info("Task deleted id=%s soft=%s", task_id, soft)
        await self._emit(Event(
            EventType.DELETED,
            task=removed.copy(),
            task_id=task_id,
            changes=changes,
            source=source,
            hard=not soft,
        ))
        return True

    async def restore(self, task_id: str) -> TaskRecord:
        """Undo a soft delete."""
        result = await self.update(task_id, {"deleted": False})
        return result.task

    async def delete_completed(self) -> int:
        """
        Permanently remove all completed tasks.

        Returns:
            Number of tasks removed
        """
        self._ensure_initialized()
        tasks = await self._load_all()
        completed = [t for t in tasks if t.completed]
        if not completed:
            return 0

        await self._remove_many(completed, reason="deleteCompleted")
        logger.info("Cleared %s completed tasks", len(completed))
        for task in completed:
            await self._emit(Event(EventType.DELETED, task=task, task_id=task.id, hard=True))
        return len(completed)

    async def purge_deleted(self) -> int:
        """Permanently remove all soft-deleted tasks."""
        self._ensure_initialized()
        tasks = await self._load_all()
        deleted = [t for t in tasks if t.deleted]
        if not deleted:
            return 0

        await self._remove_many(deleted, reason="purge")
        logger.info("Purged %s soft-deleted tasks", len(deleted))
        for task in deleted:
            await self._emit(Event(EventType.DELETED, task=task, task_id=task.id, hard=True))
        return len(deleted)

    async def delete_all(self) -> int:
        """
        Remove every task after taking a snapshot backup.

        Returns:
            Number of tasks removed
        """
        self._ensure_initialized()
        tasks = await self._load_all()
        await self._remove_many(tasks, reason="deleteAll")
        self._invalidate()

        logger.info("Cleared all tasks count=%s", len(tasks))
        await self._emit(Event(EventType.ALL_CLEARED, data={"count": len(tasks)}))
        return len(tasks)

    # ---- export / import ----

    async def export_data(self) -> dict:
        """Export all live tasks in the envelope accepted by import_data."""
        self._ensure_initialized()
        tasks = await self.get_all()
        stats = await self.get_stats()

        return {
            "version": self.SCHEMA_VERSION,
            "exportedAt": format_datetime(self._clock()),
            "tasks": [t.to_dict() for t in tasks],
            "stats": stats,
            "metadata": {
                "totalTasks": len(tasks),
                "exportFormat": self.EXPORT_FORMAT,
                "compatibility": "1.0.0+",
            },
        }

    async def import_data(
        self,
        payload: Any,
        *,
        replace_existing: bool = False,
        skip_backup: bool = False,
    ) -> ImportResult:
        """
        Import tasks from a bare list of records or an export envelope.

        Incoming ids are dropped and fresh ones assigned. Each record is
        validated on its own; invalid ones are counted and reported.

        Args:
            payload: list of records, or a mapping with a "tasks" list
            replace_existing: Clear the store first instead of appending
            skip_backup: Do not snapshot the current tasks first

        Raises:
            ValidationError: If the payload shape is not recognized
        """
        self._ensure_initialized()

        if isinstance(payload, list):
            records = payload
        elif isinstance(payload, dict) and isinstance(payload.get("tasks"), list):
            records = payload["tasks"]
        else:
            raise ValidationError(errors=["Unsupported import format"])

        now = self._clock()
        valid: list[TaskRecord] = []
        errors: list[dict] = []

        for index, raw in enumerate(records):
            if not isinstance(raw, dict):
                errors.append({"index": index, "errors": ["Task data must be a mapping"]})
                continue
            data = {k: v for k, v in raw.items() if k != "id"}
            result = validate(data, is_update=False, now=now)
            if not result.is_valid:
                errors.append({"index": index, "errors": result.errors})
                continue
            valid.append(self._build_record(result.cleaned_data, now))

        if not valid:
            logger.warning("Import rejected: no valid tasks out of %s", len(records))
            return ImportResult(
                success=False,
                imported=0,
                total=len(records),
                invalid=len(errors),
                errors=errors,
            )

        backup_key = None
        if not skip_backup:
            backup_key = await self._backup_data(reason="import")

        existing = await self._load_all() if replace_existing else []
        if replace_existing:
            self._claim([t.id for t in existing])
        try:
            for task in valid:
                await self._write(self._task_key(task.id), task.to_dict())
            async with self._index_lock:
                ids = [] if replace_existing else await self._load_index()
                ids.extend(t.id for t in valid)
                await self._write(self.index_key, ids)
            for task in existing:
                await self._remove(self._task_key(task.id))
        finally:
            self._release([t.id for t in existing])

        self._invalidate()
        await self._touch(now)

        result = ImportResult(
            success=True,
            imported=len(valid),
            total=len(records),
            invalid=len(errors),
            errors=errors,
            backup_key=backup_key,
        )
        logger.info(
            "Imported %s of %s tasks (invalid=%s, replace=%s)",
            result.imported,
            result.total,
            result.invalid,
            replace_existing,
        )

        if replace_existing:
            await self._emit(Event(EventType.ALL_CLEARED, data={"count": len(existing)}))
        for task in valid:
            await self._emit(Event(EventType.ADDED, task=task.copy(), task_id=task.id, source="import"))
        return result

    # ---- backups ----

    async def list_backups(self) -> list[dict]:
        """Backups newest first: key, timestamp, reason and task count."""
        self._ensure_initialized()
        backups = []
        for key in reversed(await self._read(self.backups_key, [])):
            data = await self._read(key)
            if data is None:
                continue
            backups.append({
                "key": key,
                "timestamp": data.get("timestamp"),
                "reason": data.get("reason"),
                "count": len(data.get("tasks", [])),
            })
        return backups

    async def load_backup(self, key: str) -> dict:
        """Return a backup envelope, ready to pass to import_data."""
        data = await self._read(key)
        if data is None:
            raise NotFoundError(task_id=key, what="Backup")
        return data

    # ---- internals ----

    def _ensure_initialized(self):
        if not self._initialized:
            raise NotInitializedError("TaskStore is not initialized; call initialize() first")

    def _task_key(self, task_id: str) -> str:
        return f"{self.namespace}:task:{task_id}"

    @contextmanager
    def _mutation(self, task_id: str):
        self._claim([task_id])
        try:
            yield
        finally:
            self._release([task_id])

    def _claim(self, task_ids: list[str]):
        busy = [i for i in task_ids if i in self._in_flight]
        if busy:
            raise BusyError(task_id=busy[0])
        self._in_flight.update(task_ids)

    def _release(self, task_ids: list[str]):
        self._in_flight.difference_update(task_ids)

    def is_busy(self, task_id: str) -> bool:
        return task_id in self._in_flight

    def _build_record(self, cleaned: dict, now: datetime) -> TaskRecord:
        fields = dict(cleaned)
        title = fields.pop("title")
        created_at = fields.pop("created_at", None) or now
        priority = Priority(fields.pop("priority", Priority.MEDIUM.value))
        return TaskRecord.create(
            title=title, now=now, created_at=created_at, priority=priority, **fields
        )

    @staticmethod
    def _apply(
        current: TaskRecord,
        cleaned: dict,
        explicit: dict,
        now: datetime,
    ) -> tuple[TaskRecord, list[FieldChange]]:
        """Merge cleaned values into a copy of current and compute the diff."""
        updated = current.copy()
        for name, value in cleaned.items():
            if name == "completed_at":
                continue
            if name == "priority":
                value = Priority(value)
            setattr(updated, name, value)

        # completed_at follows completed; an explicit value wins when completing
        if not updated.completed:
            updated.completed_at = None
        elif explicit.get("completed_at") and cleaned.get("completed_at"):
            updated.completed_at = cleaned["completed_at"]
        elif not current.completed:
            updated.completed_at = now

        diff = []
        for name in MUTABLE_FIELDS:
            old, new = getattr(current, name), getattr(updated, name)
            if name == "tags":
                if set(old) == set(new):
                    updated.tags = list(old)
                    continue
                diff.append(FieldChange(name, list(old), list(new)))
            elif old != new:
                diff.append(FieldChange(name, old, new))
        return updated, diff

    async def _read(self, key: str, default: Any = None) -> Any:
        try:
            return await self.backend.get(key, default)
        except StorageError:
            logger.exception("Storage read failed key=%s", key)
            raise

    async def _write(self, key: str, value: Any):
        try:
            ok = await self.backend.set(key, value)
        except StorageError:
            logger.exception("Storage write failed key=%s", key)
            raise
        if not ok:
            logger.error("Storage write rejected key=%s", key)
            raise StorageError(key=key, operation="set")

    async def _remove(self, key: str):
        try:
            await self.backend.delete(key)
        except StorageError:
            logger.exception("Storage delete failed key=%s", key)
            raise

    async def _touch(self, now: datetime):
        await self._write(self.last_modified_key, format_datetime(now))

    async def _load_index(self) -> list[str]:
        ids = await self._read(self.index_key, [])
        if not isinstance(ids, list):
            logger.warning("Task index is malformed; treating as empty")
            return []
        return list(ids)

    async def _load_record(self, task_id: str) -> Optional[TaskRecord]:
        cached = self._cache.get(task_id)
        if cached and cached[1] > time.monotonic():
            return cached[0].copy()

        data = await self._read(self._task_key(task_id))
        if data is None:
            return None
        task = TaskRecord.from_dict(data)
        self._cache[task_id] = (task.copy(), time.monotonic() + self.cache_ttl)
        return task

    async def _load_all(self) -> list[TaskRecord]:
        tasks = []
        for task_id in await self._load_index():
            task = await self._load_record(task_id)
            if task is not None:
                tasks.append(task)
        return tasks

    def _invalidate(self, task_id: Optional[str] = None):
        if task_id:
            self._cache.pop(task_id, None)
        else:
            self._cache.clear()

    async def _remove_many(self, tasks: list[TaskRecord], reason: str):
        """Backup then permanently remove a set of tasks."""
        ids = [t.id for t in tasks]
        self._claim(ids)
        try:
            await self._backup_data(tasks, reason=reason)
            removed = set(ids)
            async with self._index_lock:
                remaining = [i for i in await self._load_index() if i not in removed]
                await self._write(self.index_key, remaining)
            for task_id in ids:
                await self._remove(self._task_key(task_id))
                self._invalidate(task_id)
            await self._touch(self._clock())
        finally:
            self._release(ids)

    async def _backup_data(
        self,
        tasks: Optional[list[TaskRecord]] = None,
        reason: str = "manual",
    ) -> Optional[str]:
        """Snapshot tasks under a backup key. Returns the key, or None if empty."""
        if tasks is None:
            tasks = await self._load_all()
        if not tasks:
            return None

        now = self._clock()
        key = f"{self.namespace}:backup:{now.strftime('%Y%m%dT%H%M%S%f')}"
        backups = await self._read(self.backups_key, [])
        if key in backups:
            key = f"{key}-{len(backups)}"

        await self._write(key, {
            "version": self.SCHEMA_VERSION,
            "timestamp": format_datetime(now),
            "reason": reason,
            "tasks": [t.to_dict() for t in tasks],
        })
        backups.append(key)

        while len(backups) > self.max_backups:
            await self._remove(backups.pop(0))
        await self._write(self.backups_key, backups)

        logger.info("Backed up %s tasks to %s", len(tasks), key)
        return key

    async def _migrate(self, from_version: Optional[str]):
        """Split a legacy single-key task array into per-record keys."""
        legacy = await self._read(self.legacy_key)
        if not isinstance(legacy, list):
            return

        logger.info(
            "Migrating %s legacy tasks: %s -> %s",
            len(legacy),
            from_version or "1.0.0",
            self.SCHEMA_VERSION,
        )
        now = self._clock()
        await self._write(f"{self.namespace}:backup:legacy", {
            "version": from_version or "1.0.0",
            "timestamp": format_datetime(now),
            "reason": "migration",
            "tasks": legacy,
        })

        ids = await self._load_index()
        for raw in legacy:
            if not isinstance(raw, dict):
                continue
            data = dict(raw)
            if not is_valid_id(data.get("id")):
                data["id"] = TaskRecord.generate_id()
            task = TaskRecord.from_dict(data)
            if not task.title:
                logger.warning("Skipping legacy task without title id=%s", task.id)
                continue
            task.enforce_completion(task.updated_at)
            await self._write(self._task_key(task.id), task.to_dict())
            if task.id not in ids:
                ids.append(task.id)

        await self._write(self.index_key, ids)
        await self._remove(self.legacy_key)

    async def _emit(self, event: Event):
        await self.events.publish(event)
