"""Detects and resolves divergent local/remote edits of the same task."""

from collections import deque
from datetime import datetime
from typing import Any, Awaitable, Callable, Iterable, Optional, Union
import asyncio
import logging

from .fields import field_kind
from .types import ConflictRecord, RemoteChange, Resolution, Severity
from ..core.events import Event, EventBus, EventType
from ..core.exceptions import ConflictUnresolvedError, NotFoundError, StorageError
from ..tasks.repository import TaskStore
from ..tasks.task import TaskRecord, parse_datetime, serialize_value, utc_now
from ..config import config

logger = logging.getLogger(__name__)

# Async callable returning remote reports: [{"taskId", "changes", "timestamp"}]
RemoteFeed = Callable[[], Awaitable[list[dict]]]


class ConflictResolver:
    """
    Keeps a pending list of conflicts per task and writes resolutions back.

    Detection compares each reported field against the local record. A
    conflict needs both a differing timestamp and a differing value that
    the field's kind does not consider ignorable. Resolutions for a task
    are applied as a single store update.
    """

    def __init__(
        self,
        store: TaskStore,
        events: Optional[EventBus] = None,
        *,
        history_limit: Optional[int] = None,
        detection_interval: Optional[float] = None,
        feed: Optional[RemoteFeed] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.events = events or store.events
        self.backend = store.backend
        self.detection_interval = detection_interval or config.conflicts.detection_interval
        self.feed = feed
        self._clock = clock

        self.history_key = f"{store.namespace}:conflicts:history"
        self._pending: dict[str, list[ConflictRecord]] = {}
        self._history: deque[ConflictRecord] = deque(
            maxlen=history_limit or config.conflicts.history_limit
        )
        self._unsubscribers: list = []
        self._detection_task: Optional[asyncio.Task] = None

    # ---- wiring ----

    def attach(self):
        """Subscribe to store events."""
        if self._unsubscribers:
            return
        self._unsubscribers = [
            self.events.subscribe(EventType.UPDATED, self._on_updated),
            self.events.subscribe(EventType.DELETED, self._on_deleted),
            self.events.subscribe(EventType.ALL_CLEARED, self._on_all_cleared),
        ]

    def detach(self):
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []

    async def load(self):
        """Load the resolved-conflict log."""
        data = await self.backend.get(self.history_key, [])
        self._history.clear()
        for item in data:
            try:
                self._history.append(ConflictRecord.from_dict(item))
            except (KeyError, ValueError):
                logger.warning("Skipping malformed conflict history entry")

    async def start(self):
        """Start the periodic detection tick."""
        if self._detection_task is None:
            self._detection_task = asyncio.create_task(self._detection_loop())

    async def stop(self):
        if self._detection_task is not None:
            self._detection_task.cancel()
            try:
                await self._detection_task
            except asyncio.CancelledError:
                pass
            self._detection_task = None

    async def _detection_loop(self):
        while True:
            await asyncio.sleep(self.detection_interval)
            try:
                await self.tick()
            except Exception:
                logger.exception("Conflict detection tick failed")

    async def tick(self) -> int:
        """
        Pull reports from the feed and run detection on each.

        Returns:
            Number of conflicts found (0 when no feed is wired in)
        """
        if self.feed is None:
            return 0

        found = 0
        for report in await self.feed() or []:
            task_id = report.get("taskId") or report.get("task_id")
            conflicts = await self.detect_conflict(
                task_id, report.get("changes", []), report.get("timestamp")
            )
            found += len(conflicts)
        return found

    # ---- detection ----

    async def detect_conflict(
        self,
        task_id: str,
        changes: Iterable[Union[RemoteChange, dict]],
        remote_timestamp: Any = None,
    ) -> list[ConflictRecord]:
        """
        Compare remote field changes against the local record.

        Args:
            task_id: Task ID
            changes: RemoteChange items or {field, newValue, timestamp} dicts
            remote_timestamp: Used for changes that carry no timestamp of
                their own; numbers are epoch seconds

        Returns:
            Conflicts added to the task's pending list
        """
        task = await self.store.get_by_id(task_id, include_deleted=True)
        if task is None:
            logger.warning("Conflict check skipped: task %s not found", task_id)
            return []

        try:
            fallback = parse_datetime(remote_timestamp)
        except ValueError:
            logger.warning("Ignoring unreadable remote timestamp %r", remote_timestamp)
            fallback = None

        now = self._clock()
        found: list[ConflictRecord] = []
        for raw in changes:
            conflict = self._compare(task, raw, fallback, now)
            if conflict is not None:
                found.append(conflict)

        found = self._add_pending(task_id, found)
        if found:
            logger.info(
                "Detected %s conflicts on task %s: %s",
                len(found),
                task_id,
                [c.field for c in found],
            )
            await self.events.publish(Event(
                EventType.CONFLICT_DETECTED,
                task=task,
                task_id=task_id,
                source="conflict",
                data={"conflicts": [c.to_dict() for c in found]},
            ))
        return found

    def _compare(
        self,
        task: TaskRecord,
        raw: Union[RemoteChange, dict],
        fallback: Optional[datetime],
        now: datetime,
    ) -> Optional[ConflictRecord]:
        try:
            change = raw if isinstance(raw, RemoteChange) else RemoteChange.from_dict(raw)
        except (KeyError, TypeError, ValueError):
            logger.warning("Ignoring malformed remote change %r", raw)
            return None

        kind = field_kind(change.field)
        if kind is None:
            logger.warning("Ignoring remote change to unknown field %s", change.field)
            return None

        try:
            remote_value = kind.coerce(change.new_value)
        except ValueError:
            logger.warning("Ignoring unreadable remote value for %s", kind.name)
            return None

        remote_ts = change.timestamp or fallback
        if remote_ts is None or remote_ts == task.updated_at:
            return None

        if kind.name == "completed_at" and not task.completed:
            return None

        local_value = task.get(kind.name)
        if not kind.differs(local_value, remote_value):
            return None

        return ConflictRecord(
            task_id=task.id,
            field=kind.name,
            local_value=local_value,
            remote_value=remote_value,
            local_timestamp=task.updated_at,
            remote_timestamp=remote_ts,
            severity=kind.severity,
            detected_at=now,
        )

    def _add_pending(self, task_id: str, found: list[ConflictRecord]) -> list[ConflictRecord]:
        """Add conflicts; a newer report for a field replaces the pending one."""
        pending = self._pending.setdefault(task_id, [])
        added = []
        for conflict in found:
            existing = next((c for c in pending if c.field == conflict.field), None)
            if existing is not None:
                if existing.remote_timestamp > conflict.remote_timestamp:
                    continue
                pending.remove(existing)
            pending.append(conflict)
            added.append(conflict)
        if not pending:
            del self._pending[task_id]
        return added

    # ---- resolution ----

    def select_resolution(
        self,
        task_id: str,
        field: str,
        resolution: Union[Resolution, str],
    ) -> ConflictRecord:
        """
        Choose how a pending conflict is resolved.

        Raises:
            NotFoundError: If the task has no pending conflict on that field
        """
        kind = field_kind(field)
        name = kind.name if kind else field
        conflict = next((c for c in self._pending.get(task_id, []) if c.field == name), None)
        if conflict is None:
            raise NotFoundError(task_id=f"{task_id}:{field}", what="Conflict")

        conflict.resolution = Resolution(resolution)
        return conflict

    def auto_resolution(self, conflict: ConflictRecord) -> Optional[Resolution]:
        """Tags always merge; low severity takes the newer side; else no choice."""
        if conflict.field == "tags":
            return Resolution.MERGE
        if conflict.severity == Severity.LOW:
            return Resolution.REMOTE if conflict.remote_is_newer else Resolution.LOCAL
        return None

    def auto_resolve(self, task_id: Optional[str] = None) -> int:
        """
        Select automatic resolutions where one applies.

        Returns:
            Number of conflicts that received a resolution
        """
        task_ids = [task_id] if task_id else list(self._pending)
        resolved = 0
        for tid in task_ids:
            for conflict in self._pending.get(tid, []):
                if conflict.resolution is not None:
                    continue
                resolution = self.auto_resolution(conflict)
                if resolution is not None:
                    conflict.resolution = resolution
                    resolved += 1
        return resolved

    def resolved_value(self, conflict: ConflictRecord) -> Any:
        if conflict.resolution == Resolution.LOCAL:
            return conflict.local_value
        if conflict.resolution == Resolution.REMOTE:
            return conflict.remote_value
        if conflict.resolution == Resolution.MERGE:
            kind = field_kind(conflict.field)
            return kind.merge(conflict.local_value, conflict.remote_value)
        raise ConflictUnresolvedError(task_id=conflict.task_id, fields=[conflict.field])

    async def apply_conflict_resolution(self, task_id: str) -> Optional[TaskRecord]:
        """
        Write all resolved values for a task in one store update.

        Returns:
            The updated record, or None if the task has no pending conflicts

        Raises:
            ConflictUnresolvedError: If any pending conflict has no resolution
        """
        conflicts = list(self._pending.get(task_id, []))
        if not conflicts:
            return None

        unresolved = [c.field for c in conflicts if c.resolution is None]
        if unresolved:
            raise ConflictUnresolvedError(task_id=task_id, fields=unresolved)

        patch = {c.field: serialize_value(self.resolved_value(c)) for c in conflicts}
        if "completed_at" in patch and "completed" not in patch:
            # completed_at is only written together with completed
            current = await self.store.get_by_id(task_id, include_deleted=True)
            if current is not None and current.completed:
                patch["completed"] = True
        result = await self.store.update(task_id, patch, source="conflict")

        now = self._clock()
        for conflict in conflicts:
            conflict.resolved_at = now
        self._archive(task_id, conflicts)
        await self._save_history()

        logger.info(
            "Applied %s conflict resolutions to task %s",
            len(conflicts),
            task_id,
        )
        await self.events.publish(Event(
            EventType.CONFLICT_RESOLVED,
            task=result.task,
            task_id=task_id,
            changes=result.changes,
            source="conflict",
            data={"conflicts": [c.to_dict() for c in conflicts]},
        ))
        return result.task

    def dismiss(self, task_id: str) -> int:
        """Drop a task's pending conflicts without applying anything."""
        return len(self._pending.pop(task_id, []))

    # ---- queries ----

    def get_pending(self, task_id: Optional[str] = None) -> list[ConflictRecord]:
        if task_id is not None:
            return list(self._pending.get(task_id, []))
        return [c for conflicts in self._pending.values() for c in conflicts]

    def has_conflicts(self, task_id: Optional[str] = None) -> bool:
        return bool(self.get_pending(task_id))

    def conflict_history(self, limit: Optional[int] = None) -> list[ConflictRecord]:
        """Resolved conflicts, newest first."""
        items = list(reversed(self._history))
        return items[:limit] if limit else items

    # ---- internals ----

    def _archive(self, task_id: str, conflicts: list[ConflictRecord]):
        self._history.extend(conflicts)
        applied = {c.id for c in conflicts}
        remaining = [c for c in self._pending.get(task_id, []) if c.id not in applied]
        if remaining:
            self._pending[task_id] = remaining
        else:
            self._pending.pop(task_id, None)

    async def _save_history(self):
        data = [c.to_dict() for c in self._history]
        try:
            ok = await self.backend.set(self.history_key, data)
        except StorageError:
            logger.exception("Conflict history write failed")
            raise
        if not ok:
            raise StorageError(key=self.history_key, operation="set")

    async def _on_updated(self, event: Event):
        if event.source == "conflict" or not event.changes:
            return
        conflicts = self._pending.get(event.task_id)
        if not conflicts:
            return

        touched = {c.field for c in event.changes}
        settled = [c for c in conflicts if c.field in touched]
        if not settled:
            return

        now = self._clock()
        for conflict in settled:
            conflict.resolution = Resolution.LOCAL
            conflict.local_value = event.task.get(conflict.field)
            conflict.resolved_at = now
        self._archive(event.task_id, settled)
        await self._save_history()
        logger.info(
            "Local edit settled conflicts on task %s: %s",
            event.task_id,
            [c.field for c in settled],
        )

    def _on_deleted(self, event: Event):
        if event.hard:
            self._pending.pop(event.task_id, None)

    def _on_all_cleared(self, event: Event):
        self._pending.clear()
