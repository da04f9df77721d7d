"""Staged editing of one task with debounced auto-save."""

from typing import Any, Optional, TYPE_CHECKING
import asyncio
import logging

from .types import EditState
from ..core.exceptions import BusyError, TaskCoreError
from ..tasks.repository import UpdateResult
from ..config import config

if TYPE_CHECKING:
    from .manager import HistoryManager

logger = logging.getLogger(__name__)


class EditSession:
    """
    Stages field values for a task and commits them through the store.

    Every staged change restarts the auto-save timer. An explicit save
    cancels a pending auto-save; if the auto-save write is already
    persisting, the save is rejected with BusyError rather than queued.

    Usage:
        session = history.edit(task_id)
        session.set_field("title", "New title")
        await session.save()
    """

    def __init__(
        self,
        history: "HistoryManager",
        task_id: str,
        autosave_delay: Optional[float] = None,
    ):
        self.history = history
        self.store = history.store
        self.task_id = task_id
        self.autosave_delay = (
            config.history.autosave_delay if autosave_delay is None else autosave_delay
        )
        self.staged: dict[str, Any] = {}
        self.error: Optional[BaseException] = None
        self.closed = False
        self._autosave_task: Optional[asyncio.Task] = None
        self._autosaving = False
        self._restart_after_write = False

    @property
    def state(self) -> EditState:
        return self.history.state(self.task_id)

    @property
    def autosave_pending(self) -> bool:
        return self._autosave_task is not None and not self._autosave_task.done()

    def set_field(self, name: str, value: Any):
        """Stage a value and restart the auto-save timer."""
        self._ensure_open()
        self.staged[name] = value
        self._schedule_autosave()

    def update_fields(self, values: dict[str, Any]):
        self._ensure_open()
        self.staged.update(values)
        self._schedule_autosave()

    async def save(self) -> Optional[UpdateResult]:
        """
        Commit staged values as one explicit edit.

        Returns:
            The store's UpdateResult, or None when nothing was staged

        Raises:
            BusyError: If an auto-save write is in progress
        """
        self._ensure_open()
        if self._autosaving:
            raise BusyError(task_id=self.task_id, state=EditState.SAVING)
        self._cancel_autosave()

        self.history.set_state(self.task_id, EditState.SAVING)
        result = None
        try:
            if self.staged:
                result = await self.store.update(self.task_id, dict(self.staged), source="editor")
            await self.history.commit_autosaved(self.task_id)
        except TaskCoreError as e:
            self.error = e
            self.history.set_state(self.task_id, EditState.ERROR)
            logger.error("Save failed for task %s: %s", self.task_id, e)
            self._finish()
            raise

        self.history.set_state(self.task_id, EditState.SAVED)
        self._finish()
        return result

    def cancel(self):
        """Drop staged values and leave editing."""
        if self.closed:
            return
        self._cancel_autosave()
        self._finish()

    async def flush_autosave(self):
        """Run a pending auto-save now."""
        if self._autosaving and self._autosave_task is not None:
            await self._autosave_task
        if self.autosave_pending:
            self._cancel_autosave()
            await self._autosave()

    async def __aenter__(self) -> "EditSession":
        return self

    async def __aexit__(self, exc_type, exc, tb):
        if self.closed:
            return
        if exc_type is None:
            await self.save()
        else:
            self.cancel()

    # ---- internals ----

    def _ensure_open(self):
        if self.closed:
            raise TaskCoreError(f"Edit session for task {self.task_id} is closed")

    def _finish(self):
        self.staged.clear()
        self.closed = True
        self.history.set_state(self.task_id, EditState.IDLE)

    def _schedule_autosave(self):
        if self._autosaving:
            # The write in progress finishes first, then the timer restarts
            self._restart_after_write = True
            return
        self._cancel_autosave()
        if self.autosave_delay > 0:
            self._autosave_task = asyncio.create_task(self._autosave_after(self.autosave_delay))

    def _cancel_autosave(self):
        if self._autosaving:
            # A write that has started persisting always runs to completion
            return
        if self._autosave_task is not None and not self._autosave_task.done():
            self._autosave_task.cancel()
        self._autosave_task = None

    async def _autosave_after(self, delay: float):
        await asyncio.sleep(delay)
        await self._autosave()

    async def _autosave(self):
        if not self.staged or self.closed:
            return

        values = dict(self.staged)
        self._autosaving = True
        try:
            await self.store.update(self.task_id, values, source="editor", auto_save=True)
        except TaskCoreError:
            # Values stay staged; the next explicit save reports the failure
            logger.exception("Auto-save failed for task %s", self.task_id)
        else:
            for name, value in values.items():
                if name in self.staged and self.staged[name] == value:
                    del self.staged[name]
            logger.debug("Auto-saved %s for task %s", sorted(values), self.task_id)
        finally:
            self._autosaving = False

        if self._restart_after_write:
            self._restart_after_write = False
            self._autosave_task = None
            if self.staged and not self.closed:
                self._schedule_autosave()
