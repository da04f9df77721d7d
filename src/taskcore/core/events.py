"""Typed publish/subscribe channel between the core and its listeners."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Union, TYPE_CHECKING
import inspect
import logging

if TYPE_CHECKING:
    from ..tasks.task import FieldChange, TaskRecord

logger = logging.getLogger(__name__)


class EventType(Enum):
    """Events published by the store, history manager and conflict resolver."""

    ADDED = "added"
    UPDATED = "updated"
    DELETED = "deleted"
    COMPLETED = "completed"
    UNCOMPLETED = "uncompleted"
    ALL_CLEARED = "allCleared"
    CONFLICT_DETECTED = "conflict:detected"
    CONFLICT_RESOLVED = "conflict:resolved"
    HISTORY_UNDO = "history:undo"
    HISTORY_REDO = "history:redo"


@dataclass
class Event:
    """
    A published event.

    Attributes:
        type: What happened
        task: Full current record (the deleted record for deletions)
        task_id: Id of the affected task, if any
        changes: Field diffs applied by the mutation
        source: Who caused the mutation (user, editor, history, restore, conflict, import)
        auto_save: True for debounced auto-save writes
        hard: For deletions, whether the record was removed permanently
        data: Extra event-specific payload
    """

    type: EventType
    task: Optional["TaskRecord"] = None
    task_id: Optional[str] = None
    changes: list["FieldChange"] = field(default_factory=list)
    source: str = "user"
    auto_save: bool = False
    hard: bool = True
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def payload(self) -> Any:
        """Listener-facing payload: the record, or ``{id, record}`` for deletions."""
        if self.type == EventType.DELETED:
            return {"id": self.task_id, "record": self.task}
        return self.task


Handler = Callable[[Event], Union[None, Awaitable[None]]]


@dataclass
class _Subscription:
    handler: Handler
    once: bool = False
    priority: int = 0


class EventBus:
    """
    Observer channel with no dependency on any presentation runtime.

    Handlers may be plain functions or coroutine functions; ``publish``
    awaits coroutine handlers in priority order. A failing handler is
    logged and does not stop delivery to the remaining handlers.
    """

    ALL = "*"

    def __init__(self):
        self._subscriptions: dict[Any, list[_Subscription]] = {}

    def subscribe(
        self,
        event_type: Union[EventType, str],
        handler: Handler,
        priority: int = 0,
        once: bool = False,
    ) -> Callable[[], None]:
        """
        Register a handler.

        Args:
            event_type: EventType to listen for, or ``EventBus.ALL``
            handler: Callable receiving the Event
            priority: Higher priorities run first
            once: Remove the handler after its first delivery

        Returns:
            Callable that removes the subscription
        """
        key = event_type if event_type == self.ALL else EventType(event_type)
        subs = self._subscriptions.setdefault(key, [])
        sub = _Subscription(handler=handler, once=once, priority=priority)
        subs.append(sub)
        subs.sort(key=lambda s: -s.priority)

        def unsubscribe():
            if sub in self._subscriptions.get(key, []):
                self._subscriptions[key].remove(sub)

        return unsubscribe

    def once(self, event_type: Union[EventType, str], handler: Handler) -> Callable[[], None]:
        return self.subscribe(event_type, handler, once=True)

    def unsubscribe(self, event_type: Union[EventType, str], handler: Handler) -> bool:
        """Remove the first subscription of ``handler`` for ``event_type``."""
        key = event_type if event_type == self.ALL else EventType(event_type)
        for sub in self._subscriptions.get(key, []):
            if sub.handler == handler:
                self._subscriptions[key].remove(sub)
                return True
        return False

    async def publish(self, event: Event) -> int:
        """
        Deliver an event to its subscribers.

        Returns:
            Number of handlers invoked
        """
        subs = list(self._subscriptions.get(event.type, []))
        subs += list(self._subscriptions.get(self.ALL, []))

        delivered = 0
        for sub in subs:
            if sub.once:
                self._discard(event.type, sub)
            try:
                result = sub.handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Event handler failed for %s", event.type.value)
            delivered += 1

        return delivered

    def _discard(self, event_type: EventType, sub: _Subscription):
        for key in (event_type, self.ALL):
            if sub in self._subscriptions.get(key, []):
                self._subscriptions[key].remove(sub)

    def listener_count(self, event_type: Optional[Union[EventType, str]] = None) -> int:
        if event_type is None:
            return sum(len(subs) for subs in self._subscriptions.values())
        key = event_type if event_type == self.ALL else EventType(event_type)
        return len(self._subscriptions.get(key, []))

    def clear(self):
        self._subscriptions.clear()
