"""Edit history data types."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from ..tasks.task import FieldChange, deserialize_value, parse_datetime, serialize_value


class EditState(Enum):
    """Per-task edit lifecycle."""
    IDLE = "idle"
    EDITING = "editing"
    SAVING = "saving"
    SAVED = "saved"
    ERROR = "error"
    UNDOING = "undoing"
    REDOING = "redoing"


@dataclass
class HistoryEntry:
    """
    One committed edit of a task.

    ``version`` is the record version the edit produced; ``base_version``
    is the history version the task was at before it. Undo moves the
    task's current history version back to ``base_version``.
    """

    id: str
    task_id: str
    changes: list[FieldChange]
    timestamp: datetime
    version: int
    base_version: int
    kind: str = "edit"  # edit, batch, restore
    source: str = "user"
    restored_from: Optional[int] = None

    @property
    def fields(self) -> list[str]:
        return [c.field for c in self.changes]

    @property
    def is_batch(self) -> bool:
        return len(self.changes) > 1

    def inverse(self) -> dict[str, Any]:
        """Field values that revert this edit."""
        return {c.field: c.old_value for c in self.changes}

    def forward(self) -> dict[str, Any]:
        """Field values that reapply this edit."""
        return {c.field: c.new_value for c in self.changes}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "taskId": self.task_id,
            "changes": [c.to_dict() for c in self.changes],
            "timestamp": self.timestamp.isoformat(),
            "version": self.version,
            "baseVersion": self.base_version,
            "kind": self.kind,
            "source": self.source,
            "restoredFrom": self.restored_from,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "HistoryEntry":
        return cls(
            id=data["id"],
            task_id=data["taskId"],
            changes=[FieldChange.from_dict(c) for c in data.get("changes", [])],
            timestamp=parse_datetime(data["timestamp"]),
            version=data["version"],
            base_version=data.get("baseVersion", data["version"] - 1),
            kind=data.get("kind", "edit"),
            source=data.get("source", "user"),
            restored_from=data.get("restoredFrom"),
        )


@dataclass
class UndoAction:
    """A stack item: the entry plus the field values applying it will write."""
    entry: HistoryEntry
    values: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "entryId": self.entry.id,
            "values": {k: serialize_value(v) for k, v in self.values.items()},
        }

    @classmethod
    def from_dict(cls, data: dict, entries: dict[str, HistoryEntry]) -> Optional["UndoAction"]:
        entry = entries.get(data.get("entryId"))
        if entry is None:
            return None
        values = {k: deserialize_value(k, v) for k, v in data.get("values", {}).items()}
        return cls(entry=entry, values=values)
