"""Task record dataclass and its serialized form."""

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Optional
from enum import Enum
import uuid


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_datetime(value: Any) -> Optional[datetime]:
    """
    Coerce an ISO string, epoch seconds or datetime into an aware UTC datetime.

    Raises:
        ValueError: If the value cannot be read as a timestamp
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, bool):
        raise ValueError(f"Not a timestamp: {value!r}")
    elif isinstance(value, (int, float)):
        dt = datetime.fromtimestamp(value, tz=timezone.utc)
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        dt = datetime.fromisoformat(text)
    else:
        raise ValueError(f"Not a timestamp: {value!r}")

    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_datetime(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class Priority(Enum):
    """Task priority."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return {"low": 1, "medium": 2, "high": 3}[self.value]


# Wire (camelCase) name -> attribute name
WIRE_FIELDS = {
    "id": "id",
    "title": "title",
    "description": "description",
    "completed": "completed",
    "completedAt": "completed_at",
    "priority": "priority",
    "category": "category",
    "tags": "tags",
    "dueDate": "due_date",
    "createdAt": "created_at",
    "updatedAt": "updated_at",
    "version": "version",
    "deleted": "deleted",
}

# Legacy keys written by older exports
LEGACY_FIELDS = {
    "_version": "version",
    "_deleted": "deleted",
    "text": "title",
}

MUTABLE_FIELDS = (
    "title",
    "description",
    "completed",
    "completed_at",
    "priority",
    "category",
    "tags",
    "due_date",
    "deleted",
)


def normalize_keys(data: dict) -> dict:
    """Map camelCase and legacy keys onto attribute names."""
    normalized = {}
    for key, value in data.items():
        name = WIRE_FIELDS.get(key) or LEGACY_FIELDS.get(key) or key
        if name in normalized and key in LEGACY_FIELDS:
            continue
        normalized[name] = value
    return normalized


def normalize_tag(tag: str) -> str:
    return tag.strip().lower()


@dataclass
class FieldChange:
    """One field's old and new value in an applied diff."""
    field: str
    old_value: Any
    new_value: Any

    def to_dict(self) -> dict:
        return {
            "field": self.field,
            "oldValue": serialize_value(self.old_value),
            "newValue": serialize_value(self.new_value),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "FieldChange":
        name = data["field"]
        return cls(
            field=name,
            old_value=deserialize_value(name, data.get("oldValue")),
            new_value=deserialize_value(name, data.get("newValue")),
        )


@dataclass
class TaskRecord:
    """
    The canonical task entity.

    Attributes:
        id: Stable identifier assigned at creation
        title: Sanitized title, 1-200 chars
        description: Sanitized description, up to 2000 chars
        completed: Completion flag
        completed_at: Set exactly when completed is True
        priority: low, medium or high
        category: Free-form category, default "general"
        tags: Normalized lowercase tags, deduplicated, order not significant
        due_date: Optional deadline, never before created_at
        created_at: Creation timestamp
        updated_at: Refreshed on every committed mutation
        version: Starts at 1, +1 on every committed mutation
        deleted: Soft-delete flag
    """
    id: str
    title: str
    description: str = ""
    completed: bool = False
    completed_at: Optional[datetime] = None
    priority: Priority = Priority.MEDIUM
    category: str = "general"
    tags: list[str] = field(default_factory=list)
    due_date: Optional[datetime] = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    version: int = 1
    deleted: bool = False

    @staticmethod
    def generate_id() -> str:
        return uuid.uuid4().hex[:12]

    @classmethod
    def create(cls, title: str, now: Optional[datetime] = None, **fields) -> "TaskRecord":
        """Create a new record with a generated ID and fresh timestamps."""
        now = now or utc_now()
        fields.setdefault("created_at", now)
        task = cls(id=cls.generate_id(), title=title, updated_at=now, version=1, **fields)
        task.enforce_completion(now)
        return task

    def enforce_completion(self, now: Optional[datetime] = None) -> "TaskRecord":
        """Keep completed_at present exactly when completed is True."""
        if self.completed and self.completed_at is None:
            self.completed_at = now or utc_now()
        elif not self.completed:
            self.completed_at = None
        return self

    def copy(self) -> "TaskRecord":
        return replace(self, tags=list(self.tags))

    def get(self, name: str) -> Any:
        """Read a field by attribute or wire name."""
        name = WIRE_FIELDS.get(name, name)
        value = getattr(self, name)
        return list(value) if isinstance(value, list) else value

    def to_dict(self) -> dict:
        """Convert to the wire form used for persistence and export."""
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "completed": self.completed,
            "completedAt": format_datetime(self.completed_at),
            "priority": self.priority.value,
            "category": self.category,
            "tags": list(self.tags),
            "dueDate": format_datetime(self.due_date),
            "createdAt": format_datetime(self.created_at),
            "updatedAt": format_datetime(self.updated_at),
            "version": self.version,
            "deleted": self.deleted,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "TaskRecord":
        """Create from the wire form (camelCase, snake_case or legacy keys)."""
        d = normalize_keys(data)
        created_at = parse_datetime(d.get("created_at")) or utc_now()
        return cls(
            id=str(d["id"]),
            title=d.get("title") or "",
            description=d.get("description") or "",
            completed=bool(d.get("completed", False)),
            completed_at=parse_datetime(d.get("completed_at")),
            priority=Priority(d.get("priority") or "medium"),
            category=d.get("category") or "general",
            tags=[normalize_tag(t) for t in d.get("tags") or []],
            due_date=parse_datetime(d.get("due_date")),
            created_at=created_at,
            updated_at=parse_datetime(d.get("updated_at")) or created_at,
            version=int(d.get("version") or 1),
            deleted=bool(d.get("deleted", False)),
        )

    @property
    def tag_set(self) -> frozenset:
        return frozenset(self.tags)

    def has_tag(self, tag: str) -> bool:
        return normalize_tag(tag) in self.tags

    def is_overdue(self, now: Optional[datetime] = None) -> bool:
        if not self.due_date or self.completed:
            return False
        return (now or utc_now()) > self.due_date

    def is_due_soon(self, days: int = 3, now: Optional[datetime] = None) -> bool:
        if not self.due_date or self.completed:
            return False
        now = now or utc_now()
        return now <= self.due_date <= now + timedelta(days=days)

    def matches_search(self, term: str) -> bool:
        """Case-insensitive match on title, description, category and tags."""
        if not term:
            return True
        term = term.lower()
        return (
            term in self.title.lower()
            or term in self.description.lower()
            or term in self.category.lower()
            or any(term in tag for tag in self.tags)
        )

    def __str__(self) -> str:
        status = "[x]" if self.completed else "[ ]"
        return f"{status} [{self.priority.value.upper()}] {self.title or '(untitled)'}"


def serialize_value(value: Any) -> Any:
    """JSON-ready form of a single field value."""
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (set, frozenset, tuple)):
        return sorted(value)
    return value


def deserialize_value(name: str, value: Any) -> Any:
    """Inverse of serialize_value for a named field."""
    name = WIRE_FIELDS.get(name, name)
    if value is None:
        return None
    if name in ("due_date", "completed_at", "created_at", "updated_at"):
        return parse_datetime(value)
    if name == "priority":
        return Priority(value)
    if name == "tags":
        return list(value)
    return value
