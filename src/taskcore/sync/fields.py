"""Per-field comparison and merge strategies for conflict handling."""

from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Optional

from .types import Severity
from ..tasks.task import WIRE_FIELDS, Priority, normalize_tag, parse_datetime


class FieldKind(ABC):
    """
    Strategy for one task field.

    A kind coerces remote values into the local representation, decides
    which differences are ignorable, merges the two sides and reports
    the severity of a conflict on its field.
    """

    def __init__(self, name: str, severity: Severity = Severity.LOW):
        self.name = name
        self.severity = severity

    @abstractmethod
    def coerce(self, value: Any) -> Any:
        """
        Convert a reported value to the local representation.

        Raises:
            ValueError: If the value cannot be represented
        """

    def is_ignorable(self, local: Any, remote: Any) -> bool:
        """Differences where both sides are empty never count."""
        return not local and not remote

    def differs(self, local: Any, remote: Any) -> bool:
        return local != remote and not self.is_ignorable(local, remote)

    def merge(self, local: Any, remote: Any) -> Any:
        """Default merge adopts the remote value."""
        return remote


class TextField(FieldKind):
    """Free text. Optionally merges by concatenation under a marker line."""

    def __init__(
        self,
        name: str,
        severity: Severity = Severity.LOW,
        merge_marker: Optional[str] = None,
    ):
        super().__init__(name, severity)
        self.merge_marker = merge_marker

    def coerce(self, value: Any) -> str:
        return "" if value is None else str(value)

    def merge(self, local: Any, remote: Any) -> Any:
        if self.merge_marker is None:
            return remote
        if local and remote:
            return f"{local} {self.merge_marker} {remote}"
        return local or remote


class EnumField(FieldKind):
    """A closed set of values: an Enum class, or booleans when none is given."""

    def __init__(self, name: str, enum: Optional[type[Enum]] = None, severity: Severity = Severity.LOW):
        super().__init__(name, severity)
        self.enum = enum

    def coerce(self, value: Any) -> Any:
        if self.enum is None:
            if isinstance(value, str):
                return value.strip().lower() in ("true", "1", "yes")
            return bool(value)
        if isinstance(value, self.enum):
            return value
        return self.enum(str(value).strip().lower())


class DateField(FieldKind):
    """Timestamps compared as aware UTC datetimes."""

    def coerce(self, value: Any) -> Any:
        return parse_datetime(value)


class TagSetField(FieldKind):
    """Tag sets: order never matters, merge is the union."""

    def coerce(self, value: Any) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            value = [value]
        return list(dict.fromkeys(normalize_tag(str(t)) for t in value if str(t).strip()))

    def is_ignorable(self, local: Any, remote: Any) -> bool:
        return sorted(local or []) == sorted(remote or [])

    def merge(self, local: Any, remote: Any) -> list[str]:
        return list(dict.fromkeys(list(local or []) + list(remote or [])))


FIELD_KINDS: dict[str, FieldKind] = {
    "title": TextField("title", Severity.HIGH),
    "description": TextField("description", Severity.MEDIUM, merge_marker="[Merged]"),
    "category": TextField("category"),
    "priority": EnumField("priority", Priority),
    "completed": EnumField("completed"),
    "due_date": DateField("due_date"),
    "completed_at": DateField("completed_at"),
    "tags": TagSetField("tags"),
}


def field_kind(name: str) -> Optional[FieldKind]:
    """Look up the kind for an attribute or wire field name."""
    return FIELD_KINDS.get(WIRE_FIELDS.get(name, name))
