"""Conflict data types."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional
import uuid

from ..tasks.task import deserialize_value, format_datetime, parse_datetime, serialize_value, utc_now


class Severity(Enum):
    """How disruptive a conflicting field is; drives auto-resolution."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class Resolution(Enum):
    """Which side wins a conflict."""
    LOCAL = "local"
    REMOTE = "remote"
    MERGE = "merge"


@dataclass
class RemoteChange:
    """One field change reported by a remote source."""
    field: str
    new_value: Any
    timestamp: Optional[datetime] = None

    @classmethod
    def from_dict(cls, data: dict) -> "RemoteChange":
        return cls(
            field=data["field"],
            new_value=data.get("newValue", data.get("new_value")),
            timestamp=parse_datetime(data.get("timestamp")),
        )


@dataclass
class ConflictRecord:
    """A divergence between the local value of a field and a remote report."""

    task_id: str
    field: str
    local_value: Any
    remote_value: Any
    local_timestamp: datetime
    remote_timestamp: datetime
    severity: Severity
    resolution: Optional[Resolution] = None
    resolved_at: Optional[datetime] = None
    detected_at: datetime = field(default_factory=utc_now)
    id: str = field(default_factory=lambda: f"conflict_{uuid.uuid4().hex[:12]}")

    @property
    def is_resolved(self) -> bool:
        return self.resolution is not None

    @property
    def remote_is_newer(self) -> bool:
        return self.remote_timestamp > self.local_timestamp

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "taskId": self.task_id,
            "field": self.field,
            "localValue": serialize_value(self.local_value),
            "remoteValue": serialize_value(self.remote_value),
            "localTimestamp": format_datetime(self.local_timestamp),
            "remoteTimestamp": format_datetime(self.remote_timestamp),
            "severity": self.severity.value,
            "resolution": self.resolution.value if self.resolution else None,
            "resolvedAt": format_datetime(self.resolved_at),
            "detectedAt": format_datetime(self.detected_at),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ConflictRecord":
        name = data["field"]
        return cls(
            id=data["id"],
            task_id=data["taskId"],
            field=name,
            local_value=deserialize_value(name, data.get("localValue")),
            remote_value=deserialize_value(name, data.get("remoteValue")),
            local_timestamp=parse_datetime(data["localTimestamp"]),
            remote_timestamp=parse_datetime(data["remoteTimestamp"]),
            severity=Severity(data.get("severity", "low")),
            resolution=Resolution(data["resolution"]) if data.get("resolution") else None,
            resolved_at=parse_datetime(data.get("resolvedAt")),
            detected_at=parse_datetime(data.get("detectedAt")) or utc_now(),
        )
