"""Conflict detection and resolution for concurrent edits."""

from .types import ConflictRecord, RemoteChange, Resolution, Severity
from .fields import FIELD_KINDS, DateField, EnumField, FieldKind, TagSetField, TextField, field_kind
from .resolver import ConflictResolver

__all__ = [
    "ConflictRecord",
    "RemoteChange",
    "Resolution",
    "Severity",
    "FIELD_KINDS",
    "FieldKind",
    "TextField",
    "EnumField",
    "DateField",
    "TagSetField",
    "field_kind",
    "ConflictResolver",
]
