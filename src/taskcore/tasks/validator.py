"""
Declarative field validation and sanitization for task data.

Every function here is pure: it inspects its input and returns a
ValidationResult. Nothing is raised for bad data; the store decides
what to do with an invalid result.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional
import re

from .task import Priority, normalize_keys, normalize_tag, parse_datetime, utc_now

_MISSING = object()

_TAG_PATTERN = re.compile(r"^[\w-]+$")
_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")
_MARKUP = re.compile(r"<[^>]*>")
_WHITESPACE = re.compile(r"\s+")


@dataclass(frozen=True)
class FieldRule:
    """Validation rule for one field."""
    type: str  # string, boolean, date, array
    required: bool = False
    min_length: Optional[int] = None
    max_length: Optional[int] = None
    pattern: Optional[re.Pattern] = None
    allowed_values: Optional[tuple] = None
    default: Any = _MISSING
    allow_null: bool = False
    sanitize: bool = False
    lowercase: bool = False
    max_items: Optional[int] = None
    item_rule: Optional["FieldRule"] = None
    min_date: Optional[datetime] = None
    max_date: Optional[datetime] = None
    immutable: bool = False


_MIN_DATE = datetime(1900, 1, 1, tzinfo=timezone.utc)
_MAX_DATE = datetime(2100, 12, 31, 23, 59, 59, tzinfo=timezone.utc)

RULES: dict[str, FieldRule] = {
    "title": FieldRule(type="string", required=True, min_length=1, max_length=200, sanitize=True),
    "description": FieldRule(type="string", max_length=2000, sanitize=True, default=""),
    "completed": FieldRule(type="boolean", default=False),
    "completed_at": FieldRule(type="date", allow_null=True, min_date=_MIN_DATE, max_date=_MAX_DATE),
    "priority": FieldRule(
        type="string",
        allowed_values=tuple(p.value for p in Priority),
        lowercase=True,
        default=Priority.MEDIUM.value,
    ),
    "category": FieldRule(
        type="string", min_length=1, max_length=50, sanitize=True, default="general"
    ),
    "tags": FieldRule(
        type="array",
        max_items=20,
        default=(),
        item_rule=FieldRule(
            type="string", min_length=1, max_length=50, pattern=_TAG_PATTERN, lowercase=True
        ),
    ),
    "due_date": FieldRule(type="date", allow_null=True, min_date=_MIN_DATE, max_date=_MAX_DATE),
    "created_at": FieldRule(type="date", allow_null=True, immutable=True),
    "deleted": FieldRule(type="boolean"),
}

DISPLAY_NAMES = {
    "title": "Title",
    "description": "Description",
    "completed": "Completed",
    "completed_at": "Completed at",
    "priority": "Priority",
    "category": "Category",
    "tags": "Tags",
    "due_date": "Due date",
    "created_at": "Created at",
    "deleted": "Deleted",
}


@dataclass
class ValidationResult:
    """Outcome of validating one task payload."""
    is_valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    cleaned_data: Optional[dict[str, Any]] = None


def display_name(name: str) -> str:
    if "[" in name:
        base, _, rest = name.partition("[")
        return f"{DISPLAY_NAMES.get(base, base)}[{rest}"
    return DISPLAY_NAMES.get(name, name)


def sanitize_text(value: str) -> str:
    """Strip embedded markup and collapse whitespace."""
    value = _MARKUP.sub("", value)
    return _WHITESPACE.sub(" ", value).strip()


def is_valid_id(task_id: Any) -> bool:
    return isinstance(task_id, str) and 0 < len(task_id) <= 100 and bool(_ID_PATTERN.match(task_id))


def is_valid_tag(tag: Any) -> bool:
    return isinstance(tag, str) and 0 < len(tag) <= 50 and bool(_TAG_PATTERN.match(tag))


def _is_empty(value: Any) -> bool:
    return value is _MISSING or value is None or value == ""


def _coerce(value: Any, rule: FieldRule, name: str) -> tuple[Any, Optional[str]]:
    """Coerce a value to the rule's type. Returns (value, error)."""
    label = display_name(name)

    if rule.type == "string":
        if isinstance(value, Priority):
            return value.value, None
        if isinstance(value, str):
            return value, None
        if isinstance(value, (list, dict, set, tuple)):
            return None, f"{label} must be a string"
        return str(value), None

    if rule.type == "boolean":
        if isinstance(value, bool):
            return value, None
        if value in ("true", "1", 1):
            return True, None
        if value in ("false", "0", 0):
            return False, None
        return None, f"{label} must be a boolean"

    if rule.type == "date":
        try:
            return parse_datetime(value), None
        except (TypeError, ValueError, OverflowError, OSError):
            return None, f"{label} must be a valid date"

    if rule.type == "array":
        if isinstance(value, (list, tuple, set, frozenset)):
            return list(value), None
        return None, f"{label} must be a list"

    return None, f"Unsupported rule type: {rule.type}"


def validate_field(
    value: Any,
    name: str,
    rule: FieldRule,
    is_update: bool = False,
    now: Optional[datetime] = None,
) -> tuple[Any, list[str], list[str]]:
    """
    Validate and clean a single value.

    Returns:
        (cleaned value or _MISSING when the field should be left out, errors, warnings)
    """
    errors: list[str] = []
    warnings: list[str] = []
    label = display_name(name)

    if _is_empty(value):
        if rule.required and (not is_update or value is not _MISSING):
            errors.append(f"{label} is required")
            return _MISSING, errors, warnings
        if is_update and value is _MISSING:
            # Partial patch: absent fields are left alone
            return _MISSING, errors, warnings
        if rule.default is not _MISSING:
            default = rule.default
            return (list(default) if isinstance(default, tuple) else default), errors, warnings
        if rule.allow_null:
            return None, errors, warnings
        return _MISSING, errors, warnings

    cleaned, error = _coerce(value, rule, name)
    if error:
        return _MISSING, [error], warnings

    if rule.type == "string":
        cleaned = sanitize_text(cleaned) if rule.sanitize else cleaned.strip()
        if rule.lowercase:
            cleaned = normalize_tag(cleaned)

    if rule.type == "array" and rule.item_rule is not None:
        items = []
        for i, item in enumerate(cleaned):
            item_value, item_errors, item_warnings = validate_field(
                item, f"{name}[{i}]", rule.item_rule, is_update=False, now=now
            )
            errors.extend(item_errors)
            warnings.extend(item_warnings)
            if not item_errors and item_value is not _MISSING:
                items.append(item_value)
        cleaned = items

    if rule.type in ("string", "array"):
        if rule.min_length is not None and len(cleaned) < rule.min_length:
            errors.append(f"{label} must be at least {rule.min_length} characters")
        if rule.max_length is not None and len(cleaned) > rule.max_length:
            errors.append(f"{label} must be at most {rule.max_length} characters")

    if rule.max_items is not None and len(set(cleaned)) > rule.max_items:
        errors.append(f"{label} can have at most {rule.max_items} items")

    if rule.allowed_values is not None and cleaned not in rule.allowed_values:
        errors.append(f"{label} must be one of: {', '.join(rule.allowed_values)}")

    if rule.pattern is not None and isinstance(cleaned, str) and not rule.pattern.match(cleaned):
        errors.append(f"{label} has an invalid format")

    if rule.type == "date" and cleaned is not None:
        if rule.min_date and cleaned < rule.min_date:
            errors.append(f"{label} cannot be before {rule.min_date.date().isoformat()}")
        if rule.max_date and cleaned > rule.max_date:
            errors.append(f"{label} cannot be after {rule.max_date.date().isoformat()}")
        if name == "due_date" and cleaned < (now or utc_now()):
            warnings.append("Due date is in the past")

    return cleaned, errors, warnings


def _validate_cross_fields(
    data: dict[str, Any],
    is_update: bool,
    now: datetime,
    created_at: Optional[datetime],
) -> tuple[list[str], list[str]]:
    errors: list[str] = []
    warnings: list[str] = []

    if "completed" in data:
        if data["completed"]:
            if not data.get("completed_at"):
                data["completed_at"] = now
        else:
            data["completed_at"] = None
    elif is_update and "completed_at" in data:
        data.pop("completed_at")
        warnings.append("Completed at can only change together with Completed")
    elif not is_update:
        data["completed_at"] = None

    if data.get("title") and data.get("description") and data["title"] == data["description"]:
        warnings.append("Title and description are identical")

    tags = data.get("tags")
    if tags and len(tags) > 1:
        unique = list(dict.fromkeys(tags))
        if len(unique) != len(tags):
            data["tags"] = unique
            warnings.append("Removed duplicate tags")

    reference = data.get("created_at") or created_at
    if data.get("due_date") and reference and data["due_date"] < reference:
        errors.append("Due date cannot be before the creation date")

    return errors, warnings


def validate(
    data: Any,
    is_update: bool = False,
    *,
    now: Optional[datetime] = None,
    created_at: Optional[datetime] = None,
) -> ValidationResult:
    """
    Validate task data against RULES.

    Args:
        data: Mapping of field values (attribute, camelCase or legacy keys)
        is_update: Partial-patch mode; absent fields are skipped
        now: Reference time for completed_at and past-date warnings
        created_at: Creation time to check due_date against when the
            payload does not carry its own

    Returns:
        ValidationResult with cleaned_data holding only recognized fields
    """
    if not isinstance(data, dict):
        return ValidationResult(
            is_valid=False, errors=["Task data must be a mapping"], cleaned_data=None
        )

    now = now or utc_now()
    data = normalize_keys(data)
    errors: list[str] = []
    warnings: list[str] = []
    cleaned: dict[str, Any] = {}

    for name, rule in RULES.items():
        value = data.get(name, _MISSING)
        if is_update and rule.immutable:
            if value is not _MISSING:
                errors.append(f"{display_name(name)} cannot be changed")
            continue

        field_value, field_errors, field_warnings = validate_field(
            value, name, rule, is_update=is_update, now=now
        )
        errors.extend(field_errors)
        warnings.extend(field_warnings)
        if field_value is not _MISSING:
            cleaned[name] = field_value

    cross_errors, cross_warnings = _validate_cross_fields(cleaned, is_update, now, created_at)
    errors.extend(cross_errors)
    warnings.extend(cross_warnings)

    return ValidationResult(
        is_valid=not errors,
        errors=errors,
        warnings=warnings,
        cleaned_data=cleaned,
    )
