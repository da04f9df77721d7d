"""Filter, sort and pagination criteria for task listings."""

from dataclasses import dataclass, fields
from datetime import datetime
from typing import Optional, Union

from .task import Priority, TaskRecord, parse_datetime, utc_now

SORT_KEYS = ("created_at", "updated_at", "priority", "title", "due_date")


@dataclass
class TaskQuery:
    """Query for task listings."""

    completed: Optional[bool] = None
    priority: Optional[Union[Priority, str]] = None
    category: Optional[str] = None
    tags: Optional[list[str]] = None
    search: Optional[str] = None
    created_from: Optional[datetime] = None
    created_to: Optional[datetime] = None
    due_from: Optional[datetime] = None
    due_to: Optional[datetime] = None
    overdue: Optional[bool] = None
    include_deleted: bool = False
    sort_by: Optional[str] = None
    sort_order: str = "asc"
    page: Optional[int] = None
    page_size: Optional[int] = None

    @classmethod
    def from_filters(cls, **filters) -> "TaskQuery":
        """Build a query from keyword filters, rejecting unknown keys."""
        known = {f.name for f in fields(cls)}
        unknown = set(filters) - known
        if unknown:
            raise ValueError(f"Unknown filters: {', '.join(sorted(unknown))}")
        return cls(**filters)

    def matches(self, task: TaskRecord, now: Optional[datetime] = None) -> bool:
        """Check if a task matches the filter criteria."""
        if task.deleted and not self.include_deleted:
            return False

        if self.completed is not None and task.completed != self.completed:
            return False

        if self.priority is not None and task.priority != Priority(self.priority):
            return False

        if self.category and task.category != self.category:
            return False

        # Every requested tag must be present
        if self.tags and not all(task.has_tag(tag) for tag in self.tags):
            return False

        if self.search and not task.matches_search(self.search):
            return False

        if self.created_from and task.created_at < parse_datetime(self.created_from):
            return False

        if self.created_to and task.created_at > parse_datetime(self.created_to):
            return False

        if (self.due_from or self.due_to) and task.due_date is None:
            return False

        if self.due_from and task.due_date < parse_datetime(self.due_from):
            return False

        if self.due_to and task.due_date > parse_datetime(self.due_to):
            return False

        if self.overdue is not None and task.is_overdue(now or utc_now()) != self.overdue:
            return False

        return True

    def apply(self, tasks: list[TaskRecord], now: Optional[datetime] = None) -> list[TaskRecord]:
        """Filter, sort and paginate."""
        now = now or utc_now()
        result = [t for t in tasks if self.matches(t, now)]

        if self.sort_by:
            result = sort_tasks(result, self.sort_by)
            if self.sort_order == "desc":
                result.reverse()

        if self.page is not None and self.page_size is not None:
            start = self.page * self.page_size
            result = result[start:start + self.page_size]

        return result


def sort_tasks(tasks: list[TaskRecord], sort_by: str) -> list[TaskRecord]:
    """
    Sort tasks by a named key.

    created_at and updated_at sort newest first, priority sorts high first,
    due_date sorts earliest first with undated tasks last.
    """
    if sort_by not in SORT_KEYS:
        raise ValueError(f"Unknown sort key: {sort_by}")

    if sort_by == "priority":
        return sorted(tasks, key=lambda t: -t.priority.rank)
    if sort_by == "title":
        return sorted(tasks, key=lambda t: t.title.casefold())
    if sort_by == "due_date":
        dated = sorted((t for t in tasks if t.due_date), key=lambda t: t.due_date)
        return dated + [t for t in tasks if not t.due_date]
    return sorted(tasks, key=lambda t: getattr(t, sort_by), reverse=True)
