import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Ensure src is importable
sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

import pytest

from taskcore.tasks.query import TaskQuery, sort_tasks
from taskcore.tasks.task import Priority, TaskRecord


NOW = datetime(2030, 1, 1, 12, 0, tzinfo=timezone.utc)


def make_tasks():
    a = TaskRecord.create("Alpha", now=NOW, priority=Priority.LOW, tags=["work"], category="office")
    b = TaskRecord.create(
        "bravo",
        now=NOW + timedelta(hours=1),
        priority=Priority.HIGH,
        tags=["work", "urgent"],
        due_date=NOW + timedelta(days=2),
    )
    c = TaskRecord.create(
        "Charlie",
        now=NOW + timedelta(hours=2),
        completed=True,
        due_date=NOW - timedelta(days=1),
    )
    d = TaskRecord.create("Delta", now=NOW + timedelta(hours=3), deleted=True)
    return [a, b, c, d]


def test_default_query_hides_deleted():
    tasks = make_tasks()

    result = TaskQuery().apply(tasks, now=NOW)

    assert [t.title for t in result] == ["Alpha", "bravo", "Charlie"]
    assert len(TaskQuery(include_deleted=True).apply(tasks, now=NOW)) == 4


def test_equality_filters():
    tasks = make_tasks()

    assert [t.title for t in TaskQuery(completed=True).apply(tasks)] == ["Charlie"]
    assert [t.title for t in TaskQuery(priority="high").apply(tasks)] == ["bravo"]
    assert [t.title for t in TaskQuery(category="office").apply(tasks)] == ["Alpha"]


def test_tag_containment_requires_all_tags():
    tasks = make_tasks()

    assert [t.title for t in TaskQuery(tags=["work"]).apply(tasks)] == ["Alpha", "bravo"]
    assert [t.title for t in TaskQuery(tags=["work", "URGENT"]).apply(tasks)] == ["bravo"]


def test_date_ranges_and_overdue():
    tasks = make_tasks()

    created = TaskQuery(created_from=NOW + timedelta(minutes=30), created_to=NOW + timedelta(hours=1, minutes=30))
    assert [t.title for t in created.apply(tasks)] == ["bravo"]

    b = tasks[1]
    b.completed = False
    overdue = TaskQuery(overdue=True).apply(tasks, now=NOW + timedelta(days=3))
    assert [t.title for t in overdue] == ["bravo"]


def test_due_range_excludes_undated_tasks():
    tasks = make_tasks()[:3]

    upcoming = TaskQuery(due_from=NOW).apply(tasks, now=NOW)
    assert [t.title for t in upcoming] == ["bravo"]

    before = TaskQuery(due_to=NOW).apply(tasks, now=NOW)
    assert [t.title for t in before] == ["Charlie"]


def test_sort_keys():
    tasks = make_tasks()[:3]

    assert [t.title for t in sort_tasks(tasks, "created_at")] == ["Charlie", "bravo", "Alpha"]
    assert [t.title for t in sort_tasks(tasks, "priority")][0] == "bravo"
    assert [t.title for t in sort_tasks(tasks, "title")] == ["Alpha", "bravo", "Charlie"]
    assert [t.title for t in sort_tasks(tasks, "due_date")] == ["Charlie", "bravo", "Alpha"]

    with pytest.raises(ValueError):
        sort_tasks(tasks, "color")


def test_sort_order_and_pagination():
    tasks = make_tasks()[:3]

    query = TaskQuery(sort_by="title", sort_order="desc", page=0, page_size=2)
    assert [t.title for t in query.apply(tasks)] == ["Charlie", "bravo"]

    second = TaskQuery(sort_by="title", page=1, page_size=2)
    assert [t.title for t in second.apply(tasks)] == ["Charlie"]


def test_from_filters_rejects_unknown_keys():
    assert TaskQuery.from_filters(completed=False).completed is False

    with pytest.raises(ValueError):
        TaskQuery.from_filters(colour="red")
