# tests/test_schema.py

from __future__ import annotations

import pytest

from tasksync.sync.models import Task, TaskStatus
from tasksync.sync.schema import (
    comparable,
    from_remote,
    is_dirty,
    missing_required,
    parse_id_list,
    table_spec,
    to_remote,
    with_defaults,
)


def test_unknown_table_is_rejected() -> None:
    with pytest.raises(ValueError):
        table_spec("users")


def test_to_remote_translates_names_and_timestamps() -> None:
    row = to_remote("tasks", {
        "id": "t",
        "title": "x",
        "labelIds": ("a", "b"),
        "projectId": None,
        "createdAt": 0,
        "updatedAt": 1_500,
        "ownerId": "u",
        "syncedAt": 1_500,
        "bogus": 1,
    })

    assert row == {
        "id": "t",
        "title": "x",
        "label_ids": ["a", "b"],
        "project_id": None,
        "created_at": "1970-01-01T00:00:00.000Z",
        "updated_at": "1970-01-01T00:00:01.500Z",
        "user_id": "u",
    }


def test_from_remote_normalises_wire_values() -> None:
    rec = from_remote("subtasks", {
        "id": "s",
        "task_id": "t",
        "title": "do",
        "completed": "true",
        "order": "3",
        "created_at": "1970-01-01T00:00:01+00:00",
        "updated_at": "1970-01-01T00:00:02Z",
        "user_id": "u",
        "extra_column": "ignored",
    })

    assert rec == {
        "id": "s",
        "taskId": "t",
        "title": "do",
        "completed": True,
        "order": 3,
        "createdAt": 1_000,
        "updatedAt": 2_000,
        "ownerId": "u",
    }


def test_task_field_coercions() -> None:
    rec = from_remote("tasks", {"priority": 9, "status": "weird", "project_phase": "nope", "label_ids": None})
    assert rec["priority"] == 4
    assert rec["status"] == TaskStatus.TO_DO.value
    assert rec["projectPhase"] is None
    assert rec["labelIds"] == []

    assert from_remote("tasks", {"priority": 0})["priority"] == 1
    assert from_remote("tasks", {"status": "blocked"})["status"] == "blocked"


def test_parse_id_list_is_lenient() -> None:
    assert parse_id_list('["a", "b", "a"]') == ["a", "b"]
    assert parse_id_list("not json") == []
    assert parse_id_list(["x", None, 3]) == ["x", "3"]
    assert parse_id_list(42) == []


def test_with_defaults_and_required_fields() -> None:
    rec = with_defaults("tasks", {"id": "t", "title": "x"})
    assert rec["priority"] == 4
    assert rec["status"] == "to_do"
    assert rec["labelIds"] == []
    assert missing_required("tasks", rec) == ["createdAt", "updatedAt", "ownerId"]


def test_is_dirty() -> None:
    assert is_dirty({"updatedAt": 10, "syncedAt": None})
    assert is_dirty({"updatedAt": 10, "syncedAt": 5})
    assert not is_dirty({"updatedAt": 10, "syncedAt": 10})
    assert not is_dirty({"updatedAt": 10, "syncedAt": 20})


def test_comparable_ignores_label_order_and_sync_bookkeeping() -> None:
    a = {"id": "t", "title": "x", "labelIds": ["a", "b"], "syncedAt": 1, "updatedAt": 5}
    b = {"id": "t", "title": "x", "labelIds": ["b", "a"], "syncedAt": 9, "updatedAt": 5}
    assert comparable("tasks", a) == comparable("tasks", b)
    assert comparable("tasks", a) != comparable("tasks", {**b, "title": "y"})


def test_task_model_from_record() -> None:
    task = Task.from_record({
        "id": "t",
        "title": "x",
        "status": "completed",
        "completedAt": 5,
        "labelIds": ["a"],
        "createdAt": 1,
        "updatedAt": 2,
        "ownerId": "u",
    })
    assert task.status == TaskStatus.COMPLETED
    assert task.is_completed
    assert task.label_ids == ["a"]
