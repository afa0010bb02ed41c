# src/tasksync/sync/models.py

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any


class TaskStatus(StrEnum):
    """Primary task state, shared by waterfall and agile projects."""

    TO_DO = "to_do"
    IN_PROGRESS = "in_progress"
    BLOCKED = "blocked"
    ON_HOLD = "on_hold"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @classmethod
    def from_db(cls, raw: str | None) -> TaskStatus:
        if not raw:
            return cls.TO_DO
        try:
            return cls(raw)
        except ValueError:
            return cls.TO_DO


class ProjectPhase(StrEnum):
    """Agile-only workflow phase."""

    BRAINSTORM = "brainstorm"
    DESIGN = "design"
    LOGIC = "logic"
    POLISH = "polish"
    DONE = "done"

    @classmethod
    def from_db(cls, raw: str | None) -> ProjectPhase | None:
        if not raw:
            return None
        try:
            return cls(raw)
        except ValueError:
            return None


class Operation(StrEnum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(slots=True)
class Project:
    id: str
    name: str
    color: str
    created_at: int = 0
    updated_at: int = 0
    owner_id: str = ""
    icon: str | None = None
    synced_at: int | None = None

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> Project:
        return cls(
            id=record["id"],
            name=record.get("name") or "",
            color=record.get("color") or "",
            icon=record.get("icon"),
            created_at=record.get("createdAt") or 0,
            updated_at=record.get("updatedAt") or 0,
            owner_id=record.get("ownerId") or "",
            synced_at=record.get("syncedAt"),
        )


@dataclass(slots=True)
class Task:
    id: str
    title: str
    priority: int = 4
    status: TaskStatus = TaskStatus.TO_DO
    description: str | None = None
    start_date: int | None = None
    due_date: int | None = None
    project_id: str | None = None
    label_ids: list[str] = field(default_factory=list)
    completed_at: int | None = None
    created_at: int = 0
    updated_at: int = 0
    owner_id: str = ""
    recurring_pattern: str | None = None
    project_phase: ProjectPhase | None = None
    synced_at: int | None = None

    @property
    def is_completed(self) -> bool:
        return self.completed_at is not None

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> Task:
        return cls(
            id=record["id"],
            title=record.get("title") or "",
            description=record.get("description"),
            start_date=record.get("startDate"),
            due_date=record.get("dueDate"),
            priority=int(record.get("priority") or 4),
            project_id=record.get("projectId"),
            label_ids=list(record.get("labelIds") or []),
            completed_at=record.get("completedAt"),
            created_at=record.get("createdAt") or 0,
            updated_at=record.get("updatedAt") or 0,
            owner_id=record.get("ownerId") or "",
            recurring_pattern=record.get("recurringPattern"),
            status=TaskStatus.from_db(record.get("status")),
            project_phase=ProjectPhase.from_db(record.get("projectPhase")),
            synced_at=record.get("syncedAt"),
        )


@dataclass(slots=True)
class Label:
    id: str
    name: str
    color: str
    created_at: int = 0
    updated_at: int = 0
    owner_id: str = ""
    synced_at: int | None = None

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> Label:
        return cls(
            id=record["id"],
            name=record.get("name") or "",
            color=record.get("color") or "",
            created_at=record.get("createdAt") or 0,
            updated_at=record.get("updatedAt") or 0,
            owner_id=record.get("ownerId") or "",
            synced_at=record.get("syncedAt"),
        )


@dataclass(slots=True)
class Subtask:
    id: str
    task_id: str
    title: str
    completed: bool = False
    order: int = 0
    created_at: int = 0
    updated_at: int = 0
    owner_id: str = ""
    synced_at: int | None = None

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> Subtask:
        return cls(
            id=record["id"],
            task_id=record.get("taskId") or "",
            title=record.get("title") or "",
            completed=bool(record.get("completed")),
            order=int(record.get("order") or 0),
            created_at=record.get("createdAt") or 0,
            updated_at=record.get("updatedAt") or 0,
            owner_id=record.get("ownerId") or "",
            synced_at=record.get("syncedAt"),
        )


@dataclass(slots=True)
class Comment:
    id: str
    task_id: str
    content: str
    created_at: int = 0
    updated_at: int = 0
    owner_id: str = ""
    synced_at: int | None = None

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> Comment:
        return cls(
            id=record["id"],
            task_id=record.get("taskId") or "",
            content=record.get("content") or "",
            created_at=record.get("createdAt") or 0,
            updated_at=record.get("updatedAt") or 0,
            owner_id=record.get("ownerId") or "",
            synced_at=record.get("syncedAt"),
        )
