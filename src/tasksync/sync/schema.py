# src/tasksync/sync/schema.py

"""
Schema description shared by both store adapters.

Each synced table is described once: internal (camelCase) field names, the
snake_case column used locally and remotely, the value kind, defaults and
foreign keys. Adapters build SQL and translate records from this table
instead of per-model code.

Boundary rules:
- timestamps are epoch ms internally, ISO-8601 strings on the wire;
- labelIds is a list internally, a JSON array on the wire and a JSON string
  in SQLite;
- syncedAt is local-only and never crosses the boundary.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from ..core.timeutil import to_iso, to_ms
from .models import Comment, Label, Project, ProjectPhase, Subtask, Task, TaskStatus

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 2


class FieldKind(StrEnum):
    TEXT = "text"
    INT = "int"
    BOOL = "bool"
    TIMESTAMP = "timestamp"
    ID_LIST = "id_list"


@dataclass(frozen=True, slots=True)
class FieldSpec:
    name: str
    column: str
    kind: FieldKind = FieldKind.TEXT
    required: bool = False
    default: Any = None
    remote: bool = True
    references: str | None = None
    on_delete: str | None = None
    coerce: Callable[[Any], Any] | None = None


@dataclass(frozen=True, slots=True)
class TableSpec:
    name: str
    fields: tuple[FieldSpec, ...]
    model: type

    def field(self, name: str) -> FieldSpec | None:
        for f in self.fields:
            if f.name == name:
                return f
        return None

    @property
    def remote_fields(self) -> tuple[FieldSpec, ...]:
        return tuple(f for f in self.fields if f.remote)


def _coerce_status(v: Any) -> str:
    return TaskStatus.from_db(v).value


def _coerce_phase(v: Any) -> str | None:
    phase = ProjectPhase.from_db(v)
    return phase.value if phase else None


def _coerce_priority(v: Any) -> int:
    try:
        p = int(v)
    except (TypeError, ValueError):
        return 4
    return max(1, min(4, p))


def _common_tail() -> tuple[FieldSpec, ...]:
    return (
        FieldSpec("createdAt", "created_at", FieldKind.TIMESTAMP, required=True),
        FieldSpec("updatedAt", "updated_at", FieldKind.TIMESTAMP, required=True),
        FieldSpec("ownerId", "user_id", required=True),
        FieldSpec("syncedAt", "synced_at", FieldKind.TIMESTAMP, remote=False),
    )


PROJECTS = TableSpec(
    name="projects",
    model=Project,
    fields=(
        FieldSpec("id", "id", required=True),
        FieldSpec("name", "name", required=True),
        FieldSpec("color", "color", required=True, default="#808080"),
        FieldSpec("icon", "icon"),
        *_common_tail(),
    ),
)

LABELS = TableSpec(
    name="labels",
    model=Label,
    fields=(
        FieldSpec("id", "id", required=True),
        FieldSpec("name", "name", required=True),
        FieldSpec("color", "color", required=True, default="#808080"),
        *_common_tail(),
    ),
)

TASKS = TableSpec(
    name="tasks",
    model=Task,
    fields=(
        FieldSpec("id", "id", required=True),
        FieldSpec("title", "title", required=True),
        FieldSpec("description", "description"),
        FieldSpec("startDate", "start_date", FieldKind.TIMESTAMP),
        FieldSpec("dueDate", "due_date", FieldKind.TIMESTAMP),
        FieldSpec("priority", "priority", FieldKind.INT, required=True, default=4, coerce=_coerce_priority),
        FieldSpec("projectId", "project_id", references="projects", on_delete="SET NULL"),
        FieldSpec("labelIds", "label_ids", FieldKind.ID_LIST, required=True, default=()),
        FieldSpec("completedAt", "completed_at", FieldKind.TIMESTAMP),
        FieldSpec("recurringPattern", "recurring_pattern"),
        FieldSpec("status", "status", required=True, default=TaskStatus.TO_DO.value, coerce=_coerce_status),
        FieldSpec("projectPhase", "project_phase", coerce=_coerce_phase),
        *_common_tail(),
    ),
)

SUBTASKS = TableSpec(
    name="subtasks",
    model=Subtask,
    fields=(
        FieldSpec("id", "id", required=True),
        FieldSpec("taskId", "task_id", required=True, references="tasks", on_delete="CASCADE"),
        FieldSpec("title", "title", required=True),
        FieldSpec("completed", "completed", FieldKind.BOOL, required=True, default=False),
        FieldSpec("order", "order", FieldKind.INT, required=True, default=0),
        *_common_tail(),
    ),
)

COMMENTS = TableSpec(
    name="comments",
    model=Comment,
    fields=(
        FieldSpec("id", "id", required=True),
        FieldSpec("taskId", "task_id", required=True, references="tasks", on_delete="CASCADE"),
        FieldSpec("content", "content", required=True),
        *_common_tail(),
    ),
)

# Parents before children: pull inserts and FK checks depend on this order.
TABLE_ORDER: tuple[str, ...] = ("projects", "labels", "tasks", "subtasks", "comments")

TABLES: dict[str, TableSpec] = {
    t.name: t for t in (PROJECTS, LABELS, TASKS, SUBTASKS, COMMENTS)
}

# Bookkeeping fields the intake never lets callers set directly.
PROTECTED_FIELDS = frozenset({"id", "ownerId", "createdAt", "syncedAt"})


def table_spec(table: str) -> TableSpec:
    spec = TABLES.get(table)
    if spec is None:
        raise ValueError(f"unknown table: {table!r}")
    return spec


def cascade_children(table: str) -> list[tuple[str, str]]:
    """(child_table, fk_field) pairs whose rows are deleted together with a row of `table`."""
    table_spec(table)
    return [
        (spec.name, f.name)
        for spec in TABLES.values()
        for f in spec.fields
        if f.references == table and f.on_delete == "CASCADE"
    ]


# ---- value conversion ----

def parse_id_list(raw: Any) -> list[str]:
    """Lenient parse of a label id list: list/tuple/set, JSON string, or junk -> []."""
    if raw is None:
        return []
    if isinstance(raw, str):
        s = raw.strip()
        if not s:
            return []
        try:
            raw = json.loads(s)
        except ValueError:
            logger.debug("Unparseable id list %r; treating as empty.", raw)
            return []
    if isinstance(raw, (list, tuple, set, frozenset)):
        out: list[str] = []
        for item in raw:
            if item is None:
                continue
            s_item = str(item)
            if s_item not in out:
                out.append(s_item)
        return out
    return []


def dump_id_list(ids: Any) -> str:
    return json.dumps(parse_id_list(ids), ensure_ascii=False)


def normalize_value(spec: FieldSpec, value: Any) -> Any:
    if spec.coerce is not None:
        return spec.coerce(value)
    if value is None:
        return [] if spec.kind == FieldKind.ID_LIST else None
    if spec.kind == FieldKind.TIMESTAMP:
        return to_ms(value)
    if spec.kind == FieldKind.INT:
        try:
            return int(value)
        except TypeError as e:
            raise ValueError(f"{spec.name}: not an integer: {value!r}") from e
    if spec.kind == FieldKind.BOOL:
        if isinstance(value, str):
            return value.strip().lower() in {"1", "true", "t", "yes"}
        return bool(value)
    if spec.kind == FieldKind.ID_LIST:
        return parse_id_list(value)
    return str(value)


def normalize_record(table: str, record: Mapping[str, Any]) -> dict[str, Any]:
    """Coerce known fields of a camelCase record; unknown keys are dropped."""
    spec = table_spec(table)
    out: dict[str, Any] = {}
    for f in spec.fields:
        if f.name in record:
            out[f.name] = normalize_value(f, record[f.name])
    return out


def with_defaults(table: str, record: Mapping[str, Any]) -> dict[str, Any]:
    spec = table_spec(table)
    out = dict(record)
    for f in spec.fields:
        if out.get(f.name) is None and f.default is not None:
            out[f.name] = list(f.default) if f.kind == FieldKind.ID_LIST else f.default
    return normalize_record(table, out)


def missing_required(table: str, record: Mapping[str, Any]) -> list[str]:
    spec = table_spec(table)
    return [f.name for f in spec.fields if f.required and record.get(f.name) is None]


# ---- boundary translation ----

def to_remote(table: str, record: Mapping[str, Any]) -> dict[str, Any]:
    """camelCase internal record -> snake_case wire row (ISO timestamps, list ids)."""
    spec = table_spec(table)
    row: dict[str, Any] = {}
    for f in spec.remote_fields:
        if f.name not in record:
            continue
        value = normalize_value(f, record[f.name])
        if f.kind == FieldKind.TIMESTAMP:
            value = to_iso(value)
        row[f.column] = value
    return row


def from_remote(table: str, row: Mapping[str, Any]) -> dict[str, Any]:
    """snake_case wire row -> camelCase internal record. Unknown columns are ignored."""
    spec = table_spec(table)
    record: dict[str, Any] = {}
    for f in spec.remote_fields:
        if f.column in row:
            record[f.name] = normalize_value(f, row[f.column])
    return record


def rows_from_remote(table: str, rows: Iterable[Mapping[str, Any]]) -> list[dict[str, Any]]:
    """Translate a batch of wire rows. Rows that cannot be decoded are logged and skipped."""
    records: list[dict[str, Any]] = []
    for row in rows:
        try:
            records.append(from_remote(table, row))
        except ValueError as e:
            logger.warning("Skipping undecodable %s row id=%s: %s", table, row.get("id"), e)
    return records


# ---- sync helpers ----

def is_dirty(record: Mapping[str, Any]) -> bool:
    """A record is dirty when it was never synced or changed after its last sync."""
    synced = record.get("syncedAt")
    if synced is None:
        return True
    updated = record.get("updatedAt")
    return updated is not None and synced < updated


def comparable(table: str, record: Mapping[str, Any]) -> dict[str, Any]:
    """Normalised synced fields for equality checks (label order is irrelevant)."""
    spec = table_spec(table)
    out: dict[str, Any] = {}
    for f in spec.remote_fields:
        value = normalize_value(f, record.get(f.name))
        if f.kind == FieldKind.ID_LIST:
            value = frozenset(value)
        out[f.name] = value
    return out
