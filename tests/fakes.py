# tests/fakes.py

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from tasksync.core.ports import Record
from tasksync.core.timeutil import to_iso
from tasksync.storage.offline_remote import InMemoryRemoteStore

OWNER = "user-1"
OTHER_OWNER = "user-2"


class FakeClock:
    """Deterministic epoch-ms clock: returns the same value until advanced."""

    def __init__(self, start: int = 1_000) -> None:
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> int:
        self.now += ms
        return self.now


@dataclass(slots=True)
class Call:
    op: str
    table: str
    record_id: str | None


class FlakyRemoteStore(InMemoryRemoteStore):
    """
    In-process backend with failure injection.

    - fail(op, exc, times=n): the next n calls of `op` raise `exc`
    - gate: when set, create() waits for the event (to hold a push in flight)
    - calls: every CRUD call, for assertions
    """

    def __init__(self, *, online: bool = True) -> None:
        super().__init__(online=online)
        self.calls: list[Call] = []
        self.gate: asyncio.Event | None = None
        self._failures: dict[str, list[BaseException]] = {}

    def fail(self, op: str, exc: BaseException, *, times: int = 1) -> None:
        self._failures.setdefault(op, []).extend([exc] * times)

    def _maybe_fail(self, op: str) -> None:
        pending = self._failures.get(op)
        if pending:
            raise pending.pop(0)

    async def create(self, table: str, record: Mapping[str, Any]) -> Record | None:
        self.calls.append(Call("create", table, record.get("id")))
        if self.gate is not None:
            await self.gate.wait()
        self._maybe_fail("create")
        return await super().create(table, record)

    async def update(self, table: str, record_id: str, patch: Mapping[str, Any]) -> Record | None:
        self.calls.append(Call("update", table, record_id))
        self._maybe_fail("update")
        return await super().update(table, record_id, patch)

    async def delete(self, table: str, record_id: str) -> Record | None:
        self.calls.append(Call("delete", table, record_id))
        self._maybe_fail("delete")
        return await super().delete(table, record_id)

    async def fetch_changed_since(self, table: str, owner_id: str, since_ms: int | None) -> list[Record]:
        self._maybe_fail(f"fetch:{table}")
        return await super().fetch_changed_since(table, owner_id, since_ms)

    def ops(self, op: str) -> list[Call]:
        return [c for c in self.calls if c.op == op]


@dataclass(slots=True)
class FakeProbe:
    """ConnectivityProbe with a switchable answer."""

    reachable: bool = True
    error: BaseException | None = None
    checks: int = 0

    async def is_reachable(self) -> bool:
        self.checks += 1
        if self.error is not None:
            raise self.error
        return self.reachable


@dataclass(slots=True)
class Recorder:
    """Collects listener invocations (sync callback)."""

    events: list[Any] = field(default_factory=list)

    def __call__(self, *args: Any) -> None:
        self.events.append(args[0] if len(args) == 1 else args)


def remote_task_row(
    task_id: str,
    *,
    title: str,
    updated_at: int,
    created_at: int = 50,
    owner: str = OWNER,
    status: str = "to_do",
    label_ids: list[str] | None = None,
    project_id: str | None = None,
) -> dict[str, Any]:
    """Wire-shaped tasks row, as another device would have written it."""
    return {
        "id": task_id,
        "title": title,
        "description": None,
        "start_date": None,
        "due_date": None,
        "priority": 4,
        "project_id": project_id,
        "label_ids": list(label_ids or []),
        "completed_at": None,
        "recurring_pattern": None,
        "status": status,
        "project_phase": None,
        "created_at": to_iso(created_at),
        "updated_at": to_iso(updated_at),
        "user_id": owner,
    }


def local_task(
    task_id: str,
    *,
    title: str,
    updated_at: int,
    synced_at: int | None,
    created_at: int = 50,
    owner: str = OWNER,
    **extra: Any,
) -> dict[str, Any]:
    return {
        "id": task_id,
        "title": title,
        "status": "to_do",
        "priority": 4,
        "labelIds": [],
        "createdAt": created_at,
        "updatedAt": updated_at,
        "syncedAt": synced_at,
        "ownerId": owner,
        **extra,
    }
