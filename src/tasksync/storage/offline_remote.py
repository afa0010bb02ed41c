# src/tasksync/storage/offline_remote.py

from __future__ import annotations

import copy
import logging
from collections.abc import Mapping
from typing import Any

from ..core.errors import ConflictError, ConnectivityError, ValidationError
from ..core.ports import Predicate, Record
from ..sync.schema import from_remote, rows_from_remote, table_spec, to_remote

logger = logging.getLogger(__name__)


class InMemoryRemoteStore:
    """
    In-process stand-in for the hosted backend.

    Used when no backend URL is configured (offline demo) and by tests.
    Rows are kept in the wire shape (snake_case columns, ISO timestamps) so
    records go through the same boundary translation as with the real
    backend.

    Behavior:
    - duplicate id on create -> ConflictError
    - missing required column -> ValidationError
    - online=False -> every call raises ConnectivityError
    """

    def __init__(self, *, online: bool = True) -> None:
        self.online = online
        self._rows: dict[str, dict[str, dict[str, Any]]] = {}

    # ---- helpers ----

    def _check_online(self) -> None:
        if not self.online:
            raise ConnectivityError("backend unreachable (offline)")

    def _table(self, table: str) -> dict[str, dict[str, Any]]:
        table_spec(table)
        return self._rows.setdefault(table, {})

    @staticmethod
    def _validate(table: str, row: Mapping[str, Any]) -> None:
        missing = [f.column for f in table_spec(table).remote_fields if f.required and row.get(f.column) is None]
        if missing:
            raise ValidationError(f"{table}: null value in required columns {missing}", status_code=400)

    def seed(self, table: str, row: Mapping[str, Any]) -> None:
        """Insert or replace a raw wire-shaped row (simulates another device)."""
        self._table(table)[str(row["id"])] = copy.deepcopy(dict(row))

    def raw_row(self, table: str, record_id: str) -> dict[str, Any] | None:
        row = self._table(table).get(record_id)
        return copy.deepcopy(row) if row is not None else None

    async def is_reachable(self) -> bool:
        return self.online

    # ---- RemoteStore ----

    async def get(self, table: str, record_id: str) -> Record | None:
        self._check_online()
        row = self._table(table).get(record_id)
        return from_remote(table, row) if row is not None else None

    async def query(self, table: str, predicate: Predicate | None = None) -> list[Record]:
        self._check_online()
        records = rows_from_remote(table, self._table(table).values())
        if predicate is None:
            return records
        if isinstance(predicate, Mapping):
            return [r for r in records if all(r.get(k) == v for k, v in predicate.items())]
        return [r for r in records if predicate(r)]

    async def create(self, table: str, record: Mapping[str, Any]) -> Record | None:
        self._check_online()
        row = to_remote(table, record)
        self._validate(table, row)
        rows = self._table(table)
        if row["id"] in rows:
            raise ConflictError(f"{table}: duplicate key id={row['id']}")
        rows[row["id"]] = row
        logger.debug("Remote create %s id=%s", table, row["id"])
        return from_remote(table, row)

    async def update(self, table: str, record_id: str, patch: Mapping[str, Any]) -> Record | None:
        self._check_online()
        rows = self._table(table)
        existing = rows.get(record_id)
        if existing is None:
            return None
        changes = to_remote(table, {k: v for k, v in patch.items() if k != "id"})
        merged = {**existing, **changes}
        self._validate(table, merged)
        rows[record_id] = merged
        return from_remote(table, merged)

    async def delete(self, table: str, record_id: str) -> Record | None:
        self._check_online()
        row = self._table(table).pop(record_id, None)
        return from_remote(table, row) if row is not None else None

    async def fetch_changed_since(self, table: str, owner_id: str, since_ms: int | None) -> list[Record]:
        self._check_online()
        owned = [row for row in self._table(table).values() if row.get("user_id") == owner_id]
        records = [
            rec
            for rec in rows_from_remote(table, owned)
            if since_ms is None or (rec.get("updatedAt") or 0) >= since_ms
        ]
        records.sort(key=lambda rec: rec.get("updatedAt") or 0)
        return records

    async def aclose(self) -> None:
        return
