# src/tasksync/sync/mutations.py

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from ..core.errors import ConflictError, StoreError
from ..core.ports import LocalStore, Record, RemoteStore
from .change_queue import ChangeKey, ChangeQueue, ChangeState
from .models import Operation
from .schema import PROTECTED_FIELDS, cascade_children, normalize_record, table_spec, with_defaults

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class MutationResult:
    ok: bool
    table: str
    record_id: str
    operation: Operation
    record: Record | None = None
    queued: bool = False
    change: Record | None = None
    error: str | None = None


def _clean_payload(table: str, payload: Mapping[str, Any] | None) -> dict[str, Any]:
    clean = normalize_record(table, payload or {})
    for name in PROTECTED_FIELDS:
        clean.pop(name, None)
    return clean


def _cascaded_keys(local: LocalStore, table: str, record_id: str) -> list[ChangeKey]:
    """Rows that go away with table/record_id through ON DELETE CASCADE, depth first."""
    keys: list[ChangeKey] = []
    for child, fk in cascade_children(table):
        for rec in local.query(child, {fk: record_id}):
            keys.extend(_cascaded_keys(local, child, rec["id"]))
            keys.append((child, rec["id"]))
    return keys


def _settle_cascaded(queue: ChangeQueue, keys: list[ChangeKey]) -> None:
    for table, record_id in keys:
        pending = queue.get(table, record_id)
        if pending is None:
            continue
        if pending.operation == Operation.CREATE and pending.state != ChangeState.IN_FLIGHT:
            # Never reached the remote: nothing to undo there.
            queue.forget(table, record_id)
        else:
            queue.enqueue(table, record_id, Operation.DELETE)
        logger.debug("Cascaded delete settled queued %s/%s (%s)", table, record_id, pending.operation.value)


def apply_local_mutation(
    local: LocalStore,
    queue: ChangeQueue | None,
    table: str,
    record_id: str,
    operation: Operation | str,
    payload: Mapping[str, Any] | None,
    *,
    owner_id: str,
    now: int,
) -> MutationResult:
    """
    Optimistic local write + durable queue entry.

    - create: stamps id/owner/createdAt/updatedAt and applies defaults;
      an id that already exists locally is treated as an update
    - update: protected fields (id, ownerId, createdAt, syncedAt) are ignored
    - delete: removes the local row; children cascade in SQLite and their
      queued changes are dropped (never pushed) or turned into deletes

    Local StoreError or a payload value that cannot be normalized -> failed
    result (nothing queued). Unknown table or operation is a programming
    error and raises ValueError.
    """
    table_spec(table)
    op = Operation(operation)
    if not record_id:
        raise ValueError("record_id is required")

    try:
        clean = _clean_payload(table, payload)
    except ValueError as e:
        logger.info("Rejected %s %s/%s: %s", op.value, table, record_id, e)
        return MutationResult(False, table, record_id, op, error=str(e))

    cascaded: list[ChangeKey] = []
    try:
        if op == Operation.CREATE and local.get(table, record_id) is not None:
            logger.debug("Create for existing %s/%s treated as update", table, record_id)
            op = Operation.UPDATE

        if op == Operation.CREATE:
            record = with_defaults(
                table,
                {**clean, "id": record_id, "ownerId": owner_id, "createdAt": now, "updatedAt": now},
            )
            stored = local.create(table, record)
            change = record
        elif op == Operation.UPDATE:
            change = {**clean, "updatedAt": now}
            stored = local.update(table, record_id, change)
            if stored is None and local.persistent:
                return MutationResult(False, table, record_id, op, error="record not found")
        else:
            if queue is not None:
                cascaded = _cascaded_keys(local, table, record_id)
            stored = local.delete(table, record_id)
            change = {}
    except StoreError as e:
        logger.warning("Local %s %s/%s failed: %s", op.value, table, record_id, e)
        return MutationResult(False, table, record_id, op, error=str(e))

    queued = False
    if queue is not None:
        queue.enqueue(table, record_id, op, change)
        _settle_cascaded(queue, cascaded)
        queued = True

    logger.debug("Mutation %s %s/%s queued=%s", op.value, table, record_id, queued)
    return MutationResult(True, table, record_id, op, record=stored, queued=queued, change=change)


async def apply_remote_change(
    remote: RemoteStore,
    table: str,
    record_id: str,
    operation: Operation,
    body: Mapping[str, Any],
) -> None:
    """
    Apply one change to the remote store.

    - delete: a row that is already gone counts as success
    - create: a duplicate id means the remote copy is stale; re-push as update
    - update: a missing remote row is re-created
    Raises StoreError subclasses for everything else.
    """
    if operation == Operation.DELETE:
        gone = await remote.delete(table, record_id)
        if gone is None:
            logger.debug("Remote %s/%s already absent", table, record_id)
        return

    if operation == Operation.CREATE:
        try:
            await remote.create(table, body)
        except ConflictError:
            logger.info("Remote already has %s/%s; re-pushing local copy", table, record_id)
            if await remote.update(table, record_id, body) is None:
                raise
        return

    if await remote.update(table, record_id, body) is None:
        logger.info("Remote %s/%s missing; re-creating", table, record_id)
        await remote.create(table, body)
