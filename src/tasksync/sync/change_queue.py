# src/tasksync/sync/change_queue.py

from __future__ import annotations

import contextlib
import json
import logging
import sqlite3
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import Any

from ..core.timeutil import now_ms
from .models import Operation

logger = logging.getLogger(__name__)

ChangeKey = tuple[str, str]  # (table, record_id)


class ChangeState(StrEnum):
    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    FAILED = "failed"  # retry cap reached; needs user attention

    @classmethod
    def from_db(cls, raw: str | None) -> ChangeState:
        if not raw:
            return cls.PENDING
        try:
            return cls(raw)
        except ValueError:
            return cls.PENDING


@dataclass(frozen=True, slots=True)
class PendingChange:
    seq: int
    table: str
    record_id: str
    operation: Operation
    payload: dict[str, Any] = field(default_factory=dict)
    state: ChangeState = ChangeState.PENDING
    revision: int = 1
    attempts: int = 0
    last_error: str | None = None
    enqueued_at: int = 0
    updated_at: int = 0

    @property
    def key(self) -> ChangeKey:
        return (self.table, self.record_id)


def coalesce(
    prev_op: Operation | None,
    prev_payload: Mapping[str, Any] | None,
    op: Operation,
    payload: Mapping[str, Any] | None,
) -> tuple[Operation, dict[str, Any]]:
    """
    Fold one more local operation into the pending one for the same record.

    create + update/create -> create (merged, later fields win)
    any    + delete        -> delete (payload dropped)
    delete + create        -> update with the new payload (remote row still exists)
    delete + update        -> delete (nothing left to update)
    update + update/create -> update (merged)
    """
    new_payload = dict(payload or {})
    if prev_op is None:
        return op, ({} if op == Operation.DELETE else new_payload)

    merged = {**(prev_payload or {}), **new_payload}

    if op == Operation.DELETE:
        return Operation.DELETE, {}
    if prev_op == Operation.DELETE:
        if op == Operation.CREATE:
            return Operation.UPDATE, new_payload
        return Operation.DELETE, {}
    if prev_op == Operation.CREATE:
        return Operation.CREATE, merged
    return Operation.UPDATE, merged


class ChangeQueue:
    """
    Durable queue of local mutations waiting to be pushed.

    One row per (table, record_id): repeated edits to the same record are
    coalesced into a single net change (see coalesce()). Each enqueue bumps
    the row's revision, which lets clear() detect local edits that arrived
    while the change was being pushed.

    States:
    - pending   -> waiting for the next push
    - in_flight -> returned by drain(), push in progress
    - failed    -> retry cap reached, not drained until requeued

    The queue lives in the local SQLite file next to the synced tables.
    Each method opens its own connection.
    """

    def __init__(self, db_path: str | Path) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._ensure_schema()
        recovered = self.release_in_flight()
        logger.info(
            "ChangeQueue ready db=%s pending=%s recovered_in_flight=%s",
            self._db_path,
            self.count_pending(),
            recovered,
        )

    # ---- low-level helpers ----

    @contextlib.contextmanager
    def _conn(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(str(self._db_path), timeout=30.0)
        conn.row_factory = sqlite3.Row
        with contextlib.suppress(sqlite3.Error):
            conn.execute("PRAGMA journal_mode=WAL")
        try:
            yield conn
        finally:
            conn.close()

    def _ensure_schema(self) -> None:
        with self._conn() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS pending_changes (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    table_name TEXT NOT NULL,
                    record_id TEXT NOT NULL,
                    operation TEXT NOT NULL,
                    payload TEXT NOT NULL DEFAULT '{}',
                    state TEXT NOT NULL DEFAULT 'pending',
                    revision INTEGER NOT NULL DEFAULT 1,
                    attempts INTEGER NOT NULL DEFAULT 0,
                    last_error TEXT,
                    enqueued_at INTEGER NOT NULL,
                    updated_at INTEGER NOT NULL,
                    UNIQUE(table_name, record_id)
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_pending_changes_state ON pending_changes(state, seq)")
            conn.commit()

    @staticmethod
    def _payload_to_str(payload: Mapping[str, Any]) -> str:
        try:
            return json.dumps(dict(payload), ensure_ascii=False, default=str)
        except (TypeError, ValueError):
            logger.exception("Failed to JSON-encode change payload; storing {}.")
            return "{}"

    @staticmethod
    def _str_to_payload(s: str | None) -> dict[str, Any]:
        if not s:
            return {}
        try:
            val = json.loads(s)
        except ValueError:
            return {}
        return val if isinstance(val, dict) else {}

    def _row_to_change(self, row: sqlite3.Row) -> PendingChange:
        return PendingChange(
            seq=int(row["seq"]),
            table=str(row["table_name"]),
            record_id=str(row["record_id"]),
            operation=Operation(row["operation"]),
            payload=self._str_to_payload(row["payload"]),
            state=ChangeState.from_db(row["state"]),
            revision=int(row["revision"]),
            attempts=int(row["attempts"] or 0),
            last_error=row["last_error"],
            enqueued_at=int(row["enqueued_at"] or 0),
            updated_at=int(row["updated_at"] or 0),
        )

    def _select(self, where: str = "", params: Iterable[Any] = ()) -> list[PendingChange]:
        sql = "SELECT * FROM pending_changes"
        if where:
            sql += f" WHERE {where}"
        sql += " ORDER BY seq ASC"
        with self._conn() as conn:
            rows = conn.execute(sql, list(params)).fetchall()
        return [self._row_to_change(r) for r in rows]

    # ---- public API ----

    def enqueue(
        self,
        table: str,
        record_id: str,
        operation: Operation | str,
        payload: Mapping[str, Any] | None = None,
    ) -> PendingChange:
        op = Operation(operation)
        now = now_ms()

        with self._conn() as conn:
            row = conn.execute(
                "SELECT * FROM pending_changes WHERE table_name = ? AND record_id = ?",
                (table, record_id),
            ).fetchone()

            if row is None:
                new_op, new_payload = coalesce(None, None, op, payload)
                conn.execute(
                    """
                    INSERT INTO pending_changes(
                        table_name, record_id, operation, payload,
                        state, revision, attempts, enqueued_at, updated_at
                    )
                    VALUES (?, ?, ?, ?, 'pending', 1, 0, ?, ?)
                    """,
                    (table, record_id, new_op.value, self._payload_to_str(new_payload), now, now),
                )
            else:
                prev = self._row_to_change(row)
                new_op, new_payload = coalesce(prev.operation, prev.payload, op, payload)
                # A fresh local edit re-arms an entry that hit the retry cap.
                state = ChangeState.PENDING if prev.state == ChangeState.FAILED else prev.state
                attempts = 0 if prev.state == ChangeState.FAILED else prev.attempts
                conn.execute(
                    """
                    UPDATE pending_changes
                    SET operation = ?, payload = ?, state = ?, attempts = ?,
                        revision = revision + 1, updated_at = ?
                    WHERE seq = ?
                    """,
                    (new_op.value, self._payload_to_str(new_payload), state.value, attempts, now, prev.seq),
                )
                logger.debug(
                    "Coalesced %s/%s: %s + %s -> %s",
                    table,
                    record_id,
                    prev.operation.value,
                    op.value,
                    new_op.value,
                )
            conn.commit()

        change = self.get(table, record_id)
        if change is None:
            raise RuntimeError(f"queued change {table}/{record_id} vanished after enqueue")
        return change

    def get(self, table: str, record_id: str) -> PendingChange | None:
        found = self._select("table_name = ? AND record_id = ?", (table, record_id))
        return found[0] if found else None

    def has_entry(self, table: str, record_id: str) -> bool:
        return self.get(table, record_id) is not None

    def forget(self, table: str, record_id: str) -> bool:
        """Drop the entry for a record whatever its state (its row is gone for good)."""
        with self._conn() as conn:
            cur = conn.execute(
                "DELETE FROM pending_changes WHERE table_name = ? AND record_id = ?",
                (table, record_id),
            )
            conn.commit()
        return cur.rowcount == 1

    def drain(self) -> list[PendingChange]:
        """Return pending changes in arrival order and mark them in flight."""
        with self._conn() as conn:
            rows = conn.execute(
                "SELECT seq FROM pending_changes WHERE state = 'pending' ORDER BY seq ASC"
            ).fetchall()
            seqs = [int(r["seq"]) for r in rows]
            if seqs:
                ph = ",".join("?" for _ in seqs)
                conn.execute(
                    f"UPDATE pending_changes SET state = 'in_flight' WHERE seq IN ({ph})",
                    seqs,
                )
                conn.commit()
        if not seqs:
            return []
        ph = ",".join("?" for _ in seqs)
        return self._select(f"seq IN ({ph})", seqs)

    def clear(self, changes: Iterable[PendingChange]) -> list[ChangeKey]:
        """
        Remove pushed changes.

        Only rows whose revision still matches the drained one are removed;
        a row edited during the push stays queued and is pushed again.
        """
        cleared: list[ChangeKey] = []
        with self._conn() as conn:
            for ch in changes:
                cur = conn.execute(
                    "DELETE FROM pending_changes WHERE table_name = ? AND record_id = ? AND revision = ?",
                    (ch.table, ch.record_id, ch.revision),
                )
                if cur.rowcount == 1:
                    cleared.append(ch.key)
                else:
                    logger.debug("Change %s/%s edited during push; kept", ch.table, ch.record_id)
            conn.commit()
        return cleared

    def release_in_flight(self) -> int:
        """Return every in-flight change to pending (end of a push, or crash recovery)."""
        with self._conn() as conn:
            cur = conn.execute("UPDATE pending_changes SET state = 'pending' WHERE state = 'in_flight'")
            conn.commit()
            return int(cur.rowcount)

    def record_failure(
        self,
        change: PendingChange,
        error: str,
        *,
        count_attempt: bool = True,
        max_attempts: int = 5,
    ) -> bool:
        """
        Store the failure of a push attempt.

        Returns True when the change has now hit max_attempts and was moved to
        the failed state. Attempts are only counted while the row is unchanged
        since drain; a newer local edit gets a fresh budget.
        """
        now = now_ms()
        with self._conn() as conn:
            row = conn.execute(
                "SELECT revision, attempts FROM pending_changes WHERE seq = ?",
                (change.seq,),
            ).fetchone()
            if row is None:
                return False

            attempts = int(row["attempts"] or 0)
            same_revision = int(row["revision"]) == change.revision
            if count_attempt and same_revision:
                attempts += 1
            dead = same_revision and attempts >= max(1, int(max_attempts))

            conn.execute(
                """
                UPDATE pending_changes
                SET attempts = ?, last_error = ?, updated_at = ?,
                    state = CASE WHEN ? THEN 'failed' ELSE state END
                WHERE seq = ?
                """,
                (attempts, str(error)[:500], now, 1 if dead else 0, change.seq),
            )
            conn.commit()

        if dead:
            logger.warning(
                "Change %s/%s (%s) failed %s times; needs attention: %s",
                change.table,
                change.record_id,
                change.operation.value,
                attempts,
                error,
            )
        return dead

    def peek_pending(self) -> list[PendingChange]:
        return self._select("state IN ('pending', 'in_flight')")

    def count_pending(self) -> int:
        with self._conn() as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM pending_changes WHERE state IN ('pending', 'in_flight')"
            ).fetchone()
        return int(row[0])

    def list_failed(self) -> list[PendingChange]:
        return self._select("state = 'failed'")

    def count_failed(self) -> int:
        with self._conn() as conn:
            row = conn.execute("SELECT COUNT(*) FROM pending_changes WHERE state = 'failed'").fetchone()
        return int(row[0])

    def requeue_failed(self, keys: Iterable[ChangeKey] | None = None) -> int:
        """Give failed changes a fresh retry budget."""
        return self._update_failed(
            "UPDATE pending_changes SET state = 'pending', attempts = 0, last_error = NULL",
            keys,
        )

    def discard_failed(self, keys: Iterable[ChangeKey] | None = None) -> int:
        """Drop failed changes (the user gave up on them)."""
        return self._update_failed("DELETE FROM pending_changes", keys)

    def _update_failed(self, stmt: str, keys: Iterable[ChangeKey] | None) -> int:
        with self._conn() as conn:
            if keys is None:
                cur = conn.execute(f"{stmt} WHERE state = 'failed'")
                n = int(cur.rowcount)
            else:
                n = 0
                for table, record_id in keys:
                    cur = conn.execute(
                        f"{stmt} WHERE state = 'failed' AND table_name = ? AND record_id = ?",
                        (table, record_id),
                    )
                    n += int(cur.rowcount)
            conn.commit()
        return n
