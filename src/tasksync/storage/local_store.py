# src/tasksync/storage/local_store.py

from __future__ import annotations

import contextlib
import json
import logging
import sqlite3
from collections.abc import Callable, Iterator, Mapping
from pathlib import Path
from typing import Any

from ..core.errors import StoreError
from ..core.ports import Predicate, Record
from ..sync.schema import (
    SCHEMA_VERSION,
    TABLE_ORDER,
    FieldKind,
    FieldSpec,
    TableSpec,
    missing_required,
    normalize_record,
    table_spec,
)

logger = logging.getLogger(__name__)


def _q(name: str) -> str:
    """Quote an SQL identifier ("order" is a keyword)."""
    return '"' + name.replace('"', '""') + '"'


def _sql_type(f: FieldSpec) -> str:
    if f.kind in (FieldKind.INT, FieldKind.BOOL, FieldKind.TIMESTAMP):
        return "INTEGER"
    return "TEXT"


def _sql_default(f: FieldSpec) -> str | None:
    if f.default is None:
        return None
    if f.kind == FieldKind.ID_LIST:
        return "'[]'"
    if f.kind == FieldKind.BOOL:
        return "1" if f.default else "0"
    if f.kind == FieldKind.INT:
        return str(int(f.default))
    return "'" + str(f.default).replace("'", "''") + "'"


class SQLiteLocalStore:
    """
    Embedded SQLite store mirroring the synced tables on the device.

    The schema comes from sync/schema.py and is migration-safe:
    - create tables if missing
    - use PRAGMA table_info to detect missing columns
    - add columns with ALTER TABLE only when needed
    - PRAGMA user_version records the schema version

    Foreign keys are enforced (tasks.project_id -> SET NULL,
    subtasks/comments.task_id -> CASCADE). Task labelIds pointing at labels
    that do not exist for the same owner are dropped on read.

    Thread-safety:
    - each method opens its own SQLite connection
    """

    persistent = True

    def __init__(self, db_path: str | Path) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._ensure_schema()
        logger.info("SQLiteLocalStore ready db=%s schema_version=%s", self._db_path, SCHEMA_VERSION)

    @property
    def db_path(self) -> Path:
        return self._db_path

    # ---- low-level helpers ----

    def _get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._db_path), timeout=30.0)
        conn.row_factory = sqlite3.Row
        with contextlib.suppress(sqlite3.Error):
            conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")
        return conn

    @contextlib.contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        """Connection scope that maps sqlite failures to StoreError."""
        try:
            conn = self._get_conn()
        except sqlite3.Error as e:
            raise StoreError(f"cannot open local db {self._db_path}: {e}") from e
        try:
            yield conn
        except sqlite3.IntegrityError as e:
            conn.rollback()
            raise StoreError(f"constraint violation: {e}") from e
        except sqlite3.Error as e:
            conn.rollback()
            raise StoreError(f"local db error: {e}") from e
        finally:
            conn.close()

    @staticmethod
    def _create_table_sql(spec: TableSpec) -> str:
        cols: list[str] = []
        fks: list[str] = []
        for f in spec.fields:
            decl = f"{_q(f.column)} {_sql_type(f)}"
            if f.name == "id":
                decl += " PRIMARY KEY"
            elif f.required:
                decl += " NOT NULL"
            default = _sql_default(f)
            if default is not None:
                decl += f" DEFAULT {default}"
            cols.append(decl)
            if f.references:
                fk = f"FOREIGN KEY({_q(f.column)}) REFERENCES {_q(f.references)}(id)"
                if f.on_delete:
                    fk += f" ON DELETE {f.on_delete}"
                fks.append(fk)
        body = ",\n    ".join(cols + fks)
        return f"CREATE TABLE IF NOT EXISTS {_q(spec.name)} (\n    {body}\n)"

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            cur = conn.cursor()
            version = cur.execute("PRAGMA user_version").fetchone()[0]

            for name in TABLE_ORDER:
                spec = table_spec(name)
                cur.execute(self._create_table_sql(spec))

                # Migrations (safe): add missing columns.
                cur.execute(f"PRAGMA table_info({_q(spec.name)})")
                existing = {row["name"] for row in cur.fetchall()}
                for f in spec.fields:
                    if f.column in existing:
                        continue
                    decl = _sql_type(f)
                    default = _sql_default(f)
                    if default is not None:
                        decl += f" DEFAULT {default}"
                    cur.execute(f"ALTER TABLE {_q(spec.name)} ADD COLUMN {_q(f.column)} {decl}")
                    logger.info("Local store migration: %s.%s added", spec.name, f.column)

                if spec.field("ownerId"):
                    cur.execute(
                        f"CREATE INDEX IF NOT EXISTS {_q('idx_' + spec.name + '_owner')} "
                        f"ON {_q(spec.name)}(user_id, updated_at)"
                    )

            cur.execute("CREATE INDEX IF NOT EXISTS idx_tasks_project ON tasks(project_id)")
            cur.execute("CREATE INDEX IF NOT EXISTS idx_subtasks_task ON subtasks(task_id)")
            cur.execute("CREATE INDEX IF NOT EXISTS idx_comments_task ON comments(task_id)")
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS sync_meta (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                )
                """
            )

            if int(version) < SCHEMA_VERSION:
                cur.execute(f"PRAGMA user_version = {int(SCHEMA_VERSION)}")
                logger.info("Local store schema version %s -> %s", version, SCHEMA_VERSION)
            conn.commit()

    @staticmethod
    def _row_to_record(spec: TableSpec, row: sqlite3.Row) -> Record:
        keys = set(row.keys())
        rec: Record = {}
        for f in spec.fields:
            if f.column not in keys:
                continue
            v = row[f.column]
            if f.kind == FieldKind.ID_LIST:
                try:
                    parsed = json.loads(v) if v else []
                except ValueError:
                    parsed = []
                v = [str(x) for x in parsed] if isinstance(parsed, list) else []
            elif f.kind == FieldKind.BOOL and v is not None:
                v = bool(v)
            rec[f.name] = v
        return rec

    @staticmethod
    def _to_params(spec: TableSpec, record: Mapping[str, Any]) -> tuple[list[str], list[Any]]:
        cols: list[str] = []
        params: list[Any] = []
        for f in spec.fields:
            if f.name not in record:
                continue
            v = record[f.name]
            if f.kind == FieldKind.ID_LIST:
                v = json.dumps(list(v or []), ensure_ascii=False)
            elif f.kind == FieldKind.BOOL and v is not None:
                v = 1 if v else 0
            cols.append(f.column)
            params.append(v)
        return cols, params

    def _drop_orphan_labels(self, conn: sqlite3.Connection, records: list[Record]) -> list[Record]:
        if not records:
            return records
        owned: dict[str, set[str]] = {}
        for row in conn.execute("SELECT id, user_id FROM labels"):
            owned.setdefault(row["user_id"], set()).add(row["id"])
        for rec in records:
            ids = rec.get("labelIds") or []
            known = owned.get(rec.get("ownerId"), set())
            kept = [i for i in ids if i in known]
            if len(kept) != len(ids):
                logger.debug("Dropping orphan labels task=%s orphans=%s", rec.get("id"), set(ids) - known)
            rec["labelIds"] = kept
        return records

    def _read(
            self,
            conn: sqlite3.Connection,
            spec: TableSpec,
            sql: str,
            params: list[Any],
            *,
            resolve_labels: bool = True,
    ) -> list[Record]:
        rows = conn.execute(sql, params).fetchall()
        records = [self._row_to_record(spec, r) for r in rows]
        if resolve_labels and spec.name == "tasks":
            records = self._drop_orphan_labels(conn, records)
        return records

    # ---- public API ----

    def get(self, table: str, record_id: str) -> Record | None:
        spec = table_spec(table)
        with self._connect() as conn:
            found = self._read(conn, spec, f"SELECT * FROM {_q(spec.name)} WHERE id = ?", [record_id])
        return found[0] if found else None

    def get_stored(self, table: str, record_id: str) -> Record | None:
        """Row as persisted: labelIds are not filtered against existing labels."""
        spec = table_spec(table)
        with self._connect() as conn:
            found = self._read(
                conn, spec, f"SELECT * FROM {_q(spec.name)} WHERE id = ?", [record_id], resolve_labels=False
            )
        return found[0] if found else None

    def query(self, table: str, predicate: Predicate | None = None) -> list[Record]:
        spec = table_spec(table)
        where: list[str] = []
        params: list[Any] = []
        check: Callable[[Record], bool] | None = None

        if isinstance(predicate, Mapping):
            flt = normalize_record(table, predicate)
            unknown = set(predicate) - set(flt)
            if unknown:
                raise ValueError(f"unknown fields for {table}: {sorted(unknown)}")
            _, values = self._to_params(spec, flt)
            for name, value in zip(flt, values, strict=True):
                col = _q(spec.field(name).column)  # type: ignore[union-attr]
                if value is None:
                    where.append(f"{col} IS NULL")
                else:
                    where.append(f"{col} = ?")
                    params.append(value)
        elif predicate is not None:
            check = predicate

        sql = f"SELECT * FROM {_q(spec.name)}"
        if where:
            sql += " WHERE " + " AND ".join(where)
        sql += " ORDER BY created_at ASC, id ASC"

        with self._connect() as conn:
            records = self._read(conn, spec, sql, params)
        if check is not None:
            records = [r for r in records if check(r)]
        return records

    def create(self, table: str, record: Mapping[str, Any]) -> Record | None:
        spec = table_spec(table)
        rec = normalize_record(table, record)
        missing = missing_required(table, rec)
        if missing:
            raise StoreError(f"{table}: missing required fields {missing}")

        cols, params = self._to_params(spec, rec)
        placeholders = ", ".join("?" for _ in cols)
        sql = f"INSERT INTO {_q(spec.name)} ({', '.join(_q(c) for c in cols)}) VALUES ({placeholders})"
        with self._connect() as conn:
            conn.execute(sql, params)
            conn.commit()
        logger.debug("Local create %s id=%s", table, rec["id"])
        return self.get(table, rec["id"])

    def update(self, table: str, record_id: str, patch: Mapping[str, Any]) -> Record | None:
        spec = table_spec(table)
        rec = normalize_record(table, patch)
        rec.pop("id", None)
        if not rec:
            return self.get(table, record_id)

        cols, params = self._to_params(spec, rec)
        assignments = ", ".join(f"{_q(c)} = ?" for c in cols)
        with self._connect() as conn:
            cur = conn.execute(
                f"UPDATE {_q(spec.name)} SET {assignments} WHERE id = ?",
                [*params, record_id],
            )
            conn.commit()
            if cur.rowcount == 0:
                return None
        return self.get(table, record_id)

    def delete(self, table: str, record_id: str) -> Record | None:
        spec = table_spec(table)
        existing = self.get(table, record_id)
        if existing is None:
            return None
        with self._connect() as conn:
            conn.execute(f"DELETE FROM {_q(spec.name)} WHERE id = ?", [record_id])
            conn.commit()
        logger.debug("Local delete %s id=%s", table, record_id)
        return existing

    def count(self, table: str) -> int:
        spec = table_spec(table)
        with self._connect() as conn:
            n = conn.execute(f"SELECT COUNT(*) FROM {_q(spec.name)}").fetchone()[0]
        return int(n)

    # ---- sync bookkeeping ----

    def get_meta(self, key: str) -> str | None:
        with self._connect() as conn:
            row = conn.execute("SELECT value FROM sync_meta WHERE key = ?", [key]).fetchone()
        return row["value"] if row else None

    def set_meta(self, key: str, value: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO sync_meta(key, value) VALUES (?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                [key, str(value)],
            )
            conn.commit()


class NullLocalStore:
    """
    Local store for platforms without embedded persistence (web).

    Reads are always empty; writes are accepted and dropped. Mutations on
    such platforms go straight to the remote store.
    """

    persistent = False

    def get(self, table: str, record_id: str) -> Record | None:
        table_spec(table)
        return None

    def get_stored(self, table: str, record_id: str) -> Record | None:
        table_spec(table)
        return None

    def query(self, table: str, predicate: Predicate | None = None) -> list[Record]:
        table_spec(table)
        return []

    def create(self, table: str, record: Mapping[str, Any]) -> Record | None:
        return normalize_record(table, record)

    def update(self, table: str, record_id: str, patch: Mapping[str, Any]) -> Record | None:
        table_spec(table)
        return None

    def delete(self, table: str, record_id: str) -> Record | None:
        table_spec(table)
        return None

    def count(self, table: str) -> int:
        return 0

    def get_meta(self, key: str) -> str | None:
        return None

    def set_meta(self, key: str, value: str) -> None:
        return
