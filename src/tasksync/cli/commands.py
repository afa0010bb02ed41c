# src/tasksync/cli/commands.py

from __future__ import annotations

import contextlib
import inspect
import json
import logging
import uuid
from collections.abc import Callable
from datetime import datetime
from typing import Any, cast

from ..core.state import SyncSession
from ..core.timeutil import to_iso
from ..storage.offline_remote import InMemoryRemoteStore
from ..sync.mutations import MutationResult
from ..sync.models import Comment, Label, Project, Subtask, Task
from ..sync.schema import TABLE_ORDER, is_dirty, table_spec

CommandEmitter = Callable[[str], None]
CommandHandler2 = Callable[[SyncSession, list[str]], Any]
CommandHandler3 = Callable[[SyncSession, list[str], CommandEmitter | None], Any]
CommandHandler = CommandHandler2 | CommandHandler3

logger = logging.getLogger(__name__)


class CommandRegistry:
    """Simple slash-command registry used by the console (/help, /sync, ...)."""

    def __init__(self) -> None:
        self._handlers: dict[str, CommandHandler] = {}
        self._max_args: dict[str, int | None] = {}
        self._help: dict[str, str] = {}

    def register(
        self,
        name: str,
        handler: CommandHandler,
        help_text: str,
        aliases: list[str] | None = None,
        max_args: int | None = None,
    ) -> None:
        """
        max_args limits splitting: the last argument keeps the rest of the
        line verbatim (JSON payloads may contain spaces).
        """
        aliases = aliases or []
        key = name.lower()
        self._handlers[key] = handler
        self._max_args[key] = max_args
        self._help[key] = help_text
        for alias in aliases:
            self._handlers[alias.lower()] = handler
            self._max_args[alias.lower()] = max_args

    async def handle(
        self,
        session: SyncSession,
        line: str,
        emit: CommandEmitter | None = None,
    ) -> str | None:
        """
        Handle a string like "/command args".
        Returns a reply string or None if not a command.
        """
        if not line.startswith("/"):
            return None

        head, _, rest = line[1:].strip().partition(" ")
        if not head:
            return "Empty command. Use /help to list available commands."

        name = head.lower()
        handler = self._handlers.get(name)
        if not handler:
            return f"Unknown command: /{name}. Use /help to list available commands."

        max_args = self._max_args.get(name)
        rest = rest.strip()
        if not rest:
            args: list[str] = []
        elif max_args:
            args = rest.split(maxsplit=max_args - 1)
        else:
            args = rest.split()

        try:
            nparams = len(inspect.signature(handler).parameters)
        except (TypeError, ValueError):
            nparams = 3

        if nparams >= 3:
            result = cast(CommandHandler3, handler)(session, args, emit)
        else:
            result = cast(CommandHandler2, handler)(session, args)

        if inspect.isawaitable(result):
            result = await result
        return result

    def build_help(self) -> str:
        lines = ["Available commands:"]
        for name, help_text in self._help.items():
            lines.append(f"  /{name} - {help_text}")
        lines.append("  /exit - Quit.")
        return "\n".join(lines)


registry = CommandRegistry()

_TABLES_HINT = " | ".join(TABLE_ORDER)


def _ts_local(ms: int | None) -> str:
    if ms is None:
        return "never"
    return datetime.fromtimestamp(ms / 1000).astimezone().strftime("%Y-%m-%d %H:%M:%S")


def _parse_json_object(raw: str) -> dict[str, Any]:
    data = json.loads(raw)
    if not isinstance(data, dict):
        raise ValueError("payload must be a JSON object")
    return data


def _format_result(result: MutationResult) -> str:
    if not result.ok:
        return f"{result.operation.value} {result.table}/{result.record_id} failed: {result.error}"
    suffix = " (queued)" if result.queued else ""
    return f"{result.operation.value} {result.table}/{result.record_id} ok{suffix}"


def _describe(view: Project | Label | Task | Subtask | Comment) -> str:
    if isinstance(view, Task):
        done = " done" if view.is_completed else ""
        return f"{view.title} [{view.status.value}] p{view.priority}{done}"
    if isinstance(view, Subtask):
        return f"[{'x' if view.completed else ' '}] {view.title}"
    if isinstance(view, Comment):
        return view.content
    return view.name


def cmd_help(session: SyncSession, args: list[str]) -> str:
    return registry.build_help()


def cmd_status(session: SyncSession, args: list[str]) -> str:
    st = session.status()
    online = session.monitor.online
    lines = [
        "Status:",
        f"  Owner: {session.owner_id}",
        f"  Mode: {'direct (no local store)' if session.direct_mode else 'offline-first'}",
        f"  Connectivity: {'unknown' if online is None else ('online' if online else 'offline')}",
        f"  Phase: {st.phase.value}",
        f"  Last sync: {_ts_local(st.last_synced_at)}",
        f"  Pending changes: {st.pending_count}",
        f"  Failed changes: {st.failed_count}",
    ]
    if st.last_error:
        lines.append(f"  Last error: {st.last_error}")
    if st.next_retry_at is not None:
        lines.append(f"  Next retry: {_ts_local(st.next_retry_at)}")
    return "\n".join(lines)


async def cmd_sync(session: SyncSession, args: list[str], emit: CommandEmitter | None = None) -> str:
    if emit:
        with contextlib.suppress(Exception):
            emit("[SYNC] Syncing...")

    report = await session.request_sync()
    if report.skipped:
        return f"Sync skipped: {report.skipped}."

    parts = [
        f"pushed={len(report.pushed)}",
        f"inserted={len(report.inserted)}",
        f"updated={len(report.updated)}",
        f"kept_local={len(report.kept_local)}",
    ]
    if report.ok:
        return "Sync ok: " + " ".join(parts)
    return f"Sync finished with errors: {' '.join(parts)}; first error: {report.first_error}"


def cmd_add(session: SyncSession, args: list[str]) -> str:
    """
    /add <table> <json>   -> create a record (id is generated unless given)
    """
    if len(args) < 2:
        return f"Usage: /add <table> <json>. Tables: {_TABLES_HINT}."
    table, raw = args
    try:
        payload = _parse_json_object(raw)
        record_id = str(payload.pop("id", "") or uuid.uuid4())
        result = session.submit_mutation(table, record_id, "create", payload)
    except ValueError as e:
        return f"Invalid input: {e}"
    return _format_result(result)


def cmd_edit(session: SyncSession, args: list[str]) -> str:
    if len(args) < 3:
        return "Usage: /edit <table> <id> <json>."
    table, record_id, raw = args
    try:
        result = session.submit_mutation(table, record_id, "update", _parse_json_object(raw))
    except ValueError as e:
        return f"Invalid input: {e}"
    return _format_result(result)


def cmd_rm(session: SyncSession, args: list[str]) -> str:
    if len(args) < 2:
        return "Usage: /rm <table> <id>."
    table, record_id = args[0], args[1]
    try:
        result = session.submit_mutation(table, record_id, "delete")
    except ValueError as e:
        return f"Invalid input: {e}"
    return _format_result(result)


def cmd_list(session: SyncSession, args: list[str]) -> str:
    if not args:
        return f"Usage: /list <table>. Tables: {_TABLES_HINT}."
    table = args[0]
    try:
        model = table_spec(table).model
        records = session.local.query(table, {"ownerId": session.owner_id})
    except ValueError as e:
        return f"Invalid input: {e}"
    if not records:
        return f"No {table} stored locally."
    lines = [f"{table} ({len(records)}):"]
    for r in records:
        flag = "*" if is_dirty(r) else " "
        lines.append(f" {flag} {r['id']}  {_describe(model.from_record(r))}  (updated {to_iso(r.get('updatedAt'))})")
    return "\n".join(lines)


def cmd_pending(session: SyncSession, args: list[str]) -> str:
    if session.queue is None:
        return "No change queue in direct mode."
    changes = session.queue.peek_pending()
    if not changes:
        return "No pending changes."
    lines = [f"Pending changes ({len(changes)}):"]
    for c in changes:
        lines.append(f"  #{c.seq} {c.operation.value} {c.table}/{c.record_id} attempts={c.attempts}")
    return "\n".join(lines)


def cmd_failed(session: SyncSession, args: list[str]) -> str:
    if session.queue is None:
        return "No change queue in direct mode."
    changes = session.queue.list_failed()
    if not changes:
        return "No failed changes."
    lines = [f"Failed changes ({len(changes)}):"]
    for c in changes:
        lines.append(f"  {c.operation.value} {c.table}/{c.record_id} attempts={c.attempts}: {c.last_error}")
    return "\n".join(lines)


def cmd_retry(session: SyncSession, args: list[str]) -> str:
    """
    /retry          -> re-arm all failed changes
    /retry drop     -> discard all failed changes
    """
    if session.queue is None:
        return "No change queue in direct mode."
    if args and args[0].lower() == "drop":
        n = session.queue.discard_failed()
        return f"Discarded {n} failed change(s)."
    n = session.queue.requeue_failed()
    return f"Re-queued {n} failed change(s). Use /sync to push them now."


def _set_connectivity(session: SyncSession, online: bool) -> bool:
    # The offline demo backend can be switched off to simulate an outage.
    if isinstance(session.remote, InMemoryRemoteStore):
        session.remote.online = online
    return session.monitor.set_reachable(online)


def cmd_online(session: SyncSession, args: list[str]) -> str:
    edge = _set_connectivity(session, True)
    return "Connectivity: online (sync triggered)." if edge else "Connectivity: online."


def cmd_offline(session: SyncSession, args: list[str]) -> str:
    _set_connectivity(session, False)
    return "Connectivity: offline. Changes will be queued."


registry.register("help", cmd_help, help_text="Show available commands.", aliases=["h", "?"])
registry.register("status", cmd_status, help_text="Show sync status (phase/pending/failed/last sync).")
registry.register("sync", cmd_sync, help_text="Run a sync cycle now.")
registry.register("add", cmd_add, help_text="Create a record: /add <table> <json>.", max_args=2)
registry.register("edit", cmd_edit, help_text="Update a record: /edit <table> <id> <json>.", max_args=3)
registry.register("rm", cmd_rm, help_text="Delete a record: /rm <table> <id>.", aliases=["del"])
registry.register("list", cmd_list, help_text="List local records: /list <table>.", aliases=["ls"])
registry.register("pending", cmd_pending, help_text="Show queued local changes.")
registry.register("failed", cmd_failed, help_text="Show changes that gave up after repeated rejection.")
registry.register("retry", cmd_retry, help_text="Re-arm failed changes: /retry | /retry drop.")
registry.register("online", cmd_online, help_text="Report connectivity as restored.")
registry.register("offline", cmd_offline, help_text="Report connectivity as lost.")
