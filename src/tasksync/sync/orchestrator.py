# src/tasksync/sync/orchestrator.py

from __future__ import annotations

"""
Sync orchestrator.

One cycle = push, then pull:

push:
- drain the change queue,
- apply every change to the remote store independently,
- clear pushed changes and stamp syncedAt on the local row,
- keep failed changes queued (capped retries for rejected payloads).

pull:
- per table (parents first) fetch remote rows changed since the watermark,
- insert unknown rows, overwrite clean rows, keep dirty rows (local wins),
- advance the per-table watermark to the newest updatedAt seen.

At most one cycle runs at a time; concurrent requests join the running one.
A cycle that is not fully successful moves to ERROR and schedules a retry
with exponential backoff.
"""

import asyncio
import contextlib
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from ..core.errors import ConnectivityError, StoreError
from ..core.ports import Listener, LocalStore, Record, RemoteStore
from ..core.timeutil import now_ms
from .change_queue import ChangeKey, ChangeQueue, PendingChange
from .connectivity import ConnectivityMonitor
from .models import Operation
from .mutations import apply_remote_change
from .schema import TABLE_ORDER, comparable, is_dirty, normalize_record

logger = logging.getLogger(__name__)

Clock = Callable[[], int]


class SyncPhase(StrEnum):
    IDLE = "idle"
    PUSHING = "pushing"
    PULLING = "pulling"
    ERROR = "error"


@dataclass(frozen=True, slots=True)
class SyncStatus:
    phase: SyncPhase
    last_synced_at: int | None
    pending_count: int
    failed_count: int
    last_error: str | None = None
    next_retry_at: int | None = None

    def describe(self) -> str:
        parts = [f"phase={self.phase.value}", f"pending={self.pending_count}"]
        if self.failed_count:
            parts.append(f"failed={self.failed_count}")
        parts.append(f"last_sync={self.last_synced_at if self.last_synced_at is not None else 'never'}")
        if self.last_error:
            parts.append(f"last_error={self.last_error}")
        return " ".join(parts)


@dataclass(frozen=True, slots=True)
class PushFailure:
    key: ChangeKey
    operation: Operation
    error: str
    retryable: bool
    dead_lettered: bool = False


@dataclass(slots=True)
class SyncReport:
    started_at: int
    finished_at: int | None = None
    skipped: str | None = None

    pushed: list[ChangeKey] = field(default_factory=list)
    push_failures: list[PushFailure] = field(default_factory=list)

    inserted: list[ChangeKey] = field(default_factory=list)
    updated: list[ChangeKey] = field(default_factory=list)
    kept_local: list[ChangeKey] = field(default_factory=list)
    unchanged: int = 0
    ignored: int = 0
    merge_failures: list[str] = field(default_factory=list)
    pull_errors: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.push_failures and not self.pull_errors

    @property
    def first_error(self) -> str | None:
        if self.push_failures:
            return self.push_failures[0].error
        if self.pull_errors:
            return self.pull_errors[0]
        return None


class SyncOrchestrator:
    def __init__(
            self,
            local: LocalStore,
            remote: RemoteStore,
            queue: ChangeQueue | None,
            owner_id: str,
            *,
            clock: Clock = now_ms,
            max_push_attempts: int = 5,
            backoff_base_seconds: float = 2.0,
            backoff_max_seconds: float = 300.0,
            monitor: ConnectivityMonitor | None = None,
    ) -> None:
        if not owner_id:
            raise ValueError("owner_id is required")
        self._local = local
        self._remote = remote
        self._queue = queue
        self._owner_id = owner_id
        self._clock = clock
        self._max_push_attempts = max(1, int(max_push_attempts))
        self._backoff_base = max(0.0, float(backoff_base_seconds))
        self._backoff_max = max(self._backoff_base, float(backoff_max_seconds))

        self._monitor = monitor
        self._listeners: list[Listener] = []
        self._cycle: asyncio.Future[SyncReport] | None = None
        self._retry_task: asyncio.Task | None = None
        self._closing = False

        self._phase = SyncPhase.IDLE
        self._failures = 0
        self._last_error: str | None = None
        self._next_retry_at: int | None = None
        self._last_synced_at = self._load_int_meta(self._last_sync_key())

    # ---- properties / status ----

    @property
    def owner_id(self) -> str:
        return self._owner_id

    @property
    def phase(self) -> SyncPhase:
        return self._phase

    @property
    def consecutive_failures(self) -> int:
        return self._failures

    def is_running(self) -> bool:
        return self._cycle is not None and not self._cycle.done()

    def status(self) -> SyncStatus:
        pending = failed = 0
        if self._queue is not None:
            pending = self._queue.count_pending()
            failed = self._queue.count_failed()
        return SyncStatus(
            phase=self._phase,
            last_synced_at=self._last_synced_at,
            pending_count=pending,
            failed_count=failed,
            last_error=self._last_error,
            next_retry_at=self._next_retry_at,
        )

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """listener(status: SyncStatus) is called on every phase change and after each cycle."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _publish(self) -> None:
        if not self._listeners:
            return
        snapshot = self.status()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("Sync status listener failed")

    def _set_phase(self, phase: SyncPhase) -> None:
        if phase == self._phase:
            return
        logger.debug("Sync phase %s -> %s", self._phase.value, phase.value)
        self._phase = phase
        self._publish()

    # ---- bookkeeping ----

    def _last_sync_key(self) -> str:
        return f"last_sync:{self._owner_id}"

    def _watermark_key(self, table: str) -> str:
        return f"watermark:{self._owner_id}:{table}"

    def _load_int_meta(self, key: str) -> int | None:
        try:
            raw = self._local.get_meta(key)
        except StoreError:
            logger.exception("Failed to read sync metadata %s", key)
            return None
        if raw is None:
            return None
        try:
            return int(raw)
        except ValueError:
            logger.warning("Ignoring corrupt sync metadata %s=%r", key, raw)
            return None

    def _store_int_meta(self, key: str, value: int) -> None:
        try:
            self._local.set_meta(key, str(int(value)))
        except StoreError:
            logger.exception("Failed to write sync metadata %s", key)

    def watermark(self, table: str) -> int | None:
        return self._load_int_meta(self._watermark_key(table))

    # ---- triggers ----

    def attach(self, monitor: ConnectivityMonitor) -> Callable[[], None]:
        """Skip cycles while offline and sync as soon as connectivity returns."""
        self._monitor = monitor
        return monitor.subscribe(self._on_reconnect)

    def _on_reconnect(self) -> Any:
        logger.info("Back online; requesting sync")
        return self.request_sync()

    async def request_sync(self) -> SyncReport:
        """
        Run a sync cycle, or join the one already in flight.

        Never raises for store/network failures; inspect the returned report
        or status() instead.
        """
        cycle = self._cycle
        if cycle is None or cycle.done():
            cycle = asyncio.ensure_future(self._run_cycle())
            self._cycle = cycle
        else:
            logger.debug("Sync already running; joining in-flight cycle")
        return await asyncio.shield(cycle)

    async def run_periodic(self, interval_seconds: float = 60.0) -> None:
        """Recurring schedule. To stop it, cancel the coroutine/task."""
        sleep_s = max(0.01, float(interval_seconds))
        while True:
            try:
                await self.request_sync()
            except Exception:
                logger.exception("Periodic sync failed")
            await asyncio.sleep(sleep_s)

    # ---- retry / backoff ----

    def backoff_delay(self, failures: int) -> float:
        """Seconds to wait after `failures` consecutive failed cycles (1 -> base)."""
        if failures <= 0:
            return 0.0
        return float(min(self._backoff_base * (2 ** (failures - 1)), self._backoff_max))

    def _cancel_retry(self) -> None:
        task = self._retry_task
        self._retry_task = None
        self._next_retry_at = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def _schedule_retry(self) -> None:
        self._cancel_retry()
        if self._closing:
            logger.debug("Closing; not scheduling a retry")
            return
        delay = self.backoff_delay(self._failures)
        self._next_retry_at = self._clock() + int(delay * 1000)
        self._retry_task = asyncio.get_running_loop().create_task(self._retry_after(delay))
        logger.info("Sync failed (%s in a row); retrying in %.1fs", self._failures, delay)

    async def _retry_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        self._retry_task = None
        self._next_retry_at = None
        self._set_phase(SyncPhase.IDLE)
        try:
            await self.request_sync()
        except Exception:
            logger.exception("Retry sync failed")

    # ---- cycle ----

    async def _run_cycle(self) -> SyncReport:
        report = SyncReport(started_at=self._clock())

        if self._queue is None or not self._local.persistent:
            report.skipped = "no local persistence"
            report.finished_at = self._clock()
            return report

        if self._monitor is not None and not self._monitor.is_online():
            report.skipped = "offline"
            report.finished_at = self._clock()
            logger.debug("Sync skipped: offline")
            return report

        self._cancel_retry()
        logger.info("Sync cycle started owner=%s", self._owner_id)
        try:
            self._set_phase(SyncPhase.PUSHING)
            await self._push(report)
            self._set_phase(SyncPhase.PULLING)
            await self._pull(report)
        except Exception as e:
            logger.exception("Sync cycle crashed")
            report.pull_errors.append(f"internal error: {e}")

        report.finished_at = self._clock()
        if report.ok:
            self._failures = 0
            self._last_error = None
            self._last_synced_at = report.finished_at
            self._store_int_meta(self._last_sync_key(), report.finished_at)
            self._set_phase(SyncPhase.IDLE)
            logger.info(
                "Sync cycle ok pushed=%s inserted=%s updated=%s kept_local=%s",
                len(report.pushed),
                len(report.inserted),
                len(report.updated),
                len(report.kept_local),
            )
        else:
            self._failures += 1
            self._last_error = report.first_error
            self._phase = SyncPhase.ERROR
            self._schedule_retry()
            logger.warning(
                "Sync cycle failed push_failures=%s pull_errors=%s first_error=%s",
                len(report.push_failures),
                len(report.pull_errors),
                report.first_error,
            )
        self._publish()
        return report

    # ---- push ----

    async def _push(self, report: SyncReport) -> None:
        if self._queue is None:
            return
        changes = self._queue.drain()
        if changes:
            logger.debug("Pushing %s change(s)", len(changes))
        try:
            for change in changes:
                await self._push_one(self._queue, change, report)
        finally:
            self._queue.release_in_flight()

    async def _push_one(self, queue: ChangeQueue, change: PendingChange, report: SyncReport) -> None:
        try:
            await self._apply_remote(change)
        except ConnectivityError as e:
            queue.record_failure(change, str(e), count_attempt=False, max_attempts=self._max_push_attempts)
            report.push_failures.append(PushFailure(change.key, change.operation, str(e), retryable=True))
            logger.info("Push deferred %s/%s: %s", change.table, change.record_id, e)
            return
        except StoreError as e:
            dead = queue.record_failure(change, str(e), max_attempts=self._max_push_attempts)
            report.push_failures.append(
                PushFailure(change.key, change.operation, str(e), retryable=False, dead_lettered=dead)
            )
            logger.warning("Push rejected %s/%s (%s): %s", change.table, change.record_id, change.operation.value, e)
            return
        except Exception as e:
            logger.exception("Push crashed %s/%s", change.table, change.record_id)
            dead = queue.record_failure(change, repr(e), max_attempts=self._max_push_attempts)
            report.push_failures.append(
                PushFailure(change.key, change.operation, repr(e), retryable=False, dead_lettered=dead)
            )
            return

        cleared = queue.clear([change])
        report.pushed.append(change.key)
        if cleared and change.operation != Operation.DELETE:
            self._mark_synced(change.table, change.record_id)

    def _push_body(self, change: PendingChange, local: Record | None) -> Record:
        body: Record = dict(local) if local is not None else dict(change.payload)
        body.pop("syncedAt", None)
        body["id"] = change.record_id
        body["ownerId"] = self._owner_id
        return body

    async def _apply_remote(self, change: PendingChange) -> None:
        body: Record = {}
        if change.operation != Operation.DELETE:
            # Stored row, not the read view: label ids unknown locally still go out.
            body = self._push_body(change, self._local.get_stored(change.table, change.record_id))
        await apply_remote_change(self._remote, change.table, change.record_id, change.operation, body)

    def _mark_synced(self, table: str, record_id: str) -> None:
        try:
            local = self._local.get_stored(table, record_id)
            if local is None:
                return
            synced_at = max(self._clock(), int(local.get("updatedAt") or 0))
            self._local.update(table, record_id, {"syncedAt": synced_at})
        except StoreError:
            logger.exception("Pushed %s/%s but could not stamp syncedAt", table, record_id)

    # ---- pull ----

    async def _pull(self, report: SyncReport) -> None:
        for table in TABLE_ORDER:
            since = self.watermark(table)
            try:
                rows = await self._remote.fetch_changed_since(table, self._owner_id, since)
            except (StoreError, ValueError) as e:
                report.pull_errors.append(f"{table}: {e}")
                logger.warning("Pull %s failed: %s", table, e)
                continue

            newest = since
            complete = True
            for remote_rec in rows:
                updated = remote_rec.get("updatedAt")
                if updated is not None:
                    newest = updated if newest is None else max(newest, updated)
                try:
                    self._merge_one(table, remote_rec, report)
                except (StoreError, ValueError) as e:
                    complete = False
                    report.merge_failures.append(f"{table}/{remote_rec.get('id')}: {e}")
                    logger.warning("Merge %s/%s failed: %s", table, remote_rec.get("id"), e)

            if complete and newest is not None and newest != since:
                self._store_int_meta(self._watermark_key(table), newest)

    def _merge_one(self, table: str, remote_rec: Record, report: SyncReport) -> None:
        record_id = remote_rec.get("id")
        if not record_id:
            report.ignored += 1
            return
        key = (table, str(record_id))

        if remote_rec.get("ownerId") != self._owner_id:
            report.ignored += 1
            logger.warning("Ignoring %s/%s owned by someone else", table, record_id)
            return

        # Queued local change: the next push will overwrite the remote copy.
        if self._queue is not None and self._queue.has_entry(table, record_id):
            report.kept_local.append(key)
            return

        # labelIds are stored as received; unknown ids are only hidden on read.
        incoming = normalize_record(table, remote_rec)
        incoming["syncedAt"] = incoming.get("updatedAt") or self._clock()

        local = self._local.get_stored(table, record_id)
        if local is None:
            self._local.create(table, incoming)
            report.inserted.append(key)
            return

        if is_dirty(local):
            report.kept_local.append(key)
            return

        if comparable(table, local) == comparable(table, incoming):
            report.unchanged += 1
            return

        self._local.update(table, record_id, incoming)
        report.updated.append(key)

    # ---- lifecycle ----

    async def close(self) -> None:
        """Stop retries, let an in-flight cycle finish, reset session status."""
        self._closing = True
        try:
            self._cancel_retry()
            cycle = self._cycle
            if cycle is not None and not cycle.done():
                with contextlib.suppress(Exception):
                    await asyncio.shield(cycle)
            # The awaited cycle may have failed and asked for a retry.
            self._cancel_retry()
        finally:
            self._closing = False
        self._cycle = None
        self._phase = SyncPhase.IDLE
        self._failures = 0
        self._last_error = None
        self._listeners.clear()
