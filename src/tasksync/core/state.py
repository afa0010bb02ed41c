# src/tasksync/core/state.py

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from ..sync.change_queue import ChangeQueue
from ..sync.connectivity import ConnectivityMonitor
from ..sync.models import Operation
from ..sync.mutations import MutationResult, apply_local_mutation, apply_remote_change
from ..sync.orchestrator import SyncOrchestrator, SyncReport, SyncStatus
from .errors import StoreError
from .ports import Listener, LocalStore, RemoteStore
from .timeutil import now_ms

logger = logging.getLogger(__name__)


@dataclass
class SyncSession:
    """
    Everything one signed-in user needs for offline-first sync.

    Built by cli.bootstrap.create_session(); the UI only talks to
    submit_mutation / request_sync / status / subscribe.
    """

    settings: Any
    owner_id: str

    local: LocalStore
    remote: RemoteStore
    queue: ChangeQueue | None
    monitor: ConnectivityMonitor
    orchestrator: SyncOrchestrator

    clock: Callable[[], int] = now_ms
    sync_interval_seconds: float = 60.0
    probe_close: Callable[[], Awaitable[None]] | None = None

    _tasks: set[asyncio.Task] = field(default_factory=set, repr=False)
    _unsubscribers: list[Callable[[], None]] = field(default_factory=list, repr=False)
    _started: bool = field(default=False, repr=False)

    @property
    def direct_mode(self) -> bool:
        """No local persistence: mutations go straight to the remote store."""
        return self.queue is None or not self.local.persistent

    # ---- UI-facing API ----

    def submit_mutation(
        self,
        table: str,
        record_id: str,
        operation: Operation | str,
        payload: Mapping[str, Any] | None = None,
    ) -> MutationResult:
        result = apply_local_mutation(
            self.local,
            None if self.direct_mode else self.queue,
            table,
            record_id,
            operation,
            payload,
            owner_id=self.owner_id,
            now=self.clock(),
        )
        if result.ok and self.direct_mode:
            body = dict(result.change or {})
            if result.operation != Operation.DELETE:
                body.pop("syncedAt", None)
                body["id"] = record_id
                body["ownerId"] = self.owner_id
            self._spawn(self._push_direct(result, body), what=f"direct {result.operation.value}")
        return result

    async def request_sync(self) -> SyncReport:
        return await self.orchestrator.request_sync()

    def status(self) -> SyncStatus:
        return self.orchestrator.status()

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        return self.orchestrator.subscribe(listener)

    # ---- lifecycle ----

    def start(self) -> None:
        """Start the connectivity monitor and the periodic sync schedule."""
        if self._started:
            return
        self._started = True
        self._unsubscribers.append(self.orchestrator.attach(self.monitor))
        self._spawn(self.monitor.run(), what="connectivity monitor")
        if not self.direct_mode:
            self._spawn(self.orchestrator.run_periodic(self.sync_interval_seconds), what="periodic sync")
        logger.info(
            "Sync session started owner=%s direct_mode=%s", self.owner_id, self.direct_mode
        )

    async def close(self) -> None:
        """Cancel background work, close network clients, reset status."""
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()

        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

        await self.orchestrator.close()
        with contextlib.suppress(Exception):
            await self.remote.aclose()
        if self.probe_close is not None:
            with contextlib.suppress(Exception):
                await self.probe_close()
        self._started = False
        logger.info("Sync session closed owner=%s", self.owner_id)

    # ---- internals ----

    def _spawn(self, coro: Awaitable[Any], *, what: str) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("No running event loop; %s not scheduled", what)
            if asyncio.iscoroutine(coro):
                coro.close()
            return
        task = loop.create_task(coro)  # type: ignore[arg-type]
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _push_direct(self, result: MutationResult, body: dict[str, Any]) -> None:
        try:
            await apply_remote_change(self.remote, result.table, result.record_id, result.operation, body)
        except StoreError as e:
            logger.warning(
                "Direct %s %s/%s failed: %s", result.operation.value, result.table, result.record_id, e
            )
        except Exception:
            logger.exception(
                "Direct %s %s/%s crashed", result.operation.value, result.table, result.record_id
            )
