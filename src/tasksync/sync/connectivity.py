# src/tasksync/sync/connectivity.py

"""
Connectivity monitor.

Tracks whether the backend is reachable and fires an edge event exactly once
per offline -> online transition, so the orchestrator can sync right away
instead of waiting for the next periodic cycle.

Reachability comes from two sources:
- polling a ConnectivityProbe (check() / run()),
- push-style platform notifications (set_reachable()).
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Callable

import httpx

from ..core.ports import ConnectivityProbe, Listener

logger = logging.getLogger(__name__)


class HttpConnectivityProbe:
    """
    Probe that pings the backend over HTTP.

    Any HTTP answer below 500 (even 401/404) means the network path works.
    Transport errors, timeouts and 5xx mean "offline" for sync purposes.
    """

    def __init__(
            self,
            url: str,
            *,
            api_key: str | None = None,
            timeout_seconds: float = 5.0,
            transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._url = url
        headers = {"apikey": api_key} if api_key else None
        self._client = httpx.AsyncClient(
            headers=headers,
            timeout=httpx.Timeout(max(0.5, float(timeout_seconds))),
            transport=transport,
        )

    async def is_reachable(self) -> bool:
        try:
            resp = await self._client.get(self._url)
        except httpx.HTTPError as e:
            logger.debug("Connectivity probe failed: %s", e.__class__.__name__)
            return False
        return resp.status_code < 500

    async def aclose(self) -> None:
        await self._client.aclose()


class ConnectivityMonitor:
    def __init__(self, probe: ConnectivityProbe | None = None, *, poll_seconds: float = 10.0) -> None:
        self._probe = probe
        self._poll_seconds = max(0.01, float(poll_seconds))
        self._online: bool | None = None
        self._listeners: list[Listener] = []
        self._tasks: set[asyncio.Task] = set()

    @property
    def online(self) -> bool | None:
        """Last observed reachability; None before the first observation."""
        return self._online

    def is_online(self) -> bool:
        # Unknown counts as online: let the sync attempt decide.
        return self._online is not False

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register an offline->online listener (sync or async). Returns an unsubscribe callable."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    async def check(self) -> bool:
        """Poll the probe once and record the result."""
        if self._probe is None:
            return self.is_online()
        try:
            reachable = bool(await self._probe.is_reachable())
        except Exception:
            logger.exception("Connectivity probe crashed; treating as offline")
            reachable = False
        self.set_reachable(reachable)
        return reachable

    def set_reachable(self, reachable: bool) -> bool:
        """
        Record an observation. Returns True when it was an offline->online edge
        (and listeners were notified).
        """
        prev = self._online
        self._online = bool(reachable)

        if prev is None:
            logger.debug("Connectivity initial state: %s", "online" if reachable else "offline")
            return False
        if prev == self._online:
            return False

        if not self._online:
            logger.info("Connectivity lost")
            return False

        logger.info("Connectivity restored")
        self._emit()
        return True

    def _emit(self) -> None:
        for listener in list(self._listeners):
            try:
                result = listener()
            except Exception:
                logger.exception("Connectivity listener failed")
                continue
            if not inspect.isawaitable(result):
                continue
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                # No running loop: nothing can await the listener.
                logger.warning("Connectivity listener returned an awaitable outside an event loop")
                if inspect.iscoroutine(result):
                    result.close()
                continue
            task = asyncio.ensure_future(result, loop=loop)
            self._tasks.add(task)
            task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Connectivity listener task failed: %r", exc)

    async def run(self, poll_seconds: float | None = None) -> None:
        """Poll forever. To stop the monitor, cancel the coroutine/task."""
        sleep_s = self._poll_seconds if poll_seconds is None else max(0.01, float(poll_seconds))
        while True:
            await self.check()
            await asyncio.sleep(sleep_s)
