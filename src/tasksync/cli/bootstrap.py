# src/tasksync/cli/bootstrap.py

"""
CLI bootstrap helpers.

This module is the "composition root":
- loads settings once,
- ensures local (gitignored) directories exist,
- picks the local store for the platform (SQLite or null stub),
- picks the remote store (Supabase REST, or the in-process offline backend),
- wires queue/monitor/orchestrator into a SyncSession.
"""

from __future__ import annotations

import logging

from ..config import Settings, get_settings
from ..core.ports import ConnectivityProbe, LocalStore, RemoteStore
from ..core.state import SyncSession
from ..core.timeutil import now_ms
from ..storage.local_store import NullLocalStore, SQLiteLocalStore
from ..storage.offline_remote import InMemoryRemoteStore
from ..storage.remote_store import PostgrestRemoteStore
from ..sync.change_queue import ChangeQueue
from ..sync.connectivity import ConnectivityMonitor, HttpConnectivityProbe
from ..sync.orchestrator import SyncOrchestrator

logger = logging.getLogger(__name__)


def _ensure_local_dirs(settings) -> None:
    settings.data_dir.mkdir(parents=True, exist_ok=True)
    settings.local_db_path.parent.mkdir(parents=True, exist_ok=True)


def create_local_store(settings) -> LocalStore:
    """Platform capability check, done once: persistent SQLite or the null stub."""
    if not settings.persistent:
        logger.info("Platform %r: no local persistence, mutations go straight to the backend", settings.platform)
        return NullLocalStore()
    return SQLiteLocalStore(settings.local_db_path)


def create_remote_store(settings) -> RemoteStore:
    try:
        return PostgrestRemoteStore(
            settings.remote_url,
            api_key=settings.remote_api_key,
            access_token=settings.remote_access_token or None,
            timeout_seconds=settings.request_timeout_seconds,
        )
    except RuntimeError as e:
        # Fallback for demos / local runs without a backend.
        logger.warning("%s Using the in-process offline backend.", e)
        return InMemoryRemoteStore()


def create_probe(settings, remote: RemoteStore) -> ConnectivityProbe | None:
    if isinstance(remote, InMemoryRemoteStore):
        return remote
    if isinstance(remote, PostgrestRemoteStore):
        return HttpConnectivityProbe(
            remote.rest_url + "/",
            api_key=settings.remote_api_key,
            timeout_seconds=min(5.0, settings.request_timeout_seconds),
        )
    return None


def create_session(
    *,
    settings: Settings | None = None,
    local: LocalStore | None = None,
    remote: RemoteStore | None = None,
    probe: ConnectivityProbe | None = None,
    clock=now_ms,
) -> SyncSession:
    """
    Build a SyncSession from the provided settings.

    Stores and probe are injectable for tests; if settings is None, falls
    back to get_settings().
    """
    if settings is None:
        settings = get_settings()

    _ensure_local_dirs(settings)
    if local is None:
        local = create_local_store(settings)
    if remote is None:
        remote = create_remote_store(settings)
    if probe is None:
        probe = create_probe(settings, remote)

    queue = ChangeQueue(settings.local_db_path) if local.persistent else None
    monitor = ConnectivityMonitor(probe, poll_seconds=settings.connectivity_poll_seconds)

    orchestrator = SyncOrchestrator(
        local,
        remote,
        queue,
        settings.owner_id,
        clock=clock,
        max_push_attempts=settings.max_push_attempts,
        backoff_base_seconds=settings.backoff_base_seconds,
        backoff_max_seconds=settings.backoff_max_seconds,
        monitor=monitor,
    )

    probe_close = probe.aclose if isinstance(probe, HttpConnectivityProbe) else None

    session = SyncSession(
        settings=settings,
        owner_id=settings.owner_id,
        local=local,
        remote=remote,
        queue=queue,
        monitor=monitor,
        orchestrator=orchestrator,
        clock=clock,
        sync_interval_seconds=settings.sync_interval_seconds,
        probe_close=probe_close,
    )
    logger.info(
        "Session ready owner=%s platform=%s remote=%s",
        settings.owner_id,
        settings.platform,
        type(remote).__name__,
    )
    return session
