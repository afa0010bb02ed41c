# tests/conftest.py

from __future__ import annotations

from pathlib import Path
from types import SimpleNamespace

import pytest

from tasksync.cli.bootstrap import create_session
from tasksync.core.state import SyncSession
from tasksync.storage.local_store import SQLiteLocalStore
from tasksync.storage.offline_remote import InMemoryRemoteStore
from tasksync.sync.change_queue import ChangeQueue
from tasksync.sync.orchestrator import SyncOrchestrator

from .fakes import OWNER, FakeClock, FlakyRemoteStore


@pytest.fixture()
def settings(tmp_path: Path) -> SimpleNamespace:
    """
    Minimal settings object compatible with bootstrap and the session.

    We intentionally use a SimpleNamespace rather than importing real config,
    to keep unit tests isolated and deterministic.
    """
    return SimpleNamespace(
        app_name="tasksync-test",
        log_level="DEBUG",
        platform="native",
        persistent=True,
        console_enabled=False,
        # Paths (tmp per test run)
        data_dir=tmp_path,
        local_db_path=tmp_path / "tasksync.sqlite3",
        # No backend: tests inject stores explicitly
        remote_url="",
        remote_api_key="",
        remote_access_token="",
        request_timeout_seconds=5.0,
        owner_id=OWNER,
        # Sync tuning (large backoff: retries never fire inside a test unless asked)
        sync_interval_seconds=3600.0,
        backoff_base_seconds=100.0,
        backoff_max_seconds=1000.0,
        max_push_attempts=3,
        connectivity_poll_seconds=3600.0,
    )


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock(start=1_000)


@pytest.fixture()
def local(settings: SimpleNamespace) -> SQLiteLocalStore:
    return SQLiteLocalStore(settings.local_db_path)


@pytest.fixture()
def queue(settings: SimpleNamespace, local: SQLiteLocalStore) -> ChangeQueue:
    # Same file as the local store, like in production.
    return ChangeQueue(settings.local_db_path)


@pytest.fixture()
def remote() -> FlakyRemoteStore:
    return FlakyRemoteStore()


@pytest.fixture()
def orchestrator(
    local: SQLiteLocalStore,
    remote: InMemoryRemoteStore,
    queue: ChangeQueue,
    clock: FakeClock,
    settings: SimpleNamespace,
) -> SyncOrchestrator:
    return SyncOrchestrator(
        local,
        remote,
        queue,
        OWNER,
        clock=clock,
        max_push_attempts=settings.max_push_attempts,
        backoff_base_seconds=settings.backoff_base_seconds,
        backoff_max_seconds=settings.backoff_max_seconds,
    )


@pytest.fixture()
def session(
    settings: SimpleNamespace,
    local: SQLiteLocalStore,
    remote: FlakyRemoteStore,
    clock: FakeClock,
) -> SyncSession:
    """
    SyncSession wired with a real SQLite store and the in-process backend.

    NOTE: We keep real SQLite here because local persistence and the
    durable queue are part of what we want to test.
    """
    return create_session(settings=settings, local=local, remote=remote, probe=remote, clock=clock)
