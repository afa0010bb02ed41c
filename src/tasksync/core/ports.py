# src/tasksync/core/ports.py

from __future__ import annotations

"""
Ports (interfaces) used by the sync core.

The orchestrator depends on these Protocols, never on concrete stores.
Local storage is synchronous (embedded SQLite on the loop thread); remote
storage is awaited because it does network I/O.

Records are plain dicts with camelCase keys (see sync/schema.py).
"""

from collections.abc import Awaitable, Callable, Mapping
from typing import Any, Protocol

Record = dict[str, Any]

# Either an equality filter ({"ownerId": "u1"}) or an arbitrary callable.
Predicate = Mapping[str, Any] | Callable[[Record], bool]


class LocalStore(Protocol):
    """Embedded store on the device (or a null stub where there is none)."""

    @property
    def persistent(self) -> bool: ...

    def get(self, table: str, record_id: str) -> Record | None: ...
    def get_stored(self, table: str, record_id: str) -> Record | None: ...
    def query(self, table: str, predicate: Predicate | None = None) -> list[Record]: ...
    def create(self, table: str, record: Mapping[str, Any]) -> Record | None: ...
    def update(self, table: str, record_id: str, patch: Mapping[str, Any]) -> Record | None: ...
    def delete(self, table: str, record_id: str) -> Record | None: ...

    # Sync bookkeeping (watermarks, last sync time).
    def get_meta(self, key: str) -> str | None: ...
    def set_meta(self, key: str, value: str) -> None: ...


class RemoteStore(Protocol):
    """Hosted relational backend. Translates records at its own boundary."""

    async def get(self, table: str, record_id: str) -> Record | None: ...
    async def query(self, table: str, predicate: Predicate | None = None) -> list[Record]: ...
    async def create(self, table: str, record: Mapping[str, Any]) -> Record | None: ...
    async def update(self, table: str, record_id: str, patch: Mapping[str, Any]) -> Record | None: ...
    async def delete(self, table: str, record_id: str) -> Record | None: ...

    async def fetch_changed_since(
            self,
            table: str,
            owner_id: str,
            since_ms: int | None,
    ) -> list[Record]: ...

    async def aclose(self) -> None: ...


class ConnectivityProbe(Protocol):
    """Answers "can we reach the backend right now?"."""

    def is_reachable(self) -> Awaitable[bool]: ...


# Observers may be plain callables or coroutine functions.
Listener = Callable[..., Any]
