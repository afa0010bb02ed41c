# src/tasksync/core/errors.py

"""
Error taxonomy shared by the store adapters and the orchestrator.

Store adapters raise these; the orchestrator catches them at the phase
boundary and turns them into per-entry outcomes. Nothing here should ever
reach UI callers as an exception.
"""

from __future__ import annotations


class SyncError(Exception):
    """Base class for all sync-core errors."""


class StoreError(SyncError):
    """A store operation failed (local persistence failure, constraint violation...)."""


class ConnectivityError(StoreError):
    """Backend unreachable, timed out or temporarily unavailable. Safe to retry later."""


class ValidationError(StoreError):
    """Backend rejected the payload. Retried a capped number of times, then surfaced."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ConflictError(StoreError):
    """Backend row conflicts with the pushed one (duplicate id, stale copy)."""
