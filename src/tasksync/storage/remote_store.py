# src/tasksync/storage/remote_store.py

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

import httpx

from ..core.errors import ConflictError, ConnectivityError, StoreError, ValidationError
from ..core.ports import Predicate, Record
from ..core.timeutil import to_iso
from ..sync.schema import FieldKind, from_remote, normalize_value, rows_from_remote, table_spec, to_remote

logger = logging.getLogger(__name__)

# Statuses that mean "try again later" rather than "your payload is wrong".
_RETRYABLE_STATUS = {408, 425, 429}


def make_timeout(total_seconds: float, *, connect_seconds: float = 5.0) -> httpx.Timeout:
    """
    Per-call timeouts. A hung request must surface as ConnectivityError for
    that one entry instead of stalling the whole sync cycle.
    """
    total = max(1.0, float(total_seconds))
    connect = min(total, max(0.5, float(connect_seconds)))
    return httpx.Timeout(connect=connect, read=total, write=total, pool=connect)


def _error_message(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return resp.text[:300] or resp.reason_phrase
    if isinstance(body, dict):
        parts = [str(body.get(k)) for k in ("code", "message", "details") if body.get(k)]
        if parts:
            return " | ".join(parts)
    return str(body)[:300]


def raise_for_status(resp: httpx.Response, *, what: str) -> None:
    """Map an HTTP error response onto the sync error taxonomy."""
    status = resp.status_code
    if status < 400:
        return
    msg = f"{what}: HTTP {status}: {_error_message(resp)}"
    if status == 409:
        raise ConflictError(msg)
    if status >= 500 or status in _RETRYABLE_STATUS:
        raise ConnectivityError(msg)
    raise ValidationError(msg, status_code=status)


class PostgrestRemoteStore:
    """
    Remote store backed by a Supabase/PostgREST REST endpoint.

    - one httpx.AsyncClient per store (connection pooling), closed by aclose()
    - rows are translated at this boundary (snake_case <-> camelCase,
      ISO-8601 <-> epoch ms, label_ids JSON array <-> list)
    - transport errors and timeouts -> ConnectivityError
    - 409 -> ConflictError, other 4xx -> ValidationError, 5xx -> ConnectivityError
    """

    def __init__(
            self,
            base_url: str,
            *,
            api_key: str,
            access_token: str | None = None,
            timeout_seconds: float = 15.0,
            transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not base_url or not base_url.strip():
            raise RuntimeError("Remote URL is not set. Set TASKSYNC_REMOTE_URL in your .env.")
        if not api_key or not api_key.strip():
            raise RuntimeError("Remote API key is not set. Set TASKSYNC_REMOTE_API_KEY in your .env.")

        self._rest_url = base_url.rstrip("/") + "/rest/v1"
        headers = {
            "apikey": api_key,
            "Authorization": f"Bearer {access_token or api_key}",
            "Accept": "application/json",
        }
        self._client = httpx.AsyncClient(
            base_url=self._rest_url,
            headers=headers,
            timeout=make_timeout(timeout_seconds),
            transport=transport,
        )
        logger.info("PostgrestRemoteStore ready url=%s", self._rest_url)

    @property
    def rest_url(self) -> str:
        return self._rest_url

    async def _request(
            self,
            method: str,
            table: str,
            *,
            params: Mapping[str, str] | None = None,
            body: Any = None,
            prefer: str | None = None,
    ) -> list[dict[str, Any]]:
        what = f"{method} {table}"
        headers = {"Prefer": prefer} if prefer else None
        try:
            resp = await self._client.request(
                method,
                f"/{table}",
                params=dict(params or {}),
                json=body,
                headers=headers,
            )
        except httpx.TimeoutException as e:
            raise ConnectivityError(f"{what}: timed out ({e.__class__.__name__})") from e
        except httpx.TransportError as e:
            raise ConnectivityError(f"{what}: {e.__class__.__name__}: {e}") from e

        raise_for_status(resp, what=what)

        if not resp.content:
            return []
        try:
            data = resp.json()
        except ValueError as e:
            raise StoreError(f"{what}: invalid JSON in response") from e
        if isinstance(data, dict):
            return [data]
        if isinstance(data, list):
            return [r for r in data if isinstance(r, dict)]
        raise StoreError(f"{what}: unexpected response shape {type(data).__name__}")

    @staticmethod
    def _filter_value(table: str, name: str, value: Any) -> str:
        spec = table_spec(table).field(name)
        if spec is None or not spec.remote:
            raise ValueError(f"cannot filter {table} on {name!r}")
        if value is None:
            return "is.null"
        value = normalize_value(spec, value)
        if spec.kind == FieldKind.TIMESTAMP:
            value = to_iso(value)
        elif spec.kind == FieldKind.BOOL:
            value = "true" if value else "false"
        return f"eq.{value}"

    @staticmethod
    def _decode_first(table: str, rows: list[dict[str, Any]]) -> Record | None:
        if not rows:
            return None
        try:
            return from_remote(table, rows[0])
        except ValueError as e:
            raise StoreError(f"{table}: undecodable row id={rows[0].get('id')}: {e}") from e

    # ---- RemoteStore ----

    async def get(self, table: str, record_id: str) -> Record | None:
        rows = await self._request(
            "GET",
            table,
            params={"select": "*", "id": f"eq.{record_id}", "limit": "1"},
        )
        return self._decode_first(table, rows)

    async def query(self, table: str, predicate: Predicate | None = None) -> list[Record]:
        spec = table_spec(table)
        params: dict[str, str] = {"select": "*", "order": "created_at.asc"}
        check = None
        if isinstance(predicate, Mapping):
            for name, value in predicate.items():
                flt = self._filter_value(table, name, value)
                params[spec.field(name).column] = flt  # type: ignore[union-attr]
        elif predicate is not None:
            check = predicate

        rows = await self._request("GET", table, params=params)
        records = rows_from_remote(table, rows)
        if check is not None:
            records = [r for r in records if check(r)]
        return records

    async def create(self, table: str, record: Mapping[str, Any]) -> Record | None:
        rows = await self._request(
            "POST",
            table,
            body=to_remote(table, record),
            prefer="return=representation",
        )
        return self._decode_first(table, rows)

    async def update(self, table: str, record_id: str, patch: Mapping[str, Any]) -> Record | None:
        body = to_remote(table, {k: v for k, v in patch.items() if k != "id"})
        rows = await self._request(
            "PATCH",
            table,
            params={"id": f"eq.{record_id}"},
            body=body,
            prefer="return=representation",
        )
        return self._decode_first(table, rows)

    async def delete(self, table: str, record_id: str) -> Record | None:
        rows = await self._request(
            "DELETE",
            table,
            params={"id": f"eq.{record_id}"},
            prefer="return=representation",
        )
        return self._decode_first(table, rows)

    async def fetch_changed_since(self, table: str, owner_id: str, since_ms: int | None) -> list[Record]:
        params = {
            "select": "*",
            "user_id": f"eq.{owner_id}",
            "order": "updated_at.asc",
        }
        if since_ms is not None:
            params["updated_at"] = f"gte.{to_iso(since_ms)}"
        rows = await self._request("GET", table, params=params)
        logger.debug("Fetched %s %s rows since %s", len(rows), table, since_ms)
        return rows_from_remote(table, rows)

    async def aclose(self) -> None:
        await self._client.aclose()
