# tests/test_remote_store.py

from __future__ import annotations

import json

import httpx
import pytest

from tasksync.core.errors import ConflictError, ConnectivityError, StoreError, ValidationError
from tasksync.storage.remote_store import PostgrestRemoteStore

BASE = "https://demo.supabase.co"


class Backend:
    """httpx.MockTransport handler that records requests and replays canned responses."""

    def __init__(self, *responses: httpx.Response | Exception) -> None:
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        nxt = self.responses.pop(0) if self.responses else httpx.Response(200, json=[])
        if isinstance(nxt, Exception):
            raise nxt
        return nxt

    @property
    def last(self) -> httpx.Request:
        return self.requests[-1]


def _store(backend: Backend, **kw) -> PostgrestRemoteStore:
    return PostgrestRemoteStore(BASE, api_key="anon", transport=httpx.MockTransport(backend), **kw)


def _task_row(**over) -> dict:
    row = {
        "id": "t1",
        "title": "x",
        "priority": 2,
        "label_ids": ["a"],
        "status": "to_do",
        "created_at": "1970-01-01T00:00:01.000Z",
        "updated_at": "1970-01-01T00:00:02.000Z",
        "user_id": "u",
    }
    row.update(over)
    return row


def test_missing_configuration_is_rejected() -> None:
    with pytest.raises(RuntimeError):
        PostgrestRemoteStore("", api_key="anon")
    with pytest.raises(RuntimeError):
        PostgrestRemoteStore(BASE, api_key="")


@pytest.mark.asyncio
async def test_get_sends_auth_headers_and_translates_row() -> None:
    backend = Backend(httpx.Response(200, json=[_task_row()]))
    store = _store(backend, access_token="jwt")

    rec = await store.get("tasks", "t1")

    req = backend.last
    assert req.url.path == "/rest/v1/tasks"
    assert req.url.params["id"] == "eq.t1"
    assert req.headers["apikey"] == "anon"
    assert req.headers["authorization"] == "Bearer jwt"
    assert rec["labelIds"] == ["a"]
    assert rec["createdAt"] == 1_000
    assert rec["ownerId"] == "u"
    await store.aclose()


@pytest.mark.asyncio
async def test_get_missing_returns_none() -> None:
    store = _store(Backend(httpx.Response(200, json=[])))
    assert await store.get("tasks", "nope") is None
    await store.aclose()


@pytest.mark.asyncio
async def test_create_posts_wire_shape() -> None:
    backend = Backend(httpx.Response(201, json=[_task_row()]))
    store = _store(backend)

    await store.create("tasks", {
        "id": "t1", "title": "x", "labelIds": ["a"], "createdAt": 1_000,
        "updatedAt": 2_000, "ownerId": "u", "syncedAt": 2_000,
    })

    req = backend.last
    assert req.method == "POST"
    assert req.headers["prefer"] == "return=representation"
    body = json.loads(req.content)
    assert body["label_ids"] == ["a"]
    assert body["updated_at"] == "1970-01-01T00:00:02.000Z"
    assert body["user_id"] == "u"
    assert "synced_at" not in body
    await store.aclose()


@pytest.mark.asyncio
async def test_update_and_delete_target_the_row() -> None:
    backend = Backend(httpx.Response(200, json=[_task_row(title="y")]), httpx.Response(200, json=[]))
    store = _store(backend)

    rec = await store.update("tasks", "t1", {"id": "t1", "title": "y"})
    assert rec["title"] == "y"
    assert backend.last.method == "PATCH"
    assert backend.last.url.params["id"] == "eq.t1"
    assert "id" not in json.loads(backend.last.content)

    assert await store.delete("tasks", "t1") is None
    assert backend.last.method == "DELETE"
    await store.aclose()


@pytest.mark.asyncio
async def test_query_builds_equality_filters() -> None:
    backend = Backend(httpx.Response(200, json=[_task_row(), _task_row(id="t2", title="z")]))
    store = _store(backend)

    recs = await store.query("tasks", {"ownerId": "u", "projectId": None, "updatedAt": 2_000})

    params = backend.last.url.params
    assert params["user_id"] == "eq.u"
    assert params["project_id"] == "is.null"
    assert params["updated_at"] == "eq.1970-01-01T00:00:02.000Z"
    assert [r["id"] for r in recs] == ["t1", "t2"]

    with pytest.raises(ValueError):
        await store.query("tasks", {"syncedAt": 1})
    await store.aclose()


@pytest.mark.asyncio
async def test_fetch_changed_since_uses_inclusive_watermark() -> None:
    backend = Backend(httpx.Response(200, json=[]), httpx.Response(200, json=[]))
    store = _store(backend)

    await store.fetch_changed_since("tasks", "u", None)
    assert "updated_at" not in backend.last.url.params

    await store.fetch_changed_since("tasks", "u", 2_000)
    params = backend.last.url.params
    assert params["user_id"] == "eq.u"
    assert params["updated_at"] == "gte.1970-01-01T00:00:02.000Z"
    assert params["order"] == "updated_at.asc"
    await store.aclose()


@pytest.mark.asyncio
async def test_fetch_changed_since_skips_undecodable_rows() -> None:
    rows = [_task_row(id="bad", updated_at="not-a-date"), _task_row(id="t2", priority="x"), _task_row(id="ok")]
    store = _store(Backend(httpx.Response(200, json=rows)))

    records = await store.fetch_changed_since("tasks", "u", None)

    # priority has its own fallback; only the timestamp row is unreadable
    assert [r["id"] for r in records] == ["t2", "ok"]
    assert records[0]["priority"] == 4
    await store.aclose()


@pytest.mark.asyncio
async def test_undecodable_single_row_is_a_store_error() -> None:
    store = _store(Backend(httpx.Response(200, json=[_task_row(created_at="yesterday")])))
    with pytest.raises(StoreError, match="undecodable"):
        await store.get("tasks", "t1")
    await store.aclose()


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("response", "exc"),
    [
        (httpx.Response(409, json={"code": "23505", "message": "duplicate key"}), ConflictError),
        (httpx.Response(400, json={"message": "null value in column"}), ValidationError),
        (httpx.Response(503, text="unavailable"), ConnectivityError),
        (httpx.Response(429, text="slow down"), ConnectivityError),
        (httpx.Response(200, text="<html>"), StoreError),
    ],
)
async def test_error_mapping(response, exc) -> None:
    store = _store(Backend(response))
    with pytest.raises(exc):
        await store.get("tasks", "t1")
    await store.aclose()


@pytest.mark.asyncio
async def test_validation_error_keeps_status_code() -> None:
    store = _store(Backend(httpx.Response(422, json={"message": "bad"})))
    with pytest.raises(ValidationError) as info:
        await store.create("projects", {"id": "p"})
    assert info.value.status_code == 422
    await store.aclose()


@pytest.mark.asyncio
async def test_transport_failures_are_connectivity_errors() -> None:
    store = _store(Backend(httpx.ConnectError("no route"), httpx.ReadTimeout("slow")))
    with pytest.raises(ConnectivityError):
        await store.get("tasks", "t1")
    with pytest.raises(ConnectivityError):
        await store.get("tasks", "t1")
    await store.aclose()
