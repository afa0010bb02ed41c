# tests/test_change_queue.py

from __future__ import annotations

from functools import reduce
from pathlib import Path

import pytest

from tasksync.sync.change_queue import ChangeQueue, ChangeState, coalesce
from tasksync.sync.models import Operation


@pytest.mark.parametrize(
    ("prev_op", "op", "expected"),
    [
        (None, Operation.UPDATE, Operation.UPDATE),
        (Operation.CREATE, Operation.UPDATE, Operation.CREATE),
        (Operation.CREATE, Operation.DELETE, Operation.DELETE),
        (Operation.UPDATE, Operation.UPDATE, Operation.UPDATE),
        (Operation.UPDATE, Operation.DELETE, Operation.DELETE),
        (Operation.DELETE, Operation.CREATE, Operation.UPDATE),
        (Operation.DELETE, Operation.UPDATE, Operation.DELETE),
    ],
)
def test_coalesce_rules(prev_op, op, expected) -> None:
    new_op, _ = coalesce(prev_op, {"a": 1}, op, {"b": 2})
    assert new_op == expected


def test_coalesce_payloads() -> None:
    assert coalesce(Operation.CREATE, {"title": "a", "x": 1}, Operation.UPDATE, {"title": "b"}) == (
        Operation.CREATE,
        {"title": "b", "x": 1},
    )
    assert coalesce(Operation.UPDATE, {"title": "a"}, Operation.DELETE, {"title": "zzz"}) == (Operation.DELETE, {})
    assert coalesce(Operation.DELETE, {}, Operation.CREATE, {"title": "again"}) == (
        Operation.UPDATE,
        {"title": "again"},
    )


C, U, D = Operation.CREATE, Operation.UPDATE, Operation.DELETE


def _fold(steps):
    return reduce(lambda acc, step: coalesce(acc[0], acc[1], *step), steps, (None, None))


@pytest.mark.parametrize(
    ("steps", "expected"),
    [
        ([(C, {"title": "a"}), (U, {"x": 1}), (D, {}), (C, {"title": "c"})], (U, {"title": "c"})),
        (
            [(U, {"title": "a"}), (U, {"x": 1}), (D, {}), (C, {"title": "c"}), (U, {"y": 2})],
            (U, {"title": "c", "y": 2}),
        ),
        ([(D, {}), (U, {"title": "a"}), (C, {"title": "b"})], (U, {"title": "b"})),
        ([(C, {"title": "a"}), (C, {"title": "b", "x": 1}), (U, {"x": 2})], (C, {"title": "b", "x": 2})),
        ([(U, {"title": "a"}), (D, {}), (D, {})], (D, {})),
    ],
)
def test_enqueue_sequence_matches_coalesce_fold(tmp_path: Path, steps, expected) -> None:
    q = ChangeQueue(tmp_path / "q.sqlite3")

    for op, payload in steps:
        q.enqueue("tasks", "t1", op, payload)

    change = q.get("tasks", "t1")
    assert (change.operation, change.payload) == expected == _fold(steps)
    assert change.revision == len(steps)
    assert q.count_pending() == 1


def test_one_entry_per_record_and_fifo_order(tmp_path: Path) -> None:
    q = ChangeQueue(tmp_path / "q.sqlite3")

    q.enqueue("tasks", "t1", Operation.CREATE, {"title": "a"})
    q.enqueue("subtasks", "s1", Operation.CREATE, {"title": "s"})
    q.enqueue("tasks", "t1", Operation.UPDATE, {"title": "b"})

    pending = q.peek_pending()
    assert [c.key for c in pending] == [("tasks", "t1"), ("subtasks", "s1")]
    assert pending[0].operation == Operation.CREATE
    assert pending[0].payload == {"title": "b"}
    assert pending[0].revision == 2
    assert q.count_pending() == 2


def test_drain_clear_and_concurrent_edit(tmp_path: Path) -> None:
    q = ChangeQueue(tmp_path / "q.sqlite3")
    q.enqueue("tasks", "t1", Operation.CREATE, {"title": "a"})
    q.enqueue("tasks", "t2", Operation.CREATE, {"title": "b"})

    drained = q.drain()
    assert {c.state for c in drained} == {ChangeState.IN_FLIGHT}
    assert q.drain() == []

    # Edit while t2 is being pushed.
    q.enqueue("tasks", "t2", Operation.UPDATE, {"title": "b2"})

    assert q.clear(drained) == [("tasks", "t1")]
    assert q.release_in_flight() == 1

    left = q.peek_pending()
    assert [c.key for c in left] == [("tasks", "t2")]
    assert left[0].state == ChangeState.PENDING
    assert left[0].payload == {"title": "b2"}


def test_in_flight_entries_survive_restart(tmp_path: Path) -> None:
    db = tmp_path / "q.sqlite3"
    q = ChangeQueue(db)
    q.enqueue("projects", "p", Operation.CREATE, {"name": "x"})
    q.drain()

    reopened = ChangeQueue(db)
    assert [c.state for c in reopened.peek_pending()] == [ChangeState.PENDING]
    assert len(reopened.drain()) == 1


def test_retry_cap_moves_entry_to_failed(tmp_path: Path) -> None:
    q = ChangeQueue(tmp_path / "q.sqlite3")
    q.enqueue("projects", "p", Operation.CREATE, {"name": "x"})

    for attempt in range(1, 4):
        (change,) = q.drain()
        dead = q.record_failure(change, f"rejected {attempt}", max_attempts=3)
        q.release_in_flight()
        assert dead is (attempt == 3)

    assert q.count_pending() == 0
    assert q.count_failed() == 1
    (failed,) = q.list_failed()
    assert failed.attempts == 3
    assert failed.last_error == "rejected 3"
    assert q.drain() == []


def test_uncounted_failures_keep_budget(tmp_path: Path) -> None:
    q = ChangeQueue(tmp_path / "q.sqlite3")
    q.enqueue("projects", "p", Operation.CREATE, {"name": "x"})
    (change,) = q.drain()

    assert q.record_failure(change, "offline", count_attempt=False, max_attempts=1) is False
    assert q.get("projects", "p").attempts == 0
    assert q.get("projects", "p").last_error == "offline"


def test_new_edit_rearms_failed_entry(tmp_path: Path) -> None:
    q = ChangeQueue(tmp_path / "q.sqlite3")
    q.enqueue("projects", "p", Operation.CREATE, {"name": "x"})
    (change,) = q.drain()
    q.record_failure(change, "bad", max_attempts=1)
    assert q.count_failed() == 1

    q.enqueue("projects", "p", Operation.UPDATE, {"name": "fixed"})

    entry = q.get("projects", "p")
    assert entry.state == ChangeState.PENDING
    assert entry.attempts == 0
    assert entry.operation == Operation.CREATE
    assert entry.payload == {"name": "fixed"}


def test_requeue_and_discard_failed(tmp_path: Path) -> None:
    q = ChangeQueue(tmp_path / "q.sqlite3")
    for rid in ("a", "b"):
        q.enqueue("labels", rid, Operation.CREATE, {"name": rid})
    for change in q.drain():
        q.record_failure(change, "bad", max_attempts=1)

    assert q.requeue_failed([("labels", "a")]) == 1
    assert q.count_pending() == 1
    assert q.discard_failed() == 1
    assert q.count_failed() == 0
    assert q.has_entry("labels", "a")
    assert not q.has_entry("labels", "b")


def test_forget_drops_entry_in_any_state(tmp_path: Path) -> None:
    q = ChangeQueue(tmp_path / "q.sqlite3")
    q.enqueue("subtasks", "s1", Operation.CREATE, {"title": "s"})
    q.enqueue("subtasks", "s2", Operation.CREATE, {"title": "s"})
    q.drain()

    assert q.forget("subtasks", "s1") is True
    assert q.forget("subtasks", "s1") is False
    assert q.forget("subtasks", "s2") is True
    assert q.release_in_flight() == 0
    assert q.count_pending() == 0
