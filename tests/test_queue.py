"""
Queue behaviour against a real SQLite store.
"""

import sqlite3
import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from docqueue.models import ID, PRIORITY, RESERVED, StoreError, TaskValidationError
from docqueue.queue import Queue


def test_add_task_defaults_priority_to_now(queue, clock):
    tid = queue.add_task({"cmd": "echo hi"})
    task = queue.peek({ID: tid})
    assert task[PRIORITY] == clock.now
    assert task["cmd"] == "echo hi"
    assert RESERVED not in task
    assert queue.size() == 1
    assert queue.waiting() == 1


def test_add_task_rejects_reserved_fields(queue):
    with pytest.raises(TaskValidationError):
        queue.add_task({"cmd": "x", "_p": 5})
    with pytest.raises(TaskValidationError):
        queue.add_task({"_id": 1})
    with pytest.raises(TaskValidationError):
        queue.add_task(["not", "a", "mapping"])
    assert queue.size() == 0


def test_nested_underscore_keys_are_user_data(queue):
    tid = queue.add_task({"meta": {"_internal": True}})
    assert queue.peek({ID: tid})["meta"] == {"_internal": True}


def test_reserve_empty_queue_returns_none(queue):
    assert queue.reserve_task() is None


def test_visibility_horizon(queue, clock):
    queue.add_task({"name": "later"}, priority=clock.now + 100)
    assert queue.reserve_task() is None

    task = queue.reserve_task(max_priority=clock.now + 1000)
    assert task is not None
    assert task["name"] == "later"


def test_priority_ordering(queue):
    for p in (5, 1, 3):
        queue.add_task({"p": p}, priority=p)

    got = [queue.reserve_task()["p"] for _ in range(3)]
    assert got == [1, 3, 5]
    assert queue.reserve_task() is None
    assert queue.waiting() == 0
    assert queue.size() == 3


def test_reserve_returns_task_before_update(queue, clock):
    tid = queue.add_task({"x": 1}, priority=10)
    task = queue.reserve_task()
    assert task[ID] == tid
    assert RESERVED not in task

    stored = queue.peek(task)
    assert stored[RESERVED] == clock.now


def test_reserved_task_is_not_reserved_twice(queue):
    queue.add_task({"x": 1}, priority=1)
    assert queue.reserve_task() is not None
    assert queue.reserve_task() is None


def test_mutual_exclusion_single_task(store, clock):
    Queue(store, clock=clock).add_task({"only": True}, priority=1)
    barrier = threading.Barrier(8)

    def reserve(_):
        q = Queue(store, clock=clock)
        barrier.wait()
        return q.reserve_task()

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(reserve, range(8)))

    winners = [r for r in results if r is not None]
    assert len(winners) == 1
    assert winners[0]["only"] is True


def test_concurrent_consumers_never_share_tasks(store, clock):
    producer = Queue(store, clock=clock)
    ids = {producer.add_task({"n": i}, priority=i) for i in range(30)}

    def drain(_):
        q = Queue(store, clock=clock)
        got = []
        while True:
            task = q.reserve_task()
            if task is None:
                return got
            got.append(task[ID])

    with ThreadPoolExecutor(max_workers=6) as pool:
        batches = list(pool.map(drain, range(6)))

    reserved = [tid for batch in batches for tid in batch]
    assert len(reserved) == len(set(reserved))
    assert set(reserved) == ids


def test_timeout_releases_stale_reservations_once(queue, clock):
    queue.add_task({"a": 1}, priority=1)
    queue.add_task({"b": 2}, priority=2)
    queue.reserve_task()
    queue.reserve_task()
    assert queue.waiting() == 0

    clock.advance(200)
    assert queue.apply_timeout(50) == 2
    assert queue.waiting() == 2
    assert queue.apply_timeout(50) == 0
    assert queue.waiting() == 2


def test_timeout_is_strict_and_keeps_priority(queue, clock):
    tid = queue.add_task({"a": 1}, priority=7)
    queue.reserve_task()

    clock.advance(50)
    # reserved-at == cutoff is not stale yet
    assert queue.apply_timeout(50) == 0
    clock.advance(1)
    assert queue.apply_timeout(50) == 1

    task = queue.peek({ID: tid})
    assert task[PRIORITY] == 7
    assert RESERVED not in task


def test_timeout_default_is_two_minutes(queue, clock):
    queue.add_task({"a": 1}, priority=1)
    queue.reserve_task()
    clock.advance(120)
    assert queue.apply_timeout() == 0
    clock.advance(1)
    assert queue.apply_timeout() == 1


def test_reschedule_preserves_priority_by_default(queue):
    tid = queue.add_task({"a": 1}, priority=10)
    task = queue.reserve_task()
    assert queue.waiting() == 0

    queue.reschedule_task(task)
    assert queue.waiting() == 1
    stored = queue.peek({ID: tid})
    assert stored[PRIORITY] == 10
    assert RESERVED not in stored


def test_reschedule_with_priority_compounds(queue, clock):
    tid = queue.add_task({"a": 1}, priority=10)
    queue.reschedule_task(queue.reserve_task(), priority=50)
    assert queue.peek({ID: tid})[PRIORITY] == 50

    # A plain reschedule keeps the last priority, not the insertion priority.
    queue.reschedule_task(queue.reserve_task())
    assert queue.peek({ID: tid})[PRIORITY] == 50


def test_reschedule_into_the_future_hides_task(queue, clock):
    queue.add_task({"a": 1}, priority=1)
    queue.reschedule_task(queue.reserve_task(), priority=clock.now + 60)
    assert queue.reserve_task() is None
    clock.advance(60)
    assert queue.reserve_task() is not None


def test_reschedule_missing_task_is_noop(queue):
    tid = queue.add_task({"a": 1})
    task = queue.reserve_task()
    queue.remove_task(task)
    queue.reschedule_task(task)
    assert queue.size() == 0
    assert queue.peek({ID: tid}) is None


def test_reschedule_requires_identity(queue):
    with pytest.raises(TaskValidationError):
        queue.reschedule_task({"a": 1})


def test_remove_is_terminal_and_idempotent(queue):
    queue.add_task({"keep": True})
    tid = queue.add_task({"keep": False})
    task = queue.peek({ID: tid})

    queue.remove_task(task)
    assert queue.size() == 1
    queue.remove_task(task)
    assert queue.size() == 1
    assert queue.peek(task) is None


def test_end_to_end_scenario(queue, clock):
    queue.add_task({"name": "A"}, priority=10)
    queue.add_task({"name": "B"}, priority=5)

    b = queue.reserve_task()
    assert b["name"] == "B"

    clock.advance(1)
    assert queue.apply_timeout(0) == 1

    b_again = queue.reserve_task()
    assert b_again["name"] == "B"
    assert b_again[ID] == b[ID]
    queue.remove_task(b_again)

    a = queue.reserve_task()
    assert a["name"] == "A"
    queue.remove_task(a)
    assert queue.size() == 0
    assert queue.reserve_task() is None


def test_search_filters(queue, clock):
    queue.add_task({"kind": "email", "tries": 1}, priority=3)
    queue.add_task({"kind": "sms", "tries": 4}, priority=1)
    queue.add_task({"kind": "email", "tries": 2, "to": {"host": "example.com"}}, priority=2)
    queue.reserve_task()  # reserves the sms task

    assert len(queue.search()) == 3
    assert [t["kind"] for t in queue.search(reserved=True)] == ["sms"]
    assert len(queue.search(reserved=False)) == 2
    assert len(queue.search({"kind": "email"})) == 2
    assert len(queue.search({"tries": {"$gte": 2}})) == 2
    assert len(queue.search({"kind": {"$in": ["sms", "fax"]}})) == 1
    assert len(queue.search({"kind": {"$ne": "sms"}})) == 2
    assert len(queue.search({"to": {"$exists": True}})) == 1
    assert len(queue.search({"to.host": "example.com"})) == 1
    assert len(queue.search({"$or": [{"kind": "sms"}, {"tries": 2}]})) == 2


def test_search_sort_limit_skip_fields(queue):
    for p in (30, 10, 20):
        queue.add_task({"p": p, "payload": "x" * p}, priority=p)

    desc = queue.search(sort={PRIORITY: -1})
    assert [t["p"] for t in desc] == [30, 20, 10]

    page = queue.search(sort=[(PRIORITY, 1)], skip=1, limit=1)
    assert [t["p"] for t in page] == [20]

    slim = queue.search(sort=[("p", 1)], fields=["p"])
    assert [set(t) for t in slim] == [{ID, "p"}] * 3

    assert queue.search_one(sort=[(PRIORITY, 1)])["p"] == 10
    assert queue.search_one({"p": 99}) is None


def test_peek_variants(queue):
    tid = queue.add_task({"a": 1})
    assert queue.peek({ID: tid})["a"] == 1
    assert [t[ID] for t in queue.peek_all({ID: tid})] == [tid]
    queue.remove_task({ID: tid})
    assert queue.peek({ID: tid}) is None
    assert queue.peek_all({ID: tid}) == []


def test_store_failure_is_distinct_from_empty(queue, db_path):
    assert queue.reserve_task() is None

    conn = sqlite3.connect(str(db_path))
    conn.execute("DROP TABLE queue")
    conn.commit()
    conn.close()

    with pytest.raises(StoreError):
        queue.reserve_task()
    with pytest.raises(StoreError):
        queue.size()
