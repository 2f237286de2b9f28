"""
Priority work queue over a document store.

Every operation is a single store call. Mutual exclusion between consumers
comes entirely from the store's atomic find-and-update: a reservation sets
the reserved-at field in the same step that selects the task, so the task
can no longer match another reserver's filter.

Lifecycle:
    add_task -> available -> reserve_task -> reserved
    reserved -> reschedule_task / apply_timeout -> available
    any -> remove_task -> gone
"""

import logging
import time
from typing import Any, Callable, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from .models import (
    DEFAULT_TIMEOUT, ID, PRIORITY, RESERVED, Task, task_id, validate_fields,
)
from .repository import TaskStore

logger = logging.getLogger(__name__)

SortSpec = Union[Mapping[str, int], Sequence[Tuple[str, int]], None]


class Queue:
    """
    A work queue bound to one task store.

    Holds no mutable state, so one instance may be used from many threads
    and many processes may share the same collection.
    """

    def __init__(self, store: TaskStore, clock: Callable[[], float] = time.time):
        self._store = store
        self._clock = clock

    @property
    def store(self) -> TaskStore:
        return self._store

    def now(self) -> float:
        return self._clock()

    # ---------- producers ----------
    def add_task(self, fields: Mapping[str, Any], priority: Optional[float] = None) -> Any:
        """
        Queue a new task and return its identity.

        priority defaults to the current time; a future value keeps the task
        hidden from reserve_task until that time.
        """
        doc = validate_fields(fields)
        doc[PRIORITY] = self.now() if priority is None else priority
        tid = self._store.insert(doc)
        logger.debug("Task added id=%s priority=%s", tid, doc[PRIORITY])
        return tid

    # ---------- consumers ----------
    def reserve_task(self, max_priority: Optional[float] = None) -> Optional[Task]:
        """
        Claim the available task with the lowest priority not above
        max_priority (default: now). Returns None when nothing is eligible.
        Ties between equal priorities are broken arbitrarily.
        """
        now = self.now()
        horizon = now if max_priority is None else max_priority
        task = self._store.find_and_update(
            {PRIORITY: {"$lte": horizon}, RESERVED: {"$exists": False}},
            {"$set": {RESERVED: now}},
            sort=[(PRIORITY, 1)],
        )
        if task is not None:
            logger.debug("Task reserved id=%s priority=%s", task[ID], task[PRIORITY])
        return task

    def reschedule_task(self, task: Mapping[str, Any], priority: Optional[float] = None) -> None:
        """
        Release a reservation. The task keeps its last priority unless a new
        one is given. A task that no longer exists is ignored.
        """
        tid = task_id(task)
        new_priority = task.get(PRIORITY) if priority is None else priority
        update = {"$unset": {RESERVED: ""}}
        if new_priority is not None:
            update["$set"] = {PRIORITY: new_priority}
        self._store.find_and_update({ID: tid}, update)
        logger.debug("Task rescheduled id=%s priority=%s", tid, new_priority)

    def remove_task(self, task: Mapping[str, Any]) -> None:
        """Delete a task for good. Removing a missing task is a no-op."""
        tid = task_id(task)
        removed = self._store.delete({ID: tid})
        logger.debug("Task removed id=%s found=%s", tid, bool(removed))

    def apply_timeout(self, seconds: Optional[float] = None) -> int:
        """
        Release every reservation older than `seconds` (default 120) and
        return how many were released. Priorities are left alone, and
        running it twice in a row is harmless.
        """
        seconds = DEFAULT_TIMEOUT if seconds is None else seconds
        cutoff = self.now() - seconds
        released = self._store.bulk_update(
            {RESERVED: {"$lt": cutoff}},
            {"$unset": {RESERVED: ""}},
        )
        if released:
            logger.info("Released %d timed-out reservation(s) older than %ss", released, seconds)
        return released

    # ---------- inspection ----------
    def search(
        self,
        query: Optional[Mapping[str, Any]] = None,
        reserved: Optional[bool] = None,
        sort: SortSpec = None,
        limit: Optional[int] = None,
        skip: Optional[int] = None,
        fields: Optional[Iterable[str]] = None,
    ) -> List[Task]:
        """
        Return tasks matching a query in the store's query dialect.

        reserved=True/False restricts to reserved/available tasks. Order is
        unspecified unless sort is given.
        """
        filt = dict(query or {})
        if reserved is not None:
            filt[RESERVED] = {"$exists": bool(reserved)}
        return self._store.find(filt, fields=fields, sort=_sort_list(sort), limit=limit, skip=skip)

    def search_one(self, query: Optional[Mapping[str, Any]] = None, **options) -> Optional[Task]:
        options["limit"] = 1
        found = self.search(query, **options)
        return found[0] if found else None

    def peek(self, task: Mapping[str, Any]) -> Optional[Task]:
        """Current state of a task, or None if it is gone."""
        return self.search_one({ID: task_id(task)})

    def peek_all(self, task: Mapping[str, Any]) -> List[Task]:
        return self.search({ID: task_id(task)})

    def size(self) -> int:
        return self._store.count({})

    def waiting(self) -> int:
        return self._store.count({RESERVED: {"$exists": False}})


def _sort_list(sort: SortSpec) -> Optional[List[Tuple[str, int]]]:
    if not sort:
        return None
    if isinstance(sort, Mapping):
        return [(k, int(v)) for k, v in sort.items()]
    return [(k, int(v)) for k, v in sort]
