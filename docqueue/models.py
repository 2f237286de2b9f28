from typing import Any, Dict, Mapping

# Engine-owned task fields. Everything starting with "_" belongs to the queue.
RESERVED_PREFIX = "_"
ID = "_id"
PRIORITY = "_p"
RESERVED = "_r"

DEFAULT_TIMEOUT = 120

Task = Dict[str, Any]


class QueueError(Exception):
    """Base class for errors raised by docqueue."""


class TaskValidationError(QueueError, ValueError):
    """Task data was rejected before reaching the store."""


class StoreError(QueueError, RuntimeError):
    """The backing store failed an operation."""


def validate_fields(fields: Mapping[str, Any]) -> Dict[str, Any]:
    """
    Return a copy of caller task data, rejecting keys in the reserved namespace.
    Raises TaskValidationError on bad input.
    """
    if not isinstance(fields, Mapping):
        raise TaskValidationError(f"Task data must be a mapping, got {type(fields).__name__}.")
    bad = sorted(str(k) for k in fields if not isinstance(k, str) or k.startswith(RESERVED_PREFIX))
    if bad:
        raise TaskValidationError(f"Task data may not use reserved field names: {', '.join(bad)}")
    return dict(fields)


def task_id(task: Mapping[str, Any]) -> Any:
    try:
        return task[ID]
    except (KeyError, TypeError):
        raise TaskValidationError("Task has no identity; was it returned by the queue?")


def is_reserved(task: Mapping[str, Any]) -> bool:
    return task.get(RESERVED) is not None
