from pathlib import Path

import pytest

from docqueue.queue import Queue
from docqueue.repository import SQLiteTaskStore


class FakeClock:
    """Manually advanced clock so timestamps in tests are exact."""

    def __init__(self, now: float = 1_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "queue.db"


@pytest.fixture()
def store(db_path: Path) -> SQLiteTaskStore:
    return SQLiteTaskStore(db_path)


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def queue(store: SQLiteTaskStore, clock: FakeClock) -> Queue:
    return Queue(store, clock=clock)
