"""Shared pytest fixtures."""
import time

import pytest

from scheduler import Scheduler
from storage import Storage


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "jobs.db")


@pytest.fixture
def storage(db_path):
    db = Storage(db_path)
    yield db
    db.close()


@pytest.fixture
def scheduler(db_path):
    """A scheduler that is not started; tests drive it with tick()."""
    s = Scheduler(db_path=db_path, name="test-worker", process_every=100, resume_on_restart=False)
    yield s
    s.stop(grace_period=5)
    s.storage.close()


def wait_for(predicate, timeout=5.0, interval=0.02):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()
