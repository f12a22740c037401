"""Shared test fixtures."""
import time

import pytest

from localq.config import Config
from localq.db import SQLiteStore
from localq.store import MemoryStore

# A fixed point in the future, so that "now" never catches up with test data.
T0 = "2030-01-01T00:00:00.000000Z"


@pytest.fixture()
def db_path(tmp_path):
    return str(tmp_path / "queue.db")


@pytest.fixture()
def store(db_path):
    s = SQLiteStore(db_path)
    yield s
    s.close()


@pytest.fixture(params=["sqlite", "memory"])
def any_store(request, tmp_path):
    if request.param == "memory":
        yield MemoryStore()
        return
    s = SQLiteStore(str(tmp_path / "contract.db"))
    yield s
    s.close()


@pytest.fixture()
def fast_config():
    return Config(max_retries=3, backoff_base=1.1, worker_poll_interval=100, job_timeout=5000)


@pytest.fixture()
def wait_for():
    def _wait_for(predicate, timeout=10.0, interval=0.05):
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            result = predicate()
            if result:
                return result
            time.sleep(interval)
        raise AssertionError(f"condition not met within {timeout}s")

    return _wait_for
