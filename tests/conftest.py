"""
Shared pytest fixtures for kindling tests.

Stores are in-memory unless a test needs a file on disk.
"""

import pytest

from kindling.service import Kindling
from kindling.store import SqliteStore
from kindling.types import now_ms


DAY_MS = 24 * 60 * 60 * 1000


@pytest.fixture
def store():
    """Fresh in-memory store, closed after the test."""
    s = SqliteStore.in_memory()
    yield s
    s.close()


@pytest.fixture
def file_store(tmp_path):
    """File-backed store in a temporary directory."""
    s = SqliteStore(tmp_path / "kindling.db")
    yield s
    s.close()


@pytest.fixture
def service():
    """Kindling service over an in-memory store."""
    kn = Kindling.in_memory()
    yield kn
    kn.close()


@pytest.fixture
def disk_service(tmp_path):
    """Kindling service with a real store directory (config, ops log)."""
    kn = Kindling(tmp_path / "store")
    yield kn
    kn.close()


@pytest.fixture
def now():
    """A fixed evaluation time for ranking and expiry."""
    return now_ms()
