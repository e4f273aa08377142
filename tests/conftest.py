"""
Pytest fixtures and test configuration for intelstore tests.
"""

import sqlite3

import pytest

from intelstore.config import StoreConfig
from intelstore.store import IntelligenceStore

WIDTH = 384


@pytest.fixture
def temp_db(tmp_path):
    """Database path inside a fresh data directory."""
    return tmp_path / ".intelstore" / "intelligence.db"


@pytest.fixture
def config(temp_db):
    """Store config with a short lock timeout so contention tests stay fast."""
    return StoreConfig(db_path=temp_db, lock_timeout=0.2)


@pytest.fixture
def store(config):
    """A freshly created IntelligenceStore (not entered, so no auto-export)."""
    return IntelligenceStore(config)


@pytest.fixture
def raw_conn(temp_db, store):
    """Plain sqlite3 connection to the store's file, for out-of-band checks."""
    conn = sqlite3.connect(temp_db, isolation_level=None)
    conn.row_factory = sqlite3.Row
    yield conn
    conn.close()


def vec(width=WIDTH, value=0.5):
    """A vector whose components survive float32 round-trips exactly."""
    return [value] * width


def put_memories(store, *ids, content="note"):
    """Commit one memory per id."""
    with store.session() as session:
        for memory_id in ids:
            session.put("memories", memory_id, {"content": f"{content} {memory_id}"})
