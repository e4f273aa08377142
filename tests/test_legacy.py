"""Tests for upgrading databases written with the older table layouts."""

import sqlite3

import pytest

from intelstore.config import StoreConfig
from intelstore.storage.embeddings import pack_embedding
from intelstore.storage.legacy import legacy_record, needs_rebuild
from intelstore.storage.schema import default_registry, existing_tables
from intelstore.store import IntelligenceStore

from conftest import vec

LEGACY_DDL = """
CREATE TABLE memories (
  id TEXT PRIMARY KEY,
  memory_type TEXT NOT NULL DEFAULT 'general',
  content TEXT NOT NULL,
  embedding BLOB,
  metadata TEXT DEFAULT '{}',
  timestamp INTEGER NOT NULL
);
CREATE TABLE patterns (
  key TEXT PRIMARY KEY,
  state TEXT NOT NULL,
  action TEXT NOT NULL,
  q_value REAL NOT NULL DEFAULT 0,
  visits INTEGER NOT NULL DEFAULT 0,
  last_update INTEGER NOT NULL DEFAULT 0
);
CREATE TABLE trajectories (
  id TEXT PRIMARY KEY,
  state TEXT,
  action TEXT,
  outcome TEXT,
  reward REAL,
  timestamp INTEGER
);
CREATE TABLE errors (
  key TEXT PRIMARY KEY,
  data TEXT NOT NULL DEFAULT '{}'
);
CREATE TABLE file_sequences (
  from_file TEXT NOT NULL,
  to_file TEXT NOT NULL,
  count INTEGER NOT NULL DEFAULT 1,
  PRIMARY KEY (from_file, to_file)
);
CREATE TABLE agents (
  name TEXT PRIMARY KEY,
  data TEXT NOT NULL DEFAULT '{}'
);
CREATE TABLE edges (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  source TEXT NOT NULL,
  target TEXT NOT NULL,
  weight REAL DEFAULT 1.0,
  data TEXT DEFAULT '{}'
);
CREATE TABLE stats (
  key TEXT PRIMARY KEY,
  value TEXT
);
CREATE TABLE learning_data (
  algorithm TEXT PRIMARY KEY DEFAULT 'combined',
  q_table TEXT NOT NULL DEFAULT '{}'
);
CREATE TABLE kv_store (
  key TEXT PRIMARY KEY,
  value TEXT
);
CREATE TABLE compressed_patterns (
  id TEXT PRIMARY KEY,
  layer TEXT NOT NULL,
  data BLOB NOT NULL,
  compression_ratio REAL DEFAULT 1.0,
  created_at INTEGER NOT NULL,
  metadata TEXT DEFAULT '{}'
);
CREATE INDEX idx_patterns_state ON patterns(state);
CREATE INDEX idx_edges_source ON edges(source);
CREATE INDEX idx_compressed_layer ON compressed_patterns(layer);
CREATE TABLE neural_patterns (
  id TEXT PRIMARY KEY,
  content TEXT NOT NULL DEFAULT '',
  category TEXT DEFAULT 'general',
  embedding BLOB,
  confidence REAL DEFAULT 0.5,
  usage INTEGER DEFAULT 0,
  created_at INTEGER,
  updated_at INTEGER,
  metadata TEXT DEFAULT '{}'
);
"""


@pytest.fixture
def legacy_db(temp_db):
    """A database file created with the older layout and one row per table."""
    temp_db.parent.mkdir(parents=True)
    conn = sqlite3.connect(temp_db)
    conn.executescript(LEGACY_DDL)
    conn.execute(
        "INSERT INTO memories VALUES ('m1', 'general', 'hello', NULL, '{\"a\": 1}', 1700000000)"
    )
    conn.execute("INSERT INTO patterns VALUES ('edit:py:coder', 'edit:py', 'coder', 0.75, 3, 1700000000)")
    conn.execute("INSERT INTO trajectories VALUES ('t1', 's', 'a', 'ok', 1.0, 1700000000)")
    conn.execute(
        "INSERT INTO errors VALUES ('err-1', "
        "'{\"signature\": \"ImportError: x\", \"resolution\": \"pip install x\"}')"
    )
    conn.execute("INSERT INTO file_sequences VALUES ('a.py', 'b.py', 2)")
    conn.execute("INSERT INTO agents VALUES ('coder', '{\"role\": \"developer\"}')")
    conn.execute(
        "INSERT INTO edges (source, target, weight, data) "
        "VALUES ('m1', 'm2', 2.5, '{\"why\": \"co-recall\"}')"
    )
    conn.execute("INSERT INTO stats VALUES ('total_memories', '1')")
    conn.execute("INSERT INTO learning_data VALUES ('q-learning', '{\"s\": {\"a\": 0.5}}')")
    conn.execute("INSERT INTO kv_store VALUES ('last_file', '\"b.py\"')")
    conn.execute(
        "INSERT INTO compressed_patterns VALUES ('c1', 'cold', ?, 2.0, 1700000000, '{}')",
        (b"\x00\x01",),
    )
    conn.execute(
        "INSERT INTO neural_patterns VALUES ('np1', 'prefer fixtures', 'testing', ?, 0.7, 3, 1, 2, '{}')",
        (pack_embedding(vec()),),
    )
    conn.commit()
    conn.close()
    return temp_db


def open_legacy(db_path):
    return IntelligenceStore(StoreConfig(db_path=db_path))


class TestOpenLegacyDatabase:
    def test_opens_and_keeps_every_row(self, legacy_db):
        store = open_legacy(legacy_db)
        counts = store.counts()
        for name in (
            "memories", "patterns", "trajectories", "errors", "file_sequences", "agents",
            "edges", "stats", "learning_data", "kv_store", "compressed_patterns",
            "neural_patterns",
        ):
            assert counts[name] == 1, name

    def test_old_tables_are_dropped(self, legacy_db):
        open_legacy(legacy_db)
        conn = sqlite3.connect(legacy_db)
        tables = existing_tables(conn)
        conn.close()
        assert not [t for t in tables if t.endswith("_old")]

    def test_pattern_values_carried_over(self, legacy_db):
        pattern = open_legacy(legacy_db).fetch_record("patterns", "edit:py:coder")
        assert pattern["value"] == 0.75
        assert pattern["update_count"] == 3
        assert pattern["last_update"] == 1700000000

    def test_rekeyed_tables(self, legacy_db):
        store = open_legacy(legacy_db)
        sequence = store.fetch_record("file_sequences", "a.py->b.py")
        assert (sequence["prev_file"], sequence["next_file"], sequence["count"]) == ("a.py", "b.py", 2)

        agent = store.fetch_record("agents", "coder")
        assert agent["role"] == "developer"

        error = store.fetch_record("errors", "err-1")
        assert error["signature"] == "ImportError: x"
        assert error["resolution"] == "pip install x"

        assert store.fetch_record("learning_data", "q-learning")["q_table"] == {"s": {"a": 0.5}}

    def test_integer_edge_ids_become_text(self, legacy_db):
        edge = open_legacy(legacy_db).fetch_record("edges", "m1->m2:semantic")
        assert edge["from_id"] == "m1"
        assert edge["to_id"] == "m2"
        assert edge["weight"] == 2.5
        assert edge["metadata"] == {"why": "co-recall"}

    def test_renamed_columns(self, legacy_db):
        store = open_legacy(legacy_db)
        compressed = store.fetch_record("compressed_patterns", "c1")
        assert compressed["compression_level"] == "cold"
        assert compressed["payload"] == b"\x00\x01"

        neural = store.fetch_record("neural_patterns", "np1")
        assert neural["centroid"] == vec()
        assert neural["category"] == "testing"

        trajectory = store.fetch_record("trajectories", "t1")
        assert trajectory["steps"] == [{"state": "s", "action": "a", "reward": 1.0, "outcome": "ok"}]
        assert trajectory["final_score"] == 1.0
        assert trajectory["sealed"] is True

    def test_writes_succeed_after_upgrade(self, legacy_db):
        store = open_legacy(legacy_db)
        with store.session() as session:
            session.put("compressed_patterns", "c2", {"payload": b"zz", "compression_level": "hot"})
            session.put("file_sequences", "b.py->c.py", {"prev_file": "b.py", "next_file": "c.py"})
        assert store.count("compressed_patterns") == 2
        assert store.count("file_sequences") == 2

    def test_reopen_is_idempotent(self, legacy_db):
        open_legacy(legacy_db)
        store = open_legacy(legacy_db)
        assert store.fetch_record("patterns", "edit:py:coder")["value"] == 0.75
        assert store.counts()["edges"] == 1

    def test_untouched_tables_keep_their_data(self, legacy_db):
        store = open_legacy(legacy_db)
        memory = store.fetch_record("memories", "m1")
        assert memory["content"] == "hello"
        assert memory["metadata"] == {"a": 1}
        assert store.fetch_record("stats", "total_memories")["value"] == "1"


class TestUnmovableRows:
    def test_old_table_kept_when_a_row_has_no_key(self, legacy_db):
        conn = sqlite3.connect(legacy_db)
        conn.execute("INSERT INTO errors (key, data) VALUES (NULL, '{}')")
        conn.commit()
        conn.close()

        store = open_legacy(legacy_db)
        assert store.fetch_record("errors", "err-1") is not None

        conn = sqlite3.connect(legacy_db)
        kept = conn.execute("SELECT COUNT(*) FROM errors_old").fetchone()[0]
        conn.close()
        assert kept == 2


class TestHelpers:
    def test_needs_rebuild(self):
        registry = default_registry()
        conn = sqlite3.connect(":memory:")
        conn.execute("CREATE TABLE stats (key TEXT PRIMARY KEY, value TEXT)")
        conn.execute("CREATE TABLE agents (name TEXT PRIMARY KEY, data TEXT)")
        assert needs_rebuild(conn, registry.spec_of("stats")) is False
        assert needs_rebuild(conn, registry.spec_of("agents")) is True
        assert needs_rebuild(conn, registry.spec_of("memories")) is False
        conn.close()

    def test_legacy_record_rejects_missing_key(self):
        spec = default_registry().spec_of("file_sequences")
        with pytest.raises(ValueError):
            legacy_record(spec, {"count": 3})
