"""Tests for stats recomputation, session counters and the learning summary."""

import pytest

from intelstore.config import StoreConfig
from intelstore.storage.learning_ops import save_learning_table, update_pattern
from intelstore.storage.stats_ops import (
    dominant_embedding_width,
    get_int_stat,
    get_stat,
    learning_summary,
    record_session_end,
    record_session_start,
    refresh_stats,
)
from intelstore.store import IntelligenceStore

from conftest import put_memories, vec


@pytest.fixture
def frozen_time(monkeypatch):
    monkeypatch.setattr("intelstore.storage.stats_ops.now_epoch", lambda: 1704067200)
    return 1704067200


class TestRefreshStats:
    def test_totals_reflect_committed_rows(self, store, frozen_time):
        put_memories(store, "a", "b", "c")
        with store.session() as session:
            session.put("edges", "a->b:semantic", {"from_id": "a", "to_id": "b"})
        with store.session() as session:
            written = refresh_stats(session)

        assert written["total_memories"] == "3"
        assert written["total_edges"] == "1"
        assert written["total_neural_patterns"] == "0"
        assert written["last_consolidation"] == str(frozen_time)
        assert written["last_consolidate"] == "2024-01-01T00:00:00+00:00"
        assert store.fetch_record("stats", "total_memories")["value"] == "3"
        assert store.fetch_record("stats", "total_memories")["updated_at"] == frozen_time

    def test_consolidation_count_increments(self, store):
        for _ in range(2):
            with store.session() as session:
                refresh_stats(session)
        assert store.fetch_record("stats", "consolidation_count")["value"] == "2"

    def test_without_consolidation(self, store):
        with store.session() as session:
            written = refresh_stats(session, consolidated=False)
        assert "consolidation_count" not in written
        assert store.fetch_record("stats", "consolidation_count") is None

    def test_embedding_dimension_defaults_to_declared_width(self, store):
        with store.session() as session:
            assert refresh_stats(session)["embedding_dimension"] == "384"

    def test_embedding_dimension_from_stored_vectors(self, temp_db):
        store = IntelligenceStore(StoreConfig(db_path=temp_db, embedding_width=8))
        with store.session() as session:
            session.put("memories", "m1", {"content": "x", "embedding": vec(8)})
            session.put("memories", "m2", {"content": "y"})
        with store.session() as session:
            assert dominant_embedding_width(session) == 8
            assert refresh_stats(session)["embedding_dimension"] == "8"

    def test_dominant_width_none_without_vectors(self, store):
        put_memories(store, "a")
        with store.session() as session:
            assert dominant_embedding_width(session) is None


class TestSessionCounters:
    def test_session_start_counts_and_remembers_id(self, store, frozen_time):
        with store.session() as session:
            assert record_session_start(session, "sess-1") == 1
        with store.session() as session:
            assert record_session_start(session, "sess-2") == 2
            assert get_stat(session, "last_session") == "sess-2"
            assert get_stat(session, "last_session_timestamp") == str(frozen_time)

    def test_session_end(self, store):
        with store.session() as session:
            record_session_end(session)
        with store.session() as session:
            assert record_session_end(session) == 2
        with store.session() as session:
            assert get_int_stat(session, "total_sessions") == 2

    def test_get_int_stat_tolerates_garbage(self, store):
        with store.session() as session:
            session.put("stats", "session_count", {"value": "many"})
        with store.session() as session:
            assert get_int_stat(session, "session_count") == 0
            assert get_int_stat(session, "absent") == 0


class TestLearningSummary:
    def test_empty(self, store):
        with store.session() as session:
            summary = learning_summary(session)
        assert summary["patterns"]["count"] == 0
        assert summary["learning_data"]["entries"] == 0
        assert summary["disconnected"] is False

    def test_reports_both_tables(self, store):
        with store.session() as session:
            update_pattern(session, "edit:py", "coder", 1.0)
            update_pattern(session, "edit:py", "reviewer", -1.0)
            update_pattern(session, "cmd:pytest", "run", 1.0)
            save_learning_table(
                session, "q-learning", {"edit:py": {"coder": 0.5, "reviewer": 0.1}}
            )
            save_learning_table(session, "sarsa", {"cmd:pytest": {"run": 0.2}})

        with store.session() as session:
            summary = learning_summary(session)

        patterns = summary["patterns"]
        assert patterns["count"] == 3
        assert patterns["states"] == 2
        assert patterns["total_updates"] == 3
        assert patterns["top"][0]["value"] == pytest.approx(0.1)
        assert patterns["top"][-1]["key"] == "edit:py:reviewer"

        learning = summary["learning_data"]
        assert learning["entries"] == 3
        assert learning["algorithms"]["q-learning"]["entries"] == 2
        assert learning["algorithms"]["sarsa"]["entries"] == 1
        assert summary["disconnected"] is True

    def test_patterns_alone_are_flagged(self, store):
        with store.session() as session:
            update_pattern(session, "s", "a", 1.0)
        with store.session() as session:
            assert learning_summary(session)["disconnected"] is True
