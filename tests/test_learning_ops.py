"""Tests for the learning pipeline's writers."""

import pytest

from intelstore.errors import EmbeddingUnavailable
from intelstore.storage.embeddings import HashEmbedder
from intelstore.storage.learning_ops import (
    MAX_EDGE_WEIGHT,
    append_step,
    backfill_embeddings,
    prune_compressed_patterns,
    record_error,
    record_file_touch,
    record_memory,
    register_agent,
    reinforce_neural_pattern,
    seal_trajectory,
    start_trajectory,
    store_compressed_pattern,
    strengthen_edge,
    update_pattern,
)
from intelstore.store import IntelligenceStore
from intelstore.types import EmbeddingScheme


class Clock:
    def __init__(self, start=1_000):
        self.now = start

    def __call__(self):
        return self.now


@pytest.fixture
def clock(monkeypatch):
    clock = Clock()
    monkeypatch.setattr("intelstore.storage.learning_ops.now_epoch", clock)
    return clock


def unavailable_embedder(text):
    raise EmbeddingUnavailable("model not loaded")


def narrow_embedder(text):
    return [0.5] * 64


class TestRecordMemory:
    def test_with_hash_embedder(self, store):
        with store.session() as session:
            record = record_memory(session, "edited app.py", "edit", embed_fn=HashEmbedder())
        stored = store.fetch_record("memories", record["id"])
        assert stored["memory_type"] == "edit"
        assert stored["embedding_scheme"] == EmbeddingScheme.HASH.value
        assert len(stored["embedding"]) == 384

    def test_model_scheme_for_plain_functions(self, store):
        with store.session() as session:
            record = record_memory(session, "x", embed_fn=lambda text: [0.25] * 384)
        assert record["embedding_scheme"] == "model"

    def test_without_embedder(self, store):
        with store.session() as session:
            record = record_memory(session, "plain", memory_id="m1")
        assert record["id"] == "m1"
        assert record["embedding"] is None
        assert record["embedding_scheme"] is None

    def test_unavailable_embedder_stores_text(self, store):
        with store.session() as session:
            record = record_memory(session, "offline", embed_fn=unavailable_embedder)
        assert store.fetch_record("memories", record["id"])["content"] == "offline"
        assert record["embedding"] is None

    def test_wrong_width_degrades_to_fallback(self, store):
        with store.session() as session:
            record = record_memory(session, "narrow", embed_fn=narrow_embedder)
        stored = store.fetch_record("memories", record["id"])
        assert stored["embedding"] is None
        assert stored["embedding_scheme"] == EmbeddingScheme.FALLBACK.value

    def test_invalid_memory_type(self, store):
        session = store.begin_session()
        with pytest.raises(ValueError):
            record_memory(session, "x", memory_type="gossip")

    def test_backfill(self, store):
        with store.session() as session:
            record_memory(session, "one", memory_id="m1")
            record_memory(session, "two", memory_id="m2", embed_fn=HashEmbedder())
            record_memory(session, "three", memory_id="m3")
        with store.session() as session:
            counts = backfill_embeddings(session, HashEmbedder())
        assert counts == {"embedded": 2, "failed": 0}
        assert len(store.fetch_record("memories", "m1")["embedding"]) == 384

    def test_backfill_failures_counted(self, store):
        with store.session() as session:
            record_memory(session, "one", memory_id="m1")
        with store.session() as session:
            counts = backfill_embeddings(session, narrow_embedder)
        assert counts == {"embedded": 0, "failed": 1}
        assert store.fetch_record("memories", "m1")["embedding"] is None


class TestPatterns:
    def test_value_moves_toward_reward(self, store):
        with store.session() as session:
            first = update_pattern(session, "edit:py", "coder", 1.0)
            second = update_pattern(session, "edit:py", "coder", 1.0)
        assert first["value"] == pytest.approx(0.1)
        assert second["value"] == pytest.approx(0.19)
        stored = store.fetch_record("patterns", "edit:py:coder")
        assert stored["update_count"] == 2


class TestTrajectories:
    def test_lifecycle(self, store, clock):
        with store.session() as session:
            start_trajectory(session, "t1")
            append_step(session, "t1", "s1", "a1", 0.5)
            append_step(session, "t1", "s2", "a2", 1.0)
            clock.now = 2_000
            sealed = seal_trajectory(session, "t1")
        assert sealed["final_score"] == 1.5
        assert sealed["sealed_at"] == 2_000
        stored = store.fetch_record("trajectories", "t1")
        assert [s["action"] for s in stored["steps"]] == ["a1", "a2"]
        assert stored["sealed"] is True

    def test_explicit_score(self, store):
        with store.session() as session:
            start_trajectory(session, "t1")
            assert seal_trajectory(session, "t1", final_score=-1.0)["final_score"] == -1.0

    def test_sealed_is_immutable(self, store):
        with store.session() as session:
            start_trajectory(session, "t1")
            seal_trajectory(session, "t1")
        session = store.begin_session()
        with pytest.raises(ValueError, match="sealed"):
            append_step(session, "t1", "s", "a", 1.0)
        with pytest.raises(ValueError, match="sealed"):
            seal_trajectory(session, "t1")

    def test_unknown_trajectory(self, store):
        session = store.begin_session()
        with pytest.raises(ValueError, match="Unknown"):
            append_step(session, "nope", "s", "a", 1.0)


class TestFileSequences:
    def touch(self, store, path):
        with store.session() as session:
            return record_file_touch(session, path)

    def test_sequence_across_processes(self, store, config):
        assert self.touch(store, "a.py") is None
        # Each edit arrives through a freshly opened store
        assert self.touch(IntelligenceStore(config), "b.py")["id"] == "a.py->b.py"
        assert self.touch(IntelligenceStore(config), "a.py")["id"] == "b.py->a.py"
        sequence = self.touch(IntelligenceStore(config), "b.py")
        assert sequence["count"] == 2

    def test_repeated_file_is_not_a_sequence(self, store):
        self.touch(store, "a.py")
        assert self.touch(store, "a.py") is None
        assert store.counts()["file_sequences"] == 0


class TestEdgesAndAgents:
    def test_edge_weight_grows_and_caps(self, store):
        with store.session() as session:
            edge = strengthen_edge(session, "m1", "m2", weight=9.95)
            assert edge["id"] == "m1->m2:semantic"
            edge = strengthen_edge(session, "m1", "m2", delta=0.5, metadata={"why": "co-recall"})
        assert edge["weight"] == MAX_EDGE_WEIGHT
        assert edge["metadata"] == {"why": "co-recall"}

    def test_register_agent(self, store, clock):
        with store.session() as session:
            register_agent(session, "coder", "sess-1", role="developer")
        clock.now = 1_500
        with store.session() as session:
            agent = register_agent(session, "coder", "sess-2")
        assert agent["role"] == "developer"
        assert agent["created_at"] == 1_000
        assert agent["metadata"] == {
            "first_seen": 1_000,
            "session_count": 2,
            "last_seen": 1_500,
            "last_session": "sess-2",
        }

    def test_neural_pattern_reinforcement(self, store):
        with store.session() as session:
            first = reinforce_neural_pattern(session, "np1", content="prefer pytest fixtures")
            assert first["confidence"] == 0.5
            for _ in range(7):
                latest = reinforce_neural_pattern(session, "np1")
        assert latest["confidence"] == pytest.approx(1.0)
        assert latest["usage"] == 8
        assert latest["content"] == "prefer pytest fixtures"


class TestCompressedPatterns:
    def test_store_and_prune_oldest(self, store, clock):
        with store.session() as session:
            for i in range(5):
                clock.now = 100 + i
                store_compressed_pattern(session, b"x" * i, level="cold", pattern_id=f"c{i}")
        with store.session() as session:
            doomed = prune_compressed_patterns(session, max_patterns=3)
        assert doomed == ["c0", "c1"]
        assert [r["id"] for r in store.fetch_records("compressed_patterns")] == ["c2", "c3", "c4"]

    def test_prune_ties_drop_earliest_inserted(self, store, clock):
        with store.session() as session:
            for i in range(3):
                store_compressed_pattern(session, b"x", pattern_id=f"c{i}")
        with store.session() as session:
            assert prune_compressed_patterns(session, max_patterns=2) == ["c0"]

    def test_prune_under_limit(self, store):
        with store.session() as session:
            store_compressed_pattern(session, b"x", pattern_id="c0")
        with store.session() as session:
            assert prune_compressed_patterns(session, max_patterns=5) == []

    def test_invalid_level(self, store):
        session = store.begin_session()
        with pytest.raises(ValueError):
            store_compressed_pattern(session, b"x", level="lukewarm")


class TestErrors:
    def test_same_signature_same_record(self, store):
        with store.session() as session:
            first = record_error(session, "ModuleNotFoundError: requests", context="pip")
        with store.session() as session:
            second = record_error(session, "ModuleNotFoundError: requests", resolution="pip install")
        assert first["id"] == second["id"]
        assert first["id"].startswith("err-")
        stored = store.fetch_record("errors", first["id"])
        assert stored["context"] == "pip"
        assert stored["resolution"] == "pip install"
        assert store.counts()["errors"] == 1
