"""Tests for the vector codec, DimensionGuard and HashEmbedder."""

import math

import pytest

from intelstore.errors import DimensionMismatch, InvalidRecord
from intelstore.storage.embeddings import (
    DimensionGuard,
    HashEmbedder,
    blob_width,
    coerce_vector,
    degrade_embedding,
    pack_embedding,
    unpack_embedding,
)
from intelstore.storage.schema import default_registry
from intelstore.types import EmbeddingScheme


class TestBlobCodec:
    def test_pack_is_little_endian_float32(self):
        assert pack_embedding([1.0]) == b"\x00\x00\x80\x3f"
        assert len(pack_embedding([0.0] * 384)) == 384 * 4

    def test_unpack_restores_values(self):
        assert unpack_embedding(pack_embedding([0.5, -2.0, 0.25])) == [0.5, -2.0, 0.25]

    def test_empty_blob_reads_as_none(self):
        assert unpack_embedding(None) is None
        assert unpack_embedding(b"") is None

    def test_truncated_blob_reads_as_none(self):
        assert unpack_embedding(b"\x00\x00\x80") is None

    def test_blob_width(self):
        assert blob_width(pack_embedding([0.0] * 64)) == 64
        assert blob_width(None) is None


class TestCoerceVector:
    def test_none_passes_through(self):
        assert coerce_vector(None) is None

    def test_bytes_are_decoded(self):
        assert coerce_vector(pack_embedding([0.5, 0.5])) == [0.5, 0.5]

    def test_tuple_and_ints_become_float_list(self):
        assert coerce_vector((1, 2)) == [1.0, 2.0]

    def test_string_rejected(self):
        with pytest.raises(InvalidRecord):
            coerce_vector("0.1,0.2", "memories", "embedding")

    def test_non_numeric_component_rejected(self):
        with pytest.raises(InvalidRecord):
            coerce_vector([0.1, "x"], "memories", "embedding")

    def test_nan_rejected(self):
        with pytest.raises(ValueError, match="non-finite"):
            coerce_vector([0.1, math.nan])

    def test_infinity_rejected(self):
        with pytest.raises(ValueError, match="non-finite"):
            coerce_vector([math.inf])


class TestDimensionGuard:
    @pytest.fixture
    def guard(self):
        return DimensionGuard(default_registry(384, {"neural_patterns": 768}))

    def test_expected_width(self, guard):
        assert guard.expected_width("memories") == 384
        assert guard.expected_width("neural_patterns", "centroid") == 768

    def test_non_vector_field(self, guard):
        with pytest.raises(ValueError, match="not a vector field"):
            guard.expected_width("memories", "content")

    def test_matching_width_accepted(self, guard):
        guard.check("memories", [0.0] * 384)
        guard.check("memories", None)

    def test_wrong_width_rejected(self, guard):
        with pytest.raises(DimensionMismatch) as exc:
            guard.check("memories", [0.0] * 64)
        err = exc.value
        assert (err.collection, err.field, err.expected, err.actual) == (
            "memories",
            "embedding",
            384,
            64,
        )

    def test_blob_width_checked(self, guard):
        with pytest.raises(DimensionMismatch):
            guard.check("memories", pack_embedding([0.0] * 128))

    def test_check_record_covers_every_vector_field(self, guard):
        with pytest.raises(DimensionMismatch) as exc:
            guard.check_record("neural_patterns", {"id": "n1", "centroid": [0.0] * 384})
        assert exc.value.field == "centroid"
        assert exc.value.expected == 768


class TestDegradeEmbedding:
    def test_drops_vector_and_tags(self):
        original = {"id": "m1", "content": "x", "embedding": [0.1] * 64}
        degraded = degrade_embedding(original)
        assert degraded["embedding"] is None
        assert degraded["embedding_scheme"] == EmbeddingScheme.FALLBACK.value
        assert degraded["content"] == "x"
        # Input is not modified
        assert original["embedding"] == [0.1] * 64

    def test_untagged(self):
        degraded = degrade_embedding({"id": "t1", "embedding": [0.1]}, tag=False)
        assert degraded == {"id": "t1", "embedding": None}


class TestHashEmbedder:
    def test_width_and_scheme(self):
        embedder = HashEmbedder(64)
        vector = embedder("fix the login bug")
        assert len(vector) == 64
        assert embedder.scheme == EmbeddingScheme.HASH

    def test_deterministic(self):
        assert HashEmbedder()("same text") == HashEmbedder()("same text")

    def test_normalized(self):
        vector = HashEmbedder()("edited src/app.py to add retries")
        assert math.isclose(sum(v * v for v in vector), 1.0, rel_tol=1e-9)

    def test_empty_text(self):
        vector = HashEmbedder(16)("")
        assert len(vector) == 16
        assert math.isclose(sum(v * v for v in vector), 1.0, rel_tol=1e-9)

    def test_invalid_dimension(self):
        with pytest.raises(ValueError):
            HashEmbedder(0)
