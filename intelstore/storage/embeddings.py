"""Embedding helpers for intelstore storage.

- pack_embedding / unpack_embedding: float32 little-endian BLOB codec used for
  every vector column
- DimensionGuard: rejects vectors whose width differs from the width declared
  for the collection in the schema registry
- HashEmbedder: deterministic offline embedder, used when no model-backed
  embedding function is available
"""

import hashlib
import logging
import math
import re
import struct
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Sequence

from intelstore.errors import DimensionMismatch, InvalidRecord
from intelstore.types import EmbeddingScheme

if TYPE_CHECKING:
    from .schema import SchemaRegistry

logger = logging.getLogger(__name__)

FLOAT32_BYTES = 4

# text -> vector; may raise EmbeddingUnavailable
EmbedFn = Callable[[str], Sequence[float]]


def pack_embedding(vector: Sequence[float]) -> bytes:
    """Serialize a vector as little-endian float32 bytes."""
    return struct.pack(f"<{len(vector)}f", *vector)


def unpack_embedding(blob: Optional[bytes]) -> Optional[List[float]]:
    """Deserialize a float32 BLOB. Empty or NULL blobs read as None."""
    if not blob:
        return None
    if len(blob) % FLOAT32_BYTES != 0:
        logger.warning(f"Ignoring embedding blob with invalid length {len(blob)}")
        return None
    count = len(blob) // FLOAT32_BYTES
    return list(struct.unpack(f"<{count}f", bytes(blob)))


def blob_width(blob: Optional[bytes]) -> Optional[int]:
    """Vector width encoded in a float32 BLOB."""
    if not blob:
        return None
    return len(blob) // FLOAT32_BYTES


def coerce_vector(value: Any, collection: str = "", field: str = "embedding") -> Optional[List[float]]:
    """Normalize a vector given as a sequence of numbers or float32 bytes.

    Raises:
        InvalidRecord: If the value is not numeric.
        ValueError: If any component is NaN or infinite.
    """
    if value is None:
        return None
    if isinstance(value, (bytes, bytearray, memoryview)):
        return unpack_embedding(bytes(value))
    if isinstance(value, (str, dict)):
        raise InvalidRecord(collection, f"{field} must be a sequence of numbers")
    try:
        vector = [float(x) for x in value]
    except (TypeError, ValueError) as e:
        raise InvalidRecord(collection, f"{field} must be a sequence of numbers ({e})")
    for i, x in enumerate(vector):
        if math.isnan(x) or math.isinf(x):
            raise ValueError(f"{collection}.{field} has a non-finite value at index {i}")
    return vector


class DimensionGuard:
    """Enforces one vector width per collection field.

    Two widths in the same collection make every cross-width similarity
    comparison return zero, so mismatches are rejected rather than stored.
    """

    def __init__(self, registry: "SchemaRegistry"):
        self._registry = registry

    def expected_width(self, collection: str, field: str = "embedding") -> int:
        spec = self._registry.spec_of(collection)
        field_spec = spec.field(field)
        if field_spec is None or field_spec.kind != "vector":
            raise ValueError(f"{collection}.{field} is not a vector field")
        return field_spec.width

    def check(self, collection: str, vector: Any, field: str = "embedding") -> None:
        """Raise DimensionMismatch if vector's width is not the declared width.

        None is always accepted (embeddings are nullable).
        """
        expected = self.expected_width(collection, field)
        if vector is None:
            return
        if isinstance(vector, (bytes, bytearray, memoryview)):
            actual = len(vector) // FLOAT32_BYTES
        else:
            actual = len(vector)
        if actual != expected:
            raise DimensionMismatch(collection, expected=expected, actual=actual, field=field)

    def check_record(self, collection: str, record: Dict[str, Any]) -> None:
        """Check every vector field present in record."""
        spec = self._registry.spec_of(collection)
        for field_spec in spec.vector_fields:
            self.check(collection, record.get(field_spec.name), field_spec.name)


def degrade_embedding(
    record: Dict[str, Any], field: str = "embedding", tag: bool = True
) -> Dict[str, Any]:
    """Return a copy of record with its vector dropped.

    Used when a DimensionMismatch cannot be fixed by re-embedding: the text is
    kept, the record no longer takes part in similarity search. With tag=True
    the record's embedding_scheme side field is set to "fallback"; only
    collections that declare that field (memories) accept it.
    """
    degraded = dict(record)
    degraded[field] = None
    if tag:
        degraded["embedding_scheme"] = EmbeddingScheme.FALLBACK.value
    return degraded


class HashEmbedder:
    """Deterministic bag-of-tokens embedder.

    Each token is hashed to a signed bucket; the result is L2-normalized.
    Similar texts share buckets, identical texts get identical vectors, and
    no model or network is needed.
    """

    scheme = EmbeddingScheme.HASH

    def __init__(self, dimension: int = 384):
        if dimension <= 0:
            raise ValueError("dimension must be positive")
        self.dimension = dimension

    def embed(self, text: str) -> List[float]:
        vector = [0.0] * self.dimension
        tokens = re.findall(r"\w+", (text or "").lower()) or [(text or "").lower()]
        for token in tokens:
            digest = hashlib.sha256(token.encode("utf-8")).digest()
            idx = int.from_bytes(digest[:4], "little") % self.dimension
            sign = 1.0 if digest[4] & 1 else -1.0
            vector[idx] += sign
        norm = math.sqrt(sum(v * v for v in vector)) or 1.0
        return [v / norm for v in vector]

    __call__ = embed
