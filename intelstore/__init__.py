"""
intelstore - Durable intelligence store for stateless learning hooks.

Keeps a SQLite record store and its portable JSON mirror in sync, guards
embedding widths, and warms in-memory learners from persisted history.
"""

from .config import StoreConfig
from .errors import (
    CorruptDocument,
    DimensionMismatch,
    EmbeddingUnavailable,
    IntelStoreError,
    InvalidRecord,
    InvalidSessionState,
    StorageUnavailable,
    UnknownCollection,
)
from .storage.embeddings import HashEmbedder
from .store import IntelligenceStore, open_store

try:
    from importlib.metadata import PackageNotFoundError, version

    __version__ = version("intelstore")
except PackageNotFoundError:
    __version__ = "0.0.0"

__all__ = [
    "IntelligenceStore",
    "StoreConfig",
    "open_store",
    "HashEmbedder",
    # Errors
    "IntelStoreError",
    "UnknownCollection",
    "DimensionMismatch",
    "InvalidRecord",
    "StorageUnavailable",
    "CorruptDocument",
    "InvalidSessionState",
    "EmbeddingUnavailable",
]
