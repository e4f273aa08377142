"""intelstore storage layer.

Schema registry, SQLite record store, JSON mirror, and the synchronizer
between them.
"""

from .embeddings import DimensionGuard, HashEmbedder, degrade_embedding
from .kv import StateCarrier
from .mirror import is_document_newer, read_document, write_document
from .replay import LearningComponent, WarmReplayLoader
from .schema import (
    SCHEMA_VERSION,
    CollectionSpec,
    FieldSpec,
    SchemaRegistry,
    default_registry,
)
from .session import Session, SessionState
from .sqlite import RecordStore
from .sync_engine import export_to_document, import_from_document

__all__ = [
    # Schema
    "SCHEMA_VERSION",
    "FieldSpec",
    "CollectionSpec",
    "SchemaRegistry",
    "default_registry",
    # Backends
    "RecordStore",
    "Session",
    "SessionState",
    "read_document",
    "write_document",
    "is_document_newer",
    # Sync
    "import_from_document",
    "export_to_document",
    # Embeddings
    "DimensionGuard",
    "HashEmbedder",
    "degrade_embedding",
    # Continuity
    "StateCarrier",
    "WarmReplayLoader",
    "LearningComponent",
]
