"""
Shared types for intelstore.

Records travel through the engine as plain dicts keyed by column name; the
dataclasses here describe results and the enum vocabularies that the schema
registry validates against.
"""

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

# === Shared Utility Functions ===


def utc_now() -> str:
    """Get current timestamp as ISO string in UTC."""
    return datetime.now(timezone.utc).isoformat()


def now_epoch() -> int:
    """Get current time as integer Unix seconds (the store's timestamp unit)."""
    return int(time.time())


# === Enums ===


class MemoryType(str, Enum):
    """Canonical memory_type values for the memories collection."""

    GENERAL = "general"
    EDIT = "edit"
    COMMAND = "command"
    SEARCH = "search"
    ROUTE = "route"
    SESSION = "session"
    AGENT = "agent"
    PROJECT = "project"
    ERROR = "error"


VALID_MEMORY_TYPES = frozenset(mt.value for mt in MemoryType)


class CompressionLevel(str, Enum):
    """Storage tiers for compressed_patterns, hottest first."""

    HOT = "hot"
    WARM = "warm"
    COLD = "cold"
    ARCHIVE = "archive"


VALID_COMPRESSION_LEVELS = frozenset(cl.value for cl in CompressionLevel)


class EmbeddingScheme(str, Enum):
    """Which producer created a stored vector."""

    MODEL = "model"  # External embedding function
    HASH = "hash"  # Bundled deterministic HashEmbedder
    FALLBACK = "fallback"  # Vector dropped after a width mismatch; text kept


# === Result types ===


@dataclass
class CommitResult:
    """Result of committing a session."""

    written: Dict[str, int] = field(default_factory=dict)
    deleted: Dict[str, int] = field(default_factory=dict)

    @property
    def total_written(self) -> int:
        return sum(self.written.values())

    @property
    def total_deleted(self) -> int:
        return sum(self.deleted.values())


@dataclass
class ImportResult:
    """Result of merging a mirror document into the Record Store."""

    merged: Dict[str, int] = field(default_factory=dict)
    rejected: List[Dict[str, Any]] = field(default_factory=list)
    skipped_keys: List[str] = field(default_factory=list)
    error: Optional[Exception] = None

    @property
    def total_merged(self) -> int:
        return sum(self.merged.values())

    @property
    def success(self) -> bool:
        return self.error is None


@dataclass
class ReplayResult:
    """Result of a warm replay pass."""

    replayed: List[str] = field(default_factory=list)
    available: int = 0

    @property
    def count(self) -> int:
        return len(self.replayed)
