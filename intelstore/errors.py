"""
intelstore error taxonomy.

Error handling philosophy:
- Referencing an undeclared collection raises UnknownCollection (programming error)
- Embedding width violations raise DimensionMismatch; nothing is stored
- Records that do not match their collection's shape raise InvalidRecord
- Commit failures in SQLite (lock contention, disk full) raise StorageUnavailable;
  the previously committed state is left intact and the session may be retried
- An unparsable mirror document raises CorruptDocument from the reader; the
  Synchronizer returns it instead of raising because the Record Store stays
  authoritative
- Session API misuse raises InvalidSessionState
"""

from typing import Optional


class IntelStoreError(Exception):
    """Base for all intelstore errors."""

    pass


class UnknownCollection(IntelStoreError, ValueError):
    """Raised when a collection name is not declared in the schema registry."""

    def __init__(self, name: str):
        super().__init__(f"Unknown collection: {name!r}")
        self.name = name


class DimensionMismatch(IntelStoreError):
    """Raised when a vector does not match its collection's declared width."""

    def __init__(
        self,
        collection: str,
        expected: int,
        actual: int,
        field: str = "embedding",
    ):
        super().__init__(
            f"{collection}.{field}: expected vector width {expected}, got {actual}"
        )
        self.collection = collection
        self.field = field
        self.expected = expected
        self.actual = actual


class InvalidRecord(IntelStoreError, ValueError):
    """Raised when a record does not match its collection's declared shape."""

    def __init__(self, collection: str, message: str):
        super().__init__(f"Invalid {collection} record: {message}")
        self.collection = collection


class StorageUnavailable(IntelStoreError):
    """Raised when the Record Store cannot be written (locked, full, read-only)."""

    pass


class CorruptDocument(IntelStoreError):
    """Raised when the mirror document cannot be parsed."""

    def __init__(self, path: Optional[str], reason: str):
        where = f" ({path})" if path else ""
        super().__init__(f"Corrupt mirror document{where}: {reason}")
        self.path = path
        self.reason = reason


class InvalidSessionState(IntelStoreError):
    """Raised on session misuse: commit without begin, double commit, etc."""

    pass


class EmbeddingUnavailable(IntelStoreError):
    """Raised by an embedding function that cannot produce a vector."""

    pass
