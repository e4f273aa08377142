"""Atomic save coordinator.

A Session is a bounded unit of work against the Record Store. Reads go
straight to committed data (overlaid with the session's own pending writes);
writes are buffered and applied at commit() inside one BEGIN IMMEDIATE
transaction on a fresh connection:

- only explicitly written rows are upserted, never delete-then-reinsert
- collections the session never touched receive zero statements
- prune() is the only bulk delete and only removes keys the session saw in a
  full load, so a session cannot delete rows it never loaded
"""

import logging
import sqlite3
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Dict, Iterator, List, Optional, Set, Tuple

from intelstore.errors import InvalidSessionState, StorageUnavailable
from intelstore.types import CommitResult

if TYPE_CHECKING:
    from .sqlite import RecordStore

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    NEW = "new"
    ACTIVE = "active"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"


@dataclass
class PendingOp:
    """A buffered write. record is None for deletes."""

    kind: str  # "put" | "delete"
    record: Optional[Dict[str, Any]] = None


@dataclass
class LoadedSnapshot:
    """Keys a session has seen for one collection."""

    keys: Set[str]
    full: bool


class Session:
    """Unit of work over a RecordStore. Obtain one with store.begin_session()."""

    def __init__(self, store: "RecordStore"):
        self._store = store
        self._state = SessionState.NEW
        self._ops: Dict[Tuple[str, str], PendingOp] = {}
        self._touched: List[str] = []
        self._loaded: Dict[str, LoadedSnapshot] = {}

    # --- Lifecycle ---

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def store(self) -> "RecordStore":
        return self._store

    @property
    def touched(self) -> List[str]:
        """Collections read or written in this session, in first-touch order."""
        return list(self._touched)

    @property
    def pending(self) -> int:
        return len(self._ops)

    def begin(self) -> "Session":
        if self._state != SessionState.NEW:
            raise InvalidSessionState(f"Cannot begin a session that is {self._state.value}")
        self._state = SessionState.ACTIVE
        return self

    def _require_active(self, action: str) -> None:
        if self._state != SessionState.ACTIVE:
            raise InvalidSessionState(f"Cannot {action}: session is {self._state.value}")

    def _touch(self, collection: str) -> None:
        if collection not in self._touched:
            self._touched.append(collection)

    def __enter__(self) -> "Session":
        if self._state == SessionState.NEW:
            self.begin()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        if self._state != SessionState.ACTIVE:
            return
        if exc_type is None:
            self.commit()
        else:
            self.rollback()

    # --- Reads ---

    def load(self, collection: str, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """Load committed records overlaid with this session's pending writes.

        With a limit, the most recently inserted `limit` rows are loaded (still
        returned oldest first) and the collection cannot be pruned.
        """
        self._require_active("load")
        spec = self._store.registry.spec_of(collection)
        if limit is not None and limit < 0:
            raise ValueError("limit cannot be negative")

        records = self._store.fetch_records(collection, limit=limit)
        self._touch(collection)

        snapshot = self._loaded.get(collection)
        keys = {r[spec.primary_key] for r in records}
        if snapshot is None:
            self._loaded[collection] = LoadedSnapshot(keys=keys, full=limit is None)
        else:
            snapshot.keys |= keys
            snapshot.full = snapshot.full or limit is None

        result = []
        seen = set()
        for record in records:
            key = record[spec.primary_key]
            seen.add(key)
            op = self._ops.get((collection, key))
            if op is None:
                result.append(record)
            elif op.kind == "put":
                result.append(dict(op.record))
        for (name, key), op in self._ops.items():
            if name == collection and op.kind == "put" and key not in seen:
                result.append(dict(op.record))
        return result

    def get(self, collection: str, key: str) -> Optional[Dict[str, Any]]:
        """Fetch one record by key, honoring pending writes."""
        self._require_active("get")
        self._store.registry.spec_of(collection)
        self._touch(collection)
        op = self._ops.get((collection, key))
        if op is not None:
            return dict(op.record) if op.kind == "put" else None
        return self._store.fetch_record(collection, key)

    def query(
        self,
        collection: str,
        where: Optional[Dict[str, Any]] = None,
        predicate: Optional[Callable[[Dict[str, Any]], bool]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> Iterator[Dict[str, Any]]:
        """Lazily iterate committed records.

        Pending writes are not visible here. Closing the generator early
        releases its cursor.

        Args:
            where: Column equality filters.
            predicate: Python-side filter applied to decoded records.
            order_by: Column to order by (insertion order if omitted).
            limit: Maximum number of records yielded.
        """
        self._require_active("query")
        spec = self._store.registry.spec_of(collection)
        for column in list(where or {}) + ([order_by] if order_by else []):
            if spec.field(column) is None:
                raise ValueError(f"{collection} has no column {column!r}")
        if limit is not None and limit < 0:
            raise ValueError("limit cannot be negative")
        self._touch(collection)
        return self._store.iter_records(
            collection,
            where=where,
            predicate=predicate,
            order_by=order_by,
            descending=descending,
            limit=limit,
        )

    # --- Writes ---

    def put(self, collection: str, key: str, record: Dict[str, Any]) -> Dict[str, Any]:
        """Stage an insert-or-replace of one record.

        Returns the full record as it will be stored.

        Raises:
            UnknownCollection: collection is not declared.
            InvalidRecord: record does not match the collection's shape.
            DimensionMismatch: a vector has the wrong width.
        """
        self._require_active("put")
        spec = self._store.registry.spec_of(collection)
        full = spec.build_record(key, record)
        self._store.guard.check_record(collection, full)
        self._touch(collection)
        self._ops[(collection, key)] = PendingOp("put", full)
        return dict(full)

    def delete(self, collection: str, key: str) -> None:
        """Stage the removal of one record by key."""
        self._require_active("delete")
        self._store.registry.spec_of(collection)
        self._touch(collection)
        self._ops[(collection, key)] = PendingOp("delete")

    def prune(self, collection: str, keep_keys) -> List[str]:
        """Stage deletion of every loaded key not in keep_keys.

        Only keys present in this session's full load are candidates; rows
        inserted by other processes since the load are left alone.

        Raises:
            InvalidSessionState: The collection was not loaded in full.
        """
        self._require_active("prune")
        self._store.registry.spec_of(collection)
        snapshot = self._loaded.get(collection)
        if snapshot is None or not snapshot.full:
            raise InvalidSessionState(
                f"Cannot prune {collection}: it was not loaded in full by this session"
            )
        keep = set(keep_keys)
        doomed = []
        for key in sorted(snapshot.keys - keep):
            op = self._ops.get((collection, key))
            if op is not None and op.kind == "put":
                continue
            self._ops[(collection, key)] = PendingOp("delete")
            doomed.append(key)
        return doomed

    # --- Commit / rollback ---

    def commit(self) -> CommitResult:
        """Apply every pending write in one transaction.

        Raises:
            InvalidSessionState: The session is not active.
            StorageUnavailable: SQLite refused the transaction (locked past
                the timeout, disk full, read-only). Nothing was applied and
                the session stays active, so commit() may be retried.
        """
        self._require_active("commit")
        result = CommitResult()

        if self._ops:
            conn = self._store._get_write_conn()
            try:
                conn.execute("BEGIN IMMEDIATE")
                for (collection, key), op in self._ops.items():
                    self._apply_op(conn, collection, key, op, result)
                conn.execute("COMMIT")
            except sqlite3.DatabaseError as e:
                _rollback_quietly(conn)
                logger.warning(f"Commit failed, rolled back: {e}")
                raise StorageUnavailable(f"Commit failed: {e}") from e
            except Exception:
                _rollback_quietly(conn)
                raise
            finally:
                conn.close()

        self._state = SessionState.COMMITTED
        self._ops.clear()
        logger.debug(
            f"Committed session: {result.total_written} written, {result.total_deleted} deleted"
        )
        self._store._on_commit(self, result)
        return result

    def _apply_op(
        self,
        conn: sqlite3.Connection,
        collection: str,
        key: str,
        op: PendingOp,
        result: CommitResult,
    ) -> None:
        spec = self._store.registry.spec_of(collection)
        if op.kind == "put":
            conn.execute(spec.upsert_sql(), spec.to_row(op.record))
            result.written[collection] = result.written.get(collection, 0) + 1
        else:
            cursor = conn.execute(
                f"DELETE FROM {spec.name} WHERE {spec.primary_key} = ?", (key,)
            )
            if cursor.rowcount:
                result.deleted[collection] = result.deleted.get(collection, 0) + cursor.rowcount

    def rollback(self) -> None:
        """Discard pending writes. Nothing has been written yet, so this is local."""
        self._require_active("rollback")
        self._ops.clear()
        self._state = SessionState.ROLLED_BACK


def _rollback_quietly(conn: sqlite3.Connection) -> None:
    if not conn.in_transaction:
        return
    try:
        conn.execute("ROLLBACK")
    except sqlite3.Error as e:
        logger.debug(f"Rollback after failed commit also failed: {e}")
