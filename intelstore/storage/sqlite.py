"""SQLite Record Store for intelstore.

The authoritative backend: one table per declared collection, WAL mode so
readers never block the single writer, and a busy timeout bounded by
StoreConfig.lock_timeout. Connections are created per operation; writes go
through Session.commit(), which holds the write lock (BEGIN IMMEDIATE) only
for the duration of the commit.
"""

import contextlib
import logging
import sqlite3
from typing import Any, Callable, Dict, Iterator, List, Optional

from intelstore.config import StoreConfig
from intelstore.errors import StorageUnavailable
from intelstore.logging_config import log_commit
from intelstore.types import CommitResult

from .embeddings import DimensionGuard
from .legacy import upgrade_legacy_tables
from .schema import SchemaRegistry, default_registry, init_db, validate_table_name
from .session import Session

logger = logging.getLogger(__name__)


class RecordStore:
    """Schema-managed SQLite store of all collections.

    Opening is idempotent: the file, its directory and the schema are
    created if absent, and older schemas are upgraded additively.

    Raises (from the constructor):
        StorageUnavailable: The database cannot be opened or initialized.
        DimensionMismatch: The configured vector width differs from the
            width of vectors already stored.
    """

    def __init__(self, config: StoreConfig, registry: Optional[SchemaRegistry] = None):
        self.config = config
        self.db_path = config.db_path
        self.registry = registry or default_registry(
            config.embedding_width, config.vector_widths
        )
        self.guard = DimensionGuard(self.registry)
        # Collections written by committed sessions during this store's lifetime
        self._committed_touched: List[str] = []

        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageUnavailable(f"Cannot create {self.db_path.parent}: {e}") from e

        self._init_db()

    @classmethod
    def open(cls, config: StoreConfig, registry: Optional[SchemaRegistry] = None) -> "RecordStore":
        return cls(config, registry)

    # === Connections ===

    def _get_conn(self, autocommit: bool = False) -> sqlite3.Connection:
        """Open a connection with WAL and the configured busy timeout.

        Callers must close it; prefer _connect() for ordinary work.
        """
        try:
            conn = sqlite3.connect(
                self.db_path,
                timeout=self.config.lock_timeout,
                isolation_level=None if autocommit else "DEFERRED",
            )
            conn.row_factory = sqlite3.Row
            conn.execute(f"PRAGMA busy_timeout={int(self.config.lock_timeout * 1000)}")
            conn.execute("PRAGMA journal_mode=WAL")
        except sqlite3.DatabaseError as e:
            raise StorageUnavailable(f"Cannot open {self.db_path}: {e}") from e
        return conn

    def _get_write_conn(self) -> sqlite3.Connection:
        """Connection in autocommit mode; the caller issues BEGIN IMMEDIATE."""
        return self._get_conn(autocommit=True)

    @contextlib.contextmanager
    def _connect(self):
        """Context manager that handles transactions AND closes connection.

        - Transaction commit on success
        - Transaction rollback on exception
        - Connection close in all cases
        """
        conn = self._get_conn()
        try:
            yield conn
            conn.commit()
        except Exception as e:
            logger.debug(f"Transaction failed, rolling back: {e}")
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self) -> None:
        """Rebuild legacy tables, then create or upgrade the schema."""
        try:
            with self._connect() as conn:
                upgrade_legacy_tables(conn, self.registry)
                init_db(conn, self.registry)
        except sqlite3.DatabaseError as e:
            raise StorageUnavailable(f"Cannot initialize {self.db_path}: {e}") from e

    # === Sessions ===

    def begin_session(self) -> Session:
        """Start a new active session."""
        return Session(self).begin()

    def session(self) -> Session:
        """Session for use as a context manager: commit on success, rollback on error."""
        return self.begin_session()

    def _on_commit(self, session: Session, result: CommitResult) -> None:
        for name in session.touched:
            if name not in self._committed_touched:
                self._committed_touched.append(name)
        if self.config.event_log and (result.written or result.deleted):
            log_commit(result.written, result.deleted, self.config.data_dir)

    @property
    def committed_touched(self) -> List[str]:
        """Collections touched by sessions committed through this store."""
        return list(self._committed_touched)

    # === Reads ===

    def fetch_records(
        self,
        collection: str,
        limit: Optional[int] = None,
        conn: Optional[sqlite3.Connection] = None,
    ) -> List[Dict[str, Any]]:
        """Committed records in insertion order.

        With a limit, the newest `limit` rows are returned (oldest first).
        """
        spec = self.registry.spec_of(validate_table_name(self.registry, collection))
        if limit is None:
            sql = f"SELECT * FROM {spec.name} ORDER BY rowid"
            params: tuple = ()
        else:
            sql = (
                f"SELECT * FROM (SELECT rowid AS _rid, * FROM {spec.name} "
                f"ORDER BY rowid DESC LIMIT ?) ORDER BY _rid"
            )
            params = (limit,)

        if conn is not None:
            rows = conn.execute(sql, params).fetchall()
        else:
            with contextlib.closing(self._get_conn()) as own:
                rows = own.execute(sql, params).fetchall()
        return [spec.from_row(row) for row in rows]

    def fetch_record(self, collection: str, key: str) -> Optional[Dict[str, Any]]:
        spec = self.registry.spec_of(validate_table_name(self.registry, collection))
        with contextlib.closing(self._get_conn()) as conn:
            row = conn.execute(
                f"SELECT * FROM {spec.name} WHERE {spec.primary_key} = ?", (key,)
            ).fetchone()
        return spec.from_row(row) if row is not None else None

    def iter_records(
        self,
        collection: str,
        where: Optional[Dict[str, Any]] = None,
        predicate: Optional[Callable[[Dict[str, Any]], bool]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> Iterator[Dict[str, Any]]:
        """Generator over committed records backed by a live cursor."""
        spec = self.registry.spec_of(validate_table_name(self.registry, collection))
        clauses, params = self._where_clauses(spec, where)
        sql = f"SELECT * FROM {spec.name}"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        direction = "DESC" if descending else "ASC"
        if order_by:
            if spec.field(order_by) is None:
                raise ValueError(f"{collection} has no column {order_by!r}")
            sql += f" ORDER BY {order_by} {direction}, rowid {direction}"
        else:
            sql += f" ORDER BY rowid {direction}"
        # With a predicate the limit counts matches, so it is applied in Python
        if limit is not None and predicate is None:
            sql += " LIMIT ?"
            params.append(limit)

        return self._iter_cursor(spec, sql, params, predicate, limit)

    def _iter_cursor(self, spec, sql, params, predicate, limit) -> Iterator[Dict[str, Any]]:
        conn = self._get_conn()
        cursor = None
        try:
            cursor = conn.execute(sql, params)
            yielded = 0
            if limit == 0:
                return
            for row in cursor:
                record = spec.from_row(row)
                if predicate is not None and not predicate(record):
                    continue
                yield record
                yielded += 1
                if limit is not None and yielded >= limit:
                    return
        finally:
            if cursor is not None:
                cursor.close()
            conn.close()

    def count(self, collection: str, where: Optional[Dict[str, Any]] = None) -> int:
        spec = self.registry.spec_of(validate_table_name(self.registry, collection))
        clauses, params = self._where_clauses(spec, where)
        sql = f"SELECT COUNT(*) FROM {spec.name}"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        with contextlib.closing(self._get_conn()) as conn:
            return conn.execute(sql, params).fetchone()[0]

    @staticmethod
    def _where_clauses(spec, where: Optional[Dict[str, Any]]):
        clauses = []
        params: List[Any] = []
        for column, value in (where or {}).items():
            field_spec = spec.field(column)
            if field_spec is None:
                raise ValueError(f"{spec.name} has no column {column!r}")
            if value is None:
                clauses.append(f"{column} IS NULL")
            else:
                clauses.append(f"{column} = ?")
                params.append(int(value) if field_spec.kind == "boolean" else value)
        return clauses, params

    def counts(self) -> Dict[str, int]:
        """Row count for every declared collection."""
        with contextlib.closing(self._get_conn()) as conn:
            return {
                spec.name: conn.execute(f"SELECT COUNT(*) FROM {spec.name}").fetchone()[0]
                for spec in self.registry
            }
