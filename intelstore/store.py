"""IntelligenceStore: the Record Store plus its Mirror Store lifecycle.

One store lifetime has exactly one live sync direction: the mirror is
imported on start (if it is newer than the database) and exported on exit.
Importing after an export on the same store is refused.
"""

import logging
import os
import sqlite3
from pathlib import Path
from typing import Iterable, Optional

from intelstore.config import StoreConfig
from intelstore.errors import CorruptDocument, InvalidSessionState, StorageUnavailable
from intelstore.logging_config import log_sync
from intelstore.storage.mirror import is_document_newer, read_document, write_document
from intelstore.storage.replay import LearningComponent, WarmReplayLoader
from intelstore.storage.schema import SchemaRegistry
from intelstore.storage.sqlite import RecordStore
from intelstore.storage.sync_engine import (
    import_from_document,
    merge_partial,
    snapshot_document,
)
from intelstore.types import ImportResult, ReplayResult

logger = logging.getLogger(__name__)


class IntelligenceStore(RecordStore):
    """Record Store with mirror import/export and warm replay.

    Use as a context manager for the standard hook lifecycle:

        with open_store(config) as store:
            with store.session() as s:
                ...
    """

    def __init__(self, config: StoreConfig, registry: Optional[SchemaRegistry] = None):
        super().__init__(config, registry)
        self.mirror_path: Path = config.mirror_path
        self._exported = False
        self._closed = False

    def __enter__(self) -> "IntelligenceStore":
        self.sync_on_start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close(export=exc_type is None)

    # === Import ===

    def sync_on_start(self) -> Optional[ImportResult]:
        """Import the mirror if it is newer than the database."""
        if not is_document_newer(self.mirror_path, self.db_path):
            return None
        logger.info(f"Mirror {self.mirror_path} is newer than the database, importing")
        return self.import_mirror()

    def import_mirror(self) -> ImportResult:
        """Merge the mirror document into the database and commit.

        A missing mirror merges nothing. A corrupt mirror is reported in
        ImportResult.error and leaves the database untouched.

        Raises:
            InvalidSessionState: The mirror was already exported by this store.
            StorageUnavailable: The merge could not be committed.
        """
        if self._exported:
            raise InvalidSessionState(
                "Cannot import after export: the mirror already reflects this store"
            )
        if not self.mirror_path.exists():
            logger.debug(f"No mirror at {self.mirror_path}, nothing to import")
            return ImportResult()

        session = self.begin_session()
        result = import_from_document(self.mirror_path, session)
        if result.error is not None:
            session.rollback()
            return result
        session.commit()

        if result.rejected:
            logger.warning(f"Import rejected {len(result.rejected)} records")
        if self.config.event_log:
            log_sync("import", result.merged, self.config.data_dir)
        return result

    # === Export ===

    def export_mirror(self, full: bool = True, collections: Optional[Iterable[str]] = None) -> dict:
        """Regenerate the mirror document from committed data.

        The write lock is held while snapshotting and replacing the file, so
        concurrent exporters never interleave. With full=False only the
        collections committed through this store are re-exported and merged
        into the existing mirror; if there is no readable mirror to merge
        into, a full export is written instead. Passing collections exports
        exactly those, merged the same way.

        Raises:
            StorageUnavailable: The write lock could not be acquired.
            UnknownCollection: A name in collections is not declared.
        """
        if collections is not None:
            wanted = set(collections)
            for name in wanted:
                self.registry.spec_of(name)
            full = False
            names = [n for n in self.registry.names() if n in wanted]
        elif full:
            names = self.registry.names()
        else:
            names = self.committed_touched

        conn = self._get_write_conn()
        try:
            try:
                conn.execute("BEGIN IMMEDIATE")
            except sqlite3.OperationalError as e:
                raise StorageUnavailable(f"Cannot lock database for export: {e}") from e

            doc = snapshot_document(self, names, conn=conn)
            if not full:
                try:
                    existing = read_document(self.mirror_path)
                except (FileNotFoundError, CorruptDocument) as e:
                    logger.warning(f"No usable mirror to merge into ({e}), exporting in full")
                    doc = snapshot_document(self, self.registry.names(), conn=conn)
                else:
                    doc = merge_partial(existing, doc)

            write_document(self.mirror_path, doc)
            self._align_mirror_mtime()
        finally:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            conn.close()

        self._exported = True
        if self.config.event_log:
            counts = {name: len(records) for name, records in doc.items()}
            log_sync("export", counts, self.config.data_dir)
        return doc

    def _align_mirror_mtime(self) -> None:
        """Give the fresh mirror the database's mtime so it is not seen as newer."""
        try:
            db_mtime = max(
                p.stat().st_mtime
                for p in (self.db_path, self.db_path.with_name(self.db_path.name + "-wal"))
                if p.exists()
            )
        except ValueError:
            return
        os.utime(self.mirror_path, (db_mtime, db_mtime))

    # === Replay ===

    def replay_into(self, component: LearningComponent, depth: Optional[int] = None) -> ReplayResult:
        """Warm a fresh learning component from recent sealed trajectories."""
        return WarmReplayLoader(self, depth).replay(component)

    def close(self, export: bool = True) -> None:
        """Export the mirror (unless export=False) and mark the store closed."""
        if self._closed:
            return
        self._closed = True
        if export:
            self.export_mirror(full=True)


def open_store(
    config: Optional[StoreConfig] = None,
    registry: Optional[SchemaRegistry] = None,
) -> IntelligenceStore:
    """Open (creating if needed) the intelligence store described by config.

    Defaults to the project layout under the current directory.
    """
    return IntelligenceStore(config or StoreConfig.for_project("."), registry)
