"""Upgrade of collection tables written by older versions of the store.

Older databases keyed some tables differently (file_sequences by
(from_file, to_file), agents by name, errors by key, learning_data by
algorithm, edges by an integer id) and used other column names
(patterns.q_value, compressed_patterns.layer, neural_patterns.embedding).
ALTER TABLE cannot fix either, so such tables are rebuilt: the old table is
renamed to <name>_old, the declared table is created, every row is carried
over through the same normalization the mirror import uses, and the old
table is dropped. If any row cannot be carried over the old table is kept
so nothing is lost.
"""

import json
import logging
import sqlite3
from typing import Any, Dict, List, Tuple

from .schema import CollectionSpec, SchemaRegistry, existing_tables, get_columns
from .sync_engine import normalize_record

logger = logging.getLogger(__name__)

# Text columns that older versions filled with JSON
LEGACY_JSON_COLUMNS = frozenset({"data", "metadata", "q_table", "steps"})


def needs_rebuild(conn: sqlite3.Connection, spec: CollectionSpec) -> bool:
    """True if the table lacks its primary key or has undeclared columns."""
    cols = get_columns(conn, spec.name)
    if not cols:
        return False
    return spec.primary_key not in cols or bool(cols - set(spec.columns))


def upgrade_legacy_tables(conn: sqlite3.Connection, registry: SchemaRegistry) -> List[str]:
    """Rebuild every collection table that still has an older layout.

    Returns:
        Names of the rebuilt collections.
    """
    rebuilt = []
    for spec in registry:
        if needs_rebuild(conn, spec):
            rebuild_table(conn, spec)
            rebuilt.append(spec.name)
    return rebuilt


def rebuild_table(conn: sqlite3.Connection, spec: CollectionSpec) -> Tuple[int, int]:
    """Rebuild one legacy table in a single savepoint.

    Returns:
        (rows carried over, rows left behind in <name>_old)
    """
    old_name = _backup_name(conn, spec.name)
    conn.execute("SAVEPOINT legacy_rebuild")
    try:
        conn.execute(f"ALTER TABLE {spec.name} RENAME TO {old_name}")
        conn.execute(spec.create_table_sql())
        cursor = conn.execute(f"SELECT * FROM {old_name} ORDER BY rowid")
        names = [d[0] for d in cursor.description]

        seen = set()
        moved = left = 0
        for values in cursor.fetchall():
            row = dict(zip(names, values))
            try:
                record = legacy_record(spec, row)
            except ValueError as e:
                logger.warning(f"Cannot carry over {spec.name} row {row!r}: {e}")
                left += 1
                continue
            key = record[spec.primary_key]
            if key in seen:
                logger.warning(f"Duplicate {spec.name} key {key!r} after upgrade")
                left += 1
                continue
            seen.add(key)
            conn.execute(spec.upsert_sql(), spec.to_row(record))
            moved += 1

        if left:
            logger.warning(
                f"Kept {old_name} with {left} rows that could not be carried over to {spec.name}"
            )
        else:
            conn.execute(f"DROP TABLE {old_name}")
        conn.execute("RELEASE SAVEPOINT legacy_rebuild")
    except sqlite3.Error:
        conn.execute("ROLLBACK TO SAVEPOINT legacy_rebuild")
        conn.execute("RELEASE SAVEPOINT legacy_rebuild")
        raise

    logger.info(f"Rebuilt legacy table {spec.name}: {moved} rows carried over")
    return moved, left


def legacy_record(spec: CollectionSpec, row: Dict[str, Any]) -> Dict[str, Any]:
    """Map one row of an older table layout to a validated record.

    Raises:
        ValueError: (InvalidRecord included) if the row has no usable key or
            does not fit the declared shape.
    """
    record = {}
    for name, value in row.items():
        if value is None:
            continue
        if name in LEGACY_JSON_COLUMNS and isinstance(value, str):
            try:
                value = json.loads(value)
            except ValueError:
                pass
        record[name] = value

    record = normalize_record(spec, record)
    dropped = [k for k in record if k not in spec.columns]
    if dropped:
        logger.warning(f"Dropping undeclared {spec.name} columns {dropped} during upgrade")
        for k in dropped:
            record.pop(k)

    key = record.get(spec.primary_key)
    if isinstance(key, int) and not isinstance(key, bool):
        key = str(key)
    if not isinstance(key, str) or not key:
        raise ValueError(f"row has no {spec.primary_key}")
    return spec.build_record(key, {**record, spec.primary_key: key})


def _backup_name(conn: sqlite3.Connection, name: str) -> str:
    tables = existing_tables(conn)
    candidate = f"{name}_old"
    n = 1
    while candidate in tables:
        n += 1
        candidate = f"{name}_old{n}"
    return candidate
