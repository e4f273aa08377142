"""Schema registry, DDL and migration logic for the intelligence store.

Contains:
- FieldSpec / CollectionSpec: the declared shape of each collection
- SchemaRegistry: declare() and spec_of(), the single source of truth for
  collection names, columns, vector widths and record validation
- default_registry(): the twelve collections of the intelligence store
- Record codecs: record <-> SQLite row <-> mirror document form
- Database initialization (init_db) and additive migration (migrate_schema)
"""

import base64
import copy
import binascii
import json
import logging
import re
import sqlite3
from dataclasses import dataclass
from functools import cached_property
from typing import Any, Dict, FrozenSet, Iterator, List, Optional, Sequence, Tuple

from jsonschema import Draft7Validator

from intelstore.errors import DimensionMismatch, InvalidRecord, UnknownCollection
from intelstore.types import VALID_COMPRESSION_LEVELS, VALID_MEMORY_TYPES

from .embeddings import FLOAT32_BYTES, coerce_vector, pack_embedding, unpack_embedding

logger = logging.getLogger(__name__)

# Schema version for migrations
SCHEMA_VERSION = 3  # v3: per-collection vector width tracking in collection_meta

# Field kind -> SQLite column type
FIELD_KINDS = {
    "text": "TEXT",
    "integer": "INTEGER",
    "real": "REAL",
    "boolean": "INTEGER",
    "json": "TEXT",
    "vector": "BLOB",
    "blob": "BLOB",
}

_IDENTIFIER = re.compile(r"^[a-z_][a-z0-9_]*$")

# Bookkeeping tables; never exposed as collections
INTERNAL_SCHEMA = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

CREATE TABLE IF NOT EXISTS collection_meta (
    collection TEXT NOT NULL,
    field TEXT NOT NULL,
    width INTEGER NOT NULL,
    PRIMARY KEY (collection, field)
);
"""

INTERNAL_TABLES = frozenset({"schema_version", "collection_meta"})


def _to_json(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, sort_keys=True, separators=(",", ":"))


def _from_json(s: Optional[str]) -> Any:
    if s is None:
        return None
    try:
        return json.loads(s)
    except (TypeError, ValueError):
        # Legacy producers sometimes wrote bare strings into JSON columns
        return s


@dataclass(frozen=True)
class FieldSpec:
    """One column of a collection."""

    name: str
    kind: str
    required: bool = False
    default: Any = None
    enum: Optional[FrozenSet[str]] = None
    width: Optional[int] = None  # vector fields only

    def __post_init__(self):
        if not _IDENTIFIER.match(self.name):
            raise ValueError(f"Invalid field name: {self.name!r}")
        if self.kind not in FIELD_KINDS:
            raise ValueError(f"Unknown field kind {self.kind!r} for {self.name}")
        if self.kind == "vector" and (self.width is None or self.width <= 0):
            raise ValueError(f"Vector field {self.name} needs a positive width")

    @property
    def sql_type(self) -> str:
        return FIELD_KINDS[self.kind]

    def default_sql(self) -> str:
        """Render the DEFAULT clause value, or '' if the field has none."""
        if self.default is None:
            return ""
        if self.kind == "boolean":
            return str(int(bool(self.default)))
        if self.kind in ("integer", "real"):
            return repr(self.default)
        text = _to_json(self.default) if self.kind == "json" else str(self.default)
        return "'" + text.replace("'", "''") + "'"

    def column_ddl(self, primary_key: bool = False) -> str:
        parts = [self.name, self.sql_type]
        if primary_key:
            parts.append("PRIMARY KEY")
        elif self.required:
            parts.append("NOT NULL")
        default = self.default_sql()
        if default:
            parts.append(f"DEFAULT {default}")
        return " ".join(parts)

    def json_schema(self) -> Dict[str, Any]:
        """JSON Schema fragment for this field's value in a record."""
        nullable = not self.required
        if self.enum:
            values: List[Any] = sorted(self.enum)
            if nullable:
                values.append(None)
            return {"enum": values}
        if self.kind == "json":
            return {}
        if self.kind == "blob":
            # bytes are checked by encode_value(); base64 text is also accepted
            return {}
        json_type = {
            "text": "string",
            "integer": "integer",
            "real": "number",
            "boolean": "boolean",
            "vector": "array",
        }[self.kind]
        schema: Dict[str, Any] = {"type": [json_type, "null"] if nullable else json_type}
        if self.kind == "vector":
            schema["items"] = {"type": "number"}
        return schema


@dataclass(frozen=True)
class CollectionSpec:
    """Declared shape of one collection (a table keyed by primary_key)."""

    name: str
    primary_key: str
    fields: Tuple[FieldSpec, ...]
    indexes: Tuple[str, ...] = ()
    description: str = ""

    @cached_property
    def _by_name(self) -> Dict[str, FieldSpec]:
        return {f.name: f for f in self.fields}

    @property
    def columns(self) -> List[str]:
        return [f.name for f in self.fields]

    def field(self, name: str) -> Optional[FieldSpec]:
        return self._by_name.get(name)

    @property
    def vector_fields(self) -> List[FieldSpec]:
        return [f for f in self.fields if f.kind == "vector"]

    @property
    def has_metadata(self) -> bool:
        meta = self.field("metadata")
        return meta is not None and meta.kind == "json"

    # --- DDL ---

    def create_table_sql(self) -> str:
        cols = ",\n    ".join(
            f.column_ddl(primary_key=(f.name == self.primary_key)) for f in self.fields
        )
        return f"CREATE TABLE IF NOT EXISTS {self.name} (\n    {cols}\n);"

    def create_index_sql(self) -> List[str]:
        return [
            f"CREATE INDEX IF NOT EXISTS idx_{self.name}_{col} ON {self.name}({col});"
            for col in self.indexes
        ]

    def upsert_sql(self) -> str:
        """INSERT ... ON CONFLICT DO UPDATE: replaces every column, keeps rowid."""
        cols = self.columns
        placeholders = ", ".join("?" for _ in cols)
        updates = ", ".join(f"{c} = excluded.{c}" for c in cols if c != self.primary_key)
        return (
            f"INSERT INTO {self.name} ({', '.join(cols)}) VALUES ({placeholders}) "
            f"ON CONFLICT({self.primary_key}) DO UPDATE SET {updates}"
        )

    # --- Validation ---

    @cached_property
    def record_schema(self) -> Dict[str, Any]:
        return {
            "type": "object",
            "properties": {f.name: f.json_schema() for f in self.fields},
            "required": [f.name for f in self.fields if f.required or f.name == self.primary_key],
            "additionalProperties": False,
        }

    @cached_property
    def validator(self) -> Draft7Validator:
        return Draft7Validator(self.record_schema)

    def build_record(self, key: str, record: Dict[str, Any]) -> Dict[str, Any]:
        """Apply defaults, set the key and validate shape.

        Vectors are normalized to lists of floats; widths are not checked here
        (that is the DimensionGuard's job).

        Raises:
            InvalidRecord: On a shape violation or a key that disagrees with
                the record's own primary key value.
        """
        if not isinstance(key, str) or not key:
            raise InvalidRecord(self.name, f"{self.primary_key} must be a non-empty string")
        if not isinstance(record, dict):
            raise InvalidRecord(self.name, "record must be a mapping")

        own_key = record.get(self.primary_key)
        if own_key is not None and own_key != key:
            raise InvalidRecord(
                self.name, f"{self.primary_key} {own_key!r} does not match key {key!r}"
            )

        full: Dict[str, Any] = {}
        for f in self.fields:
            if f.name in record:
                full[f.name] = record[f.name]
            elif f.default is not None:
                full[f.name] = copy.deepcopy(f.default)
            else:
                full[f.name] = None
        full[self.primary_key] = key

        unknown = set(record) - set(self.columns)
        if unknown:
            raise InvalidRecord(self.name, f"unknown fields {sorted(unknown)}")

        for f in self.vector_fields:
            full[f.name] = coerce_vector(full[f.name], self.name, f.name)

        error = next(iter(sorted(self.validator.iter_errors(full), key=str)), None)
        if error is not None:
            where = ".".join(str(p) for p in error.absolute_path) or "record"
            raise InvalidRecord(self.name, f"{where}: {error.message}")
        for f in self.fields:
            if f.required and full[f.name] is None:
                raise InvalidRecord(self.name, f"{f.name} is required")
        return full

    # --- Codecs ---

    def to_row(self, record: Dict[str, Any]) -> Tuple[Any, ...]:
        """Record (as returned by build_record) -> SQL parameter tuple."""
        return tuple(self._encode(f, record.get(f.name)) for f in self.fields)

    def _encode(self, f: FieldSpec, value: Any) -> Any:
        if value is None:
            return None
        if f.kind == "vector":
            return pack_embedding(value)
        if f.kind == "json":
            return _to_json(value)
        if f.kind == "boolean":
            return int(bool(value))
        if f.kind == "blob":
            return _blob_bytes(self.name, f.name, value)
        return value

    def from_row(self, row: sqlite3.Row) -> Dict[str, Any]:
        """SQLite row -> record. Columns missing from a legacy table read as None."""
        keys = set(row.keys())
        record: Dict[str, Any] = {}
        for f in self.fields:
            value = row[f.name] if f.name in keys else None
            if value is None:
                record[f.name] = None
            elif f.kind == "vector":
                record[f.name] = unpack_embedding(value)
            elif f.kind == "json":
                record[f.name] = _from_json(value)
            elif f.kind == "boolean":
                record[f.name] = bool(value)
            elif f.kind == "blob":
                record[f.name] = bytes(value)
            else:
                record[f.name] = value
        return record

    def to_document(self, record: Dict[str, Any]) -> Dict[str, Any]:
        """Record -> JSON-serializable form used in the mirror document."""
        doc = {}
        for f in self.fields:
            value = record.get(f.name)
            if value is not None and f.kind == "blob":
                value = base64.b64encode(bytes(value)).decode("ascii")
            doc[f.name] = value
        return doc

    def from_document(self, doc: Dict[str, Any]) -> Dict[str, Any]:
        """Mirror document form -> record (blob fields base64-decoded)."""
        record = dict(doc)
        for f in self.fields:
            if f.kind == "blob" and isinstance(record.get(f.name), str):
                record[f.name] = _blob_bytes(self.name, f.name, record[f.name])
        return record


def _blob_bytes(collection: str, field_name: str, value: Any) -> bytes:
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value)
    if isinstance(value, str):
        try:
            return base64.b64decode(value.encode("ascii"), validate=True)
        except (binascii.Error, UnicodeEncodeError) as e:
            raise InvalidRecord(collection, f"{field_name} is not valid base64 ({e})")
    raise InvalidRecord(collection, f"{field_name} must be bytes or base64 text")


class SchemaRegistry:
    """In-memory registry of declared collections, in declaration order."""

    def __init__(self):
        self._specs: Dict[str, CollectionSpec] = {}

    def declare(
        self,
        name: str,
        fields: Sequence[FieldSpec],
        primary_key: str = "id",
        indexes: Sequence[str] = (),
        description: str = "",
    ) -> CollectionSpec:
        """Declare a collection and return its spec.

        Raises:
            ValueError: On an invalid name, a duplicate declaration, a missing
                primary key field or an index on an undeclared column.
        """
        if not _IDENTIFIER.match(name) or name in INTERNAL_TABLES:
            raise ValueError(f"Invalid collection name: {name!r}")
        if name in self._specs:
            raise ValueError(f"Collection already declared: {name}")

        names = [f.name for f in fields]
        if len(set(names)) != len(names):
            raise ValueError(f"Duplicate field names in {name}")
        if primary_key not in names:
            raise ValueError(f"Primary key {primary_key!r} is not a field of {name}")
        for col in indexes:
            if col not in names:
                raise ValueError(f"Index column {col!r} is not a field of {name}")

        spec = CollectionSpec(
            name=name,
            primary_key=primary_key,
            fields=tuple(fields),
            indexes=tuple(indexes),
            description=description,
        )
        self._specs[name] = spec
        return spec

    def spec_of(self, name: str) -> CollectionSpec:
        """Look up a collection.

        Raises:
            UnknownCollection: If name was never declared.
        """
        try:
            return self._specs[name]
        except (KeyError, TypeError):
            raise UnknownCollection(name) from None

    def names(self) -> List[str]:
        return list(self._specs)

    def __contains__(self, name: object) -> bool:
        return name in self._specs

    def __iter__(self) -> Iterator[CollectionSpec]:
        return iter(self._specs.values())

    def __len__(self) -> int:
        return len(self._specs)


def validate_table_name(registry: SchemaRegistry, table: str) -> str:
    """Validate a table name against the registry before it is put in SQL.

    Raises:
        UnknownCollection: If table is not a declared collection.
    """
    return registry.spec_of(table).name


def default_registry(
    embedding_width: int = 384,
    vector_widths: Optional[Dict[str, int]] = None,
) -> SchemaRegistry:
    """Declare the intelligence store's collections.

    Args:
        embedding_width: Width for every vector field.
        vector_widths: Per-collection overrides keyed by collection name.
    """
    widths = vector_widths or {}

    def width(collection: str) -> int:
        return widths.get(collection, embedding_width)

    registry = SchemaRegistry()

    registry.declare(
        "memories",
        [
            FieldSpec("id", "text"),
            FieldSpec("memory_type", "text", required=True, default="general",
                      enum=VALID_MEMORY_TYPES),
            FieldSpec("content", "text", required=True),
            FieldSpec("embedding", "vector", width=width("memories")),
            FieldSpec("embedding_scheme", "text"),
            FieldSpec("metadata", "json", default={}),
            FieldSpec("timestamp", "integer", required=True, default=0),
        ],
        indexes=("memory_type", "timestamp"),
        description="Units of recalled knowledge; appended or pruned, never edited",
    )
    registry.declare(
        "patterns",
        [
            FieldSpec("key", "text"),
            FieldSpec("state", "text", required=True),
            FieldSpec("action", "text", required=True),
            FieldSpec("value", "real", required=True, default=0.0),
            FieldSpec("update_count", "integer", required=True, default=0),
            FieldSpec("last_update", "integer", default=0),
        ],
        primary_key="key",
        indexes=("state",),
        description="Legacy scalar state/action values, read by summary reporting",
    )
    registry.declare(
        "learning_data",
        [
            FieldSpec("algorithm_id", "text"),
            FieldSpec("q_table", "json", required=True, default={}),
            FieldSpec("updated_at", "integer", default=0),
        ],
        primary_key="algorithm_id",
        description="Multi-algorithm learning tables, authoritative for routing",
    )
    registry.declare(
        "trajectories",
        [
            FieldSpec("id", "text"),
            FieldSpec("steps", "json", required=True, default=[]),
            FieldSpec("final_score", "real"),
            FieldSpec("embedding", "vector", width=width("trajectories")),
            FieldSpec("sealed", "boolean", required=True, default=False),
            FieldSpec("timestamp", "integer", required=True, default=0),
            FieldSpec("sealed_at", "integer"),
        ],
        indexes=("sealed_at",),
        description="Episodes of (state, action, reward) steps, sealed with a final score",
    )
    registry.declare(
        "edges",
        [
            FieldSpec("id", "text"),
            FieldSpec("from_id", "text", required=True),
            FieldSpec("to_id", "text", required=True),
            FieldSpec("kind", "text", required=True, default="semantic"),
            FieldSpec("weight", "real", required=True, default=1.0),
            FieldSpec("metadata", "json", default={}),
        ],
        indexes=("from_id", "to_id"),
        description="Relationships between memories; may have no writer",
    )
    registry.declare(
        "neural_patterns",
        [
            FieldSpec("id", "text"),
            FieldSpec("content", "text", required=True, default=""),
            FieldSpec("category", "text", default="general"),
            FieldSpec("centroid", "vector", width=width("neural_patterns")),
            FieldSpec("cluster_size", "integer", default=1),
            FieldSpec("confidence", "real", default=0.5),
            FieldSpec("usage", "integer", default=0),
            FieldSpec("created_at", "integer"),
            FieldSpec("updated_at", "integer"),
            FieldSpec("metadata", "json", default={}),
        ],
        indexes=("category", "confidence"),
        description="Clustered representative patterns, written by consolidation only",
    )
    registry.declare(
        "compressed_patterns",
        [
            FieldSpec("id", "text"),
            FieldSpec("compression_level", "text", required=True, default="warm",
                      enum=VALID_COMPRESSION_LEVELS),
            FieldSpec("payload", "blob", required=True),
            FieldSpec("compression_ratio", "real", default=1.0),
            FieldSpec("source_id", "text"),
            FieldSpec("created_at", "integer", required=True, default=0),
            FieldSpec("metadata", "json", default={}),
        ],
        indexes=("compression_level", "created_at"),
        description="Tiered/quantized copies of patterns",
    )
    registry.declare(
        "file_sequences",
        [
            FieldSpec("id", "text"),
            FieldSpec("prev_file", "text", required=True),
            FieldSpec("next_file", "text", required=True),
            FieldSpec("count", "integer", required=True, default=1),
        ],
        indexes=("prev_file",),
        description="Co-edit adjacency between files edited in succession",
    )
    registry.declare(
        "agents",
        [
            FieldSpec("id", "text"),
            FieldSpec("role", "text", default="agent"),
            FieldSpec("created_at", "integer"),
            FieldSpec("metadata", "json", default={}),
        ],
        description="Spawned coordination agents; may have no writer",
    )
    registry.declare(
        "kv_store",
        [
            FieldSpec("key", "text"),
            FieldSpec("value", "text"),
        ],
        primary_key="key",
        description="Cross-invocation scalar state",
    )
    registry.declare(
        "stats",
        [
            FieldSpec("key", "text"),
            FieldSpec("value", "text"),
            FieldSpec("updated_at", "integer"),
        ],
        primary_key="key",
        description="Aggregate counters mirrored for dashboards",
    )
    registry.declare(
        "errors",
        [
            FieldSpec("id", "text"),
            FieldSpec("signature", "text", required=True),
            FieldSpec("context", "text"),
            FieldSpec("resolution", "text"),
            FieldSpec("created_at", "integer"),
        ],
        indexes=("signature",),
        description="Recorded failure patterns",
    )
    return registry


# === Database initialization ===


def get_columns(conn: sqlite3.Connection, table: str) -> set:
    """Column names of an existing table (empty set if absent)."""
    cols = conn.execute(f"PRAGMA table_info({table})").fetchall()
    return {c[1] for c in cols}


def existing_tables(conn: sqlite3.Connection) -> set:
    rows = conn.execute("SELECT name FROM sqlite_master WHERE type='table'").fetchall()
    return {r[0] for r in rows}


def migrate_schema(conn: sqlite3.Connection, registry: SchemaRegistry) -> List[str]:
    """Add missing columns to existing collection tables.

    Additive only: columns are never dropped or retyped. Columns added this
    way carry their default but not NOT NULL (SQLite cannot add a NOT NULL
    column without rewriting the table).

    Returns:
        The ALTER statements that were executed.
    """
    tables = existing_tables(conn)
    migrations = []

    for spec in registry:
        if spec.name not in tables:
            continue
        cols = get_columns(conn, spec.name)
        if spec.primary_key not in cols:
            logger.warning(
                f"Table {spec.name} has no {spec.primary_key} column; "
                "writes to it will fail until it is rebuilt"
            )
            continue
        for f in spec.fields:
            if f.name in cols:
                continue
            default = f.default_sql()
            ddl = f"ALTER TABLE {spec.name} ADD COLUMN {f.name} {f.sql_type}"
            if default:
                ddl += f" DEFAULT {default}"
            migrations.append(ddl)

    for migration in migrations:
        logger.info(f"Running migration: {migration}")
        conn.execute(migration)
    return migrations


def check_vector_widths(conn: sqlite3.Connection, registry: SchemaRegistry) -> None:
    """Persist declared vector widths; refuse a width change under stored vectors.

    Raises:
        DimensionMismatch: If a collection already holds vectors of the
            previously recorded width and the registry now declares another.
    """
    for spec in registry:
        for f in spec.vector_fields:
            row = conn.execute(
                "SELECT width FROM collection_meta WHERE collection = ? AND field = ?",
                (spec.name, f.name),
            ).fetchone()
            if row is None:
                stored_width = _dominant_blob_width(conn, spec.name, f.name)
                if stored_width is not None and stored_width != f.width:
                    raise DimensionMismatch(
                        spec.name, expected=stored_width, actual=f.width, field=f.name
                    )
                conn.execute(
                    "INSERT INTO collection_meta (collection, field, width) VALUES (?, ?, ?)",
                    (spec.name, f.name, f.width),
                )
                continue

            recorded = row[0]
            if recorded == f.width:
                continue
            populated = conn.execute(
                f"SELECT COUNT(*) FROM {spec.name} WHERE {f.name} IS NOT NULL AND length({f.name}) > 0"
            ).fetchone()[0]
            if populated:
                raise DimensionMismatch(spec.name, expected=recorded, actual=f.width, field=f.name)
            logger.info(f"Vector width for {spec.name}.{f.name} changed {recorded} -> {f.width}")
            conn.execute(
                "UPDATE collection_meta SET width = ? WHERE collection = ? AND field = ?",
                (f.width, spec.name, f.name),
            )


def _dominant_blob_width(conn: sqlite3.Connection, table: str, column: str) -> Optional[int]:
    """Most common vector width among existing rows (legacy files without meta)."""
    row = conn.execute(
        f"""SELECT length({column}) AS n, COUNT(*) AS c FROM {table}
            WHERE {column} IS NOT NULL AND length({column}) > 0
            GROUP BY n ORDER BY c DESC LIMIT 1"""
    ).fetchone()
    if row is None:
        return None
    return row[0] // FLOAT32_BYTES


def init_db(conn: sqlite3.Connection, registry: SchemaRegistry) -> None:
    """Create or upgrade the schema. Idempotent.

    Args:
        conn: Database connection (committed by the caller).
        registry: Declared collections.
    """
    conn.executescript(INTERNAL_SCHEMA)

    # Migrate existing tables first, then create whatever is missing
    migrate_schema(conn, registry)
    for spec in registry:
        conn.execute(spec.create_table_sql())
        cols = get_columns(conn, spec.name)
        for col, ddl in zip(spec.indexes, spec.create_index_sql()):
            if col not in cols:
                logger.warning(f"Skipping index on {spec.name}.{col}: column missing")
                continue
            conn.execute(ddl)

    check_vector_widths(conn, registry)

    row = conn.execute("SELECT version FROM schema_version LIMIT 1").fetchone()
    if row is None:
        conn.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))
    elif row[0] < SCHEMA_VERSION:
        logger.info(f"Upgraded schema version {row[0]} -> {SCHEMA_VERSION}")
        conn.execute("UPDATE schema_version SET version = ?", (SCHEMA_VERSION,))
