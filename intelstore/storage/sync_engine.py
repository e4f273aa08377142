"""Synchronizer between the Mirror Store document and the Record Store.

import_from_document() merges a document into a session with
insert-or-replace by key and never deletes. export_to_document() snapshots
committed records in insertion order. Older document layouts (keyed
objects, nested patterns, renamed fields) are normalized on import.
"""

import hashlib
import json
import logging
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

from intelstore.errors import CorruptDocument, DimensionMismatch, InvalidRecord
from intelstore.types import VALID_COMPRESSION_LEVELS, VALID_MEMORY_TYPES, ImportResult

from .mirror import check_document_shape, parse_document, read_document
from .schema import CollectionSpec

logger = logging.getLogger(__name__)

# Legacy field name -> current field name, per collection
LEGACY_FIELD_MAP: Dict[str, Dict[str, str]] = {
    "memories": {"type": "memory_type", "created": "timestamp"},
    "patterns": {"q_value": "value", "visits": "update_count"},
    "learning_data": {"algorithm": "algorithm_id"},
    "edges": {"source": "from_id", "target": "to_id", "data": "metadata", "type": "kind"},
    "neural_patterns": {"embedding": "centroid"},
    "compressed_patterns": {"layer": "compression_level", "data": "payload"},
    "file_sequences": {"from_file": "prev_file", "to_file": "next_file"},
    "agents": {"name": "id", "data": "metadata", "type": "role"},
    "errors": {"key": "id", "data": "context"},
}

# Top-level keys that are not collections but carry collection data
LEGACY_TOP_LEVEL = {"learning": "learning_data"}

# Collections once stored as {name: data}; the data lands in this field
LEGACY_BLOB_FIELD = {"agents": "metadata", "errors": "context"}

DocumentSource = Union[Dict[str, Any], str, bytes, Path]


# === Import ===


def load_document(source: DocumentSource) -> Dict[str, Any]:
    """Resolve a dict, a path, or raw JSON text to a document.

    Raises:
        CorruptDocument: If the content cannot be parsed.
        FileNotFoundError: If a path does not exist.
    """
    if isinstance(source, dict):
        return check_document_shape(source)
    if isinstance(source, Path):
        return read_document(source)
    if isinstance(source, bytes):
        return parse_document(source)
    text = source.strip()
    if text.startswith("{") or text.startswith("["):
        return parse_document(text)
    if not text:
        raise CorruptDocument(None, "document is empty")
    return read_document(Path(source))


def import_from_document(source: DocumentSource, session) -> ImportResult:
    """Stage every record of a document into session as insert-or-replace.

    Keys absent from the document are left alone. Records that fail shape or
    width validation are skipped individually and listed in
    ImportResult.rejected. The caller commits the session.

    A corrupt document is not raised: it is returned in ImportResult.error
    and nothing is staged.
    """
    result = ImportResult()
    try:
        doc = load_document(source)
    except CorruptDocument as e:
        logger.warning(f"Mirror document ignored: {e}")
        result.error = e
        return result

    registry = session.store.registry
    for top_key, value in doc.items():
        name = LEGACY_TOP_LEVEL.get(top_key, top_key)
        if name not in registry:
            logger.warning(f"Skipping unknown document key {top_key!r}")
            result.skipped_keys.append(top_key)
            continue

        spec = registry.spec_of(name)
        if top_key in LEGACY_TOP_LEVEL:
            records = [{"algorithm_id": "combined", "q_table": value}]
        else:
            records = normalize_collection(spec, value)

        for record in records:
            try:
                record = normalize_record(spec, record)
                key = record.get(spec.primary_key)
                if not isinstance(key, str) or not key:
                    raise InvalidRecord(spec.name, f"missing {spec.primary_key}")
                if spec.name == "memories" and "timestamp" not in record:
                    stored = session.get(spec.name, key)
                    if stored is not None:
                        record["timestamp"] = stored["timestamp"]
                session.put(spec.name, key, spec.from_document(record))
            except (DimensionMismatch, ValueError) as e:
                logger.warning(f"Rejected {spec.name} record during import: {e}")
                result.rejected.append(
                    {
                        "collection": spec.name,
                        "key": record.get(spec.primary_key) if isinstance(record, dict) else None,
                        "error": str(e),
                    }
                )
                continue
            result.merged[spec.name] = result.merged.get(spec.name, 0) + 1

    return result


def normalize_collection(spec: CollectionSpec, value: Any) -> List[Dict[str, Any]]:
    """Turn a collection value (list, or object keyed by primary key) into records."""
    if isinstance(value, list):
        return [r if isinstance(r, dict) else {"_invalid": r} for r in value]

    if spec.name == "patterns":
        return _patterns_from_object(value)
    if spec.name in ("stats", "kv_store"):
        return [{"key": k, "value": _scalar_text(v)} for k, v in value.items()]

    records = []
    for key, entry in value.items():
        if spec.name in LEGACY_BLOB_FIELD:
            # {name: data} tables: the whole entry is the data blob
            record = {LEGACY_BLOB_FIELD[spec.name]: entry}
        elif isinstance(entry, dict):
            record = dict(entry)
        else:
            record = {"_invalid": entry}
        record.setdefault(spec.primary_key, key)
        records.append(record)
    return records


def _patterns_from_object(value: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Keyed pattern objects, or the nested {state: {action: q}} form."""
    rows = []
    for key, entry in value.items():
        if not isinstance(entry, dict):
            continue
        if "state" in entry or "action" in entry or "q_value" in entry or "value" in entry:
            row = dict(entry)
            row.setdefault("key", key)
            rows.append(row)
            continue
        for action, q in entry.items():
            if isinstance(q, (int, float)) and not isinstance(q, bool):
                rows.append({"key": f"{key}:{action}", "state": key, "action": action, "value": q})
    return rows


def _scalar_text(value: Any) -> Optional[str]:
    if value is None or isinstance(value, str):
        return value
    return json.dumps(value, sort_keys=True, separators=(",", ":"))


def _to_epoch(value: Any) -> Any:
    """Accept epoch seconds, epoch milliseconds or ISO-8601 text."""
    if isinstance(value, bool):
        return value
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    if isinstance(value, int):
        return value // 1000 if value > 10**11 else value
    if isinstance(value, str):
        try:
            return int(datetime.fromisoformat(value.replace("Z", "+00:00")).timestamp())
        except ValueError:
            return value
    return value


def normalize_record(spec: CollectionSpec, record: Dict[str, Any]) -> Dict[str, Any]:
    """Map legacy field names and fold unknown fields into metadata."""
    if not isinstance(record, dict) or "_invalid" in record:
        raise InvalidRecord(spec.name, "record is not an object")

    record = dict(record)
    for old, new in LEGACY_FIELD_MAP.get(spec.name, {}).items():
        if old in record and old not in spec.columns and new not in record:
            record[new] = record.pop(old)

    if spec.has_metadata and isinstance(record.get("metadata"), str):
        try:
            record["metadata"] = json.loads(record["metadata"])
        except ValueError:
            record["metadata"] = {"text": record["metadata"]}

    shaper = _SHAPERS.get(spec.name)
    if shaper is not None:
        record = shaper(record)

    unknown = [k for k in record if k not in spec.columns]
    if unknown and spec.has_metadata:
        metadata = record.get("metadata")
        metadata = dict(metadata) if isinstance(metadata, dict) else {}
        for k in unknown:
            metadata.setdefault(k, record.pop(k))
        record["metadata"] = metadata
    return record


def _shape_memory(record: Dict[str, Any]) -> Dict[str, Any]:
    # A missing timestamp stays missing: import keeps the stored one or uses 0
    if record.get("timestamp") is not None:
        record["timestamp"] = _to_epoch(record["timestamp"])
    else:
        record.pop("timestamp", None)
    if record.get("content") is None:
        record["content"] = ""
    memory_type = record.get("memory_type")
    if memory_type is not None and memory_type not in VALID_MEMORY_TYPES:
        record.setdefault("legacy_type", memory_type)
        record["memory_type"] = "general"
    if not record.get("id"):
        record["id"] = content_memory_id(record)
    return record


def content_memory_id(record: Dict[str, Any]) -> str:
    """Stable id for a memory that arrives without one."""
    basis = json.dumps(
        [record.get("memory_type") or "general", record.get("content", ""), record.get("timestamp")],
        sort_keys=True,
        default=str,
    )
    return "mem-" + hashlib.sha1(basis.encode("utf-8")).hexdigest()[:16]


def _shape_pattern(record: Dict[str, Any]) -> Dict[str, Any]:
    if not record.get("key") and record.get("state") is not None and record.get("action") is not None:
        record["key"] = f"{record['state']}:{record['action']}"
    return record


def _shape_trajectory(record: Dict[str, Any]) -> Dict[str, Any]:
    # Flat (state, action, outcome, reward) rows predate multi-step episodes
    if "steps" not in record and ("state" in record or "action" in record):
        step = {
            "state": record.pop("state", None),
            "action": record.pop("action", None),
            "reward": record.get("reward"),
        }
        outcome = record.pop("outcome", None)
        if outcome is not None:
            step["outcome"] = outcome
        record["steps"] = [step]
        record["final_score"] = record.pop("reward", None)
        record.setdefault("sealed", True)
        record.setdefault("sealed_at", _to_epoch(record.get("timestamp")))
    for f in ("timestamp", "sealed_at"):
        if f in record:
            record[f] = _to_epoch(record[f])
    return record


def _shape_edge(record: Dict[str, Any]) -> Dict[str, Any]:
    kind = record.get("kind") or "semantic"
    record["kind"] = kind
    if isinstance(record.get("id"), int) or not record.get("id"):
        record["id"] = f"{record.get('from_id')}->{record.get('to_id')}:{kind}"
    return record


def _shape_file_sequence(record: Dict[str, Any]) -> Dict[str, Any]:
    if not record.get("id") and record.get("prev_file") and record.get("next_file"):
        record["id"] = f"{record['prev_file']}->{record['next_file']}"
    return record


def _shape_compressed(record: Dict[str, Any]) -> Dict[str, Any]:
    level = record.get("compression_level")
    if level is not None and level not in VALID_COMPRESSION_LEVELS:
        record.setdefault("legacy_layer", level)
        record["compression_level"] = "warm"
    return record


def _shape_agent(record: Dict[str, Any]) -> Dict[str, Any]:
    metadata = record.get("metadata")
    if isinstance(metadata, dict) and "role" not in record and "role" in metadata:
        record["role"] = metadata["role"]
    return record


def _shape_error(record: Dict[str, Any]) -> Dict[str, Any]:
    context = record.get("context")
    if isinstance(context, dict):
        record.setdefault("signature", context.get("signature"))
        record.setdefault("resolution", context.get("resolution"))
        record["context"] = context.get("context", _scalar_text(context))
    if not record.get("signature"):
        record["signature"] = record.get("id")
    for f in ("context", "resolution"):
        if f in record:
            record[f] = _scalar_text(record[f])
    return record


def _shape_kv(record: Dict[str, Any]) -> Dict[str, Any]:
    if "value" in record:
        record["value"] = _scalar_text(record["value"])
    return record


_SHAPERS = {
    "memories": _shape_memory,
    "patterns": _shape_pattern,
    "trajectories": _shape_trajectory,
    "edges": _shape_edge,
    "file_sequences": _shape_file_sequence,
    "compressed_patterns": _shape_compressed,
    "agents": _shape_agent,
    "errors": _shape_error,
    "kv_store": _shape_kv,
    "stats": _shape_kv,
}


# === Export ===


def snapshot_document(
    store,
    collections: Iterable[str],
    conn: Optional[sqlite3.Connection] = None,
) -> Dict[str, List[Dict[str, Any]]]:
    """Committed records of the given collections, in insertion order."""
    doc = {}
    for name in collections:
        spec = store.registry.spec_of(name)
        doc[name] = [spec.to_document(r) for r in store.fetch_records(name, conn=conn)]
    return doc


def export_to_document(session, full: bool = True) -> Dict[str, List[Dict[str, Any]]]:
    """Snapshot committed data as a mirror document.

    Args:
        session: Session whose touched collections bound a partial export.
        full: Export every declared collection instead of only touched ones.

    Pending (uncommitted) writes of the session are not included.
    """
    registry = session.store.registry
    if full:
        names = registry.names()
    else:
        touched = set(session.touched)
        names = [n for n in registry.names() if n in touched]
    return snapshot_document(session.store, names)


def merge_partial(existing: Optional[Dict[str, Any]], partial: Dict[str, Any]) -> Dict[str, Any]:
    """Replace the collections of partial inside an existing document."""
    merged = dict(existing or {})
    merged.update(partial)
    return merged
