"""Read-only diagnostics for an intelligence store.

Free functions that inspect the database file directly (without opening a
RecordStore, which would create whatever is missing) and report on schema
completeness, row counts, embedding widths and the mirror document.
"""

import contextlib
import logging
import sqlite3
from pathlib import Path
from typing import Any, Dict, List, Optional

from intelstore.errors import CorruptDocument

from .embeddings import FLOAT32_BYTES
from .mirror import is_document_newer, read_document
from .schema import SchemaRegistry, existing_tables, get_columns

logger = logging.getLogger(__name__)

# Collections with no guaranteed writer; empty is normal
OPTIONAL_COLLECTIONS = frozenset({"edges", "agents", "neural_patterns", "compressed_patterns", "errors"})


def _open_readonly(db_path: Path) -> sqlite3.Connection:
    conn = sqlite3.connect(f"file:{db_path}?mode=ro", uri=True)
    conn.row_factory = sqlite3.Row
    return conn


def check_schema(conn: sqlite3.Connection, registry: SchemaRegistry) -> Dict[str, Any]:
    """Missing tables and, for present tables, missing columns."""
    tables = existing_tables(conn)
    missing_tables = [spec.name for spec in registry if spec.name not in tables]
    missing_columns = {}
    for spec in registry:
        if spec.name not in tables:
            continue
        cols = get_columns(conn, spec.name)
        absent = [c for c in spec.columns if c not in cols]
        if absent:
            missing_columns[spec.name] = absent
    return {
        "missing_tables": missing_tables,
        "missing_columns": missing_columns,
        "valid": not missing_tables and not missing_columns,
    }


def embedding_width_stats(
    conn: sqlite3.Connection,
    table: str,
    column: str,
    expected_width: int,
) -> Dict[str, Any]:
    """Counts of vectors with the expected width, another width, or none."""
    total = conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
    null_count = conn.execute(
        f"SELECT COUNT(*) FROM {table} WHERE {column} IS NULL OR length({column}) = 0"
    ).fetchone()[0]
    correct = conn.execute(
        f"SELECT COUNT(*) FROM {table} WHERE length({column}) = ?",
        (expected_width * FLOAT32_BYTES,),
    ).fetchone()[0]
    distribution = {
        row[0] // FLOAT32_BYTES: row[1]
        for row in conn.execute(
            f"""SELECT length({column}), COUNT(*) FROM {table}
                WHERE {column} IS NOT NULL AND length({column}) > 0
                GROUP BY length({column})"""
        )
    }
    return {
        "expected_width": expected_width,
        "total": total,
        "correct": correct,
        "wrong_width": total - null_count - correct,
        "null": null_count,
        "distribution": distribution,
    }


def mirror_status(mirror_path: Optional[Path], db_path: Path) -> Dict[str, Any]:
    if mirror_path is None:
        return {"path": None, "exists": False}
    status: Dict[str, Any] = {"path": str(mirror_path), "exists": mirror_path.exists()}
    if not status["exists"]:
        return status
    status["newer_than_db"] = is_document_newer(mirror_path, db_path)
    try:
        doc = read_document(mirror_path)
    except CorruptDocument as e:
        status["readable"] = False
        status["error"] = e.reason
        return status
    status["readable"] = True
    status["counts"] = {
        name: len(value) for name, value in doc.items() if isinstance(value, (list, dict))
    }
    return status


def diagnose(
    db_path: Path,
    registry: SchemaRegistry,
    mirror_path: Optional[Path] = None,
) -> Dict[str, Any]:
    """Full diagnostic report for the store at db_path.

    Returns:
        Dict with:
        - exists: whether the database file exists
        - schema: missing tables/columns (see check_schema)
        - counts: rows per present collection
        - embeddings: width stats per vector field, keyed "collection.field"
        - notes: informational messages (empty optional collections)
        - problems: issues that need attention
        - mirror: mirror document status
    """
    db_path = Path(db_path)
    report: Dict[str, Any] = {
        "db_path": str(db_path),
        "exists": db_path.exists(),
        "schema": {"missing_tables": [], "missing_columns": {}, "valid": False},
        "counts": {},
        "embeddings": {},
        "notes": [],
        "problems": [],
        "mirror": mirror_status(Path(mirror_path) if mirror_path else None, db_path),
    }
    if not report["exists"]:
        report["problems"].append("database file does not exist")
        return report

    try:
        with contextlib.closing(_open_readonly(db_path)) as conn:
            report["schema"] = check_schema(conn, registry)
            present = existing_tables(conn)
            for spec in registry:
                if spec.name not in present:
                    continue
                report["counts"][spec.name] = conn.execute(
                    f"SELECT COUNT(*) FROM {spec.name}"
                ).fetchone()[0]
                cols = get_columns(conn, spec.name)
                for f in spec.vector_fields:
                    if f.name in cols:
                        report["embeddings"][f"{spec.name}.{f.name}"] = embedding_width_stats(
                            conn, spec.name, f.name, f.width
                        )
    except sqlite3.DatabaseError as e:
        report["problems"].append(f"database unreadable: {e}")
        return report

    _collect_findings(report)
    return report


def _collect_findings(report: Dict[str, Any]) -> None:
    notes: List[str] = report["notes"]
    problems: List[str] = report["problems"]

    for name in report["schema"]["missing_tables"]:
        problems.append(f"missing table: {name}")
    for name, cols in report["schema"]["missing_columns"].items():
        problems.append(f"missing columns in {name}: {', '.join(cols)}")

    for name, count in report["counts"].items():
        if count == 0 and name in OPTIONAL_COLLECTIONS:
            notes.append(f"{name} is empty (no writer has populated it yet)")

    for key, stats in report["embeddings"].items():
        if stats["wrong_width"]:
            problems.append(
                f"{key}: {stats['wrong_width']} vectors not {stats['expected_width']}-wide"
            )
        if stats["null"] and stats["total"]:
            notes.append(f"{key}: {stats['null']} of {stats['total']} rows have no vector")

    mirror = report["mirror"]
    if mirror.get("exists") and not mirror.get("readable", True):
        problems.append(f"mirror document unreadable: {mirror.get('error')}")
    elif mirror.get("newer_than_db"):
        notes.append("mirror document is newer than the database; run import")
