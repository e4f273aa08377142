"""Mirror Store: the portable JSON copy of the intelligence store.

The document is a single JSON object mapping collection name to a list of
records in insertion order. It is derived from the Record Store and can be
regenerated at any time, so writes replace the whole file atomically.
"""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, Optional, Union

from intelstore.errors import CorruptDocument

logger = logging.getLogger(__name__)

# Mirror is considered newer only when it leads the database by more than this
MTIME_TOLERANCE = 1.0  # seconds

PathLike = Union[str, Path]


def parse_document(text: Union[str, bytes], path: Optional[PathLike] = None) -> Dict[str, Any]:
    """Parse raw document text.

    Raises:
        CorruptDocument: On invalid JSON, a non-object top level, or a
            collection value that is neither a list nor an object.
    """
    where = str(path) if path is not None else None
    try:
        doc = json.loads(text)
    except (ValueError, UnicodeDecodeError) as e:
        raise CorruptDocument(where, f"invalid JSON: {e}") from e

    return check_document_shape(doc, where)


def check_document_shape(doc: Any, where: Optional[str] = None) -> Dict[str, Any]:
    """Require an object whose values are all lists or objects.

    Raises:
        CorruptDocument: If doc does not have that shape.
    """
    if not isinstance(doc, dict):
        raise CorruptDocument(where, f"top level is {type(doc).__name__}, expected object")
    for name, value in doc.items():
        if not isinstance(value, (list, dict)):
            raise CorruptDocument(
                where, f"collection {name!r} is {type(value).__name__}, expected list or object"
            )
    return doc


def read_document(path: PathLike) -> Dict[str, Any]:
    """Read and parse the mirror document at path.

    Raises:
        FileNotFoundError: If the file does not exist.
        CorruptDocument: If the content cannot be used.
    """
    path = Path(path)
    with open(path, "rb") as f:
        data = f.read()
    if not data.strip():
        raise CorruptDocument(str(path), "file is empty")
    return parse_document(data, path)


def write_document(path: PathLike, doc: Dict[str, Any]) -> None:
    """Atomically replace the mirror document.

    The content goes to a temp file in the same directory, is fsynced, then
    renamed over the target, so readers see either the old or the new file.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    data = (json.dumps(doc, ensure_ascii=False, indent=2) + "\n").encode("utf-8")

    tmp_path: Optional[Path] = None
    try:
        with tempfile.NamedTemporaryFile(
            mode="wb",
            delete=False,
            dir=str(path.parent),
            prefix=path.name + ".tmp.",
        ) as f:
            tmp_path = Path(f.name)
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
        tmp_path = None
    finally:
        if tmp_path is not None and tmp_path.exists():
            tmp_path.unlink()

    logger.debug(f"Wrote mirror document {path} ({len(data)} bytes)")


def _db_mtime(db_path: Path) -> Optional[float]:
    """Latest mtime of the database or its WAL file."""
    mtimes = []
    for candidate in (db_path, db_path.with_name(db_path.name + "-wal")):
        try:
            mtimes.append(candidate.stat().st_mtime)
        except FileNotFoundError:
            continue
    return max(mtimes) if mtimes else None


def is_document_newer(mirror_path: PathLike, db_path: PathLike) -> bool:
    """True if the mirror was modified after the database.

    A missing mirror is never newer; a mirror without a database always is.
    """
    mirror_path = Path(mirror_path)
    try:
        mirror_mtime = mirror_path.stat().st_mtime
    except FileNotFoundError:
        return False

    db_mtime = _db_mtime(Path(db_path))
    if db_mtime is None:
        return True
    return mirror_mtime > db_mtime + MTIME_TOLERANCE
