"""Stats recomputation and learning summaries.

The stats collection holds aggregate counters as text values so external
dashboards can read them without decoding. Every writer here goes through a
session, so stats updates commit atomically with whatever else the hook
wrote.
"""

import json
import logging
from collections import Counter
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from intelstore.types import now_epoch

logger = logging.getLogger(__name__)

STATS_COLLECTION = "stats"

# Collections summarized as total_<name> by refresh_stats()
COUNTED_COLLECTIONS = (
    "memories",
    "neural_patterns",
    "edges",
    "trajectories",
    "agents",
    "compressed_patterns",
    "file_sequences",
    "errors",
)


def get_stat(session, key: str, default: Optional[str] = None) -> Optional[str]:
    record = session.get(STATS_COLLECTION, key)
    if record is None or record.get("value") is None:
        return default
    return record["value"]


def get_int_stat(session, key: str) -> int:
    try:
        return int(get_stat(session, key, "0"))
    except (TypeError, ValueError):
        return 0


def set_stat(session, key: str, value: Any, now: Optional[int] = None) -> None:
    text = value if isinstance(value, str) else json.dumps(value)
    session.put(
        STATS_COLLECTION,
        key,
        {"value": text, "updated_at": now if now is not None else now_epoch()},
    )


def dominant_embedding_width(session, collection: str = "memories") -> Optional[int]:
    """Most common non-null vector width in a collection, or None if none stored."""
    widths: Counter = Counter()
    for record in session.query(collection, predicate=lambda r: r.get("embedding") is not None):
        widths[len(record["embedding"])] += 1
    if not widths:
        return None
    return widths.most_common(1)[0][0]


def refresh_stats(session, consolidated: bool = True) -> Dict[str, str]:
    """Recompute totals and embedding width after a consolidation pass.

    Args:
        session: Active session; the caller commits.
        consolidated: Also bump consolidation_count and its timestamps.

    Returns:
        The stats written, key -> text value.
    """
    store = session.store
    now = now_epoch()
    counts = store.counts()

    written: Dict[str, str] = {}
    for name in COUNTED_COLLECTIONS:
        written[f"total_{name}"] = str(counts.get(name, 0))

    width = dominant_embedding_width(session)
    if width is None:
        width = store.guard.expected_width("memories")
    written["embedding_dimension"] = str(width)

    if consolidated:
        written["consolidation_count"] = str(get_int_stat(session, "consolidation_count") + 1)
        written["last_consolidation"] = str(now)
        written["last_consolidate"] = datetime.fromtimestamp(now, timezone.utc).isoformat()

    for key, value in written.items():
        set_stat(session, key, value, now)

    logger.debug(
        f"Stats refreshed: memories={written['total_memories']} "
        f"neural_patterns={written['total_neural_patterns']} edges={written['total_edges']}"
    )
    return written


def record_session_start(session, session_id: str) -> int:
    """Increment session_count and remember the session id. Returns the new count."""
    now = now_epoch()
    count = get_int_stat(session, "session_count") + 1
    set_stat(session, "session_count", str(count), now)
    set_stat(session, "last_session", session_id, now)
    set_stat(session, "last_session_timestamp", str(now), now)
    return count


def record_session_end(session) -> int:
    """Increment total_sessions. Returns the new total."""
    total = get_int_stat(session, "total_sessions") + 1
    set_stat(session, "total_sessions", str(total))
    return total


def learning_summary(session) -> Dict[str, Any]:
    """Report the legacy patterns table and learning_data side by side.

    The two are written by different generations of the learning pipeline
    and are not kept in sync. Both are reported and the disconnect is
    flagged; neither is treated as the correct one.
    """
    patterns = session.load("patterns")
    learning_rows = session.load("learning_data")

    states = {p["state"] for p in patterns}
    top_patterns = sorted(patterns, key=lambda p: p["value"], reverse=True)[:5]

    algorithms = {}
    learning_entries = 0
    for row in learning_rows:
        q_table = row.get("q_table")
        size = _q_table_size(q_table)
        learning_entries += size
        algorithms[row["algorithm_id"]] = {"entries": size, "updated_at": row.get("updated_at")}

    has_patterns = bool(patterns)
    has_learning = learning_entries > 0
    return {
        "patterns": {
            "count": len(patterns),
            "states": len(states),
            "total_updates": sum(p["update_count"] for p in patterns),
            "top": [
                {"key": p["key"], "value": p["value"], "update_count": p["update_count"]}
                for p in top_patterns
            ],
        },
        "learning_data": {
            "algorithms": algorithms,
            "entries": learning_entries,
        },
        # Nothing reconciles the two, so any data in either is unreconciled
        "disconnected": has_patterns or has_learning,
    }


def _q_table_size(q_table: Any) -> int:
    """Count leaf values of a q_table ({state: {action: q}} or flat)."""
    if isinstance(q_table, dict):
        total = 0
        for value in q_table.values():
            total += _q_table_size(value) if isinstance(value, dict) else 1
        return total
    if isinstance(q_table, list):
        return len(q_table)
    return 0
