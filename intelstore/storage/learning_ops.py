"""Writers used by the learning pipeline's hooks.

Each function stages its writes in the given session; the caller commits.
All of them are read-modify-write on a single key, so two hooks touching the
same key concurrently resolve as last committer wins.
"""

import hashlib
import logging
import uuid
from typing import Any, Dict, List, Optional

from intelstore.errors import DimensionMismatch, EmbeddingUnavailable
from intelstore.types import CompressionLevel, EmbeddingScheme, MemoryType, now_epoch

from .embeddings import EmbedFn, degrade_embedding
from .kv import StateCarrier

logger = logging.getLogger(__name__)

MAX_EDGE_WEIGHT = 10.0
MAX_CONFIDENCE = 1.0
CONFIDENCE_STEP = 0.1
DEFAULT_LEARNING_RATE = 0.1

LAST_FILE_KEY = "last_edited_file"


def _short_id(prefix: str) -> str:
    return f"{prefix}-{now_epoch()}-{uuid.uuid4().hex[:9]}"


def _embed(embed_fn: Optional[EmbedFn], text: str):
    """Return (vector, scheme) or (None, None) when no vector can be produced."""
    if embed_fn is None:
        return None, None
    try:
        vector = list(embed_fn(text))
    except EmbeddingUnavailable as e:
        logger.warning(f"Embedding unavailable, storing text only: {e}")
        return None, None
    scheme = getattr(embed_fn, "scheme", EmbeddingScheme.MODEL)
    return vector, EmbeddingScheme(scheme).value


# === Memories ===


def record_memory(
    session,
    content: str,
    memory_type: str = MemoryType.GENERAL.value,
    embed_fn: Optional[EmbedFn] = None,
    metadata: Optional[Dict[str, Any]] = None,
    memory_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Append a memory, embedding its content if an embedding function is given.

    If the embedding function is unavailable, or returns a vector of the
    wrong width, the memory is stored without a vector instead of failing.
    """
    memory_id = memory_id or _short_id("mem")
    vector, scheme = _embed(embed_fn, content)
    record = {
        "memory_type": MemoryType(memory_type).value,
        "content": content,
        "embedding": vector,
        "embedding_scheme": scheme,
        "metadata": metadata or {},
        "timestamp": now_epoch(),
    }
    try:
        return session.put("memories", memory_id, record)
    except DimensionMismatch as e:
        logger.warning(f"Dropping embedding for {memory_id}: {e}")
        return session.put("memories", memory_id, degrade_embedding(record))


def backfill_embeddings(
    session,
    embed_fn: EmbedFn,
    limit: Optional[int] = None,
) -> Dict[str, int]:
    """Embed memories stored without a vector.

    Returns:
        {"embedded": n, "failed": m}; failures are left without a vector.
    """
    embedded = failed = 0
    scheme = EmbeddingScheme(getattr(embed_fn, "scheme", EmbeddingScheme.MODEL)).value
    pending = list(session.query("memories", where={"embedding": None}, limit=limit))
    for record in pending:
        try:
            vector = list(embed_fn(record["content"]))
            updated = dict(record, embedding=vector, embedding_scheme=scheme)
            session.put("memories", record["id"], updated)
            embedded += 1
        except (EmbeddingUnavailable, DimensionMismatch) as e:
            logger.warning(f"Could not backfill {record['id']}: {e}")
            failed += 1
    return {"embedded": embedded, "failed": failed}


# === Routing values ===


def update_pattern(
    session,
    state: str,
    action: str,
    reward: float,
    learning_rate: float = DEFAULT_LEARNING_RATE,
) -> Dict[str, Any]:
    """Move the legacy scalar value for (state, action) toward reward."""
    key = f"{state}:{action}"
    existing = session.get("patterns", key)
    value = existing["value"] if existing else 0.0
    count = existing["update_count"] if existing else 0
    value += learning_rate * (reward - value)
    return session.put(
        "patterns",
        key,
        {
            "state": state,
            "action": action,
            "value": value,
            "update_count": count + 1,
            "last_update": now_epoch(),
        },
    )


def save_learning_table(session, algorithm_id: str, q_table: Any) -> Dict[str, Any]:
    """Replace an algorithm's learning table (stored opaque)."""
    return session.put(
        "learning_data", algorithm_id, {"q_table": q_table, "updated_at": now_epoch()}
    )


# === Trajectories ===


def start_trajectory(session, trajectory_id: Optional[str] = None) -> Dict[str, Any]:
    trajectory_id = trajectory_id or _short_id("traj")
    return session.put(
        "trajectories",
        trajectory_id,
        {"steps": [], "sealed": False, "timestamp": now_epoch()},
    )


def _open_trajectory(session, trajectory_id: str) -> Dict[str, Any]:
    trajectory = session.get("trajectories", trajectory_id)
    if trajectory is None:
        raise ValueError(f"Unknown trajectory: {trajectory_id}")
    if trajectory["sealed"]:
        raise ValueError(f"Trajectory {trajectory_id} is sealed")
    return trajectory


def append_step(
    session, trajectory_id: str, state: str, action: str, reward: float
) -> Dict[str, Any]:
    """Append a (state, action, reward) step to an unsealed trajectory."""
    trajectory = _open_trajectory(session, trajectory_id)
    steps = list(trajectory["steps"] or [])
    steps.append({"state": state, "action": action, "reward": reward})
    return session.put("trajectories", trajectory_id, dict(trajectory, steps=steps))


def seal_trajectory(
    session,
    trajectory_id: str,
    final_score: Optional[float] = None,
    embedding: Optional[List[float]] = None,
) -> Dict[str, Any]:
    """Seal a trajectory. final_score defaults to the sum of step rewards."""
    trajectory = _open_trajectory(session, trajectory_id)
    if final_score is None:
        final_score = float(sum(s.get("reward") or 0 for s in trajectory["steps"] or []))
    sealed = dict(
        trajectory,
        sealed=True,
        sealed_at=now_epoch(),
        final_score=final_score,
        embedding=embedding if embedding is not None else trajectory.get("embedding"),
    )
    return session.put("trajectories", trajectory_id, sealed)


# === Co-edit sequences ===


def record_file_touch(session, path: str) -> Optional[Dict[str, Any]]:
    """Count the edge from the previously edited file to path.

    The previous file lives in the State Carrier because each edit arrives
    in a separate process. Returns the updated sequence, or None for the
    first edit or a repeated edit of the same file.
    """
    carrier = StateCarrier(session)
    previous = carrier.get(LAST_FILE_KEY)
    carrier.set(LAST_FILE_KEY, path)
    if not previous or previous == path:
        return None

    seq_id = f"{previous}->{path}"
    existing = session.get("file_sequences", seq_id)
    count = existing["count"] + 1 if existing else 1
    return session.put(
        "file_sequences", seq_id, {"prev_file": previous, "next_file": path, "count": count}
    )


# === Graph and coordination ===


def strengthen_edge(
    session,
    from_id: str,
    to_id: str,
    kind: str = "semantic",
    delta: float = 0.1,
    weight: float = 1.0,
    metadata: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Create an edge with `weight`, or add delta to an existing one (capped)."""
    edge_id = f"{from_id}->{to_id}:{kind}"
    existing = session.get("edges", edge_id)
    if existing:
        new_weight = min(existing["weight"] + delta, MAX_EDGE_WEIGHT)
        merged = dict(existing["metadata"] or {})
        merged.update(metadata or {})
    else:
        new_weight = min(weight, MAX_EDGE_WEIGHT)
        merged = metadata or {}
    return session.put(
        "edges",
        edge_id,
        {"from_id": from_id, "to_id": to_id, "kind": kind, "weight": new_weight, "metadata": merged},
    )


def register_agent(
    session, name: str, session_id: Optional[str] = None, role: str = "agent"
) -> Dict[str, Any]:
    """Record that an agent took part in a session."""
    now = now_epoch()
    existing = session.get("agents", name)
    if existing:
        metadata = dict(existing["metadata"] or {})
        metadata["session_count"] = metadata.get("session_count", 0) + 1
        created_at = existing["created_at"]
        role = existing["role"] or role
    else:
        metadata = {"first_seen": now, "session_count": 1}
        created_at = now
    metadata["last_seen"] = now
    metadata["last_session"] = session_id or f"session-{now}"
    return session.put(
        "agents", name, {"role": role, "created_at": created_at, "metadata": metadata}
    )


def reinforce_neural_pattern(
    session,
    pattern_id: str,
    content: Optional[str] = None,
    category: str = "general",
    centroid: Optional[List[float]] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Insert a neural pattern, or bump confidence and usage of an existing one."""
    now = now_epoch()
    existing = session.get("neural_patterns", pattern_id)
    if existing:
        record = dict(existing)
        record["confidence"] = min((existing["confidence"] or 0.0) + CONFIDENCE_STEP, MAX_CONFIDENCE)
        record["usage"] = (existing["usage"] or 0) + 1
        record["updated_at"] = now
        if content:
            record["content"] = content
        if metadata is not None:
            record["metadata"] = metadata
        if centroid is not None:
            record["centroid"] = centroid
    else:
        record = {
            "content": content or "",
            "category": category,
            "centroid": centroid,
            "cluster_size": 1,
            "confidence": 0.5,
            "usage": 1,
            "created_at": now,
            "updated_at": now,
            "metadata": metadata or {},
        }
    return session.put("neural_patterns", pattern_id, record)


# === Compressed patterns ===


def store_compressed_pattern(
    session,
    payload: bytes,
    level: str = CompressionLevel.WARM.value,
    compression_ratio: float = 1.0,
    source_id: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
    pattern_id: Optional[str] = None,
) -> Dict[str, Any]:
    pattern_id = pattern_id or _short_id(f"cp-{CompressionLevel(level).value}")
    return session.put(
        "compressed_patterns",
        pattern_id,
        {
            "compression_level": CompressionLevel(level).value,
            "payload": payload,
            "compression_ratio": compression_ratio,
            "source_id": source_id,
            "created_at": now_epoch(),
            "metadata": metadata or {},
        },
    )


def prune_compressed_patterns(session, max_patterns: int) -> List[str]:
    """Delete the oldest compressed patterns beyond max_patterns.

    Returns the keys scheduled for deletion.
    """
    if max_patterns < 0:
        raise ValueError("max_patterns cannot be negative")
    patterns = session.load("compressed_patterns")
    if len(patterns) <= max_patterns:
        return []
    # Insertion position breaks created_at ties
    newest_first = sorted(
        enumerate(patterns), key=lambda ip: (ip[1]["created_at"] or 0, ip[0]), reverse=True
    )
    keep = [p["id"] for _, p in newest_first[:max_patterns]]
    doomed = session.prune("compressed_patterns", keep)
    logger.info(f"Pruning {len(doomed)} compressed patterns beyond {max_patterns}")
    return doomed


# === Errors ===


def record_error(
    session,
    signature: str,
    context: Optional[str] = None,
    resolution: Optional[str] = None,
) -> Dict[str, Any]:
    """Record a failure pattern, keyed by a hash of its signature."""
    error_id = "err-" + hashlib.sha1(signature.encode("utf-8")).hexdigest()[:12]
    existing = session.get("errors", error_id)
    return session.put(
        "errors",
        error_id,
        {
            "signature": signature,
            "context": context if context is not None else (existing or {}).get("context"),
            "resolution": resolution if resolution is not None else (existing or {}).get("resolution"),
            "created_at": (existing or {}).get("created_at") or now_epoch(),
        },
    )
