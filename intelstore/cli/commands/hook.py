"""Hook commands for the learning pipeline.

Each hook event runs as its own short-lived process. A hook reads a JSON
payload from stdin, opens the store (importing the mirror if it is newer),
writes in one session, exports the mirror and exits.

Hook Failure Semantics
----------------------
- StorageUnavailable and InvalidSessionState exit 1: the write did not
  happen and the harness should know.
- Every other error (bad payload, rejected record, corrupt mirror,
  unavailable embedder) is logged and the hook exits 0 so the calling
  session is not disrupted.
"""

import json
import logging
import os
import sys
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, Optional

from intelstore.errors import InvalidSessionState, StorageUnavailable
from intelstore.storage.embeddings import HashEmbedder
from intelstore.storage.learning_ops import (
    record_error,
    record_file_touch,
    record_memory,
    register_agent,
    update_pattern,
)
from intelstore.storage.stats_ops import record_session_end, record_session_start, refresh_stats
from intelstore.store import open_store
from intelstore.types import MemoryType

if TYPE_CHECKING:
    from intelstore.config import StoreConfig

logger = logging.getLogger(__name__)

_REQUIRED_KEYS = {
    "post-edit": ["tool_input"],
    "post-command": ["tool_input"],
    "remember": ["content"],
}

MAX_CONTENT = 2000


def _read_payload() -> Dict[str, Any]:
    raw = sys.stdin.read()
    if not raw.strip():
        return {}
    payload = json.loads(raw)
    if not isinstance(payload, dict):
        raise ValueError("Hook payload must be a JSON object")
    return payload


def _validate_hook_input(data: dict, hook_name: str) -> dict:
    """Raise ValueError if a required key for hook_name is missing."""
    for key in _REQUIRED_KEYS.get(hook_name, []):
        if key not in data:
            raise ValueError(f"Hook '{hook_name}' requires key '{key}' in payload")
    return data


def _truncate(text: str, max_len: int = MAX_CONTENT) -> str:
    if len(text) <= max_len:
        return text
    return text[:max_len] + "\n[truncated]"


def _succeeded(payload: Dict[str, Any]) -> bool:
    response = payload.get("tool_response") or {}
    if "success" in payload:
        return bool(payload["success"])
    if isinstance(response, dict):
        if "success" in response:
            return bool(response["success"])
        if "exit_code" in response:
            return response["exit_code"] == 0
    if "exit_code" in payload:
        return payload["exit_code"] == 0
    return True


def _session_id(payload: Dict[str, Any]) -> Optional[str]:
    return payload.get("session_id") or os.environ.get("INTELSTORE_SESSION_ID")


# === Handlers ===


def hook_session_start(payload: Dict[str, Any], config: "StoreConfig") -> Dict[str, Any]:
    with open_store(config) as store:
        with store.session() as session:
            count = record_session_start(session, _session_id(payload) or "unknown")
            agent = payload.get("agent") or payload.get("agent_type")
            if agent:
                register_agent(session, agent, _session_id(payload))
        counts = store.counts()
    return {"session_count": count, "memories": counts["memories"]}


def hook_post_edit(payload: Dict[str, Any], config: "StoreConfig") -> Dict[str, Any]:
    tool_input = payload.get("tool_input") or {}
    file_path = tool_input.get("file_path") or tool_input.get("path")
    if not file_path:
        raise ValueError("post-edit payload has no file_path")
    success = _succeeded(payload)
    ext = Path(file_path).suffix.lstrip(".") or "none"

    with open_store(config) as store:
        with store.session() as session:
            sequence = record_file_touch(session, file_path)
            record_memory(
                session,
                f"Edited {file_path}",
                MemoryType.EDIT.value,
                embed_fn=HashEmbedder(config.embedding_width),
                metadata={"file": file_path, "success": success},
            )
            update_pattern(session, f"edit:{ext}", "edit", 1.0 if success else -1.0)
    return {"file": file_path, "sequence": sequence["id"] if sequence else None}


def hook_post_command(payload: Dict[str, Any], config: "StoreConfig") -> Dict[str, Any]:
    tool_input = payload.get("tool_input") or {}
    command = (tool_input.get("command") or "").strip()
    if not command:
        raise ValueError("post-command payload has no command")
    success = _succeeded(payload)
    program = command.split()[0]

    with open_store(config) as store:
        with store.session() as session:
            record_memory(
                session,
                _truncate(f"Ran: {command}"),
                MemoryType.COMMAND.value,
                embed_fn=HashEmbedder(config.embedding_width),
                metadata={"success": success},
            )
            update_pattern(session, f"cmd:{program}", "run", 1.0 if success else -1.0)
            if not success:
                response = payload.get("tool_response") or {}
                stderr = response.get("stderr") if isinstance(response, dict) else None
                record_error(session, command.splitlines()[0], context=_truncate(stderr or ""))
    return {"command": program, "success": success}


def hook_remember(payload: Dict[str, Any], config: "StoreConfig") -> Dict[str, Any]:
    content = str(payload["content"])
    with open_store(config) as store:
        with store.session() as session:
            record = record_memory(
                session,
                _truncate(content),
                payload.get("memory_type", MemoryType.GENERAL.value),
                embed_fn=HashEmbedder(config.embedding_width),
                metadata=payload.get("metadata") or {},
            )
    return {"id": record["id"]}


def hook_session_end(payload: Dict[str, Any], config: "StoreConfig") -> Dict[str, Any]:
    with open_store(config) as store:
        with store.session() as session:
            total = record_session_end(session)
            refresh_stats(session)
    return {"total_sessions": total}


HOOK_HANDLERS = {
    "session-start": hook_session_start,
    "post-edit": hook_post_edit,
    "post-command": hook_post_command,
    "remember": hook_remember,
    "session-end": hook_session_end,
}


def cmd_hook(args, config: "StoreConfig") -> None:
    """Dispatch a hook event. Always exits; see module docstring for codes."""
    hook_event = getattr(args, "hook_event", None)
    handler = HOOK_HANDLERS.get(hook_event)
    if handler is None:
        print(f"Usage: intelstore hook {{{'|'.join(HOOK_HANDLERS)}}}")
        sys.exit(0)

    try:
        payload = _validate_hook_input(_read_payload(), hook_event)
        output = handler(payload, config)
        json.dump(output, sys.stdout)
    except (StorageUnavailable, InvalidSessionState) as exc:
        logger.error(f"{hook_event} hook failed: {exc}")
        sys.exit(1)
    except Exception as exc:
        logger.warning(f"Ignored {type(exc).__name__} in {hook_event} hook: {exc}")

    sys.exit(0)
