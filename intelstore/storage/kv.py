"""State Carrier: scalar state handed from one hook process to the next."""

import json
import logging
from typing import Any

logger = logging.getLogger(__name__)

KV_COLLECTION = "kv_store"


class StateCarrier:
    """Key/value access to kv_store through a session.

    Values are stored JSON-encoded. Values written by older producers as raw
    text are returned unchanged.
    """

    def __init__(self, session):
        self._session = session

    def get(self, key: str, default: Any = None) -> Any:
        record = self._session.get(KV_COLLECTION, key)
        if record is None or record.get("value") is None:
            return default
        raw = record["value"]
        try:
            return json.loads(raw)
        except ValueError:
            return raw

    def set(self, key: str, value: Any) -> None:
        self._session.put(KV_COLLECTION, key, {"value": json.dumps(value, sort_keys=True)})

    def delete(self, key: str) -> None:
        self._session.delete(KV_COLLECTION, key)
