"""Store configuration.

Every behavior of the engine is determined by the StoreConfig passed to
open_store(). Environment variables are only consulted by from_env(), which
the CLI uses to build a config.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional, Union

logger = logging.getLogger(__name__)

DEFAULT_DATA_DIRNAME = ".intelstore"
DEFAULT_DB_NAME = "intelligence.db"
DEFAULT_MIRROR_NAME = "intelligence.json"

DEFAULT_EMBEDDING_WIDTH = 384
DEFAULT_REPLAY_DEPTH = 50
DEFAULT_LOCK_TIMEOUT = 5.0  # seconds

PathLike = Union[str, Path]


@dataclass
class StoreConfig:
    """Paths and tunables for one open() of the intelligence store.

    Attributes:
        db_path: Record Store (SQLite) file.
        mirror_path: Mirror Store (JSON) file. Defaults to a sibling of db_path.
        embedding_width: Default width for every vector field.
        vector_widths: Per-collection overrides, e.g. {"neural_patterns": 768}.
        replay_depth: How many sealed trajectories Warm Replay feeds back.
        lock_timeout: Seconds to wait for another process's commit.
        event_log: Append sync/commit events to <data_dir>/logs.
    """

    db_path: Path
    mirror_path: Optional[Path] = None
    embedding_width: int = DEFAULT_EMBEDDING_WIDTH
    vector_widths: Dict[str, int] = field(default_factory=dict)
    replay_depth: int = DEFAULT_REPLAY_DEPTH
    lock_timeout: float = DEFAULT_LOCK_TIMEOUT
    event_log: bool = False

    def __post_init__(self):
        self.db_path = Path(self.db_path).expanduser()
        if self.mirror_path is None:
            self.mirror_path = self.db_path.parent / DEFAULT_MIRROR_NAME
        else:
            self.mirror_path = Path(self.mirror_path).expanduser()

        if self.embedding_width <= 0:
            raise ValueError("embedding_width must be positive")
        for name, width in self.vector_widths.items():
            if width <= 0:
                raise ValueError(f"vector width for {name} must be positive")
        if self.replay_depth < 0:
            raise ValueError("replay_depth cannot be negative")
        if self.lock_timeout < 0:
            raise ValueError("lock_timeout cannot be negative")

    @property
    def data_dir(self) -> Path:
        """Directory holding the database, mirror and logs."""
        return self.db_path.parent

    @classmethod
    def for_project(cls, root: PathLike = ".", **overrides) -> "StoreConfig":
        """Default layout: <root>/.intelstore/intelligence.{db,json}."""
        data_dir = Path(root).expanduser() / DEFAULT_DATA_DIRNAME
        return cls(db_path=data_dir / DEFAULT_DB_NAME, **overrides)

    @classmethod
    def from_env(cls, root: PathLike = ".") -> "StoreConfig":
        """Build a config from INTELSTORE_* environment variables.

        Unset or malformed numeric variables fall back to defaults with a
        warning.
        """
        db_env = os.environ.get("INTELSTORE_DB_PATH")
        mirror_env = os.environ.get("INTELSTORE_MIRROR_PATH")

        kwargs = {
            "embedding_width": _env_int("INTELSTORE_EMBEDDING_DIM", DEFAULT_EMBEDDING_WIDTH),
            "replay_depth": _env_int("INTELSTORE_REPLAY_DEPTH", DEFAULT_REPLAY_DEPTH),
            "lock_timeout": _env_float("INTELSTORE_LOCK_TIMEOUT", DEFAULT_LOCK_TIMEOUT),
        }
        if mirror_env:
            kwargs["mirror_path"] = Path(mirror_env)

        if db_env:
            return cls(db_path=Path(db_env), **kwargs)
        return cls.for_project(root, **kwargs)


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"Ignoring non-integer {name}={raw!r}, using {default}")
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"Ignoring non-numeric {name}={raw!r}, using {default}")
        return default
