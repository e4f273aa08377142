"""Logging setup for intelstore.

Library modules only create module-level loggers; handlers are attached
here, by the CLI. Two kinds of output:

- logs/local-YYYY-MM-DD.log: the regular `intelstore` logger tree
- logs/store-events-YYYY-MM-DD.log: one line per sync/commit event, for
  tracing what each short-lived hook process did to the store
"""

import logging
import os
from datetime import datetime
from pathlib import Path
from typing import Dict, Optional

from intelstore.config import DEFAULT_DATA_DIRNAME

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def get_log_dir(data_dir: Optional[Path] = None) -> Path:
    """Resolve the log directory: explicit data_dir, INTELSTORE_DATA_DIR, or ./.intelstore."""
    if data_dir is None:
        env_dir = os.environ.get("INTELSTORE_DATA_DIR")
        data_dir = Path(env_dir) if env_dir else Path.cwd() / DEFAULT_DATA_DIRNAME
    return Path(data_dir) / "logs"


def setup_intelstore_logging(
    data_dir: Optional[Path] = None,
    level: str = "INFO",
) -> logging.Logger:
    """Attach a dated file handler to the `intelstore` logger.

    Safe to call more than once per process; handlers are not duplicated.
    DEBUG additionally echoes to stderr.
    """
    logger = logging.getLogger("intelstore")
    numeric_level = getattr(logging, str(level).upper(), None)
    if not isinstance(numeric_level, int):
        numeric_level = logging.INFO
    logger.setLevel(numeric_level)

    log_dir = get_log_dir(data_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / f"local-{datetime.now().strftime('%Y-%m-%d')}.log"

    has_file_handler = any(
        isinstance(h, logging.FileHandler) and Path(h.baseFilename) == log_file.resolve()
        for h in logger.handlers
    )
    if not has_file_handler:
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(file_handler)

    has_console = any(
        isinstance(h, logging.StreamHandler) and not isinstance(h, logging.FileHandler)
        for h in logger.handlers
    )
    if numeric_level <= logging.DEBUG and not has_console:
        console = logging.StreamHandler()
        console.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(console)

    return logger


def log_store_event(event_type: str, details: str, data_dir: Optional[Path] = None) -> None:
    """Append one event line to store-events-YYYY-MM-DD.log."""
    log_dir = get_log_dir(data_dir)
    try:
        log_dir.mkdir(parents=True, exist_ok=True)
        event_file = log_dir / f"store-events-{datetime.now().strftime('%Y-%m-%d')}.log"
        timestamp = datetime.now().isoformat(timespec="seconds")
        with open(event_file, "a", encoding="utf-8") as f:
            f.write(f"{timestamp} | {event_type} | pid={os.getpid()} | {details}\n")
    except OSError as e:
        logging.getLogger(__name__).warning(f"Could not write store event log: {e}")


def _format_counts(counts: Dict[str, int]) -> str:
    if not counts:
        return "none"
    return ", ".join(f"{name}={n}" for name, n in sorted(counts.items()))


def log_sync(direction: str, counts: Dict[str, int], data_dir: Optional[Path] = None) -> None:
    """Record an import or export of the mirror document."""
    log_store_event(f"sync-{direction}", _format_counts(counts), data_dir)


def log_commit(
    written: Dict[str, int],
    deleted: Dict[str, int],
    data_dir: Optional[Path] = None,
) -> None:
    """Record a committed session."""
    details = f"written[{_format_counts(written)}] deleted[{_format_counts(deleted)}]"
    log_store_event("commit", details, data_dir)
