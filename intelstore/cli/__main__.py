"""
intelstore CLI - maintain the intelligence store and run learning hooks.

Usage:
    intelstore status [--json]
    intelstore import [--json]
    intelstore export [--collections NAME [NAME ...]]
    intelstore doctor [--json]
    intelstore stats {refresh|learning} [--json]
    intelstore hook {session-start|post-edit|post-command|remember|session-end}
"""

import argparse
import dataclasses
import logging
import os
import sys
from pathlib import Path

from intelstore.cli.commands import (
    HOOK_HANDLERS,
    cmd_doctor,
    cmd_export,
    cmd_hook,
    cmd_import,
    cmd_stats,
    cmd_status,
)
from intelstore.config import StoreConfig
from intelstore.errors import (
    IntelStoreError,
    InvalidSessionState,
    StorageUnavailable,
    UnknownCollection,
)
from intelstore.logging_config import setup_intelstore_logging

# Set up logging
logging.basicConfig(level=logging.WARNING)
logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="intelstore",
        description="Intelligence store synchronization engine",
    )
    parser.add_argument("--db", help="Record store (SQLite) path", default=None)
    parser.add_argument("--mirror", help="Mirror document (JSON) path", default=None)
    parser.add_argument("--embedding-dim", type=int, default=None,
                        help="Vector width for every embedding field")
    parser.add_argument("--log-level", default="INFO",
                        help="Level for the file log (DEBUG also logs to stderr)")

    subparsers = parser.add_subparsers(dest="command", required=True)

    # status
    p_status = subparsers.add_parser("status", help="Show record counts")
    p_status.add_argument("--json", "-j", action="store_true")

    # import
    p_import = subparsers.add_parser("import", help="Merge the mirror into the database")
    p_import.add_argument("--json", "-j", action="store_true")

    # export
    p_export = subparsers.add_parser("export", help="Regenerate the mirror from the database")
    p_export.add_argument("--collections", "-c", nargs="+", metavar="NAME",
                          help="Only re-export these collections into the existing mirror")

    # doctor
    p_doctor = subparsers.add_parser("doctor", help="Diagnose the store (read-only)")
    p_doctor.add_argument("--json", "-j", action="store_true")

    # stats
    p_stats = subparsers.add_parser("stats", help="Stats operations")
    stats_sub = p_stats.add_subparsers(dest="stats_action", required=True)
    stats_sub.add_parser("refresh", help="Recompute aggregate stats")
    p_learning = stats_sub.add_parser("learning", help="Summarize learning tables")
    p_learning.add_argument("--json", "-j", action="store_true")

    # hook
    p_hook = subparsers.add_parser("hook", help="Run a hook event (payload on stdin)")
    p_hook.add_argument("hook_event", choices=list(HOOK_HANDLERS))

    return parser


def build_config(args) -> StoreConfig:
    """Environment defaults overridden by command-line options."""
    config = StoreConfig.from_env()
    overrides = {"event_log": True}
    if args.db:
        overrides["db_path"] = Path(args.db)
        if not args.mirror and not os.environ.get("INTELSTORE_MIRROR_PATH"):
            # Mirror follows an explicitly placed database unless also given
            overrides["mirror_path"] = None
    if args.mirror:
        overrides["mirror_path"] = Path(args.mirror)
    if args.embedding_dim is not None:
        overrides["embedding_width"] = args.embedding_dim
    return dataclasses.replace(config, **overrides)


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = build_config(args)
    except ValueError as e:
        logger.error(f"Invalid configuration: {e}")
        sys.exit(1)

    setup_intelstore_logging(config.data_dir, args.log_level)

    if args.command == "hook":
        cmd_hook(args, config)
        return

    # Dispatch with error handling
    try:
        if args.command == "status":
            cmd_status(args, config)
        elif args.command == "import":
            cmd_import(args, config)
        elif args.command == "export":
            cmd_export(args, config)
        elif args.command == "doctor":
            cmd_doctor(args, config)
        elif args.command == "stats":
            cmd_stats(args, config)
    except (StorageUnavailable, InvalidSessionState, UnknownCollection) as e:
        logger.error(f"Command failed: {e}")
        sys.exit(1)
    except IntelStoreError as e:
        logger.error(f"{type(e).__name__}: {e}")


if __name__ == "__main__":
    main()
