"""Diagnostics and stats commands."""

import json
import logging
import sys
from typing import TYPE_CHECKING

from intelstore.storage.health import diagnose
from intelstore.storage.schema import default_registry
from intelstore.storage.stats_ops import learning_summary, refresh_stats
from intelstore.store import open_store

if TYPE_CHECKING:
    from intelstore.config import StoreConfig

logger = logging.getLogger(__name__)


def cmd_doctor(args, config: "StoreConfig"):
    """Inspect the store without modifying it. Exits 1 if tables are missing."""
    registry = default_registry(config.embedding_width, config.vector_widths)
    report = diagnose(config.db_path, registry, config.mirror_path)

    if getattr(args, "json", False):
        print(json.dumps(report, indent=2, default=str))
    else:
        _print_report(report)

    if not report["exists"] or report["schema"]["missing_tables"]:
        sys.exit(1)


def _print_report(report):
    print(f"Intelligence store diagnostics: {report['db_path']}")
    print("=" * 50)
    if not report["exists"]:
        print("✗ Database file does not exist")
        return

    print("\nRow counts:")
    for name, count in report["counts"].items():
        print(f"  {name:<22}{count}")

    if report["embeddings"]:
        print("\nEmbeddings:")
        for key, stats in report["embeddings"].items():
            print(
                f"  {key:<26}{stats['correct']} ok / {stats['wrong_width']} wrong width / "
                f"{stats['null']} none (expected {stats['expected_width']}d)"
            )

    mirror = report["mirror"]
    print("\nMirror:")
    if not mirror.get("exists"):
        print(f"  {mirror.get('path')} (missing)")
    elif mirror.get("readable"):
        newer = " (newer than database)" if mirror.get("newer_than_db") else ""
        print(f"  {mirror['path']}{newer}")
    else:
        print(f"  {mirror['path']} (unreadable: {mirror.get('error')})")

    if report["notes"]:
        print("\nNotes:")
        for note in report["notes"]:
            print(f"  - {note}")
    if report["problems"]:
        print("\nProblems:")
        for problem in report["problems"]:
            print(f"  ✗ {problem}")
    else:
        print("\n✓ No problems found")


def cmd_stats(args, config: "StoreConfig"):
    """Handle stats subcommands."""
    action = getattr(args, "stats_action", None)

    if action == "refresh":
        with open_store(config) as store:
            with store.session() as session:
                written = refresh_stats(session)
        for key, value in written.items():
            print(f"{key}: {value}")

    elif action == "learning":
        with open_store(config) as store:
            with store.session() as session:
                summary = learning_summary(session)
        if getattr(args, "json", False):
            print(json.dumps(summary, indent=2, default=str))
            return
        patterns = summary["patterns"]
        learning = summary["learning_data"]
        print(f"patterns:      {patterns['count']} ({patterns['states']} states, "
              f"{patterns['total_updates']} updates)")
        for p in patterns["top"]:
            print(f"  {p['key']}: {p['value']:.3f} ({p['update_count']} updates)")
        print(f"learning_data: {learning['entries']} entries across "
              f"{len(learning['algorithms'])} algorithms")
        for algorithm, info in learning["algorithms"].items():
            print(f"  {algorithm}: {info['entries']} entries")
        if summary["disconnected"]:
            print("⚠ patterns and learning_data are maintained separately; "
                  "values in one are not reflected in the other")
