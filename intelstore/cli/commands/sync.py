"""Status, import and export commands: move data between the database and its mirror."""

import json
import logging
from typing import TYPE_CHECKING

from intelstore.store import IntelligenceStore

if TYPE_CHECKING:
    from intelstore.config import StoreConfig

logger = logging.getLogger(__name__)


def cmd_status(args, config: "StoreConfig"):
    """Show per-collection record counts."""
    store = IntelligenceStore(config)
    counts = store.counts()
    store.close(export=False)

    if getattr(args, "json", False):
        print(json.dumps({"db_path": str(config.db_path), "counts": counts}, indent=2))
        return

    print(f"Intelligence store: {config.db_path}")
    print("=" * 40)
    width = max(len(name) for name in counts)
    for name, count in counts.items():
        print(f"{name.ljust(width + 2)}{count}")
    print(f"{'total'.ljust(width + 2)}{sum(counts.values())}")


def cmd_import(args, config: "StoreConfig"):
    """Merge the mirror document into the database."""
    store = IntelligenceStore(config)
    try:
        result = store.import_mirror()
    finally:
        store.close(export=False)

    if getattr(args, "json", False):
        print(
            json.dumps(
                {
                    "merged": result.merged,
                    "rejected": result.rejected,
                    "skipped_keys": result.skipped_keys,
                    "error": str(result.error) if result.error else None,
                },
                indent=2,
            )
        )
        return

    if result.error is not None:
        print(f"✗ Mirror not imported: {result.error}")
        return
    print(f"✓ Imported {result.total_merged} records from {config.mirror_path}")
    for name, count in result.merged.items():
        print(f"  {name}: {count}")
    if result.rejected:
        print(f"⚠ {len(result.rejected)} records rejected:")
        for rejection in result.rejected[:10]:
            print(f"  {rejection['collection']}/{rejection['key']}: {rejection['error']}")
    if result.skipped_keys:
        print(f"⚠ Skipped unknown keys: {', '.join(result.skipped_keys)}")


def cmd_export(args, config: "StoreConfig"):
    """Regenerate the mirror document."""
    names = getattr(args, "collections", None)
    store = IntelligenceStore(config)
    try:
        doc = store.export_mirror(collections=names)
    finally:
        store.close(export=False)
    exported = set(names) if names else doc.keys()
    total = sum(len(doc[name]) for name in exported)
    print(f"✓ Exported {total} records to {config.mirror_path}")
