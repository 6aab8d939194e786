#!/usr/bin/env python3
"""
Drop the mantis-mcp index so the next sync rebuilds it.

Vectors from different embedding models are not comparable, so changing
EMBEDDING_MODEL or EMBEDDING_DIM requires a full rebuild. The server refuses
to start against an index built with another model until this has been run.

Usage:
    python reindex.py --dry-run  # Show what would be dropped
    python reindex.py            # Drop all index tables
"""

from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

import lancedb

from config import DEFAULT_DB_PATH
from vector_store import (
    EMBEDDING_DIM_KEY,
    EMBEDDING_MODEL_KEY,
    SCHEMAS,
    SYNC_METADATA,
    drop_index_tables,
    table_names,
)


def _index_model(table) -> str:
    rows = table.search().where(
        f"key IN ('{EMBEDDING_MODEL_KEY}', '{EMBEDDING_DIM_KEY}')"
    ).limit(2).to_list()
    values = {r["key"]: r["value"] for r in rows}
    if not values:
        return "unknown"
    return f"{values.get(EMBEDDING_MODEL_KEY, 'unknown')} ({values.get(EMBEDDING_DIM_KEY, '?')} dims)"


def reindex(db_path: Path, dry_run: bool = True) -> int:
    """Drop every index table under `db_path`. Returns the number dropped."""
    if not db_path.exists():
        print(f"Nothing to do: no database at {db_path}")
        return 0

    print(f"Opening database: {db_path}")
    db = lancedb.connect(str(db_path))
    existing = [name for name in table_names(db) if name in SCHEMAS]
    if not existing:
        print("Nothing to do: no index tables found")
        return 0

    if SYNC_METADATA in existing:
        print(f"Index built with: {_index_model(db.open_table(SYNC_METADATA))}")

    print("=" * 70)
    for name in existing:
        print(f"  {db.open_table(name).count_rows():6d} rows: {name}")
    print("=" * 70)

    if dry_run:
        print("\nDRY RUN MODE - No changes applied")
        print("Run without --dry-run to drop the index")
        return 0

    dropped = drop_index_tables(db)
    print(f"\nDropped {len(dropped)} tables. Run sync_index to rebuild the index.")
    return len(dropped)


def main():
    parser = argparse.ArgumentParser(
        description="Drop the mantis-mcp vector index for a full rebuild",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python reindex.py --dry-run  # Preview
  python reindex.py            # Drop index tables
        """,
    )
    parser.add_argument(
        "--dry-run", action="store_true", help="Show what would be dropped without dropping it"
    )
    parser.add_argument(
        "--db-path",
        type=Path,
        default=Path(os.environ.get("MANTIS_MCP_DB_PATH") or DEFAULT_DB_PATH),
        help="LanceDB directory (default: $MANTIS_MCP_DB_PATH or ~/.mantis-mcp/lancedb)",
    )
    args = parser.parse_args()

    try:
        reindex(args.db_path.expanduser(), dry_run=args.dry_run)
    except KeyboardInterrupt:
        print("\n\nReindex cancelled")
        sys.exit(1)


if __name__ == "__main__":
    main()
