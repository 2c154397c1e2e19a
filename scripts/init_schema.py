#!/usr/bin/env python3
"""Define the users and sessions tables on the configured SurrealDB.

Usage:
    SURREAL_URL=http://127.0.0.1:8000 SURREAL_PASS=secret python scripts/init_schema.py

    # Print the statements without touching the database:
    python scripts/init_schema.py --dry-run

Environment Variables:
    SURREAL_URL, SURREAL_NS, SURREAL_DB, SURREAL_USER, SURREAL_PASS
"""
from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def init_schema(dry_run: bool = False) -> dict:
    # Import here so .env is read from the invocation directory
    from taskkeeper.config import get_settings
    from taskkeeper.storage.surreal import SCHEMA, SurrealStore

    settings = get_settings()
    if dry_run:
        print(SCHEMA.strip())
        return {"status": "dry_run", "url": settings.surreal_url}

    store = SurrealStore.from_settings(settings)
    try:
        results = await store.execute(SCHEMA)
    finally:
        await store.close()
    failed = [r.result for r in results if not r.ok]
    return {
        "status": "failed" if failed else "initialized",
        "url": settings.surreal_url,
        "statements": len(results),
        "errors": failed,
    }


def main():
    parser = argparse.ArgumentParser(
        description="Initialize the Taskkeeper SurrealDB schema",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Print the schema without executing it",
    )
    args = parser.parse_args()

    try:
        result = asyncio.run(init_schema(args.dry_run))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "initialized":
        print(f"Schema initialized on {result['url']} ({result['statements']} statements)")
    elif result["status"] == "failed":
        print(f"Schema statements failed on {result['url']}:")
        for error in result["errors"]:
            print(f"  {error}")
        sys.exit(1)


if __name__ == "__main__":
    main()
