#!/usr/bin/env python3
"""
Find and rebuild missing or stale order cache rows.

Usage:
    python scripts/validate_cache.py --dry-run                       # report only, last 365 days
    python scripts/validate_cache.py --execute --start 2025-08-01    # rebuild from a date to today
    python scripts/validate_cache.py --execute --start 2025-08-01 --end 2025-08-31 --force

Safe to run multiple times - up-to-date rows are left alone unless --force.
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def main() -> None:
    parser = argparse.ArgumentParser(description="Validate and rebuild orders_cache rows")
    parser.add_argument("--dry-run", action="store_true", help="Preview changes without applying")
    parser.add_argument("--execute", action="store_true", help="Apply changes")
    parser.add_argument("--start", help="YYYY-MM-DD (default: full window)")
    parser.add_argument("--end", help="YYYY-MM-DD (default: today)")
    parser.add_argument("--force", action="store_true", help="Rebuild every order in range")
    args = parser.parse_args()

    if not args.dry_run and not args.execute:
        print("ERROR: Specify --dry-run or --execute")
        print(__doc__)
        sys.exit(1)

    from app.ordersync import create_app
    from app.ordersync.modules.orders_cache.validator import validator_from_config

    app = create_app()
    validator = validator_from_config(app.extensions["sqlalchemy_sessionmaker"], app.config)
    try:
        result = validator.validate(
            start_date=args.start,
            end_date=args.end,
            force=args.force,
            dry_run=args.dry_run,
        )
    except ValueError as e:
        print(f"ERROR: {e}")
        sys.exit(1)

    print(f"Range ({result.mode}): {result.start_date} .. {result.end_date}")
    print(f"Orders checked: {result.processed}")
    print(f"  cache hits: {result.cache_hits}")
    print(f"  cache misses: {result.cache_misses}")
    print(f"  stale (items changed): {result.cache_stale}")
    print(f"  newer but unchanged: {result.stale_by_date_but_unchanged}")

    if args.dry_run:
        print(f"\n[DRY RUN] Would rebuild {len(result.to_update)} cache rows")
        for external_id in result.to_update[:20]:
            print(f"  {external_id}")
        if len(result.to_update) > 20:
            print(f"  ... and {len(result.to_update) - 20} more")
        return

    print(f"\nRebuilt: {result.updated}, errors: {result.errors}")
    for err in result.error_details[:20]:
        print(f"  {err['external_id']}: {err['error']}")
    if result.errors:
        sys.exit(2)


if __name__ == "__main__":
    main()
