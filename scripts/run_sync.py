#!/usr/bin/env python3
"""
Scheduled upstream sync (cron entry).

Usage:
    python scripts/run_sync.py                          # since yesterday, business time zone
    python scripts/run_sync.py --start 2025-08-01 --end 2025-08-07
    python scripts/run_sync.py --force                  # rewrite every present field
    python scripts/run_sync.py --no-prune               # keep old history rows

Exit code is 0 for success, 1 for a failed fetch, 2 for a partial run.
"""

from __future__ import annotations

import argparse
import logging
import sys
from datetime import datetime, timedelta
from pathlib import Path

import pytz

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

logger = logging.getLogger("scripts.run_sync")


def main() -> None:
    parser = argparse.ArgumentParser(description="Sync orders from SalesDrive and prune old history")
    parser.add_argument("--start", help="YYYY-MM-DD (default: yesterday)")
    parser.add_argument("--end", help="YYYY-MM-DD (default: now)")
    parser.add_argument("--type", default="automatic", choices=("manual", "automatic", "background"))
    parser.add_argument("--force", action="store_true", help="Write every present field even when unchanged")
    parser.add_argument("--no-prune", action="store_true", help="Skip history retention cleanup")
    args = parser.parse_args()

    from app.ordersync import create_app
    from app.ordersync.audit import prune_history
    from app.ordersync.db import session_scope
    from app.ordersync.modules.salesdrive_sync.client import SalesDriveError
    from app.ordersync.modules.salesdrive_sync.service import client_from_config, reconciler_from_config, run_sync

    app = create_app()
    cfg = app.config

    start = args.start or cfg.get("SALESDRIVE_SINCE_DATE")
    if not start:
        today = datetime.now(pytz.timezone(cfg["BUSINESS_TIMEZONE"])).date()
        start = (today - timedelta(days=1)).isoformat()

    sf = app.extensions["sqlalchemy_sessionmaker"]
    try:
        out = run_sync(
            sf,
            client_from_config(cfg),
            start_date=start,
            end_date=args.end,
            sync_type=args.type,
            force_update=args.force,
            reconciler=reconciler_from_config(sf, cfg),
            batch_size=cfg["SYNC_BATCH_SIZE"],
            concurrency=cfg["SYNC_CONCURRENCY"],
        )
    except SalesDriveError as e:
        logger.error("Sync failed: %s", e)
        sys.exit(1)

    history = out["history"]
    print(
        f"Sync {history['status']}: total={history['total_orders']} new={history['new_orders']} "
        f"updated={history['updated_orders']} skipped={history['skipped_orders']} errors={history['errors']} "
        f"({history['duration_seconds']}s)"
    )

    if not args.no_prune:
        with session_scope(app) as s:
            pruned = prune_history(s, days=cfg["HISTORY_RETENTION_DAYS"])
        print(f"Pruned history older than {cfg['HISTORY_RETENTION_DAYS']} days: {pruned}")

    if history["status"] != "success":
        sys.exit(2)


if __name__ == "__main__":
    main()
