#!/usr/bin/env python
"""
Scheduled stuck-order check (run from cron / platform job, e.g. hourly).

Runs the same pipeline as GET /admin/orders/status-counts: fetch orders, resolve delivery
stages, flag stuck orders and send at most one alert per order per UTC day.

Usage:
    python scripts/check_stuck_orders.py
    python scripts/check_stuck_orders.py --dry-run      # report only, no alerts
    python scripts/check_stuck_orders.py --json         # print the full report as JSON

Exit codes: 0 ok, 1 upstream failure, 2 configuration/credential problem.
"""
from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.merchops import create_app
from app.merchops.modules.order_tracking.exceptions import AuthError, ConfigurationError, OrderTrackingError
from app.merchops.modules.order_tracking.service import get_pipeline

logger = logging.getLogger("check_stuck_orders")


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Flag stuck orders and send daily alerts")
    parser.add_argument("--dry-run", action="store_true", help="Do not send alerts or write the notification log")
    parser.add_argument("--json", action="store_true", help="Print the status-counts report as JSON")
    args = parser.parse_args(argv)

    app = create_app()
    with app.app_context():
        try:
            report = get_pipeline(app).status_counts(actor="scheduler", notify=not args.dry_run)
        except (ConfigurationError, AuthError) as e:
            logger.error("Stuck-order check cannot run: %s", e)
            return 2
        except OrderTrackingError as e:
            logger.error("Stuck-order check failed: %s", e)
            return 1

    if args.json:
        print(json.dumps(report.to_dict(), indent=2, default=str))
    else:
        for bucket in report.buckets.values():
            flag = " (stuck)" if bucket.has_stuck_orders else ""
            print(f"{bucket.stage.value:<28} {bucket.count:>5}{flag}")
        n = report.notifications
        print(f"Stuck orders: {len(report.stuck_orders)}  alerts sent={n.sent} skipped={n.skipped} failed={n.failed}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
