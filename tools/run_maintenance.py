"""
Periodic housekeeping, meant for cron:

  - expire ACTIVE subscriptions past their end date
  - cancel PENDING payments / programme purchases older than --stale-minutes
  - retry Tabby captures that the webhook could not complete

Prints a JSON report; exit code 1 when any step raised.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

# ---- sys.path bootstrap ----
PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))
# ----------------------------

from gymshop.core.config import data_root  # noqa: E402
from gymshop.core.errors import ShopError  # noqa: E402
from gymshop.core.gateways.tabby import TabbyClient  # noqa: E402
from gymshop.core.reconcile.tabby import TabbyCaptureSweep  # noqa: E402
from gymshop.core.shop.payments import STALE_AFTER_MINUTES, PaymentService  # noqa: E402
from gymshop.core.shop.subscriptions import SubscriptionService  # noqa: E402
from gymshop.core.storage import Database, open_database  # noqa: E402

log = logging.getLogger("gymshop.maintenance")


def run(db: Database, *, stale_minutes: int = STALE_AFTER_MINUTES, sweep_limit: int = 10, tabby: TabbyClient | None = None) -> dict:
    report: dict = {"ok": True, "steps": {}}

    steps = [
        ("expire_subscriptions", lambda: SubscriptionService(db).expire_due()),
        ("cleanup_stale", lambda: PaymentService(db).cleanup_stale(older_than_minutes=stale_minutes)),
    ]
    if tabby is not None and tabby.configured:
        steps.append(("tabby_capture_sweep", lambda: TabbyCaptureSweep(db, tabby).run(limit=sweep_limit)))
    else:
        report["steps"]["tabby_capture_sweep"] = {"skipped": "tabby not configured"}

    for name, fn in steps:
        try:
            report["steps"][name] = fn()
        except ShopError as e:
            log.error("maintenance step %s failed: %s", name, e.message)
            report["steps"][name] = {"error": e.message}
            report["ok"] = False
    return report


def main(argv: list[str] | None = None) -> int:
    ap = argparse.ArgumentParser()
    ap.add_argument("--data-root", default=None, help="Override GYMSHOP_DATA_ROOT")
    ap.add_argument("--stale-minutes", type=int, default=STALE_AFTER_MINUTES)
    ap.add_argument("--sweep-limit", type=int, default=10)
    args = ap.parse_args(argv)

    logging.basicConfig(level=logging.INFO)
    root = Path(args.data_root) if args.data_root else data_root()
    report = run(open_database(root), stale_minutes=args.stale_minutes, sweep_limit=args.sweep_limit, tabby=TabbyClient())
    print(json.dumps(report, indent=2, sort_keys=True))
    return 0 if report["ok"] else 1


if __name__ == "__main__":
    raise SystemExit(main())
