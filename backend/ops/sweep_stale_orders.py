from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def _bootstrap_app():
    from sikupi import create_app

    app = create_app()
    app.app_context().push()
    return app


def main():
    parser = argparse.ArgumentParser(description="Cancel pending transactions whose payment window has expired.")
    parser.add_argument("--hours", type=int, default=None, help="Age threshold; defaults to STALE_PENDING_HOURS.")
    parser.add_argument("--limit", type=int, default=100, help="Maximum transactions to cancel in one run.")
    args = parser.parse_args()

    _bootstrap_app()
    from sikupi.jobs.stale_order_runner import run_stale_pending_sweep

    summary = run_stale_pending_sweep(max_age_hours=args.hours, limit=max(1, args.limit))
    print(json.dumps(summary, indent=2))
    return 0 if summary.get("ok") else 2


if __name__ == "__main__":
    raise SystemExit(main())
