from __future__ import annotations

import argparse
import os
import time
import uuid

from race_engine import create_app
from race_engine.db import close_db, get_db
from race_engine.observability import bind_request_id
from race_engine.sweeper import ExpirySweeper, SweepReport, clamp_interval_seconds


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Race maintenance worker (hold expiry, opening, deadlines).")
    parser.add_argument("--once", action="store_true", help="Run a single pass and exit.")
    parser.add_argument("--tenant-id", default="", help="Sweep a single tenant only.")
    parser.add_argument("--limit", type=int, default=0, help="Maximum rows per action per pass.")
    parser.add_argument("--interval", type=int, default=0, help="Seconds between passes.")
    parser.add_argument(
        "--deliver-broadcasts",
        action="store_true",
        help="Also stamp due broadcasts as delivered.",
    )
    return parser


def _run_once(app, sweeper: ExpirySweeper, tenant_id: str | None) -> SweepReport:
    with app.app_context():
        db = get_db()
        try:
            return sweeper.sweep(db, tenant_id=tenant_id)
        finally:
            close_db()


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    os.environ.setdefault("RACE_SWEEPER_ENABLED", "false")
    os.environ.setdefault("DB_AUTO_INIT", "false")
    app = create_app()

    configured_limit = int(app.config.get("RACE_SWEEPER_LIMIT", 200) or 200)
    limit = max(1, int(args.limit or configured_limit))
    interval_seconds = clamp_interval_seconds(args.interval or app.config.get("RACE_SWEEPER_INTERVAL_SECONDS"))
    tenant_id = str(args.tenant_id or "").strip() or None
    sweeper = ExpirySweeper(
        clock=app.config.get("RACE_CLOCK"),
        event_bus=app.extensions.get("event_bus"),
        limit=limit,
        deliver_broadcasts=args.deliver_broadcasts or bool(app.config.get("RACE_SWEEPER_DELIVER_BROADCASTS")),
    )

    while True:
        run_request_id = f"worker-{uuid.uuid4().hex[:12]}"
        with bind_request_id(run_request_id):
            report = _run_once(app, sweeper, tenant_id)
            app.logger.info(
                "race_sweeper_batch_completed",
                extra={"tenant_id": tenant_id or "all", **report.to_dict()},
            )
        if args.once:
            break
        time.sleep(interval_seconds)

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
