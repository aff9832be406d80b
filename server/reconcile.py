from __future__ import annotations

import argparse
import datetime as dt
import json
import logging

from dotenv import load_dotenv
from sqlalchemy import select

from server.creditmeter.core.cli import add_runtime_args, apply_runtime_overrides
from server.creditmeter.core.config import Settings
from server.creditmeter.core.db import session_scope
from server.creditmeter.core.models import Workspace
from server.creditmeter.ledger.transactions import as_utc, reconcile_workspace
from server.creditmeter.ledger.usage import replay_usage


def _parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Replay the credit ledger and compare it with stored balances.")
    add_runtime_args(parser)
    parser.add_argument("workspace_ids", nargs="*", help="Workspaces to check (default: all).")
    parser.add_argument(
        "--rebuild-usage",
        action="store_true",
        help="Rebuild the current period's usage summaries from the ledger.",
    )
    return parser


def main() -> int:
    load_dotenv()
    args = _parser().parse_args()
    apply_runtime_overrides(args)
    settings = Settings.from_env()
    logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))

    mismatches = 0
    with session_scope(settings) as db:
        workspace_ids = args.workspace_ids or list(db.execute(select(Workspace.id)).scalars().all())
        for workspace_id in workspace_ids:
            report = reconcile_workspace(db, workspace_id)
            line = {
                "workspace_id": workspace_id,
                "consistent": report.consistent,
                "stored": [report.stored_balance, report.stored_reserved],
                "replayed": [report.replayed_balance, report.replayed_reserved],
                "transactions": report.transaction_count,
            }
            if args.rebuild_usage:
                workspace = db.get(Workspace, workspace_id)
                usage = replay_usage(
                    db,
                    workspace_id,
                    period_start=workspace.billing_period_start,
                    period_end=workspace.billing_period_end,
                    rebuild=True,
                )
                line["usage_rebuilt"] = {
                    "period_start": as_utc(usage.period_start).isoformat(),
                    "total_credits": usage.total_credits,
                }
            if not report.consistent:
                mismatches += 1
            print(json.dumps(line, default=lambda v: v.isoformat() if isinstance(v, dt.datetime) else str(v)))

    return 1 if mismatches else 0


if __name__ == "__main__":
    raise SystemExit(main())
