from __future__ import annotations

import datetime as dt
from dataclasses import dataclass, field

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from server.creditmeter.core.models import CreditTransaction, TransactionType, UsageSummary, Workspace
from server.creditmeter.ledger.transactions import as_utc, load_workspace, utcnow

OVERAGE_SERVICE = "overage"


@dataclass
class UsageLine:
    service_type: str
    model: str
    provider: str
    credits: int = 0
    requests: int = 0


@dataclass
class UsageReport:
    workspace_id: str
    period_start: dt.datetime
    period_end: dt.datetime
    total_credits: int = 0
    total_requests: int = 0
    overage_units: int = 0
    lines: list[UsageLine] = field(default_factory=list)

    def summary(self) -> dict:
        return {
            "workspace_id": self.workspace_id,
            "period_start": as_utc(self.period_start).isoformat(),
            "period_end": as_utc(self.period_end).isoformat(),
            "total_credits": self.total_credits,
            "total_requests": self.total_requests,
            "overage_units": self.overage_units,
            "breakdown": [
                {
                    "service_type": line.service_type,
                    "model": line.model,
                    "provider": line.provider,
                    "credits": line.credits,
                    "requests": line.requests,
                }
                for line in self.lines
            ],
        }


def attributed_period(workspace: Workspace, at: dt.datetime, *, period_days: int) -> tuple[dt.datetime, dt.datetime]:
    """Billing period that usage finished at ``at`` counts toward.

    The workspace's stored period only moves at rollover; usage landing after
    its end belongs to the period rollover will open next, never the closed one.
    """
    start, end = workspace.billing_period_start, workspace.billing_period_end
    length = dt.timedelta(days=period_days)
    while as_utc(at) >= as_utc(end):
        start, end = end, end + length
    return start, end


def record_usage(
    db: Session,
    *,
    workspace: Workspace,
    credits: int = 0,
    requests: int = 1,
    overage_units: int = 0,
    service_type: str | None = None,
    model: str | None = None,
    provider: str | None = None,
    period_start: dt.datetime | None = None,
    period_end: dt.datetime | None = None,
    now: dt.datetime | None = None,
) -> UsageSummary:
    """Fold one usage event into the running summary for the workspace's period.

    Must run inside the transaction that locked ``workspace`` so concurrent
    events for the same key serialize on the workspace row.
    """
    period_start = period_start or workspace.billing_period_start
    period_end = period_end or workspace.billing_period_end
    key = {
        "workspace_id": workspace.id,
        "period_start": period_start,
        "service_type": (service_type or "").strip(),
        "model": (model or "").strip(),
        "provider": (provider or "").strip(),
    }
    row = db.scalar(select(UsageSummary).filter_by(**key))
    if row is None:
        row = UsageSummary(**key, period_end=period_end, credits=0, requests=0, overage_units=0)
        db.add(row)
    row.credits = int(row.credits or 0) + int(credits)
    row.requests = int(row.requests or 0) + int(requests)
    row.overage_units = int(row.overage_units or 0) + int(overage_units)
    row.updated_at = now or utcnow()
    db.flush()
    return row


def _report_from_rows(
    workspace_id: str,
    period_start: dt.datetime,
    period_end: dt.datetime,
    rows,
) -> UsageReport:
    report = UsageReport(workspace_id=workspace_id, period_start=period_start, period_end=period_end)
    lines: dict[tuple[str, str, str], UsageLine] = {}
    for service_type, model, provider, credits, requests, overage_units in rows:
        report.overage_units += int(overage_units or 0)
        if service_type == OVERAGE_SERVICE:
            continue
        key = (service_type or "", model or "", provider or "")
        line = lines.get(key)
        if line is None:
            line = UsageLine(service_type=key[0], model=key[1], provider=key[2])
            lines[key] = line
        line.credits += int(credits or 0)
        line.requests += int(requests or 0)
        report.total_credits += int(credits or 0)
        report.total_requests += int(requests or 0)
    report.lines = sorted(lines.values(), key=lambda x: (-x.credits, x.service_type, x.model, x.provider))
    return report


def usage_for_period(
    db: Session,
    workspace_id: str,
    *,
    period_start: dt.datetime | None = None,
    period_end: dt.datetime | None = None,
) -> UsageReport:
    """Usage so far, read from the incrementally maintained summaries.

    Defaults to the workspace's current billing period.
    """
    if period_start is None or period_end is None:
        workspace = load_workspace(db, workspace_id)
        period_start = period_start or workspace.billing_period_start
        period_end = period_end or workspace.billing_period_end
    period_start, period_end = as_utc(period_start), as_utc(period_end)
    rows = db.execute(
        select(
            UsageSummary.service_type,
            UsageSummary.model,
            UsageSummary.provider,
            UsageSummary.credits,
            UsageSummary.requests,
            UsageSummary.overage_units,
        ).where(
            UsageSummary.workspace_id == workspace_id,
            UsageSummary.period_start >= period_start,
            UsageSummary.period_start < period_end,
        )
    ).all()
    return _report_from_rows(workspace_id, period_start, period_end, rows)


def replay_usage(
    db: Session,
    workspace_id: str,
    *,
    period_start: dt.datetime,
    period_end: dt.datetime,
    rebuild: bool = False,
) -> UsageReport:
    """Recompute period usage from the transaction ledger.

    Rows are grouped by the billing period they were attributed to when
    written, the same key the running summaries use. With ``rebuild`` those
    summaries are replaced by the replayed figures; the caller owns the
    transaction.
    """
    load_workspace(db, workspace_id)
    period_start, period_end = as_utc(period_start), as_utc(period_end)
    in_period = (
        CreditTransaction.workspace_id == workspace_id,
        CreditTransaction.usage_period_start >= period_start,
        CreditTransaction.usage_period_start < period_end,
    )
    settle_rows = db.execute(
        select(
            CreditTransaction.usage_period_start,
            CreditTransaction.service_type,
            CreditTransaction.model,
            CreditTransaction.provider,
            func.coalesce(func.sum(-CreditTransaction.amount), 0),
            func.count(CreditTransaction.id),
        )
        .where(CreditTransaction.type == TransactionType.settle.value, *in_period)
        .group_by(
            CreditTransaction.usage_period_start,
            CreditTransaction.service_type,
            CreditTransaction.model,
            CreditTransaction.provider,
        )
    ).all()
    overage_rows = db.execute(
        select(CreditTransaction.usage_period_start, func.coalesce(func.sum(-CreditTransaction.amount), 0))
        .where(CreditTransaction.type == TransactionType.overage_charge.value, *in_period)
        .group_by(CreditTransaction.usage_period_start)
    ).all()

    keyed = [(ps, s or "", m or "", p or "", int(c or 0), int(n or 0), 0) for ps, s, m, p, c, n in settle_rows]
    keyed += [(ps, OVERAGE_SERVICE, "", "", 0, 0, int(u or 0)) for ps, u in overage_rows if u]
    report = _report_from_rows(workspace_id, period_start, period_end, [row[1:] for row in keyed])

    if rebuild:
        db.execute(
            delete(UsageSummary).where(
                UsageSummary.workspace_id == workspace_id,
                UsageSummary.period_start >= period_start,
                UsageSummary.period_start < period_end,
            )
        )
        length = period_end - period_start
        now = utcnow()
        for ps, service_type, model, provider, credits, requests, units in keyed:
            db.add(
                UsageSummary(
                    workspace_id=workspace_id,
                    period_start=ps,
                    period_end=as_utc(ps) + length,
                    service_type=service_type,
                    model=model,
                    provider=provider,
                    credits=credits,
                    requests=requests,
                    overage_units=units,
                    updated_at=now,
                )
            )
        db.flush()
    return report
