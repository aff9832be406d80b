from __future__ import annotations

import datetime as dt
import logging
from dataclasses import dataclass

from sqlalchemy import desc, func, select
from sqlalchemy.orm import Session

from server.creditmeter.core.models import CreditTransaction, TransactionType, Workspace
from server.creditmeter.ledger.errors import LedgerIntegrityError, WorkspaceNotFoundError

log = logging.getLogger(__name__)


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.UTC)


def as_utc(ts: dt.datetime | None) -> dt.datetime | None:
    if ts is None:
        return None
    if ts.tzinfo is None:
        return ts.replace(tzinfo=dt.UTC)
    return ts.astimezone(dt.UTC)


@dataclass(frozen=True)
class BalanceSnapshot:
    workspace_id: str
    balance: int
    reserved: int
    available: int
    credits_granted: int
    credits_consumed: int
    plan_credit_limit: int | None
    billing_period_start: dt.datetime
    billing_period_end: dt.datetime


@dataclass(frozen=True)
class TransactionPage:
    items: list[CreditTransaction]
    total: int
    limit: int
    offset: int

    @property
    def next_offset(self) -> int | None:
        nxt = self.offset + len(self.items)
        return nxt if nxt < self.total else None


@dataclass(frozen=True)
class ReconcileReport:
    workspace_id: str
    stored_balance: int
    stored_reserved: int
    replayed_balance: int
    replayed_reserved: int
    transaction_count: int

    @property
    def consistent(self) -> bool:
        return self.stored_balance == self.replayed_balance and self.stored_reserved == self.replayed_reserved


def load_workspace(db: Session, workspace_id: str, *, for_update: bool = False) -> Workspace:
    stmt = select(Workspace).where(Workspace.id == workspace_id)
    if for_update:
        stmt = stmt.with_for_update()
    workspace = db.scalar(stmt)
    if workspace is None:
        raise WorkspaceNotFoundError(workspace_id)
    return workspace


def effective_credit_limit(workspace: Workspace) -> int | None:
    if workspace.plan_credit_limit_override is not None:
        return int(workspace.plan_credit_limit_override)
    if workspace.plan is not None and workspace.plan.credit_limit is not None:
        return int(workspace.plan.credit_limit)
    return None


def check_integrity(workspace: Workspace) -> None:
    balance = int(workspace.balance)
    reserved = int(workspace.reserved)
    expected_total = int(workspace.credits_granted) - int(workspace.credits_consumed)
    problem = None
    if balance < 0:
        problem = f"balance would become negative ({balance})"
    elif reserved < 0:
        problem = f"reserved would become negative ({reserved})"
    elif balance + reserved != expected_total:
        problem = f"balance+reserved={balance + reserved} but granted-consumed={expected_total}"
    if problem:
        log.error("Ledger integrity violation for workspace %s: %s", workspace.id, problem)
        raise LedgerIntegrityError(f"Workspace {workspace.id}: {problem}")


def _check_against_ledger(db: Session, workspace: Workspace) -> None:
    last = db.execute(
        select(CreditTransaction.balance_after, CreditTransaction.reserved_after)
        .where(CreditTransaction.workspace_id == workspace.id)
        .order_by(desc(CreditTransaction.id))
        .limit(1)
    ).first()
    if last is None:
        return
    stored = (int(workspace.balance), int(workspace.reserved))
    if (int(last[0]), int(last[1])) != stored:
        problem = f"stored balance/reserved={stored} but the last ledger row has ({last[0]}, {last[1]})"
        log.error("Ledger integrity violation for workspace %s: %s", workspace.id, problem)
        raise LedgerIntegrityError(f"Workspace {workspace.id}: {problem}")


def append_transaction(
    db: Session,
    *,
    workspace: Workspace,
    type: TransactionType,
    amount: int,
    balance_delta: int = 0,
    reserved_delta: int = 0,
    refund_amount: int = 0,
    related_request_id: str | None = None,
    reservation_id: str | None = None,
    external_ref: str | None = None,
    service_type: str | None = None,
    model: str | None = None,
    provider: str | None = None,
    usage_period_start: dt.datetime | None = None,
    description: str = "",
) -> CreditTransaction:
    """Apply a balance movement to ``workspace`` and record it in the ledger.

    The caller owns the database transaction. Integrity is checked before the
    flush, so a bad movement never reaches the database. The stored balance
    must also agree with the newest ledger row before anything is applied.
    """
    _check_against_ledger(db, workspace)
    now = utcnow()
    workspace.balance = int(workspace.balance) + int(balance_delta)
    workspace.reserved = int(workspace.reserved) + int(reserved_delta)
    net = int(balance_delta) + int(reserved_delta)
    if net > 0:
        workspace.credits_granted = int(workspace.credits_granted) + net
    elif net < 0:
        workspace.credits_consumed = int(workspace.credits_consumed) - net
    workspace.updated_at = now
    check_integrity(workspace)

    txn = CreditTransaction(
        workspace_id=workspace.id,
        type=type.value,
        amount=int(amount),
        balance_delta=int(balance_delta),
        reserved_delta=int(reserved_delta),
        balance_after=workspace.balance,
        reserved_after=workspace.reserved,
        refund_amount=int(refund_amount),
        related_request_id=related_request_id,
        reservation_id=reservation_id,
        external_ref=external_ref,
        service_type=service_type,
        model=model,
        provider=provider,
        usage_period_start=usage_period_start,
        description=description,
        created_at=now,
    )
    db.add(txn)
    db.flush()
    return txn


def find_by_external_ref(db: Session, external_ref: str) -> CreditTransaction | None:
    return db.scalar(select(CreditTransaction).where(CreditTransaction.external_ref == external_ref))


def get_balance(db: Session, workspace_id: str) -> BalanceSnapshot:
    workspace = load_workspace(db, workspace_id)
    return BalanceSnapshot(
        workspace_id=workspace.id,
        balance=int(workspace.balance),
        reserved=int(workspace.reserved),
        available=int(workspace.balance),
        credits_granted=int(workspace.credits_granted),
        credits_consumed=int(workspace.credits_consumed),
        plan_credit_limit=effective_credit_limit(workspace),
        billing_period_start=as_utc(workspace.billing_period_start),
        billing_period_end=as_utc(workspace.billing_period_end),
    )


def list_transactions(
    db: Session,
    workspace_id: str,
    *,
    start: dt.datetime | None = None,
    end: dt.datetime | None = None,
    types: list[str] | None = None,
    limit: int = 50,
    offset: int = 0,
) -> TransactionPage:
    load_workspace(db, workspace_id)
    limit = max(1, min(int(limit), 500))
    offset = max(0, int(offset))

    filters = [CreditTransaction.workspace_id == workspace_id]
    if start is not None:
        filters.append(CreditTransaction.created_at >= as_utc(start))
    if end is not None:
        filters.append(CreditTransaction.created_at < as_utc(end))
    if types:
        filters.append(CreditTransaction.type.in_([t.upper() for t in types]))

    total = int(db.scalar(select(func.count(CreditTransaction.id)).where(*filters)) or 0)
    items = (
        db.execute(
            select(CreditTransaction)
            .where(*filters)
            .order_by(desc(CreditTransaction.id))
            .limit(limit)
            .offset(offset)
        )
        .scalars()
        .all()
    )
    return TransactionPage(items=list(items), total=total, limit=limit, offset=offset)


def reconcile_workspace(db: Session, workspace_id: str) -> ReconcileReport:
    """Replay the full ledger for a workspace and compare with the stored row."""
    workspace = load_workspace(db, workspace_id)
    row = db.execute(
        select(
            func.coalesce(func.sum(CreditTransaction.balance_delta), 0),
            func.coalesce(func.sum(CreditTransaction.reserved_delta), 0),
            func.count(CreditTransaction.id),
        ).where(CreditTransaction.workspace_id == workspace_id)
    ).one()
    report = ReconcileReport(
        workspace_id=workspace_id,
        stored_balance=int(workspace.balance),
        stored_reserved=int(workspace.reserved),
        replayed_balance=int(row[0]),
        replayed_reserved=int(row[1]),
        transaction_count=int(row[2]),
    )
    if not report.consistent:
        log.error(
            "Reconcile mismatch for workspace %s: stored=(%s, %s) replayed=(%s, %s)",
            workspace_id,
            report.stored_balance,
            report.stored_reserved,
            report.replayed_balance,
            report.replayed_reserved,
        )
    return report
