from __future__ import annotations

import datetime as dt
import logging
from collections.abc import Callable
from dataclasses import dataclass, replace
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from server.creditmeter.core.config import Settings
from server.creditmeter.core.db import session_scope
from server.creditmeter.core.email import send_overage_email
from server.creditmeter.core.models import InvoiceStatus, OverageInvoice, TransactionType, Workspace
from server.creditmeter.ledger.accounts import allotment_reference, credit_workspace
from server.creditmeter.ledger.atomic import run_atomic
from server.creditmeter.ledger.invoicing import invoice_client_from_settings
from server.creditmeter.ledger.transactions import (
    append_transaction,
    as_utc,
    effective_credit_limit,
    load_workspace,
    utcnow,
)
from server.creditmeter.ledger.usage import OVERAGE_SERVICE, record_usage, usage_for_period

log = logging.getLogger(__name__)

_CENTS = Decimal("0.01")


@dataclass(frozen=True)
class OverageResult:
    workspace_id: str
    period_start: dt.datetime
    period_end: dt.datetime
    total_usage: int
    credit_limit: int | None
    overage_units: int
    rate: Decimal | None
    charge: Decimal
    amount_cents: int
    currency: str
    idempotency_key: str | None = None
    invoice_id: str | None = None
    invoice_status: str | None = None
    invoiced_units: int = 0
    transaction_id: int | None = None
    emitted: bool = False

    def to_dict(self) -> dict:
        return {
            "workspace_id": self.workspace_id,
            "period_start": as_utc(self.period_start).isoformat(),
            "period_end": as_utc(self.period_end).isoformat(),
            "total_usage": self.total_usage,
            "credit_limit": self.credit_limit,
            "unlimited": self.credit_limit is None,
            "overage_units": self.overage_units,
            "rate": str(self.rate) if self.rate is not None else None,
            "charge": str(self.charge),
            "amount_cents": self.amount_cents,
            "currency": self.currency,
            "idempotency_key": self.idempotency_key,
            "invoice_id": self.invoice_id,
            "invoice_status": self.invoice_status,
            "invoiced_units": self.invoiced_units,
            "transaction_id": self.transaction_id,
            "emitted": self.emitted,
        }


@dataclass(frozen=True)
class RolloverResult:
    workspace_id: str
    closed_period_start: dt.datetime
    closed_period_end: dt.datetime
    period_start: dt.datetime
    period_end: dt.datetime
    granted: int
    overage: OverageResult


def overage_idempotency_key(workspace_id: str, period_start: dt.datetime, period_end: dt.datetime) -> str:
    return f"overage:{workspace_id}:{as_utc(period_start).isoformat()}:{as_utc(period_end).isoformat()}"


def resolve_overage_rate(settings: Settings, workspace: Workspace) -> Decimal:
    if workspace.overage_rate_override is not None:
        return Decimal(workspace.overage_rate_override)
    if workspace.plan is not None and workspace.plan.overage_rate is not None:
        return Decimal(workspace.plan.overage_rate)
    return Decimal(settings.default_overage_rate)


def _currency(settings: Settings, workspace: Workspace) -> str:
    if workspace.plan is not None and workspace.plan.currency:
        return workspace.plan.currency
    return settings.billing_currency


def _period(workspace: Workspace, period_start, period_end) -> tuple[dt.datetime, dt.datetime]:
    return as_utc(period_start or workspace.billing_period_start), as_utc(period_end or workspace.billing_period_end)


def _find_invoice(db: Session, workspace_id: str, period_start, period_end) -> OverageInvoice | None:
    return db.scalar(
        select(OverageInvoice).where(
            OverageInvoice.workspace_id == workspace_id,
            OverageInvoice.period_start == period_start,
            OverageInvoice.period_end == period_end,
        )
    )


def _compute(
    db: Session,
    settings: Settings,
    workspace: Workspace,
    period_start: dt.datetime,
    period_end: dt.datetime,
) -> OverageResult:
    usage = usage_for_period(db, workspace.id, period_start=period_start, period_end=period_end)
    limit = effective_credit_limit(workspace)
    currency = _currency(settings, workspace)
    if limit is None:
        return OverageResult(
            workspace_id=workspace.id,
            period_start=period_start,
            period_end=period_end,
            total_usage=usage.total_credits,
            credit_limit=None,
            overage_units=0,
            rate=None,
            charge=Decimal("0.00"),
            amount_cents=0,
            currency=currency,
        )
    rate = resolve_overage_rate(settings, workspace)
    units = max(0, usage.total_credits - limit)
    charge = (Decimal(units) * rate).quantize(_CENTS, rounding=ROUND_HALF_UP)
    return OverageResult(
        workspace_id=workspace.id,
        period_start=period_start,
        period_end=period_end,
        total_usage=usage.total_credits,
        credit_limit=limit,
        overage_units=units,
        rate=rate,
        charge=charge,
        amount_cents=int(charge * 100),
        currency=currency,
    )


def _with_invoice(result: OverageResult, invoice: OverageInvoice | None, *, emitted: bool) -> OverageResult:
    if invoice is None:
        return result
    return replace(
        result,
        idempotency_key=invoice.idempotency_key,
        invoice_id=invoice.id,
        invoice_status=invoice.status,
        invoiced_units=int(invoice.overage_units),
        transaction_id=invoice.transaction_id,
        emitted=emitted,
    )


def overage_status(
    db: Session,
    settings: Settings,
    workspace_id: str,
    *,
    period_start: dt.datetime | None = None,
    period_end: dt.datetime | None = None,
) -> OverageResult:
    """Current overage figures for a period without emitting anything."""
    workspace = load_workspace(db, workspace_id)
    period_start, period_end = _period(workspace, period_start, period_end)
    result = _compute(db, settings, workspace, period_start, period_end)
    return _with_invoice(result, _find_invoice(db, workspace_id, period_start, period_end), emitted=False)


def evaluate_overage(
    settings: Settings,
    *,
    workspace_id: str,
    period_start: dt.datetime | None = None,
    period_end: dt.datetime | None = None,
    invoicer=None,
    notifier: Callable[..., None] | None = None,
    now: dt.datetime | None = None,
) -> OverageResult:
    """Compare period usage with the plan limit and bill the overage once.

    Only a period that has ended is billed; before its end this returns the
    running figures like ``overage_status``. The OVERAGE_CHARGE ledger row and
    the invoice record are written together; the invoice item itself is sent
    afterwards and a failure there only marks the invoice for retry. Re-running
    for a period that already has an invoice recomputes the figures but emits
    nothing.

    OVERAGE_CHARGE carries the billed units in ``amount`` with zero balance and
    reserved deltas: overage is settled in money on the invoice, so the credit
    balance and the granted/consumed totals are left as they were.
    """
    now = now or utcnow()

    def _txn(db: Session) -> OverageResult:
        workspace = load_workspace(db, workspace_id, for_update=True)
        start, end = _period(workspace, period_start, period_end)
        result = _compute(db, settings, workspace, start, end)
        invoice = _find_invoice(db, workspace.id, start, end)
        if invoice is not None or result.amount_cents <= 0 or as_utc(now) < end:
            return _with_invoice(result, invoice, emitted=False)

        key = overage_idempotency_key(workspace.id, start, end)
        invoice = OverageInvoice(
            workspace_id=workspace.id,
            period_start=start,
            period_end=end,
            total_usage=result.total_usage,
            credit_limit=int(result.credit_limit),
            overage_units=result.overage_units,
            rate=str(result.rate),
            charge=str(result.charge),
            amount_cents=result.amount_cents,
            currency=result.currency,
            idempotency_key=key,
            status=InvoiceStatus.pending.value,
            attempts=0,
        )
        db.add(invoice)
        db.flush()
        txn = append_transaction(
            db,
            workspace=workspace,
            type=TransactionType.overage_charge,
            amount=-result.overage_units,
            external_ref=key,
            service_type=OVERAGE_SERVICE,
            usage_period_start=start,
            description=f"Overage of {result.overage_units} credits at {result.rate} per credit",
        )
        record_usage(
            db,
            workspace=workspace,
            requests=0,
            overage_units=result.overage_units,
            service_type=OVERAGE_SERVICE,
            period_start=start,
            period_end=end,
        )
        invoice.transaction_id = txn.id
        db.flush()
        log.info(
            "Overage charge for workspace %s: %s credits over %s, %s %s",
            workspace.id,
            result.overage_units,
            result.credit_limit,
            result.charge,
            result.currency,
        )
        return _with_invoice(result, invoice, emitted=True)

    try:
        result = run_atomic(settings, _txn, label="evaluate_overage")
    except IntegrityError:
        # A concurrent evaluation created the invoice first.
        with session_scope(settings) as db:
            result = overage_status(db, settings, workspace_id, period_start=period_start, period_end=period_end)
        if result.invoice_id is None:
            raise
        return result

    if result.emitted:
        deliver_invoice(settings, result.invoice_id, invoicer=invoicer)
        notify_overage(settings, result.invoice_id, notifier=notifier)
        with session_scope(settings) as db:
            invoice = db.get(OverageInvoice, result.invoice_id)
            result = _with_invoice(result, invoice, emitted=True)
    return result


def deliver_invoice(settings: Settings, invoice_id: str, *, invoicer=None, now: dt.datetime | None = None) -> str:
    """Send one overage invoice item. Never raises; returns the invoice status."""
    invoicer = invoicer or invoice_client_from_settings(settings)
    now = now or utcnow()
    with session_scope(settings) as db:
        invoice = db.get(OverageInvoice, invoice_id)
        if invoice is None:
            return "missing"
        if invoice.status in (InvoiceStatus.sent.value, InvoiceStatus.no_customer.value):
            return invoice.status
        if invoicer is None:
            return invoice.status
        workspace = db.get(Workspace, invoice.workspace_id)
        customer_id = (workspace.stripe_customer_id or "").strip() if workspace is not None else ""
        if not customer_id:
            invoice.status = InvoiceStatus.no_customer.value
            log.warning("Overage invoice %s has no billing customer for workspace %s", invoice.id, invoice.workspace_id)
            return invoice.status
        request = {
            "customer_id": customer_id,
            "amount_cents": int(invoice.amount_cents),
            "currency": invoice.currency,
            "description": (
                f"Credit overage {as_utc(invoice.period_start).date()} to {as_utc(invoice.period_end).date()}: "
                f"{invoice.overage_units} credits at {invoice.rate}"
            ),
            "idempotency_key": invoice.idempotency_key,
            "metadata": {
                "workspace_id": invoice.workspace_id,
                "overage_units": str(invoice.overage_units),
                "flow": "overage",
            },
        }
        invoice_key = invoice.idempotency_key

    # The collaborator call happens outside any database transaction.
    item_id = None
    error = None
    try:
        item_id = invoicer.create_invoice_item(**request)
    except Exception as e:
        error = str(e) or e.__class__.__name__
        log.warning("Invoice collaborator failed for %s: %s", invoice_key, error)

    with session_scope(settings) as db:
        invoice = db.get(OverageInvoice, invoice_id)
        invoice.attempts = int(invoice.attempts or 0) + 1
        invoice.last_attempt_at = now
        if error is None:
            invoice.status = InvoiceStatus.sent.value
            invoice.invoice_item_id = item_id
            invoice.last_error = None
        else:
            invoice.status = InvoiceStatus.failed.value
            invoice.last_error = error[:2000]
        return invoice.status


def _default_notifier(settings: Settings) -> Callable[..., None] | None:
    if not settings.notifications_enabled:
        return None

    def _send(**kwargs) -> None:
        send_overage_email(settings, **kwargs)

    return _send


def notify_overage(settings: Settings, invoice_id: str, *, notifier: Callable[..., None] | None = None) -> bool:
    """Tell the workspace owner about an overage charge, at most once per invoice."""
    notifier = notifier or _default_notifier(settings)
    if notifier is None:
        return False
    now = utcnow()
    with session_scope(settings) as db:
        claimed = db.execute(
            update(OverageInvoice)
            .where(OverageInvoice.id == invoice_id, OverageInvoice.notified_at.is_(None))
            .values(notified_at=now)
            .execution_options(synchronize_session=False)
        ).rowcount
        if claimed != 1:
            return False
        invoice = db.get(OverageInvoice, invoice_id)
        workspace = db.get(Workspace, invoice.workspace_id)
        owner = (workspace.owner_email or "").strip() if workspace is not None else ""
        payload = {
            "to_email": owner,
            "workspace_name": workspace.name if workspace is not None else "",
            "usage": int(invoice.total_usage),
            "limit": int(invoice.credit_limit),
            "overage_units": int(invoice.overage_units),
            "amount_cents": int(invoice.amount_cents),
            "currency": invoice.currency,
            "period_start": as_utc(invoice.period_start),
            "period_end": as_utc(invoice.period_end),
        }
    if not owner:
        log.warning("Overage notice for invoice %s skipped: workspace has no owner email", invoice_id)
        return False
    try:
        notifier(**payload)
    except Exception as e:
        log.warning("Overage notification failed for invoice %s: %s", invoice_id, e)
        with session_scope(settings) as db:
            db.execute(
                update(OverageInvoice)
                .where(OverageInvoice.id == invoice_id)
                .values(notified_at=None)
                .execution_options(synchronize_session=False)
            )
        return False
    return True


def retry_pending_invoices(
    settings: Settings,
    *,
    invoicer=None,
    now: dt.datetime | None = None,
    limit: int = 50,
) -> int:
    """Re-send invoices that are pending or failed and due for another attempt."""
    invoicer = invoicer or invoice_client_from_settings(settings)
    if invoicer is None:
        return 0
    now = now or utcnow()
    cutoff = now - dt.timedelta(seconds=settings.invoice_retry_interval_seconds)
    with session_scope(settings) as db:
        due = (
            db.execute(
                select(OverageInvoice.id)
                .where(
                    OverageInvoice.status.in_([InvoiceStatus.pending.value, InvoiceStatus.failed.value]),
                    OverageInvoice.attempts < settings.invoice_max_attempts,
                    or_(OverageInvoice.last_attempt_at.is_(None), OverageInvoice.last_attempt_at <= cutoff),
                )
                .order_by(OverageInvoice.created_at.asc())
                .limit(limit)
            )
            .scalars()
            .all()
        )
    sent = 0
    for invoice_id in due:
        if deliver_invoice(settings, invoice_id, invoicer=invoicer, now=now) == InvoiceStatus.sent.value:
            sent += 1
    return sent


def rollover_period(
    settings: Settings,
    *,
    workspace_id: str,
    now: dt.datetime | None = None,
    invoicer=None,
    notifier: Callable[..., None] | None = None,
) -> RolloverResult | None:
    """Close an ended billing period: bill its overage, open the next period, grant the allotment.

    Returns None when the workspace's current period has not ended yet.
    """
    now = now or utcnow()
    with session_scope(settings) as db:
        workspace = load_workspace(db, workspace_id)
        closed_start = workspace.billing_period_start
        closed_end = workspace.billing_period_end
    if as_utc(now) < as_utc(closed_end):
        return None

    overage = evaluate_overage(
        settings,
        workspace_id=workspace_id,
        period_start=closed_start,
        period_end=closed_end,
        invoicer=invoicer,
        notifier=notifier,
        now=now,
    )

    def _txn(db: Session) -> RolloverResult | None:
        workspace = load_workspace(db, workspace_id, for_update=True)
        if workspace.billing_period_start != closed_start:
            return None
        length = dt.timedelta(days=settings.billing_period_days)
        start = closed_end
        end = start + length
        while as_utc(end) <= as_utc(now):
            start, end = end, end + length
        workspace.billing_period_start = start
        workspace.billing_period_end = end
        workspace.updated_at = utcnow()
        db.flush()

        granted = 0
        allotment = int(workspace.plan.monthly_allotment) if workspace.plan is not None else 0
        if allotment > 0:
            credit_workspace(
                db,
                workspace=workspace,
                type=TransactionType.grant,
                amount=allotment,
                external_ref=allotment_reference(workspace.id, start),
                description="Plan credit allotment",
            )
            granted = allotment
        return RolloverResult(
            workspace_id=workspace.id,
            closed_period_start=closed_start,
            closed_period_end=closed_end,
            period_start=start,
            period_end=end,
            granted=granted,
            overage=overage,
        )

    result = run_atomic(settings, _txn, label="rollover_period")
    if result is not None:
        log.info(
            "Rolled workspace %s into period %s..%s (granted %s)",
            workspace_id,
            as_utc(result.period_start).isoformat(),
            as_utc(result.period_end).isoformat(),
            result.granted,
        )
    return result
