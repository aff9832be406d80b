from __future__ import annotations

import datetime as dt
import logging
from decimal import Decimal, InvalidOperation

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from server.creditmeter.core.config import Settings
from server.creditmeter.core.db import session_scope
from server.creditmeter.core.models import CreditTransaction, Plan, TransactionType, Workspace
from server.creditmeter.ledger.atomic import run_atomic
from server.creditmeter.ledger.errors import (
    CreditValidationError,
    InsufficientCreditsError,
    LedgerError,
    validate_credit_amount,
)
from server.creditmeter.ledger.transactions import (
    append_transaction,
    as_utc,
    find_by_external_ref,
    load_workspace,
    utcnow,
)

log = logging.getLogger(__name__)


def _validate_rate(rate: str | None, field: str) -> str | None:
    if rate is None:
        return None
    try:
        parsed = Decimal(str(rate).strip())
    except InvalidOperation as e:
        raise CreditValidationError(f"{field} must be a decimal number", "INVALID_TYPE") from e
    if not parsed.is_finite() or parsed < 0:
        raise CreditValidationError(f"{field} must be a non-negative decimal", "NEGATIVE")
    return str(parsed)


def allotment_reference(workspace_id: str, period_start: dt.datetime) -> str:
    return f"allotment:{workspace_id}:{as_utc(period_start).isoformat()}"


def create_plan(
    db: Session,
    *,
    name: str,
    credit_limit: int | None = None,
    overage_rate: str | None = None,
    monthly_allotment: int = 0,
    currency: str = "usd",
) -> Plan:
    name = (name or "").strip()
    if not name:
        raise CreditValidationError("Plan name is required", "MISSING_PARAMETER")
    if credit_limit is not None:
        credit_limit = validate_credit_amount(credit_limit, "plan credit limit", allow_zero=True)
    plan = Plan(
        name=name,
        credit_limit=credit_limit,
        overage_rate=_validate_rate(overage_rate, "overage_rate"),
        monthly_allotment=validate_credit_amount(monthly_allotment, "monthly allotment", allow_zero=True),
        currency=(currency or "usd").lower(),
    )
    db.add(plan)
    db.flush()
    return plan


def create_workspace(
    db: Session,
    *,
    settings: Settings,
    name: str = "",
    owner_email: str = "",
    plan: Plan | None = None,
    opening_credits: int | None = None,
    stripe_customer_id: str | None = None,
    credit_limit_override: int | None = None,
    overage_rate_override: str | None = None,
    now: dt.datetime | None = None,
) -> Workspace:
    """Create a workspace and grant its opening credits for the first period.

    ``opening_credits`` defaults to the plan's monthly allotment.
    """
    now = now or utcnow()
    if opening_credits is None:
        opening_credits = int(plan.monthly_allotment) if plan is not None else 0
    opening_credits = validate_credit_amount(opening_credits, "opening credits", allow_zero=True)
    if credit_limit_override is not None:
        credit_limit_override = validate_credit_amount(credit_limit_override, "credit limit override", allow_zero=True)

    workspace = Workspace(
        name=(name or "").strip(),
        owner_email=(owner_email or "").strip().lower(),
        plan=plan,
        billing_period_start=now,
        billing_period_end=now + dt.timedelta(days=settings.billing_period_days),
        plan_credit_limit_override=credit_limit_override,
        overage_rate_override=_validate_rate(overage_rate_override, "overage_rate_override"),
        stripe_customer_id=stripe_customer_id or None,
        created_at=now,
        updated_at=now,
    )
    db.add(workspace)
    db.flush()

    if opening_credits > 0:
        append_transaction(
            db,
            workspace=workspace,
            type=TransactionType.grant,
            amount=opening_credits,
            balance_delta=opening_credits,
            external_ref=allotment_reference(workspace.id, now),
            description="Opening credit allotment",
        )
    log.info("Created workspace %s with %s opening credits", workspace.id, opening_credits)
    return workspace


def credit_workspace(
    db: Session,
    *,
    workspace: Workspace,
    type: TransactionType,
    amount: int,
    external_ref: str,
    description: str = "",
) -> CreditTransaction:
    """Add credits once per ``external_ref``; a repeat returns the original transaction."""
    existing = find_by_external_ref(db, external_ref)
    if existing is not None:
        if existing.workspace_id != workspace.id:
            raise LedgerError(f"Reference {external_ref!r} already belongs to another workspace")
        return existing
    return append_transaction(
        db,
        workspace=workspace,
        type=type,
        amount=amount,
        balance_delta=amount,
        external_ref=external_ref,
        description=description,
    )


def _idempotent_credit(
    settings: Settings,
    *,
    workspace_id: str,
    type: TransactionType,
    amount: int,
    external_ref: str,
    description: str,
    label: str,
) -> CreditTransaction:
    def _txn(db: Session) -> CreditTransaction:
        workspace = load_workspace(db, workspace_id, for_update=True)
        return credit_workspace(
            db,
            workspace=workspace,
            type=type,
            amount=amount,
            external_ref=external_ref,
            description=description,
        )

    try:
        return run_atomic(settings, _txn, label=label)
    except IntegrityError:
        # A concurrent call with the same reference committed first.
        with session_scope(settings) as db:
            existing = find_by_external_ref(db, external_ref)
        if existing is None:
            raise
        return existing


def purchase_credits(
    settings: Settings,
    *,
    workspace_id: str,
    amount: int,
    reference: str,
    description: str = "",
) -> CreditTransaction:
    amount = validate_credit_amount(amount, "purchase_credits")
    reference = (reference or "").strip()
    if not reference:
        raise CreditValidationError("A purchase reference is required", "MISSING_REFERENCE")
    return _idempotent_credit(
        settings,
        workspace_id=workspace_id,
        type=TransactionType.purchase,
        amount=amount,
        external_ref=f"purchase:{reference}",
        description=description or f"Credit purchase ({reference})",
        label="purchase_credits",
    )


def grant_allotment(
    settings: Settings,
    *,
    workspace_id: str,
    amount: int,
    reference: str,
    description: str = "",
) -> CreditTransaction:
    amount = validate_credit_amount(amount, "grant_allotment")
    reference = (reference or "").strip()
    if not reference:
        raise CreditValidationError("A grant reference is required", "MISSING_REFERENCE")
    return _idempotent_credit(
        settings,
        workspace_id=workspace_id,
        type=TransactionType.grant,
        amount=amount,
        external_ref=reference,
        description=description or "Plan credit allotment",
        label="grant_allotment",
    )


def adjust_credits(
    settings: Settings,
    *,
    workspace_id: str,
    amount: int,
    reason: str,
) -> CreditTransaction:
    """Apply a signed administrative correction to the spendable balance."""
    magnitude = -amount if isinstance(amount, int) and not isinstance(amount, bool) and amount < 0 else amount
    magnitude = validate_credit_amount(magnitude, "adjust_credits")
    reason = (reason or "").strip()
    if not reason:
        raise CreditValidationError("An adjustment reason is required", "MISSING_REASON")

    def _txn(db: Session) -> CreditTransaction:
        workspace = load_workspace(db, workspace_id, for_update=True)
        if amount < 0 and int(workspace.balance) < magnitude:
            raise InsufficientCreditsError(
                workspace_id=workspace_id,
                required=magnitude,
                available=int(workspace.balance),
            )
        return append_transaction(
            db,
            workspace=workspace,
            type=TransactionType.adjustment,
            amount=amount,
            balance_delta=amount,
            description=reason,
        )

    txn = run_atomic(settings, _txn, label="adjust_credits")
    log.info("Adjusted workspace %s by %s credits: %s", workspace_id, amount, reason)
    return txn


def list_workspaces_due_for_rollover(db: Session, *, now: dt.datetime, limit: int = 100) -> list[str]:
    rows = db.execute(
        select(Workspace.id)
        .where(Workspace.billing_period_end <= now)
        .order_by(Workspace.billing_period_end.asc())
        .limit(limit)
    ).all()
    return [row[0] for row in rows]
