from __future__ import annotations

import datetime as dt
import logging
import math
from dataclasses import dataclass
from decimal import Decimal

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from server.creditmeter.core.config import Settings
from server.creditmeter.core.db import session_scope
from server.creditmeter.core.models import Reservation, ReservationStatus, TransactionType
from server.creditmeter.ledger.atomic import run_atomic
from server.creditmeter.ledger.errors import AlreadyTerminalReservation, validate_credit_amount
from server.creditmeter.ledger.transactions import append_transaction, load_workspace, utcnow
from server.creditmeter.ledger.usage import attributed_period, record_usage

log = logging.getLogger(__name__)

NOT_FOUND = "NOT_FOUND"


@dataclass(frozen=True)
class SettlementResult:
    reservation_id: str
    status: str
    estimated: int = 0
    charged: int = 0
    refund: int = 0
    absorbed: int = 0
    transaction_id: int | None = None
    release_reason: str | None = None
    already_terminal: bool = False

    @classmethod
    def from_reservation(cls, reservation: Reservation, *, already_terminal: bool) -> "SettlementResult":
        return cls(
            reservation_id=reservation.id,
            status=reservation.status,
            estimated=int(reservation.estimated_amount),
            charged=int(reservation.settled_amount or 0),
            refund=int(reservation.refund_amount or 0),
            absorbed=int(reservation.absorbed_amount or 0),
            transaction_id=reservation.terminal_transaction_id,
            release_reason=reservation.release_reason,
            already_terminal=already_terminal,
        )

    @classmethod
    def not_found(cls, reservation_id: str) -> "SettlementResult":
        return cls(reservation_id=reservation_id, status=NOT_FOUND, already_terminal=True)


def overrun_allowance(settings: Settings, estimated: int) -> int:
    pct = Decimal(str(settings.overrun_allowance_pct))
    return int(settings.overrun_allowance_credits) + math.ceil(Decimal(int(estimated)) * pct / Decimal(100))


def _claim(db: Session, reservation_id: str, *, status: ReservationStatus, now: dt.datetime, **values) -> bool:
    # Conditional transition: only one caller can move a HELD reservation.
    result = db.execute(
        update(Reservation)
        .where(Reservation.id == reservation_id, Reservation.status == ReservationStatus.held.value)
        .values(status=status.value, finished_at=now, **values)
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0) == 1


def _load(db: Session, reservation_id: str) -> Reservation | None:
    return db.scalar(
        select(Reservation).where(Reservation.id == reservation_id).execution_options(populate_existing=True)
    )


def _run_transition(settings: Settings, fn, reservation_id: str, *, label: str) -> SettlementResult:
    try:
        return run_atomic(settings, fn, label=label)
    except AlreadyTerminalReservation:
        # Repeats and late callers get the recorded outcome.
        with session_scope(settings) as db:
            return SettlementResult.from_reservation(_load(db, reservation_id), already_terminal=True)


def settle(
    settings: Settings,
    *,
    reservation_id: str,
    actual_amount: int,
    now: dt.datetime | None = None,
) -> SettlementResult:
    """Convert a hold into its final charge.

    The charge is capped at the estimate plus the configured overrun allowance.
    Anything above the estimate is drawn from the spendable balance; whatever
    the balance cannot cover, and everything above the cap, is absorbed and
    recorded as a zero-movement ADJUSTMENT. Settling a reservation that is
    already terminal returns the recorded outcome without touching the balance.
    The usage counts toward the billing period the settle finishes in.
    """
    actual = validate_credit_amount(actual_amount, "settle", allow_zero=True)

    def _txn(db: Session) -> SettlementResult:
        reservation = _load(db, reservation_id)
        if reservation is None:
            return SettlementResult.not_found(reservation_id)
        if reservation.status != ReservationStatus.held.value:
            raise AlreadyTerminalReservation(reservation.id, reservation.status)

        workspace = load_workspace(db, reservation.workspace_id, for_update=True)
        finished = now or utcnow()
        estimated = int(reservation.estimated_amount)
        cap = estimated + overrun_allowance(settings, estimated)
        capped = min(actual, cap)
        extra = max(0, capped - estimated)
        covered = min(extra, int(workspace.balance))
        charged = min(capped, estimated) + covered
        absorbed = actual - charged
        refund = max(0, estimated - charged)
        period_start, period_end = attributed_period(workspace, finished, period_days=settings.billing_period_days)

        if not _claim(
            db,
            reservation.id,
            status=ReservationStatus.settled,
            now=finished,
            settled_amount=charged,
            refund_amount=refund,
            absorbed_amount=absorbed,
        ):
            raise AlreadyTerminalReservation(reservation.id, _load(db, reservation_id).status)

        txn = append_transaction(
            db,
            workspace=workspace,
            type=TransactionType.settle,
            amount=-charged,
            balance_delta=estimated - charged,
            reserved_delta=-estimated,
            refund_amount=refund,
            related_request_id=reservation.request_id,
            reservation_id=reservation.id,
            service_type=reservation.service_type,
            model=reservation.model,
            provider=reservation.provider,
            usage_period_start=period_start,
            description=f"Settled {charged} of {estimated} reserved credits",
        )
        if absorbed > 0:
            append_transaction(
                db,
                workspace=workspace,
                type=TransactionType.adjustment,
                amount=absorbed,
                related_request_id=reservation.request_id,
                reservation_id=reservation.id,
                service_type=reservation.service_type,
                model=reservation.model,
                provider=reservation.provider,
                description=f"Overrun absorbed: actual {actual}, charged {charged}",
            )
            log.warning(
                "Settlement overrun absorbed for reservation %s (workspace %s): actual=%s estimated=%s charged=%s absorbed=%s",
                reservation.id,
                workspace.id,
                actual,
                estimated,
                charged,
                absorbed,
            )
        record_usage(
            db,
            workspace=workspace,
            credits=charged,
            service_type=reservation.service_type,
            model=reservation.model,
            provider=reservation.provider,
            period_start=period_start,
            period_end=period_end,
            now=finished,
        )

        reservation = _load(db, reservation_id)
        reservation.terminal_transaction_id = txn.id
        db.flush()
        return SettlementResult.from_reservation(reservation, already_terminal=False)

    return _run_transition(settings, _txn, reservation_id, label="settle")


def release(
    settings: Settings,
    *,
    reservation_id: str,
    reason: str = "",
    now: dt.datetime | None = None,
) -> SettlementResult:
    """Return the full estimate of a held reservation to the spendable balance."""
    reason = (reason or "").strip() or "released"

    def _txn(db: Session) -> SettlementResult:
        reservation = _load(db, reservation_id)
        if reservation is None:
            return SettlementResult.not_found(reservation_id)
        if reservation.status != ReservationStatus.held.value:
            raise AlreadyTerminalReservation(reservation.id, reservation.status)

        workspace = load_workspace(db, reservation.workspace_id, for_update=True)
        estimated = int(reservation.estimated_amount)
        if not _claim(
            db,
            reservation.id,
            status=ReservationStatus.released,
            now=now or utcnow(),
            settled_amount=0,
            refund_amount=estimated,
            absorbed_amount=0,
            release_reason=reason,
        ):
            raise AlreadyTerminalReservation(reservation.id, _load(db, reservation_id).status)

        txn = append_transaction(
            db,
            workspace=workspace,
            type=TransactionType.release,
            amount=estimated,
            balance_delta=estimated,
            reserved_delta=-estimated,
            related_request_id=reservation.request_id,
            reservation_id=reservation.id,
            service_type=reservation.service_type,
            model=reservation.model,
            provider=reservation.provider,
            description=f"Released hold: {reason}",
        )
        reservation = _load(db, reservation_id)
        reservation.terminal_transaction_id = txn.id
        db.flush()
        return SettlementResult.from_reservation(reservation, already_terminal=False)

    return _run_transition(settings, _txn, reservation_id, label="release")


def sweep_expired_reservations(settings: Settings, *, now: dt.datetime | None = None, limit: int = 200) -> int:
    """Release held reservations whose TTL has passed. Returns how many were released."""
    now = now or utcnow()
    with session_scope(settings) as db:
        expired = (
            db.execute(
                select(Reservation.id)
                .where(
                    Reservation.status == ReservationStatus.held.value,
                    Reservation.expires_at <= now,
                )
                .order_by(Reservation.expires_at.asc())
                .limit(limit)
            )
            .scalars()
            .all()
        )

    released = 0
    for reservation_id in expired:
        result = release(settings, reservation_id=reservation_id, reason="expired", now=now)
        if not result.already_terminal:
            released += 1
    if released:
        log.info("Expiry sweep released %s reservation(s)", released)
    return released
