from __future__ import annotations

import datetime as dt
import logging
import uuid

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from server.creditmeter.core.config import Settings
from server.creditmeter.core.db import session_scope
from server.creditmeter.core.models import Reservation, ReservationStatus, TransactionType
from server.creditmeter.ledger.atomic import run_atomic
from server.creditmeter.ledger.errors import (
    CreditValidationError,
    InsufficientCreditsError,
    LedgerError,
    validate_credit_amount,
)
from server.creditmeter.ledger.transactions import append_transaction, load_workspace, utcnow

log = logging.getLogger(__name__)


def find_reservation_by_request(db: Session, request_id: str) -> Reservation | None:
    return db.scalar(select(Reservation).where(Reservation.request_id == request_id))


def get_reservation(db: Session, reservation_id: str) -> Reservation | None:
    return db.get(Reservation, reservation_id)


def _same_workspace(existing: Reservation, workspace_id: str) -> Reservation:
    if existing.workspace_id != workspace_id:
        raise LedgerError(f"Request id {existing.request_id!r} is already bound to another workspace")
    return existing


def reserve(
    settings: Settings,
    *,
    workspace_id: str,
    request_id: str,
    estimated_amount: int,
    service_type: str | None = None,
    model: str | None = None,
    provider: str | None = None,
    ttl_seconds: int | None = None,
    now: dt.datetime | None = None,
) -> Reservation:
    """Hold ``estimated_amount`` credits for one request.

    Admission is exactly-once per ``request_id``: a retry returns the existing
    reservation whatever its state. The balance check and the debit run in the
    same locked transaction, and a rejection leaves the workspace untouched.
    """
    amount = validate_credit_amount(estimated_amount, "reserve", allow_zero=True)
    request_id = (request_id or "").strip()
    if not request_id:
        raise CreditValidationError("request_id is required", "MISSING_REQUEST_ID")
    ttl = settings.reservation_ttl_seconds if ttl_seconds is None else ttl_seconds
    if isinstance(ttl, bool) or not isinstance(ttl, int):
        raise CreditValidationError("ttl_seconds must be an integer number of seconds", "INVALID_TYPE")
    if ttl <= 0:
        raise CreditValidationError("ttl_seconds must be positive", "NOT_POSITIVE")
    if ttl > settings.reservation_max_ttl_seconds:
        raise CreditValidationError(
            f"ttl_seconds exceeds maximum of {settings.reservation_max_ttl_seconds}", "EXCEEDS_MAXIMUM"
        )

    def _txn(db: Session) -> Reservation:
        existing = find_reservation_by_request(db, request_id)
        if existing is not None:
            return _same_workspace(existing, workspace_id)

        workspace = load_workspace(db, workspace_id, for_update=True)
        available = int(workspace.balance)
        if available < amount:
            log.info(
                "Reservation rejected for workspace %s request %s: required=%s available=%s",
                workspace_id,
                request_id,
                amount,
                available,
            )
            raise InsufficientCreditsError(workspace_id=workspace_id, required=amount, available=available)

        created = now or utcnow()
        reservation = Reservation(
            id=uuid.uuid4().hex,
            workspace_id=workspace_id,
            request_id=request_id,
            estimated_amount=amount,
            status=ReservationStatus.held.value,
            service_type=service_type,
            model=model,
            provider=provider,
            created_at=created,
            expires_at=created + dt.timedelta(seconds=ttl),
        )
        db.add(reservation)
        append_transaction(
            db,
            workspace=workspace,
            type=TransactionType.reserve,
            amount=-amount,
            balance_delta=-amount,
            reserved_delta=amount,
            related_request_id=request_id,
            reservation_id=reservation.id,
            service_type=service_type,
            model=model,
            provider=provider,
            description=f"Hold for request {request_id}",
        )
        return reservation

    try:
        return run_atomic(settings, _txn, label="reserve")
    except IntegrityError:
        # Lost an insert race on request_id; the winner's reservation is the answer.
        with session_scope(settings) as db:
            existing = find_reservation_by_request(db, request_id)
        if existing is None:
            raise
        return _same_workspace(existing, workspace_id)
