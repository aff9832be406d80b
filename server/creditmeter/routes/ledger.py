from __future__ import annotations

import datetime as dt
import hmac

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from server.creditmeter.core.config import MAX_RESERVATION_TTL_SECONDS, Settings
from server.creditmeter.core.db import db_session, session_scope
from server.creditmeter.core.models import CreditTransaction, Reservation
from server.creditmeter.ledger.accounts import adjust_credits, purchase_credits
from server.creditmeter.ledger.errors import CreditValidationError, ReservationNotFoundError
from server.creditmeter.ledger.estimator import credits_for_usage, estimate
from server.creditmeter.ledger.overage import evaluate_overage, overage_status
from server.creditmeter.ledger.pricing import PricingTable
from server.creditmeter.ledger.reservations import get_reservation, reserve
from server.creditmeter.ledger.settlement import SettlementResult, release, settle
from server.creditmeter.ledger.transactions import as_utc, get_balance, list_transactions
from server.creditmeter.ledger.usage import usage_for_period


def require_api_token(request: Request) -> None:
    settings: Settings = request.app.state.settings
    expected = settings.api_token
    if not expected:
        return
    header = request.headers.get("authorization") or ""
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not hmac.compare_digest(token.strip(), expected):
        raise HTTPException(status_code=401, detail="Invalid or missing API token")


router = APIRouter(prefix="/v1", dependencies=[Depends(require_api_token)])


def _settings(request: Request) -> Settings:
    return request.app.state.settings


def _pricing(request: Request) -> PricingTable:
    return request.app.state.pricing


def _iso(ts: dt.datetime | None) -> str | None:
    return as_utc(ts).isoformat() if ts is not None else None


class EstimateBody(BaseModel):
    model: str
    capability: str
    params: dict = Field(default_factory=dict)


class ReserveBody(BaseModel):
    workspace_id: str
    request_id: str
    estimated_amount: int | None = None
    model: str | None = None
    capability: str | None = None
    params: dict = Field(default_factory=dict)
    service_type: str | None = None
    provider: str | None = None
    ttl_seconds: int | None = Field(default=None, ge=1, le=MAX_RESERVATION_TTL_SECONDS)


class SettleBody(BaseModel):
    actual_amount: int | None = None
    usage: dict | None = None


class ReleaseBody(BaseModel):
    reason: str = ""


class PurchaseBody(BaseModel):
    amount: int
    reference: str
    description: str = ""


class AdjustmentBody(BaseModel):
    amount: int
    reason: str


class OverageBody(BaseModel):
    period_start: dt.datetime | None = None
    period_end: dt.datetime | None = None


def _reservation_dict(reservation: Reservation) -> dict:
    return {
        "id": reservation.id,
        "workspace_id": reservation.workspace_id,
        "request_id": reservation.request_id,
        "estimated_amount": int(reservation.estimated_amount),
        "status": reservation.status,
        "service_type": reservation.service_type,
        "model": reservation.model,
        "provider": reservation.provider,
        "settled_amount": reservation.settled_amount,
        "refund_amount": reservation.refund_amount,
        "absorbed_amount": reservation.absorbed_amount,
        "release_reason": reservation.release_reason,
        "created_at": _iso(reservation.created_at),
        "expires_at": _iso(reservation.expires_at),
        "finished_at": _iso(reservation.finished_at),
    }


def _settlement_dict(result: SettlementResult) -> dict:
    return {
        "reservation_id": result.reservation_id,
        "status": result.status,
        "estimated": result.estimated,
        "charged": result.charged,
        "refund": result.refund,
        "absorbed": result.absorbed,
        "transaction_id": result.transaction_id,
        "release_reason": result.release_reason,
        "already_terminal": result.already_terminal,
    }


def _transaction_dict(txn: CreditTransaction) -> dict:
    return {
        "id": txn.id,
        "type": txn.type,
        "amount": int(txn.amount),
        "balance_delta": int(txn.balance_delta),
        "reserved_delta": int(txn.reserved_delta),
        "balance_after": int(txn.balance_after),
        "reserved_after": int(txn.reserved_after),
        "refund_amount": int(txn.refund_amount or 0),
        "related_request_id": txn.related_request_id,
        "reservation_id": txn.reservation_id,
        "service_type": txn.service_type,
        "model": txn.model,
        "provider": txn.provider,
        "description": txn.description,
        "created_at": _iso(txn.created_at),
    }


@router.post("/estimate")
def estimate_route(body: EstimateBody, pricing: PricingTable = Depends(_pricing)):
    result = estimate(pricing, model=body.model, capability=body.capability, params=body.params)
    return {
        "model": result.model,
        "capability": result.capability,
        "provider": result.provider,
        "credits": result.credits,
        "basis": result.basis,
    }


@router.post("/reservations")
def create_reservation(
    body: ReserveBody,
    settings: Settings = Depends(_settings),
    pricing: PricingTable = Depends(_pricing),
):
    amount = body.estimated_amount
    provider = body.provider
    service_type = body.service_type
    if amount is None:
        if not body.model or not body.capability:
            raise CreditValidationError(
                "Provide estimated_amount, or model and capability to estimate it",
                "MISSING_PARAMETER",
            )
        quote = estimate(pricing, model=body.model, capability=body.capability, params=body.params)
        amount = quote.credits
        provider = provider or quote.provider
        service_type = service_type or quote.capability
    reservation = reserve(
        settings,
        workspace_id=body.workspace_id,
        request_id=body.request_id,
        estimated_amount=amount,
        service_type=service_type,
        model=body.model,
        provider=provider,
        ttl_seconds=body.ttl_seconds,
    )
    return _reservation_dict(reservation)


@router.get("/reservations/{reservation_id}")
def reservation_detail(reservation_id: str, db: Session = Depends(db_session)):
    reservation = get_reservation(db, reservation_id)
    if reservation is None:
        raise ReservationNotFoundError(reservation_id)
    return _reservation_dict(reservation)


@router.post("/reservations/{reservation_id}/settle")
def settle_reservation(
    reservation_id: str,
    body: SettleBody,
    settings: Settings = Depends(_settings),
    pricing: PricingTable = Depends(_pricing),
):
    actual = body.actual_amount
    if actual is None:
        if body.usage is None:
            raise CreditValidationError("Provide actual_amount or usage", "MISSING_PARAMETER")
        with session_scope(settings) as db:
            reservation = get_reservation(db, reservation_id)
        if reservation is None:
            return _settlement_dict(SettlementResult.not_found(reservation_id))
        if not reservation.model:
            raise CreditValidationError("Reservation has no model; provide actual_amount", "MISSING_PARAMETER")
        actual = credits_for_usage(pricing, model=reservation.model, usage=body.usage)
    return _settlement_dict(settle(settings, reservation_id=reservation_id, actual_amount=actual))


@router.post("/reservations/{reservation_id}/release")
def release_reservation(reservation_id: str, body: ReleaseBody, settings: Settings = Depends(_settings)):
    return _settlement_dict(release(settings, reservation_id=reservation_id, reason=body.reason))


@router.get("/workspaces/{workspace_id}/balance")
def workspace_balance(workspace_id: str, db: Session = Depends(db_session)):
    snap = get_balance(db, workspace_id)
    return {
        "workspace_id": snap.workspace_id,
        "balance": snap.balance,
        "reserved": snap.reserved,
        "available": snap.available,
        "credits_granted": snap.credits_granted,
        "credits_consumed": snap.credits_consumed,
        "plan_credit_limit": snap.plan_credit_limit,
        "billing_period_start": _iso(snap.billing_period_start),
        "billing_period_end": _iso(snap.billing_period_end),
    }


@router.get("/workspaces/{workspace_id}/transactions")
def workspace_transactions(
    workspace_id: str,
    start: dt.datetime | None = None,
    end: dt.datetime | None = None,
    type: list[str] | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(db_session),
):
    page = list_transactions(
        db, workspace_id, start=as_utc(start), end=as_utc(end), types=type, limit=limit, offset=offset
    )
    return {
        "items": [_transaction_dict(txn) for txn in page.items],
        "total": page.total,
        "limit": page.limit,
        "offset": page.offset,
        "next_offset": page.next_offset,
    }


@router.get("/workspaces/{workspace_id}/usage")
def workspace_usage(
    workspace_id: str,
    period_start: dt.datetime | None = None,
    period_end: dt.datetime | None = None,
    db: Session = Depends(db_session),
):
    report = usage_for_period(db, workspace_id, period_start=as_utc(period_start), period_end=as_utc(period_end))
    return report.summary()


@router.get("/workspaces/{workspace_id}/overage")
def workspace_overage_preview(
    workspace_id: str,
    period_start: dt.datetime | None = None,
    period_end: dt.datetime | None = None,
    settings: Settings = Depends(_settings),
    db: Session = Depends(db_session),
):
    result = overage_status(
        db, settings, workspace_id, period_start=as_utc(period_start), period_end=as_utc(period_end)
    )
    return result.to_dict()


@router.post("/workspaces/{workspace_id}/overage")
def workspace_overage_evaluate(
    workspace_id: str,
    body: OverageBody,
    request: Request,
    settings: Settings = Depends(_settings),
):
    result = evaluate_overage(
        settings,
        workspace_id=workspace_id,
        period_start=as_utc(body.period_start),
        period_end=as_utc(body.period_end),
        invoicer=getattr(request.app.state, "invoicer", None),
        notifier=getattr(request.app.state, "notifier", None),
    )
    return result.to_dict()


@router.post("/workspaces/{workspace_id}/purchases")
def workspace_purchase(workspace_id: str, body: PurchaseBody, settings: Settings = Depends(_settings)):
    txn = purchase_credits(
        settings,
        workspace_id=workspace_id,
        amount=body.amount,
        reference=body.reference,
        description=body.description,
    )
    return _transaction_dict(txn)


@router.post("/workspaces/{workspace_id}/adjustments")
def workspace_adjustment(workspace_id: str, body: AdjustmentBody, settings: Settings = Depends(_settings)):
    txn = adjust_credits(settings, workspace_id=workspace_id, amount=body.amount, reason=body.reason)
    return _transaction_dict(txn)
