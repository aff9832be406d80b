from __future__ import annotations

import datetime as dt
import uuid
from enum import Enum

from sqlalchemy import (
    BigInteger,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    event,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from server.creditmeter.core.db import Base


def _uuid() -> str:
    return uuid.uuid4().hex


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.UTC)


class TransactionType(str, Enum):
    reserve = "RESERVE"
    settle = "SETTLE"
    release = "RELEASE"
    purchase = "PURCHASE"
    grant = "GRANT"
    overage_charge = "OVERAGE_CHARGE"
    adjustment = "ADJUSTMENT"


class ReservationStatus(str, Enum):
    held = "HELD"
    settled = "SETTLED"
    released = "RELEASED"


class InvoiceStatus(str, Enum):
    pending = "pending"
    sent = "sent"
    failed = "failed"
    no_customer = "no_customer"


class Plan(Base):
    __tablename__ = "plans"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(String(64), unique=True)
    # NULL means unlimited.
    credit_limit: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    overage_rate: Mapped[str | None] = mapped_column(String(32), nullable=True)
    monthly_allotment: Mapped[int] = mapped_column(BigInteger, default=0)
    currency: Mapped[str] = mapped_column(String(8), default="usd")
    created_at: Mapped[dt.datetime] = mapped_column(DateTime, default=_utcnow)

    workspaces: Mapped[list["Workspace"]] = relationship(back_populates="plan")


class Workspace(Base):
    __tablename__ = "workspaces"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(String(128), default="")
    owner_email: Mapped[str] = mapped_column(String(320), default="")
    plan_id: Mapped[str | None] = mapped_column(String(32), ForeignKey("plans.id"), nullable=True, index=True)

    balance: Mapped[int] = mapped_column(BigInteger, default=0)
    reserved: Mapped[int] = mapped_column(BigInteger, default=0)
    credits_granted: Mapped[int] = mapped_column(BigInteger, default=0)
    credits_consumed: Mapped[int] = mapped_column(BigInteger, default=0)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    billing_period_start: Mapped[dt.datetime] = mapped_column(DateTime)
    billing_period_end: Mapped[dt.datetime] = mapped_column(DateTime, index=True)
    plan_credit_limit_override: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    overage_rate_override: Mapped[str | None] = mapped_column(String(32), nullable=True)
    stripe_customer_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    created_at: Mapped[dt.datetime] = mapped_column(DateTime, default=_utcnow)
    updated_at: Mapped[dt.datetime] = mapped_column(DateTime, default=_utcnow)

    plan: Mapped["Plan | None"] = relationship(back_populates="workspaces")

    # Every ORM flush of a workspace row is a compare-and-swap on `version`.
    __mapper_args__ = {"version_id_col": version}


class CreditTransaction(Base):
    __tablename__ = "credit_transactions"
    __table_args__ = (Index("ix_credit_transactions_ws_created", "workspace_id", "created_at"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    workspace_id: Mapped[str] = mapped_column(String(32), ForeignKey("workspaces.id"), index=True)
    type: Mapped[str] = mapped_column(String(16), index=True)
    amount: Mapped[int] = mapped_column(BigInteger)
    balance_delta: Mapped[int] = mapped_column(BigInteger, default=0)
    reserved_delta: Mapped[int] = mapped_column(BigInteger, default=0)
    balance_after: Mapped[int] = mapped_column(BigInteger)
    reserved_after: Mapped[int] = mapped_column(BigInteger)
    refund_amount: Mapped[int] = mapped_column(BigInteger, default=0)

    related_request_id: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    reservation_id: Mapped[str | None] = mapped_column(String(32), nullable=True, index=True)
    external_ref: Mapped[str | None] = mapped_column(String(191), nullable=True, unique=True)
    service_type: Mapped[str | None] = mapped_column(String(32), nullable=True)
    model: Mapped[str | None] = mapped_column(String(128), nullable=True)
    provider: Mapped[str | None] = mapped_column(String(64), nullable=True)
    # Billing period the usage counts toward; set on SETTLE and OVERAGE_CHARGE rows.
    usage_period_start: Mapped[dt.datetime | None] = mapped_column(DateTime, nullable=True, index=True)

    description: Mapped[str] = mapped_column(Text, default="")
    created_at: Mapped[dt.datetime] = mapped_column(DateTime, default=_utcnow)


@event.listens_for(CreditTransaction, "before_update")
def _refuse_transaction_update(_mapper, _connection, target: CreditTransaction) -> None:
    raise RuntimeError(f"credit transaction {target.id} is immutable")


@event.listens_for(CreditTransaction, "before_delete")
def _refuse_transaction_delete(_mapper, _connection, target: CreditTransaction) -> None:
    raise RuntimeError(f"credit transaction {target.id} is append-only")


class Reservation(Base):
    __tablename__ = "reservations"
    __table_args__ = (Index("ix_reservations_status_expires", "status", "expires_at"),)

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=_uuid)
    workspace_id: Mapped[str] = mapped_column(String(32), ForeignKey("workspaces.id"), index=True)
    request_id: Mapped[str] = mapped_column(String(128), unique=True, index=True)
    estimated_amount: Mapped[int] = mapped_column(BigInteger)
    status: Mapped[str] = mapped_column(String(16), default=ReservationStatus.held.value, index=True)

    service_type: Mapped[str | None] = mapped_column(String(32), nullable=True)
    model: Mapped[str | None] = mapped_column(String(128), nullable=True)
    provider: Mapped[str | None] = mapped_column(String(64), nullable=True)

    settled_amount: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    refund_amount: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    absorbed_amount: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    release_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    terminal_transaction_id: Mapped[int | None] = mapped_column(Integer, nullable=True)

    created_at: Mapped[dt.datetime] = mapped_column(DateTime, default=_utcnow)
    expires_at: Mapped[dt.datetime] = mapped_column(DateTime, index=True)
    finished_at: Mapped[dt.datetime | None] = mapped_column(DateTime, nullable=True)


class UsageSummary(Base):
    __tablename__ = "usage_summaries"
    __table_args__ = (
        UniqueConstraint(
            "workspace_id",
            "period_start",
            "service_type",
            "model",
            "provider",
            name="uq_usage_summaries_key",
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    workspace_id: Mapped[str] = mapped_column(String(32), ForeignKey("workspaces.id"), index=True)
    period_start: Mapped[dt.datetime] = mapped_column(DateTime, index=True)
    period_end: Mapped[dt.datetime] = mapped_column(DateTime)
    service_type: Mapped[str] = mapped_column(String(32), default="")
    model: Mapped[str] = mapped_column(String(128), default="")
    provider: Mapped[str] = mapped_column(String(64), default="")

    credits: Mapped[int] = mapped_column(BigInteger, default=0)
    requests: Mapped[int] = mapped_column(Integer, default=0)
    overage_units: Mapped[int] = mapped_column(BigInteger, default=0)
    updated_at: Mapped[dt.datetime] = mapped_column(DateTime, default=_utcnow)


class OverageInvoice(Base):
    __tablename__ = "overage_invoices"
    __table_args__ = (
        UniqueConstraint("workspace_id", "period_start", "period_end", name="uq_overage_invoices_period"),
    )

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=_uuid)
    workspace_id: Mapped[str] = mapped_column(String(32), ForeignKey("workspaces.id"), index=True)
    period_start: Mapped[dt.datetime] = mapped_column(DateTime)
    period_end: Mapped[dt.datetime] = mapped_column(DateTime)

    total_usage: Mapped[int] = mapped_column(BigInteger)
    credit_limit: Mapped[int] = mapped_column(BigInteger)
    overage_units: Mapped[int] = mapped_column(BigInteger)
    rate: Mapped[str] = mapped_column(String(32))
    charge: Mapped[str] = mapped_column(String(32))
    amount_cents: Mapped[int] = mapped_column(BigInteger)
    currency: Mapped[str] = mapped_column(String(8), default="usd")

    idempotency_key: Mapped[str] = mapped_column(String(191), unique=True)
    status: Mapped[str] = mapped_column(String(16), default=InvoiceStatus.pending.value, index=True)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_attempt_at: Mapped[dt.datetime | None] = mapped_column(DateTime, nullable=True)
    invoice_item_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    transaction_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    notified_at: Mapped[dt.datetime | None] = mapped_column(DateTime, nullable=True)

    created_at: Mapped[dt.datetime] = mapped_column(DateTime, default=_utcnow)
