"""Payout models.

- Tenants (per-country proving period configuration)
- Payment records (system of record for "has this bill been paid")
- Recipient mappings (accounting vendor -> cross-border rail contact)
- Dismissed bills (operator-hidden queue entries)
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from payouts_engine.models.base import Base, JsonType, TimestampMixin, utcnow

# Statuses that block another payment attempt for the same bill
ACTIVE_PAYMENT_STATUSES = ("queued", "processing", "paid")

_ACTIVE_STATUS_SQL = "status IN ('queued', 'processing', 'paid')"


class Tenant(TimestampMixin, Base):
    """Country tenant. ``code`` is the normalized tenant code (US or CA)."""

    __tablename__ = "tenant"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    code: Mapped[str] = mapped_column(String(8), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    proving_period_hours: Mapped[int] = mapped_column(
        Integer, nullable=False, default=24, server_default="24"
    )

    __table_args__ = (
        CheckConstraint("code IN ('US', 'CA')", name="tenant_code_ck"),
        CheckConstraint("proving_period_hours >= 0", name="tenant_proving_period_ck"),
    )


class PaymentRecord(TimestampMixin, Base):
    """One execution attempt for a bill.

    At most one record per bill may be active (queued, processing, or paid);
    enforced by a partial unique index. Failed records are kept for audit.
    """

    __tablename__ = "payment_record"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    tenant_code: Mapped[str] = mapped_column(String(8), nullable=False)
    bill_id: Mapped[str] = mapped_column(String(64), nullable=False)
    payee_name: Mapped[str | None] = mapped_column(Text)
    payee_vendor_id: Mapped[str | None] = mapped_column(String(64))
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default="queued", server_default="queued"
    )
    payment_ref: Mapped[str | None] = mapped_column(String(128))

    # Rail-specific correlation ids
    billcom_payment_id: Mapped[str | None] = mapped_column(String(128))
    wise_transfer_id: Mapped[str | None] = mapped_column(String(128))
    wise_quote_id: Mapped[str | None] = mapped_column(String(128))

    # Cross-border details
    currency: Mapped[str | None] = mapped_column(String(3))
    exchange_rate: Mapped[Decimal | None] = mapped_column(Numeric(18, 8))
    target_amount: Mapped[Decimal | None] = mapped_column(Numeric(14, 2))
    fee: Mapped[Decimal | None] = mapped_column(Numeric(14, 2))

    process_date: Mapped[date | None] = mapped_column(Date)
    executed_by: Mapped[str | None] = mapped_column(Text)
    failure_reason: Mapped[str | None] = mapped_column(Text)
    control_results: Mapped[dict[str, Any] | None] = mapped_column(JsonType)

    # Payee notification tracking
    email_sent: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=text("false")
    )
    email_sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    email_error: Mapped[str | None] = mapped_column(Text)

    executed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        CheckConstraint(
            "status IN ('queued', 'processing', 'paid', 'failed')",
            name="payment_record_status_ck",
        ),
        CheckConstraint("amount > 0", name="payment_record_amount_ck"),
        Index(
            "payment_record_active_bill_uq",
            "bill_id",
            unique=True,
            postgresql_where=text(_ACTIVE_STATUS_SQL),
            sqlite_where=text(_ACTIVE_STATUS_SQL),
        ),
        Index("payment_record_bill_idx", "bill_id"),
        Index("payment_record_billcom_idx", "billcom_payment_id"),
        Index("payment_record_wise_idx", "wise_transfer_id"),
        Index("payment_record_ref_idx", "payment_ref"),
    )


class RecipientMapping(TimestampMixin, Base):
    """Accounting vendor id -> cross-border rail contact identity."""

    __tablename__ = "recipient_mapping"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    qbo_vendor_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    payee_name: Mapped[str] = mapped_column(Text, nullable=False)
    email: Mapped[str | None] = mapped_column(Text)
    wise_contact_id: Mapped[str | None] = mapped_column(String(128))
    wise_account_id: Mapped[str | None] = mapped_column(String(64))
    target_currency: Mapped[str] = mapped_column(
        String(3), nullable=False, default="CAD", server_default="CAD"
    )
    is_active: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=True, server_default=text("true")
    )

    __table_args__ = (
        CheckConstraint("target_currency IN ('USD', 'CAD')", name="recipient_currency_ck"),
    )


class DismissedBill(Base):
    """Bill hidden from the payment queue by an operator."""

    __tablename__ = "dismissed_bill"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    bill_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    reason: Mapped[str | None] = mapped_column(Text)
    dismissed_by: Mapped[str | None] = mapped_column(Text)
    dismissed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
