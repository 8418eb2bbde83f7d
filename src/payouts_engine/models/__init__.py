"""ORM models."""

from payouts_engine.models.base import Base, TimestampMixin
from payouts_engine.models.payouts import (
    ACTIVE_PAYMENT_STATUSES,
    DismissedBill,
    PaymentRecord,
    RecipientMapping,
    Tenant,
)

__all__ = [
    "Base",
    "TimestampMixin",
    "ACTIVE_PAYMENT_STATUSES",
    "DismissedBill",
    "PaymentRecord",
    "RecipientMapping",
    "Tenant",
]
