"""Payment record state machine with transition validation."""

from __future__ import annotations

import logging
from enum import Enum
from typing import TYPE_CHECKING

from payouts_engine.models.base import utcnow

if TYPE_CHECKING:
    from payouts_engine.models import PaymentRecord

logger = logging.getLogger(__name__)


class PaymentStatus(str, Enum):
    """Payment record status values."""

    QUEUED = "queued"
    PROCESSING = "processing"
    PAID = "paid"
    FAILED = "failed"


class InvalidTransitionError(Exception):
    """Raised when an invalid state transition is attempted."""

    def __init__(self, from_status: str, to_status: str, reason: str | None = None):
        self.from_status = from_status
        self.to_status = to_status
        self.reason = reason
        msg = f"Invalid transition from '{from_status}' to '{to_status}'"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class PaymentStateMachine:
    """State machine for payment record status transitions.

    Allowed transitions:
    - queued → processing | paid | failed
    - processing → paid | failed
    - paid → failed (bounced back / charged back after settlement)

    ``failed`` is terminal; a new attempt creates a new record.
    """

    VALID_TRANSITIONS: dict[str, list[str]] = {
        PaymentStatus.QUEUED: [
            PaymentStatus.PROCESSING,
            PaymentStatus.PAID,
            PaymentStatus.FAILED,
        ],
        PaymentStatus.PROCESSING: [PaymentStatus.PAID, PaymentStatus.FAILED],
        PaymentStatus.PAID: [PaymentStatus.FAILED],
        PaymentStatus.FAILED: [],
    }

    # Statuses that block a new payment attempt for the same bill
    ACTIVE = {
        PaymentStatus.QUEUED,
        PaymentStatus.PROCESSING,
        PaymentStatus.PAID,
    }

    @classmethod
    def can_transition(cls, from_status: str, to_status: str) -> bool:
        """Check if a transition is valid."""
        try:
            from_enum = PaymentStatus(from_status)
            to_enum = PaymentStatus(to_status)
        except ValueError:
            return False
        return to_enum in cls.VALID_TRANSITIONS.get(from_enum, [])

    @classmethod
    def validate_transition(cls, from_status: str, to_status: str) -> None:
        """Validate a transition, raising InvalidTransitionError if invalid."""
        if not cls.can_transition(from_status, to_status):
            allowed = cls.VALID_TRANSITIONS.get(PaymentStatus(from_status), [])
            allowed_str = ", ".join(s.value for s in allowed) or "none (terminal)"
            raise InvalidTransitionError(
                from_status, to_status, f"Allowed transitions: {allowed_str}"
            )

    @classmethod
    def is_active(cls, status: str) -> bool:
        return status in {s.value for s in cls.ACTIVE}

    @classmethod
    def apply(
        cls,
        record: PaymentRecord,
        to_status: PaymentStatus,
        *,
        reason: str | None = None,
    ) -> bool:
        """Move ``record`` to ``to_status`` if allowed.

        Returns False (and touches nothing) when the record is already in that
        status or the transition is not allowed, so replays are no-ops.
        """
        if record.status == to_status.value:
            return False
        if not cls.can_transition(record.status, to_status.value):
            logger.warning(
                "Ignoring %s -> %s for payment %s (bill %s)",
                record.status, to_status.value, record.id, record.bill_id,
            )
            return False

        record.status = to_status.value
        if to_status is PaymentStatus.PAID:
            record.paid_at = utcnow()
            record.failure_reason = None
        elif to_status is PaymentStatus.FAILED:
            record.failure_reason = reason or record.failure_reason
        return True
