"""Tests for payment record state machine."""

from decimal import Decimal

import pytest

from payouts_engine.models import PaymentRecord
from payouts_engine.services.state_machine import (
    InvalidTransitionError,
    PaymentStateMachine,
    PaymentStatus,
)


def _record(status: str) -> PaymentRecord:
    return PaymentRecord(
        tenant_code="US",
        bill_id="BILL-1",
        amount=Decimal("10.00"),
        status=status,
    )


class TestPaymentStateMachine:
    """Test state machine transitions."""

    def test_valid_transitions(self):
        """Test that valid transitions are allowed."""
        # queued → processing (US rail accepted)
        assert PaymentStateMachine.can_transition("queued", "processing") is True

        # queued → paid (CA rail funded from balance)
        assert PaymentStateMachine.can_transition("queued", "paid") is True

        # processing → paid / failed
        assert PaymentStateMachine.can_transition("processing", "paid") is True
        assert PaymentStateMachine.can_transition("processing", "failed") is True

        # paid → failed (bounced back)
        assert PaymentStateMachine.can_transition("paid", "failed") is True

    def test_invalid_transitions(self):
        """Test that invalid transitions are blocked."""
        assert PaymentStateMachine.can_transition("paid", "processing") is False
        assert PaymentStateMachine.can_transition("processing", "queued") is False

        # Failed is terminal
        assert PaymentStateMachine.can_transition("failed", "paid") is False
        assert PaymentStateMachine.can_transition("failed", "queued") is False

        # Unknown statuses
        assert PaymentStateMachine.can_transition("queued", "bogus") is False

    def test_validate_transition_raises(self):
        """Test that validate_transition raises for invalid transitions."""
        with pytest.raises(InvalidTransitionError) as exc_info:
            PaymentStateMachine.validate_transition("failed", "paid")

        assert exc_info.value.from_status == "failed"
        assert exc_info.value.to_status == "paid"
        assert "terminal" in str(exc_info.value)

    def test_active_statuses(self):
        """Queued, processing and paid block another attempt."""
        assert PaymentStateMachine.is_active("queued")
        assert PaymentStateMachine.is_active("processing")
        assert PaymentStateMachine.is_active("paid")
        assert not PaymentStateMachine.is_active("failed")


class TestApply:
    """Test in-place application of a target status."""

    def test_apply_paid_sets_timestamp(self):
        record = _record("processing")

        changed = PaymentStateMachine.apply(record, PaymentStatus.PAID)

        assert changed is True
        assert record.status == "paid"
        assert record.paid_at is not None

    def test_apply_failed_records_reason(self):
        record = _record("paid")

        changed = PaymentStateMachine.apply(record, PaymentStatus.FAILED, reason="bounced_back")

        assert changed is True
        assert record.status == "failed"
        assert record.failure_reason == "bounced_back"

    def test_apply_same_status_is_noop(self):
        """Replays of the current status change nothing."""
        record = _record("paid")

        assert PaymentStateMachine.apply(record, PaymentStatus.PAID) is False
        assert record.paid_at is None

    def test_apply_invalid_is_noop(self):
        """Late 'processing' event after settlement is ignored."""
        record = _record("paid")

        assert PaymentStateMachine.apply(record, PaymentStatus.PROCESSING) is False
        assert record.status == "paid"
