"""Tests for the payment queue.

Tests verify:
1. Paid and dismissed bills leave the queue
2. Tenant filtering accepts aliases and "all"
3. Batch checks are capped and report missing bills separately
4. Dismiss and restore guard against conflicting state
"""

from decimal import Decimal

import pytest

from payouts_engine.errors import BillNotFound, ConflictError, DomainError, NotFoundError
from payouts_engine.models import PaymentRecord
from payouts_engine.services.bills import MAX_BATCH_SIZE, BillQueueService
from payouts_engine.services.controls import ControlsEngine
from tests.fakes import NOW, make_bill, make_ca_bill, make_clients


def queue_for(db, clients) -> BillQueueService:
    return BillQueueService(db, clients, controls=ControlsEngine(db, clients, now=lambda: NOW))


async def mark_paid(db, bill_id: str) -> None:
    db.add(PaymentRecord(tenant_code="US", bill_id=bill_id, amount=Decimal("1500.00"), status="paid"))
    await db.commit()


class TestListPayable:
    """Test BillQueueService.list_payable."""

    async def test_excludes_paid_and_dismissed(self, db):
        bills = [make_bill(uid="BILL-1"), make_bill(uid="BILL-2"), make_bill(uid="BILL-3")]
        queue = queue_for(db, make_clients(*bills))
        await mark_paid(db, "BILL-1")
        await queue.dismiss("BILL-2", reason="Duplicate", actor="ops@example.com")

        payable = await queue.list_payable()

        assert [b.uid for b in payable] == ["BILL-3"]

    async def test_failed_payment_stays_in_queue(self, db):
        queue = queue_for(db, make_clients(make_bill()))
        db.add(PaymentRecord(tenant_code="US", bill_id="BILL-1", amount=Decimal("1500.00"), status="failed"))
        await db.commit()

        assert [b.uid for b in await queue.list_payable()] == ["BILL-1"]

    async def test_unapproved_bills_not_listed(self, db):
        queue = queue_for(db, make_clients(make_bill(), make_bill(uid="BILL-2", process_code="Pending")))
        assert [b.uid for b in await queue.list_payable()] == ["BILL-1"]

    @pytest.mark.parametrize(
        "tenant,expected",
        [
            ("US", ["BILL-1"]),
            ("Canada", ["BILL-CA-1"]),
            ("all", ["BILL-1", "BILL-CA-1"]),
            (None, ["BILL-1", "BILL-CA-1"]),
        ],
    )
    async def test_tenant_filter(self, db, tenant, expected):
        queue = queue_for(db, make_clients(make_bill(), make_ca_bill()))
        assert sorted(b.uid for b in await queue.list_payable(tenant)) == expected


class TestControls:
    """Test control runs from the queue."""

    async def test_list_with_controls(self, db, tenants):
        queue = queue_for(db, make_clients(make_bill()))

        [item] = await queue.list_with_controls()

        assert item.bill.uid == "BILL-1"
        assert item.results.ready_to_pay

    async def test_get_with_controls_unknown_bill(self, db):
        with pytest.raises(BillNotFound):
            await queue_for(db, make_clients()).get_with_controls("BILL-404")

    async def test_check_many_collects_missing(self, db, tenants):
        queue = queue_for(db, make_clients(make_bill()))

        batch = await queue.check_many(["BILL-1", "BILL-404"])

        assert [r.bill_id for r in batch.results] == ["BILL-1"]
        assert batch.errors == {"BILL-404": "Bill not found: BILL-404"}

    async def test_check_many_capped(self, db):
        queue = queue_for(db, make_clients())
        ids = [f"BILL-{i}" for i in range(MAX_BATCH_SIZE + 1)]

        with pytest.raises(DomainError, match="At most 50 bills"):
            await queue.check_many(ids)


class TestDismissRestore:
    """Test dismissing and restoring bills."""

    async def test_dismiss_records_actor(self, db):
        dismissed = await queue_for(db, make_clients()).dismiss(
            "BILL-1", reason="Handled manually", actor="ops@example.com"
        )

        assert dismissed.bill_id == "BILL-1"
        assert dismissed.reason == "Handled manually"
        assert dismissed.dismissed_by == "ops@example.com"

    async def test_cannot_dismiss_paid_bill(self, db):
        await mark_paid(db, "BILL-1")

        with pytest.raises(ConflictError, match="already paid"):
            await queue_for(db, make_clients()).dismiss("BILL-1")

    async def test_cannot_dismiss_twice(self, db):
        queue = queue_for(db, make_clients())
        await queue.dismiss("BILL-1")

        with pytest.raises(ConflictError, match="already dismissed"):
            await queue.dismiss("BILL-1")

    async def test_restore_returns_bill_to_queue(self, db):
        queue = queue_for(db, make_clients(make_bill()))
        await queue.dismiss("BILL-1")

        await queue.restore("BILL-1")

        assert [b.uid for b in await queue.list_payable()] == ["BILL-1"]

    async def test_restore_not_dismissed(self, db):
        with pytest.raises(NotFoundError):
            await queue_for(db, make_clients()).restore("BILL-1")
