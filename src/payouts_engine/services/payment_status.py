"""Proactive payment status refresh.

Asks the owning rail for the current state of the latest payment attempt
for a bill and applies it through the same status tables the webhooks use.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from payouts_engine.errors import NotFoundError, PayoutsError
from payouts_engine.models import PaymentRecord
from payouts_engine.providers.registry import ProviderClients
from payouts_engine.services.state_machine import PaymentStateMachine, PaymentStatus
from payouts_engine.services.webhooks import BILLCOM_STATUS_MAP, WISE_STATUS_MAP, map_status

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StatusRefresh:
    """Result of a status poll."""

    record: PaymentRecord
    provider_status: str | None
    changed: bool
    error: str | None = None


class PaymentStatusService:
    """Reads and refreshes payment status for a bill."""

    def __init__(self, db: AsyncSession, clients: ProviderClients):
        self.db = db
        self.clients = clients

    async def latest_record(self, bill_id: str) -> PaymentRecord | None:
        stmt = (
            select(PaymentRecord)
            .where(PaymentRecord.bill_id == bill_id)
            .order_by(PaymentRecord.created_at.desc())
            .limit(1)
        )
        return (await self.db.execute(stmt)).scalar_one_or_none()

    async def refresh(self, bill_id: str) -> StatusRefresh:
        record = await self.latest_record(bill_id)
        if record is None:
            raise NotFoundError(f"No payment record for bill {bill_id}")

        if record.status in (PaymentStatus.QUEUED.value, PaymentStatus.FAILED.value):
            return StatusRefresh(record=record, provider_status=None, changed=False)

        try:
            provider_status = await self._provider_status(record)
        except PayoutsError as exc:
            logger.warning("Status poll for bill %s failed: %s", bill_id, exc.message)
            return StatusRefresh(record=record, provider_status=None, changed=False, error=exc.message)

        table = WISE_STATUS_MAP if record.tenant_code == "CA" else BILLCOM_STATUS_MAP
        target = map_status(table, provider_status)
        changed = False
        if target is not None:
            rail = "Wise" if record.tenant_code == "CA" else "Bill.com"
            changed = PaymentStateMachine.apply(
                record, target, reason=f"{rail} payment {provider_status}"
            )
            if changed:
                await self.db.commit()
                logger.info("Payment %s (bill %s) -> %s via poll", record.id, bill_id, record.status)

        return StatusRefresh(record=record, provider_status=provider_status, changed=changed)

    async def _provider_status(self, record: PaymentRecord) -> str | None:
        if record.tenant_code == "CA":
            if not record.wise_transfer_id:
                return None
            transfer = await self.clients.wise.get_transfer(record.wise_transfer_id)
            return transfer.status if transfer else None
        if not record.billcom_payment_id:
            return None
        return await self.clients.billcom.get_payment_status(record.billcom_payment_id)
