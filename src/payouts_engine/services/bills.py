"""Payment queue: approved bills that still need paying, with their controls."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from payouts_engine.errors import BillNotFound, ConflictError, DomainError, NotFoundError
from payouts_engine.models import DismissedBill, PaymentRecord
from payouts_engine.providers.partnerconnect import Bill, normalize_tenant_code
from payouts_engine.providers.registry import ProviderClients
from payouts_engine.services.controls import (
    DEFAULT_PROVING_PERIOD_HOURS,
    ControlCheckResults,
    ControlsEngine,
    fetch_bill,
    proving_period_for,
)
from payouts_engine.services.state_machine import PaymentStatus

logger = logging.getLogger(__name__)

MAX_BATCH_SIZE = 50


@dataclass(frozen=True)
class BillWithControls:
    bill: Bill
    results: ControlCheckResults


@dataclass(frozen=True)
class BatchCheck:
    results: list[ControlCheckResults] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)


class BillQueueService:
    """Lists, checks, dismisses and restores bills in the payment queue."""

    def __init__(
        self,
        db: AsyncSession,
        clients: ProviderClients,
        *,
        default_proving_period_hours: int = DEFAULT_PROVING_PERIOD_HOURS,
        controls: ControlsEngine | None = None,
    ):
        self.db = db
        self.clients = clients
        self.default_proving_period_hours = default_proving_period_hours
        self.controls = controls or ControlsEngine(db, clients)

    async def _paid_bill_ids(self) -> set[str]:
        stmt = select(PaymentRecord.bill_id).where(PaymentRecord.status == PaymentStatus.PAID.value)
        return set((await self.db.execute(stmt)).scalars())

    async def _dismissed_bill_ids(self) -> set[str]:
        return set((await self.db.execute(select(DismissedBill.bill_id))).scalars())

    async def list_payable(self, tenant: str | None = None) -> list[Bill]:
        """Approved bills that are neither paid nor dismissed."""
        bills = await self.clients.partnerconnect.get_approved_bills()
        excluded = await self._paid_bill_ids() | await self._dismissed_bill_ids()
        wanted = normalize_tenant_code(tenant) if tenant and tenant != "all" else None
        return [
            b for b in bills
            if b.uid not in excluded and (wanted is None or b.tenant_code == wanted)
        ]

    async def check(self, bill: Bill) -> ControlCheckResults:
        hours = await proving_period_for(self.db, bill.tenant_code, self.default_proving_period_hours)
        return await self.controls.run_control_checks(bill, bill.tenant_code, hours)

    async def list_with_controls(self, tenant: str | None = None) -> list[BillWithControls]:
        return [BillWithControls(bill, await self.check(bill)) for bill in await self.list_payable(tenant)]

    async def get_with_controls(self, bill_id: str) -> BillWithControls:
        bill = await fetch_bill(self.clients, bill_id)
        return BillWithControls(bill, await self.check(bill))

    async def check_many(self, bill_ids: list[str]) -> BatchCheck:
        if len(bill_ids) > MAX_BATCH_SIZE:
            raise DomainError(f"At most {MAX_BATCH_SIZE} bills can be checked at once")

        batch = BatchCheck()
        for bill_id in bill_ids:
            try:
                bill = await fetch_bill(self.clients, bill_id)
            except BillNotFound as exc:
                batch.errors[bill_id] = exc.message
                continue
            batch.results.append(await self.check(bill))
        return batch

    async def dismiss(self, bill_id: str, *, reason: str | None = None, actor: str | None = None) -> DismissedBill:
        if bill_id in await self._paid_bill_ids():
            raise ConflictError(f"Bill {bill_id} is already paid")

        dismissed = DismissedBill(bill_id=bill_id, reason=reason, dismissed_by=actor)
        self.db.add(dismissed)
        try:
            await self.db.commit()
        except IntegrityError as exc:
            await self.db.rollback()
            raise ConflictError(f"Bill {bill_id} is already dismissed") from exc
        logger.info("Bill %s dismissed by %s", bill_id, actor or "unknown")
        return dismissed

    async def restore(self, bill_id: str) -> None:
        stmt = select(DismissedBill).where(DismissedBill.bill_id == bill_id)
        dismissed = (await self.db.execute(stmt)).scalar_one_or_none()
        if dismissed is None:
            raise NotFoundError(f"Bill {bill_id} is not dismissed")
        await self.db.delete(dismissed)
        await self.db.commit()
        logger.info("Bill %s restored to the queue", bill_id)
