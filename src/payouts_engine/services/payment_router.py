"""Payment router - executes a control-passed bill on the tenant's rail.

Sequence for every payment:
1. Reject if an active (queued/processing/paid) record already exists
2. Load the bill; the rail comes from the bill's own tenant code
3. Run the controls; any failure rejects with every failed reason
4. Rail pre-flight (US: session, locate bill, MFA trust; CA: resolve recipient)
5. Claim the bill by inserting a ``queued`` record (partial unique index)
6. Execute on the rail and move the record to processing (US) or paid (CA)

Steps 1 and 5 together close the read-then-write window: two concurrent
requests can both pass step 1, but only one insert in step 5 succeeds.

Failures after the claim mark the record ``failed`` and are returned as an
unsuccessful ``PaymentResult``. Nothing created rail-side is rolled back; an
orphaned Wise quote simply expires.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from enum import Enum
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from payouts_engine.errors import (
    ControlsNotPassed,
    DomainError,
    DuplicatePayment,
    MfaRequired,
    PayoutsError,
    RecipientUnresolved,
    WrongTenant,
)
from payouts_engine.models import ACTIVE_PAYMENT_STATUSES, PaymentRecord, RecipientMapping
from payouts_engine.models.base import utcnow
from payouts_engine.providers.billcom import BillComBill
from payouts_engine.providers.partnerconnect import Bill, normalize_tenant_code
from payouts_engine.providers.postmark import PaymentNotification, is_valid_email
from payouts_engine.providers.registry import ProviderClients
from payouts_engine.providers.wise import truncate_reference
from payouts_engine.services.controls import (
    DEFAULT_PROVING_PERIOD_HOURS,
    ControlCheckResults,
    ControlsEngine,
    fetch_bill,
    proving_period_for,
)
from payouts_engine.services.state_machine import PaymentStateMachine, PaymentStatus

logger = logging.getLogger(__name__)

PLACEHOLDER_EMAIL_MARKERS = ("wise account", "wise business")


@dataclass(frozen=True)
class PaymentResult:
    """Outcome of one payment attempt. ``message`` is safe to show operators."""

    success: bool
    bill_id: str
    amount: Decimal
    status: str
    message: str
    payment_id: UUID | None = None


class RecipientPath(str, Enum):
    """How a cross-border payee is reached."""

    PEER = "peer"
    EMAIL = "email"
    BANK = "bank"


@dataclass(frozen=True)
class WiseTarget:
    path: RecipientPath
    account_id: int
    contact_id: str | None = None


def usable_email(email: str | None) -> bool:
    """A real address, not a placeholder like "Wise account"."""
    if not is_valid_email(email):
        return False
    lowered = (email or "").lower()
    return not any(marker in lowered for marker in PLACEHOLDER_EMAIL_MARKERS)


def is_peer_contact_id(contact_id: str | None) -> bool:
    return bool(contact_id and "-" in contact_id)


def is_legacy_contact_id(contact_id: str | None) -> bool:
    return bool(contact_id and contact_id.isdigit())


def select_recipient_path(mapping: RecipientMapping) -> RecipientPath:
    """Peer contact with a usable email first, then email claim, then bank account."""
    contact_id = mapping.wise_contact_id
    if is_peer_contact_id(contact_id) and usable_email(mapping.email):
        return RecipientPath.PEER
    if not contact_id and usable_email(mapping.email):
        return RecipientPath.EMAIL
    return RecipientPath.BANK


def build_reference(bill: Bill) -> str:
    """Transfer reference: invoice number (or bill id) plus payee surname, cut to the rail's limit."""
    base = bill.external_invoice_doc_num or bill.uid
    return truncate_reference(f"{base}-{bill.payee_last_name}")


class PaymentRouter:
    """Executes payments on the US (Bill.com) or CA (Wise) rail."""

    def __init__(
        self,
        db: AsyncSession,
        clients: ProviderClients,
        *,
        default_proving_period_hours: int = DEFAULT_PROVING_PERIOD_HOURS,
        source_currency: str = "CAD",
        controls: ControlsEngine | None = None,
    ):
        self.db = db
        self.clients = clients
        self.default_proving_period_hours = default_proving_period_hours
        self.source_currency = source_currency
        self.controls = controls or ControlsEngine(db, clients)

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def pay_bill(
        self,
        bill_id: str,
        *,
        process_date: date | None = None,
        requested_tenant: str | None = None,
        actor: str = "system",
    ) -> PaymentResult:
        await self._reject_if_active(bill_id)

        bill = await fetch_bill(self.clients, bill_id)
        try:
            return await self._execute(
                bill, process_date=process_date, requested_tenant=requested_tenant, actor=actor
            )
        except DomainError as exc:
            if exc.amount is None:
                exc.amount = bill.adjusted_bill_payment
            raise

    async def _execute(
        self,
        bill: Bill,
        *,
        process_date: date | None,
        requested_tenant: str | None,
        actor: str,
    ) -> PaymentResult:
        bill_id = bill.uid
        tenant_code = bill.tenant_code
        if requested_tenant and normalize_tenant_code(requested_tenant) != tenant_code:
            raise WrongTenant(bill_id, normalize_tenant_code(requested_tenant), tenant_code)

        hours = await proving_period_for(self.db, tenant_code, self.default_proving_period_hours)
        results = await self.controls.run_control_checks(bill, tenant_code, hours)
        if not results.ready_to_pay:
            logger.info("Payment for bill %s rejected by controls", bill_id)
            raise ControlsNotPassed(results)

        if tenant_code == "CA":
            return await self._pay_wise(bill, results, actor=actor)
        return await self._pay_billcom(bill, results, process_date=process_date, actor=actor)

    # ------------------------------------------------------------------
    # Duplicate protection
    # ------------------------------------------------------------------

    async def _reject_if_active(self, bill_id: str) -> None:
        existing = await self.active_record(bill_id)
        if existing is not None:
            raise DuplicatePayment(
                bill_id, existing.status, existing.id, amount=existing.amount
            )

    async def active_record(self, bill_id: str) -> PaymentRecord | None:
        stmt = (
            select(PaymentRecord)
            .where(
                PaymentRecord.bill_id == bill_id,
                PaymentRecord.status.in_(ACTIVE_PAYMENT_STATUSES),
            )
            .limit(1)
        )
        return (await self.db.execute(stmt)).scalar_one_or_none()

    async def _claim(
        self,
        bill: Bill,
        results: ControlCheckResults,
        *,
        actor: str,
        process_date: date | None = None,
    ) -> PaymentRecord:
        """Insert the ``queued`` record that reserves this bill for one attempt."""
        record = PaymentRecord(
            tenant_code=bill.tenant_code,
            bill_id=bill.uid,
            payee_name=bill.resource_name,
            payee_vendor_id=bill.qbo_vendor_id,
            amount=bill.adjusted_bill_payment,
            status=PaymentStatus.QUEUED.value,
            process_date=process_date,
            executed_by=actor,
            control_results=results.to_dict(),
        )
        self.db.add(record)
        try:
            await self.db.commit()
        except IntegrityError as exc:
            await self.db.rollback()
            existing = await self.active_record(bill.uid)
            status = existing.status if existing is not None else PaymentStatus.QUEUED.value
            logger.warning("Concurrent payment attempt for bill %s lost the claim", bill.uid)
            raise DuplicatePayment(
                bill.uid, status, existing.id if existing is not None else None
            ) from exc
        return record

    def _transition(self, record: PaymentRecord, to_status: PaymentStatus) -> None:
        PaymentStateMachine.validate_transition(record.status, to_status.value)
        record.status = to_status.value

    async def _fail(self, record: PaymentRecord, exc: Exception) -> PaymentResult:
        if isinstance(exc, PayoutsError):
            reason = exc.message
            logger.error("Payment for bill %s failed: %s", record.bill_id, reason)
        else:
            reason = str(exc) or type(exc).__name__
            logger.exception("Payment for bill %s failed unexpectedly", record.bill_id)
        self._transition(record, PaymentStatus.FAILED)
        record.failure_reason = reason
        await self.db.commit()
        return PaymentResult(
            success=False,
            bill_id=record.bill_id,
            amount=record.amount,
            status=record.status,
            message=f"Payment failed: {reason}",
            payment_id=record.id,
        )

    # ------------------------------------------------------------------
    # US rail
    # ------------------------------------------------------------------

    async def _pay_billcom(
        self,
        bill: Bill,
        results: ControlCheckResults,
        *,
        process_date: date | None,
        actor: str,
    ) -> PaymentResult:
        billcom = self.clients.billcom
        await billcom.login()

        doc = bill.external_bill_doc_num
        rail_bill: BillComBill | None = (
            await billcom.find_bill_by_invoice_number(doc) if doc else None
        )
        if rail_bill is None:
            raise DomainError(f'Bill "{doc}" not found in Bill.com', source="billcom")

        # pay_bill checks this too; checked here so no record is claimed
        if not billcom.is_trusted:
            raise MfaRequired()

        process_date = process_date or date.today()
        record = await self._claim(bill, results, actor=actor, process_date=process_date)
        try:
            payment = await billcom.pay_bill(rail_bill, bill.adjusted_bill_payment, process_date)
        except Exception as exc:
            return await self._fail(record, exc)

        self._transition(record, PaymentStatus.PROCESSING)
        record.billcom_payment_id = payment.id
        record.payment_ref = payment.id
        record.executed_at = utcnow()
        await self.db.commit()

        logger.info("Bill %s submitted to Bill.com as payment %s", bill.uid, payment.id)
        return PaymentResult(
            success=True,
            bill_id=bill.uid,
            amount=record.amount,
            status=record.status,
            message=(
                f"Payment of ${record.amount:.2f} to {bill.resource_name} submitted to "
                f"Bill.com (payment {payment.id}, process date {process_date.isoformat()})"
            ),
            payment_id=record.id,
        )

    # ------------------------------------------------------------------
    # CA rail
    # ------------------------------------------------------------------

    async def _recipient_for(self, bill: Bill) -> RecipientMapping:
        if not bill.qbo_vendor_id:
            raise RecipientUnresolved(f"Bill {bill.uid} has no QBO vendor ID")
        stmt = select(RecipientMapping).where(
            RecipientMapping.qbo_vendor_id == bill.qbo_vendor_id,
            RecipientMapping.is_active.is_(True),
        )
        mapping = (await self.db.execute(stmt)).scalar_one_or_none()
        if mapping is None:
            raise RecipientUnresolved(
                f"No recipient mapping for vendor {bill.qbo_vendor_id}"
            )
        return mapping

    async def _email_account(self, mapping: RecipientMapping) -> int:
        """Payable account addressed by the mapping's email, created once and cached."""
        if mapping.wise_account_id and mapping.wise_account_id.isdigit():
            return int(mapping.wise_account_id)
        account_id = await self.clients.wise.create_email_recipient(
            mapping.payee_name, mapping.email or "", mapping.target_currency
        )
        mapping.wise_account_id = str(account_id)
        await self.db.commit()
        return account_id

    async def _bank_account(self, bill: Bill, mapping: RecipientMapping) -> int:
        """Stored numeric id, then email directory lookup, then fuzzy name match."""
        wise = self.clients.wise
        currency = mapping.target_currency

        stored = mapping.wise_contact_id if is_legacy_contact_id(mapping.wise_contact_id) else mapping.wise_account_id
        if stored and stored.isdigit():
            account = await wise.get_account(stored)
            if account is not None:
                return account.id

        if usable_email(mapping.email):
            contact = await wise.find_contact_by_email(mapping.email or "")
            if contact is not None:
                accounts = await wise.get_contact_accounts(contact.id)
                match = next((a for a in accounts if a.currency == currency), None)
                if match is None and accounts:
                    match = accounts[0]
                if match is not None:
                    return match.id

        account = await wise.find_account_by_name(mapping.payee_name or bill.resource_name or "", currency)
        if account is not None:
            return account.id

        raise RecipientUnresolved(
            f"No valid payment method for {mapping.payee_name}: configure a Wise contact, "
            "email, or bank account for this recipient"
        )

    async def resolve_wise_target(self, bill: Bill, mapping: RecipientMapping) -> WiseTarget:
        path = select_recipient_path(mapping)
        if path is RecipientPath.PEER:
            return WiseTarget(path, await self._email_account(mapping), mapping.wise_contact_id)
        if path is RecipientPath.EMAIL:
            return WiseTarget(path, await self._email_account(mapping))
        return WiseTarget(path, await self._bank_account(bill, mapping))

    async def _pay_wise(self, bill: Bill, results: ControlCheckResults, *, actor: str) -> PaymentResult:
        wise = self.clients.wise
        mapping = await self._recipient_for(bill)
        target = await self.resolve_wise_target(bill, mapping)
        reference = build_reference(bill)
        logger.info(
            "Paying bill %s via Wise %s path (account %s)", bill.uid, target.path.value, target.account_id
        )

        record = await self._claim(bill, results, actor=actor, process_date=date.today())
        try:
            quote = await wise.create_quote(
                self.source_currency,
                mapping.target_currency,
                bill.adjusted_bill_payment,
                target_contact_id=target.contact_id,
            )
            record.wise_quote_id = quote.id
            transfer = await wise.create_transfer(quote.id, reference, target.account_id)
            await wise.fund_transfer(transfer.id)
        except Exception as exc:
            return await self._fail(record, exc)

        # Funding from balance is a synchronous commitment
        self._transition(record, PaymentStatus.PAID)
        now = utcnow()
        record.wise_transfer_id = transfer.id
        record.payment_ref = transfer.id
        record.currency = mapping.target_currency
        record.exchange_rate = quote.rate
        record.target_amount = quote.target_amount
        record.fee = quote.fee
        record.executed_at = now
        record.paid_at = now
        await self.db.commit()

        result = PaymentResult(
            success=True,
            bill_id=bill.uid,
            amount=record.amount,
            status=record.status,
            message=(
                f"Wise transfer {transfer.id} funded: {self.source_currency} "
                f"${record.amount:.2f} to {mapping.payee_name} "
                f"({mapping.target_currency} ${quote.target_amount:.2f})"
            ),
            payment_id=record.id,
        )
        await self._notify(record, bill, mapping, quote.target_amount, quote.rate, transfer.id)
        return result

    async def _notify(
        self,
        record: PaymentRecord,
        bill: Bill,
        mapping: RecipientMapping,
        target_amount: Decimal,
        rate: Decimal,
        transfer_id: str,
    ) -> None:
        """Best-effort payee email; never affects the payment outcome."""
        email = mapping.email if usable_email(mapping.email) else bill.payee_email
        if not usable_email(email):
            logger.info("No usable email for bill %s; skipping notification", bill.uid)
            return
        try:
            outcome = await self.clients.postmark.send_payment_notification(
                PaymentNotification(
                    to=email or "",
                    payee_name=mapping.payee_name,
                    source_amount=record.amount,
                    source_currency=self.source_currency,
                    target_currency=mapping.target_currency,
                    invoice_reference=bill.external_invoice_doc_num or bill.uid,
                    transfer_id=transfer_id,
                    target_amount=target_amount,
                    exchange_rate=rate,
                )
            )
            record.email_sent = outcome.success
            record.email_sent_at = utcnow() if outcome.success else None
            record.email_error = outcome.error_message
            await self.db.commit()
        except Exception:
            logger.warning("Payment notification for bill %s failed", bill.uid, exc_info=True)
            await self.db.rollback()
