"""Controls engine - is this bill safe to pay?

Every control runs on every call, in a fixed order, even after an earlier
one has failed, so the operator sees every reason at once. Adapter calls go
through ``capture``: an outage in one system fails the controls that depend
on it and nothing else.

Order:
    1. Approval system:  billApprovedInPC, payeeExistsInPC
    2. Accounting:       invoiceExistsInQbo, invoicePaid, invoiceNotVoided,
                         billExistsInQbo, vendorExistsInQbo
    3. Rail (US):        billExistsInBillCom, vendorExistsInBillCom,
                         billApprovedInBillCom
       Rail (CA):        recipientMappedInSystem, recipientExistsInWise
    4. General:          notAlreadyPaid, provingPeriod, amountValid

The accounting controls each make their own lookup rather than sharing one
fetch, so a partial outage degrades individual lines.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from payouts_engine.errors import BillNotFound, NotFoundError
from payouts_engine.models import PaymentRecord, RecipientMapping, Tenant
from payouts_engine.models.base import utcnow
from payouts_engine.providers.billcom import APPROVED_STATUSES, BillComBill
from payouts_engine.providers.partnerconnect import Bill
from payouts_engine.providers.registry import ProviderClients
from payouts_engine.result import Err, ErrorKind, capture
from payouts_engine.services.state_machine import PaymentStatus

logger = logging.getLogger(__name__)

DEFAULT_PROVING_PERIOD_HOURS = 24
PC_APPROVED_CODE = "Approved"


# ============================================================================
# Results
# ============================================================================


@dataclass(frozen=True)
class ControlResult:
    """Verdict of a single control. Regenerated on every run."""

    name: str
    passed: bool
    reason: str
    checked_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "passed": self.passed,
            "reason": self.reason,
            "checkedAt": self.checked_at.isoformat(),
        }


@dataclass(frozen=True)
class ControlCheckResults:
    """All control verdicts for one bill."""

    bill_id: str
    controls: tuple[ControlResult, ...]

    @property
    def all_passed(self) -> bool:
        return all(c.passed for c in self.controls)

    @property
    def ready_to_pay(self) -> bool:
        return self.all_passed

    @property
    def failed(self) -> list[ControlResult]:
        return [c for c in self.controls if not c.passed]

    def get(self, name: str) -> ControlResult | None:
        return next((c for c in self.controls if c.name == name), None)

    def to_dict(self) -> dict[str, Any]:
        return {
            "billId": self.bill_id,
            "controls": [c.to_dict() for c in self.controls],
            "allPassed": self.all_passed,
            "readyToPay": self.ready_to_pay,
        }


@dataclass(frozen=True)
class ControlSummary:
    passed: int
    failed: int
    total: int


def summarize(results: ControlCheckResults) -> ControlSummary:
    passed = sum(1 for c in results.controls if c.passed)
    return ControlSummary(passed=passed, failed=len(results.controls) - passed, total=len(results.controls))


def rejection_message(results: ControlCheckResults) -> str:
    """``Controls not passed: name: reason; name: reason``"""
    failures = "; ".join(f"{c.name}: {c.reason}" for c in results.failed)
    return f"Controls not passed: {failures}"


def _unverifiable(err: Err, what: str) -> str:
    if err.kind is ErrorKind.CONFIGURATION:
        return f"Cannot verify ({err.detail})"
    return f"Unable to verify {what}: {err.detail}"


def _day(value: datetime | None) -> str:
    return f" on {value.date().isoformat()}" if value else ""


# ============================================================================
# Engine
# ============================================================================


class ControlsEngine:
    """Runs the ordered control checks for a bill.

    Reads from adapters and from the payment record store; writes nothing.
    """

    def __init__(
        self,
        db: AsyncSession,
        clients: ProviderClients,
        *,
        now: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.clients = clients
        self._now = now

    async def run_control_checks(
        self,
        bill: Bill,
        tenant_code: str,
        proving_period_hours: int = DEFAULT_PROVING_PERIOD_HOURS,
    ) -> ControlCheckResults:
        controls: list[ControlResult] = []

        # Approval system
        controls.append(self._bill_approved_in_pc(bill))
        controls.append(self._payee_exists_in_pc(bill))

        # Accounting system
        controls.append(await self._invoice_exists(bill, tenant_code))
        controls.append(await self._invoice_paid(bill, tenant_code))
        controls.append(await self._invoice_not_voided(bill, tenant_code))
        controls.append(await self._bill_exists_in_qbo(bill, tenant_code))
        controls.append(await self._vendor_exists_in_qbo(bill, tenant_code))

        # Rail
        if tenant_code == "CA":
            controls.extend(await self._wise_controls(bill))
        else:
            controls.extend(await self._billcom_controls(bill))

        # General
        controls.append(await self._not_already_paid(bill))
        controls.append(self._proving_period(bill, proving_period_hours))
        controls.append(self._amount_valid(bill))

        results = ControlCheckResults(bill_id=bill.uid, controls=tuple(controls))
        summary = summarize(results)
        logger.info(
            "Controls for bill %s (%s): %d/%d passed",
            bill.uid, tenant_code, summary.passed, summary.total,
        )
        return results

    # ------------------------------------------------------------------
    # Approval system
    # ------------------------------------------------------------------

    def _bill_approved_in_pc(self, bill: Bill) -> ControlResult:
        approved = bill.process_code == PC_APPROVED_CODE
        return ControlResult(
            "billApprovedInPC",
            approved,
            "Bill approved in PartnerConnect"
            if approved
            else f"Bill not approved (processCode: {bill.process_code or 'unknown'})",
        )

    def _payee_exists_in_pc(self, bill: Bill) -> ControlResult:
        has_payee = bool(bill.resource_uid and bill.resource_name)
        return ControlResult(
            "payeeExistsInPC",
            has_payee,
            f"Payee: {bill.resource_name}" if has_payee else "No payee assigned to bill",
        )

    # ------------------------------------------------------------------
    # Accounting system
    # ------------------------------------------------------------------

    async def _invoice_exists(self, bill: Bill, tenant_code: str) -> ControlResult:
        name = "invoiceExistsInQbo"
        doc = bill.external_invoice_doc_num
        if not doc:
            return ControlResult(name, False, "No QBO invoice DocNumber on bill")

        result = await capture(self.clients.qbo_for(tenant_code).get_invoice_by_doc_number(doc))
        if isinstance(result, Err):
            if result.not_found:
                return ControlResult(name, False, f"Invoice {doc} not found in QBO")
            return ControlResult(name, False, _unverifiable(result, "invoice"))
        return ControlResult(name, True, f"Invoice {doc} found in QBO")

    async def _invoice_paid(self, bill: Bill, tenant_code: str) -> ControlResult:
        name = "invoicePaid"
        doc = bill.external_invoice_doc_num
        if not doc:
            return ControlResult(name, False, "Cannot verify (no invoice DocNumber)")

        result = await capture(self.clients.qbo_for(tenant_code).is_invoice_paid(doc))
        if isinstance(result, Err):
            if result.kind is ErrorKind.CONFIGURATION:
                return ControlResult(name, False, _unverifiable(result, "invoice"))
            return ControlResult(name, False, f"Cannot verify (invoice lookup failed: {result.detail})")
        state = result.value
        return ControlResult(
            name,
            state.paid,
            f"Paid{_day(state.paid_date)}" if state.paid else "Invoice not yet paid",
        )

    async def _invoice_not_voided(self, bill: Bill, tenant_code: str) -> ControlResult:
        name = "invoiceNotVoided"
        doc = bill.external_invoice_doc_num
        if not doc:
            return ControlResult(name, False, "Cannot verify (no invoice DocNumber)")

        result = await capture(self.clients.qbo_for(tenant_code).is_invoice_paid(doc))
        if isinstance(result, Err):
            if result.kind is ErrorKind.CONFIGURATION:
                return ControlResult(name, False, _unverifiable(result, "invoice"))
            return ControlResult(name, False, f"Cannot verify (invoice lookup failed: {result.detail})")
        state = result.value
        return ControlResult(
            name,
            not state.voided,
            f"Voided{_day(state.voided_date)}" if state.voided else "Invoice active",
        )

    async def _bill_exists_in_qbo(self, bill: Bill, tenant_code: str) -> ControlResult:
        name = "billExistsInQbo"
        if not bill.external_bill_id:
            return ControlResult(name, False, "No QBO bill ID on bill")

        result = await capture(self.clients.qbo_for(tenant_code).get_bill(bill.external_bill_id))
        if isinstance(result, Err):
            if result.not_found:
                return ControlResult(name, False, f"QBO bill {bill.external_bill_id} not found")
            return ControlResult(name, False, _unverifiable(result, "QBO bill"))
        qbo_bill = result.value
        return ControlResult(
            name, True, f"QBO Bill: {qbo_bill.doc_number} (${qbo_bill.total_amount:.2f})"
        )

    async def _vendor_exists_in_qbo(self, bill: Bill, tenant_code: str) -> ControlResult:
        name = "vendorExistsInQbo"
        if not bill.external_bill_id:
            return ControlResult(name, False, "Cannot verify (no QBO bill ID on bill)")

        result = await capture(self.clients.qbo_for(tenant_code).get_bill(bill.external_bill_id))
        if isinstance(result, Err):
            if result.not_found:
                return ControlResult(name, False, "Cannot verify (QBO bill not found)")
            return ControlResult(name, False, _unverifiable(result, "vendor"))

        qbo_bill = result.value
        if not qbo_bill.vendor_id:
            return ControlResult(name, False, "QBO bill has no vendor")
        if bill.qbo_vendor_id and bill.qbo_vendor_id != qbo_bill.vendor_id:
            return ControlResult(
                name,
                False,
                f"Vendor mismatch: QBO bill is linked to {qbo_bill.vendor_id}, "
                f"bill expects {bill.qbo_vendor_id}",
            )
        return ControlResult(
            name, True, f"Vendor: {qbo_bill.vendor_name or qbo_bill.vendor_id} ({qbo_bill.vendor_id})"
        )

    # ------------------------------------------------------------------
    # US rail
    # ------------------------------------------------------------------

    async def _billcom_controls(self, bill: Bill) -> list[ControlResult]:
        billcom = self.clients.billcom
        doc = bill.external_bill_doc_num
        rail_bill: BillComBill | None = None

        if not doc:
            exists = ControlResult("billExistsInBillCom", False, "No bill invoice number to search")
        else:
            found = await capture(billcom.find_bill_by_invoice_number(doc))
            if isinstance(found, Err):
                exists = ControlResult("billExistsInBillCom", False, _unverifiable(found, "Bill.com bill"))
            elif found.value is None:
                exists = ControlResult("billExistsInBillCom", False, f'Bill "{doc}" not found in Bill.com')
            else:
                rail_bill = found.value
                exists = ControlResult(
                    "billExistsInBillCom", True, f"Bill.com: {rail_bill.id} (${rail_bill.amount:.2f})"
                )

        if rail_bill is None:
            vendor = ControlResult("vendorExistsInBillCom", False, "Cannot verify (bill not found in Bill.com)")
        elif not rail_bill.vendor_id:
            vendor = ControlResult("vendorExistsInBillCom", False, "Bill.com bill has no vendor")
        else:
            resolved = await capture(billcom.get_vendor(rail_bill.vendor_id))
            if isinstance(resolved, Err):
                vendor = ControlResult("vendorExistsInBillCom", False, _unverifiable(resolved, "vendor"))
            elif resolved.value is None or not resolved.value.is_active:
                vendor = ControlResult(
                    "vendorExistsInBillCom", False, f"Vendor {rail_bill.vendor_id} not found or inactive in Bill.com"
                )
            else:
                vendor = ControlResult(
                    "vendorExistsInBillCom", True, f"Vendor: {resolved.value.name} ({resolved.value.id})"
                )

        if rail_bill is None:
            approved = ControlResult("billApprovedInBillCom", False, "Cannot verify (bill not found in Bill.com)")
        elif rail_bill.approval_status in APPROVED_STATUSES:
            approved = ControlResult("billApprovedInBillCom", True, "Bill approved in Bill.com")
        else:
            approved = ControlResult(
                "billApprovedInBillCom", False, f"Bill not approved (status: {rail_bill.approval_status})"
            )

        return [exists, vendor, approved]

    # ------------------------------------------------------------------
    # CA rail
    # ------------------------------------------------------------------

    async def _wise_controls(self, bill: Bill) -> list[ControlResult]:
        mapping: RecipientMapping | None = None

        if not bill.qbo_vendor_id:
            mapped = ControlResult("recipientMappedInSystem", False, "No QBO vendor ID on bill")
        else:
            lookup = await capture(self._find_mapping(bill.qbo_vendor_id))
            if isinstance(lookup, Err):
                mapped = ControlResult("recipientMappedInSystem", False, f"Database error: {lookup.detail}")
            elif lookup.value is None:
                mapped = ControlResult(
                    "recipientMappedInSystem",
                    False,
                    f'No recipient mapping for vendor {bill.qbo_vendor_id} ("{bill.resource_name}")',
                )
            else:
                mapping = lookup.value
                target = mapping.email or mapping.wise_contact_id or mapping.wise_account_id
                mapped = ControlResult(
                    "recipientMappedInSystem", True, f"Mapped to: {target} ({mapping.target_currency})"
                )

        if mapping is None:
            exists = ControlResult("recipientExistsInWise", False, "Cannot verify (no recipient mapping)")
        else:
            located = await capture(self._locate_wise_recipient(mapping))
            if isinstance(located, Err):
                exists = ControlResult("recipientExistsInWise", False, _unverifiable(located, "Wise contact"))
            elif located.value is None:
                exists = ControlResult(
                    "recipientExistsInWise",
                    False,
                    f"No Wise contact found for {mapping.email or mapping.wise_contact_id}",
                )
            else:
                exists = ControlResult("recipientExistsInWise", True, f"Wise contact: {located.value}")

        return [mapped, exists]

    async def _find_mapping(self, vendor_id: str) -> RecipientMapping | None:
        stmt = select(RecipientMapping).where(
            RecipientMapping.qbo_vendor_id == vendor_id,
            RecipientMapping.is_active.is_(True),
        )
        return (await self.db.execute(stmt)).scalar_one_or_none()

    async def _locate_wise_recipient(self, mapping: RecipientMapping) -> str | None:
        """Confirm the mapped contact still exists rail-side; returns a description."""
        wise = self.clients.wise
        contact_id = mapping.wise_contact_id
        if contact_id and "-" in contact_id:
            contact = await wise.find_contact_by_id(contact_id)
            if contact is not None:
                return f"{contact.name} ({contact.id})"
        elif contact_id and contact_id.isdigit():
            account = await wise.get_account(contact_id)
            if account is not None:
                return f"{account.account_holder_name} ({account.id})"
        if mapping.email:
            contact = await wise.find_contact_by_email(mapping.email)
            if contact is not None:
                return f"{contact.name} ({contact.id})"
        return None

    # ------------------------------------------------------------------
    # General
    # ------------------------------------------------------------------

    async def _not_already_paid(self, bill: Bill) -> ControlResult:
        name = "notAlreadyPaid"
        stmt = (
            select(PaymentRecord.id)
            .where(
                PaymentRecord.bill_id == bill.uid,
                PaymentRecord.status == PaymentStatus.PAID.value,
            )
            .limit(1)
        )
        result = await capture(self._scalar(stmt))
        if isinstance(result, Err):
            return ControlResult(name, False, f"Cannot verify (payment lookup failed: {result.detail})")
        if result.value is not None:
            return ControlResult(name, False, f"Already paid (record: {result.value})")
        return ControlResult(name, True, "No prior payment")

    async def _scalar(self, stmt: Any) -> Any:
        return (await self.db.execute(stmt)).scalar_one_or_none()

    def _proving_period(self, bill: Bill, required_hours: int) -> ControlResult:
        name = "provingPeriod"
        if bill.trx_date is None:
            return ControlResult(name, False, "No transaction date on bill")

        elapsed = (self._now() - bill.trx_date).total_seconds() / 3600
        passed = elapsed >= required_hours
        hours = math.floor(elapsed)
        reason = f"{hours}h elapsed (required: {required_hours}h)"
        return ControlResult(name, passed, reason if passed else f"Only {reason}")

    def _amount_valid(self, bill: Bill) -> ControlResult:
        amount = bill.adjusted_bill_payment
        if amount > 0:
            return ControlResult("amountValid", True, f"${amount:.2f}")
        return ControlResult("amountValid", False, "Invalid amount (must be > 0)")


# ============================================================================
# Inputs
# ============================================================================


async def fetch_bill(clients: ProviderClients, bill_id: str) -> Bill:
    """Load a bill from the approval system; a missing bill is a domain error."""
    try:
        return await clients.partnerconnect.get_bill(bill_id)
    except NotFoundError as exc:
        raise BillNotFound(bill_id) from exc


async def proving_period_for(db: AsyncSession, tenant_code: str, default: int) -> int:
    """Per-tenant proving period, falling back to ``default``."""
    stmt = select(Tenant.proving_period_hours).where(Tenant.code == tenant_code)
    hours = (await db.execute(stmt)).scalar_one_or_none()
    return default if hours is None else hours
