"""US rail client (Bill.com API v2).

Bill.com v2 is form-encoded: every call posts ``sessionId``, ``devKey`` and a
JSON ``data`` field, and reports failures in the body (``response_status``
!= 0) rather than through HTTP status codes.

The session lasts 30 minutes. When a device-trust token (``mfa_id``) from a
previous MFA validation is available the login carries it and the session
is created already trusted; only a trusted session may move money.
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any

import httpx

from payouts_engine.config import BillComConfig, HttpConfig
from payouts_engine.errors import AuthenticationError, MfaRequired, ProviderError
from payouts_engine.providers.base import ProviderClient, pick, to_decimal, to_text

logger = logging.getLogger(__name__)

SESSION_DURATION_SECONDS = 30 * 60
SESSION_EXPIRED_CODE = "BDC_1109"

# Bill.com approvalStatus: 0 unassigned, 1 assigned, 2 approving, 3 approved, 4 denied
APPROVED_STATUSES = frozenset({"3", "Approved", "approved"})


@dataclass(frozen=True)
class BillComVendor:
    id: str
    name: str
    is_active: bool
    email: str | None = None

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> BillComVendor:
        return cls(
            id=str(pick(data, "id", default="")),
            name=str(pick(data, "name", default="")),
            is_active=str(pick(data, "isActive", default="1")) == "1",
            email=to_text(pick(data, "email", "paymentEmail")),
        )


@dataclass(frozen=True)
class BillComBill:
    id: str
    vendor_id: str | None
    invoice_number: str
    amount: Decimal
    due_amount: Decimal
    payment_status: str | None
    approval_status: str | None

    @property
    def approved(self) -> bool:
        return self.approval_status in APPROVED_STATUSES

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> BillComBill:
        return cls(
            id=str(pick(data, "id", default="")),
            vendor_id=to_text(pick(data, "vendorId")),
            invoice_number=str(pick(data, "invoiceNumber", default="")),
            amount=to_decimal(pick(data, "amount")),
            due_amount=to_decimal(pick(data, "dueAmount")),
            payment_status=to_text(pick(data, "paymentStatus")),
            approval_status=to_text(pick(data, "approvalStatus")),
        )


@dataclass(frozen=True)
class BillComPayment:
    id: str
    bill_id: str
    vendor_id: str | None
    amount: Decimal
    status: str | None
    process_date: str | None


class BillComClient(ProviderClient):
    """Bill.com v2 client with session and MFA trust management."""

    source = "billcom"

    def __init__(
        self,
        config: BillComConfig,
        *,
        http: HttpConfig | None = None,
        client: httpx.AsyncClient | None = None,
        clock: Callable[[], float] = time.time,
        **kwargs: Any,
    ):
        super().__init__(config.api_url, http=http, client=client, **kwargs)
        self.config = config
        self._clock = clock
        self._mfa_id = config.mfa_id
        self._device_id = config.device_id
        self._session_id: str | None = None
        self._session_trusted = False
        self._session_expires_at = 0.0

    @property
    def is_configured(self) -> bool:
        return self.config.is_configured

    @property
    def is_mfa_configured(self) -> bool:
        return bool(self._mfa_id)

    @property
    def is_trusted(self) -> bool:
        """True when the current session may authorize payments."""
        return self._session_id is not None and self._session_trusted

    def mfa_status(self) -> dict[str, bool]:
        return {
            "configured": self.is_configured,
            "mfa_configured": self.is_mfa_configured,
            "trusted": self.is_trusted,
        }

    def _invalidate_auth(self) -> None:
        self._session_id = None
        self._session_trusted = False
        self._session_expires_at = 0.0

    # ------------------------------------------------------------------
    # Session
    # ------------------------------------------------------------------

    async def login(self) -> str:
        """Return the cached session id, logging in when it has expired."""
        self.require_configured()
        if self._session_id and self._clock() < self._session_expires_at:
            return self._session_id

        form = {
            "userName": self.config.username,
            "password": self.config.password,
            "devKey": self.config.dev_key,
            "orgId": self.config.org_id,
        }
        if self._mfa_id:
            form["mfaId"] = self._mfa_id
            form["deviceId"] = self._device_id or ""

        response = await self._request(
            "POST", "/Login.json", authenticate=False, data=form
        )
        body = _decode(response)
        data = body.get("response_data") or {}
        if body.get("response_status") != 0 or not data.get("sessionId"):
            message = data.get("error_message") or body.get("response_message") or "Unknown error"
            raise AuthenticationError(f"Bill.com login failed: {message}", source=self.source)

        self._session_id = data["sessionId"]
        self._session_trusted = bool(self._mfa_id)
        self._session_expires_at = self._clock() + SESSION_DURATION_SECONDS
        logger.info("Bill.com session established (trusted=%s)", self._session_trusted)
        return self._session_id

    async def _call(self, endpoint: str, data: dict[str, Any] | None = None) -> Any:
        """POST a v2 operation, re-logging in once if the session expired."""
        for attempt in range(2):
            session_id = await self.login()
            form = {"sessionId": session_id, "devKey": self.config.dev_key or ""}
            if data is not None:
                form["data"] = json.dumps(data)

            response = await self._request("POST", endpoint, authenticate=False, data=form)
            self._raise_for_status(response, endpoint)
            body = _decode(response)
            if body.get("response_status") == 0:
                return body.get("response_data")

            payload = body.get("response_data") or {}
            code = payload.get("error_code") if isinstance(payload, dict) else None
            if code == SESSION_EXPIRED_CODE and attempt == 0:
                logger.warning("Bill.com session expired; logging in again")
                self._invalidate_auth()
                continue

            message = (
                payload.get("error_message") if isinstance(payload, dict) else None
            ) or body.get("response_message") or "Unknown error"
            raise ProviderError(
                f"Bill.com {endpoint} failed: {message}",
                source=self.source,
                code=code,
                payload=payload,
            )
        raise AuthenticationError("Bill.com session could not be renewed", source=self.source)

    # ------------------------------------------------------------------
    # Vendors and bills
    # ------------------------------------------------------------------

    async def list_vendors(self, name: str | None = None, *, max_results: int = 10) -> list[BillComVendor]:
        query: dict[str, Any] = {"start": 0, "max": max_results}
        if name:
            query["filters"] = [{"field": "name", "op": "=", "value": name}]
        results = await self._call("/List/Vendor.json", query) or []
        return [BillComVendor.from_payload(item) for item in results]

    async def get_vendor(self, vendor_id: str) -> BillComVendor | None:
        data = await self._call("/Read/Vendor.json", {"id": vendor_id})
        return BillComVendor.from_payload(data) if data else None

    async def list_bills(
        self, invoice_number: str | None = None, *, max_results: int = 10
    ) -> list[BillComBill]:
        query: dict[str, Any] = {"start": 0, "max": max_results}
        if invoice_number:
            query["filters"] = [{"field": "invoiceNumber", "op": "=", "value": invoice_number}]
        results = await self._call("/List/Bill.json", query) or []
        return [BillComBill.from_payload(item) for item in results]

    async def find_bill_by_invoice_number(self, invoice_number: str) -> BillComBill | None:
        bills = await self.list_bills(invoice_number)
        return bills[0] if bills else None

    # ------------------------------------------------------------------
    # MFA
    # ------------------------------------------------------------------

    async def initiate_mfa(self) -> str:
        """Send an MFA code to the registered phone; returns the challenge id."""
        result = await self._call("/MFAChallenge.json", {})
        return str(pick(result, "challengeId", default=""))

    async def validate_mfa(self, challenge_id: str, code: str) -> str:
        """Complete the challenge and re-login with the resulting trust token."""
        result = await self._call(
            "/MFAAuthenticate.json",
            {
                "challengeId": challenge_id,
                "token": code,
                "deviceId": self._device_id,
                "machineName": self._device_id,
            },
        )
        mfa_id = str(pick(result, "mfaId", default=""))
        if not mfa_id:
            raise AuthenticationError("Bill.com MFA validation returned no mfaId", source=self.source)
        self._mfa_id = mfa_id
        # Next login carries the trust token
        self._invalidate_auth()
        logger.info("Bill.com MFA validated; device is now trusted")
        return mfa_id

    # ------------------------------------------------------------------
    # Payments
    # ------------------------------------------------------------------

    async def pay_bill(
        self,
        bill: BillComBill,
        amount: Decimal,
        process_date: date | None = None,
    ) -> BillComPayment:
        """Pay ``bill`` for ``amount``. Requires a trusted session."""
        await self.login()
        if not self.is_trusted:
            raise MfaRequired()

        process_date = process_date or date.today()
        result = await self._call(
            "/PayBills.json",
            {
                "vendorId": bill.vendor_id,
                "processDate": process_date.isoformat(),
                "billPays": [{"billId": bill.id, "amount": float(amount)}],
            },
        )
        payment = result[0] if isinstance(result, list) and result else (result or {})
        return BillComPayment(
            id=str(pick(payment, "id", "sentPayId", default="")),
            bill_id=bill.id,
            vendor_id=to_text(pick(payment, "vendorId")) or bill.vendor_id,
            amount=to_decimal(pick(payment, "amount", default=amount)),
            status=to_text(pick(payment, "status")),
            process_date=to_text(pick(payment, "processDate")) or process_date.isoformat(),
        )

    async def get_payment_status(self, payment_id: str) -> str | None:
        """Current SentPay status string for a payment."""
        data = await self._call("/Read/SentPay.json", {"id": payment_id})
        return to_text(pick(data, "status"))

    async def check_connection(self) -> None:
        await self.login()


def _decode(response: httpx.Response) -> dict[str, Any]:
    try:
        body = response.json()
    except ValueError as exc:
        raise ProviderError(
            f"Bill.com returned a non-JSON response ({response.status_code})",
            source="billcom",
            status_code=response.status_code,
        ) from exc
    return body if isinstance(body, dict) else {}
