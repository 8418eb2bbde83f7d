"""Accounting system client (QuickBooks Online via the fpqbo proxy).

One client per tenant: each tenant has its own API key and maps onto a
different company id inside the proxy.

QBO reports a missing entity in several ways (plain 404, a 500 whose detail
says "Object Not Found", or a ``610:`` fault code). All of them become
``NotFoundError`` so callers can treat a deleted record as an ordinary
failed check rather than an outage.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any

import httpx

from payouts_engine.config import HttpConfig, QboConfig
from payouts_engine.errors import NotFoundError
from payouts_engine.providers.base import (
    ProviderClient,
    error_text,
    pick,
    to_datetime,
    to_decimal,
)

logger = logging.getLogger(__name__)

COMPANY_IDS = {"US": "1", "CA": "2"}


def is_not_found_response(response: httpx.Response) -> bool:
    """True when the proxy is telling us the QBO object does not exist."""
    if response.status_code == 404:
        return True
    detail = error_text(response)
    if response.status_code == 500 and "Object Not Found" in detail:
        return True
    return "610:" in detail


@dataclass(frozen=True)
class QboInvoice:
    id: str
    doc_number: str
    total_amount: Decimal
    balance: Decimal
    voided: bool
    paid_date: datetime | None = None
    voided_date: datetime | None = None
    customer_name: str | None = None

    @property
    def paid(self) -> bool:
        return not self.voided and self.balance == 0

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> QboInvoice:
        status = str(pick(data, "status", default="")).lower()
        voided_date = to_datetime(pick(data, "voidedDate"))
        customer = pick(data, "customerRef") or {}
        return cls(
            id=str(pick(data, "id", default="")),
            doc_number=str(pick(data, "docNumber", default="")),
            total_amount=to_decimal(pick(data, "totalAmount", "totalAmt")),
            balance=to_decimal(pick(data, "balance")),
            voided=status == "voided" or voided_date is not None,
            paid_date=to_datetime(pick(data, "paidDate")),
            voided_date=voided_date,
            customer_name=pick(data, "customerName") or pick(customer, "name"),
        )


@dataclass(frozen=True)
class QboBill:
    id: str
    doc_number: str
    total_amount: Decimal
    balance: Decimal
    vendor_id: str | None
    vendor_name: str | None

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> QboBill:
        vendor = pick(data, "vendorRef") or {}
        return cls(
            id=str(pick(data, "id", default="")),
            doc_number=str(pick(data, "docNumber", default="")),
            total_amount=to_decimal(pick(data, "totalAmount", "totalAmt")),
            balance=to_decimal(pick(data, "balance")),
            vendor_id=pick(data, "vendorId") or pick(vendor, "value"),
            vendor_name=pick(data, "vendorName") or pick(vendor, "name"),
        )


@dataclass(frozen=True)
class InvoicePaymentState:
    paid: bool
    voided: bool
    paid_date: datetime | None = None
    voided_date: datetime | None = None


class QboClient(ProviderClient):
    """Accounting proxy client for a single tenant."""

    source = "fpqbo"

    def __init__(
        self,
        config: QboConfig,
        tenant_code: str,
        *,
        http: HttpConfig | None = None,
        client: httpx.AsyncClient | None = None,
        **kwargs: Any,
    ):
        super().__init__(config.api_url, http=http, client=client, **kwargs)
        self.config = config
        self.tenant_code = tenant_code
        self.company_id = COMPANY_IDS.get(tenant_code, COMPANY_IDS["US"])
        self._api_key = config.api_key_for(tenant_code)

    @property
    def is_configured(self) -> bool:
        return bool(self.config.api_url and self._api_key)

    async def _auth_headers(self) -> dict[str, str]:
        return {"X-API-Key": self._api_key or ""}

    def _raise_for_status(self, response: httpx.Response, what: str) -> None:
        if not response.is_success and is_not_found_response(response):
            logger.info("QBO %s not found (tenant %s)", what, self.tenant_code)
            raise NotFoundError(f"{what} not found in QBO", source=self.source)
        super()._raise_for_status(response, what)

    async def get_invoice_by_doc_number(self, doc_number: str) -> QboInvoice:
        data = await self._json(
            "GET",
            f"/api/invoices/by-doc-number/{doc_number}",
            what=f"Invoice {doc_number}",
            params={"company_id": self.company_id},
        )
        return QboInvoice.from_payload(data)

    async def is_invoice_paid(self, doc_number: str) -> InvoicePaymentState:
        invoice = await self.get_invoice_by_doc_number(doc_number)
        return InvoicePaymentState(
            paid=invoice.paid,
            voided=invoice.voided,
            paid_date=invoice.paid_date,
            voided_date=invoice.voided_date,
        )

    async def get_bill(self, bill_id: str) -> QboBill:
        data = await self._json(
            "GET",
            f"/api/bills/{bill_id}",
            what=f"Bill {bill_id}",
            params={"company_id": self.company_id},
        )
        return QboBill.from_payload(data)

    async def check_connection(self) -> None:
        response = await self._request("GET", "/health")
        self._raise_for_status(response, "health check")
