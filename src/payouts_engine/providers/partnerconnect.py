"""Bill-approval system client (PartnerConnect).

OAuth2 client-credentials against Auth0. The access token is cached on the
instance and refreshed 60 seconds before it expires. The API is a .NET
service, so payloads arrive in PascalCase; ``pick`` folds them into
``Bill`` fields.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any

import httpx

from payouts_engine.config import HttpConfig, PartnerConnectConfig
from payouts_engine.errors import AuthenticationError, TransportError
from payouts_engine.providers.base import (
    ProviderClient,
    pick,
    to_datetime,
    to_decimal,
    to_text,
)

logger = logging.getLogger(__name__)

TOKEN_REFRESH_BUFFER_SECONDS = 60
DEFAULT_TOKEN_TTL_SECONDS = 600

CA_TENANT_ALIASES = frozenset({"CA", "CAN", "CANADA"})


def normalize_tenant_code(value: str | None) -> str:
    """``CA``/``CAN``/``Canada`` map to CA; everything else is US."""
    if value and value.strip().upper() in CA_TENANT_ALIASES:
        return "CA"
    return "US"


@dataclass(frozen=True)
class Bill:
    """An approved bill as read from the approval system. Read-only."""

    uid: str
    description: str
    process_code: str | None
    status_code: str | None
    amount: Decimal
    adjusted_bill_payment: Decimal
    client_name: str | None
    resource_uid: str | None
    resource_name: str | None
    qbo_vendor_id: str | None
    trx_date: datetime | None
    external_invoice_doc_num: str | None
    external_bill_doc_num: str | None
    external_bill_id: str | None
    tenant_code: str
    payee_email: str | None = None

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> Bill:
        return cls(
            uid=str(pick(data, "uid", "id", default="")),
            description=str(pick(data, "description", default="")),
            process_code=to_text(pick(data, "processCode")),
            status_code=to_text(pick(data, "statusCode", "status")),
            amount=to_decimal(pick(data, "amount", "billAmount")),
            adjusted_bill_payment=to_decimal(pick(data, "adjustedBillPayment", "amount")),
            client_name=to_text(pick(data, "clientName")),
            resource_uid=to_text(pick(data, "resourceUid")),
            resource_name=to_text(pick(data, "resourceName", "payeeName")),
            qbo_vendor_id=to_text(pick(data, "qboVendorId", "payeeVendorId")),
            trx_date=to_datetime(pick(data, "trxDate", "transactionDate")),
            external_invoice_doc_num=to_text(pick(data, "externalInvoiceDocNum")),
            external_bill_doc_num=to_text(pick(data, "externalBillDocNum")),
            external_bill_id=to_text(pick(data, "externalBillId")),
            tenant_code=normalize_tenant_code(pick(data, "tenantCode", "tenant")),
            payee_email=to_text(pick(data, "payeeEmail")),
        )

    @property
    def payee_last_name(self) -> str:
        parts = (self.resource_name or "").split()
        return parts[-1] if parts else "Payment"


class PartnerConnectClient(ProviderClient):
    """PartnerConnect API client with a cached client-credentials token."""

    source = "partnerconnect"

    def __init__(
        self,
        config: PartnerConnectConfig,
        *,
        http: HttpConfig | None = None,
        client: httpx.AsyncClient | None = None,
        clock: Callable[[], float] = time.time,
        **kwargs: Any,
    ):
        super().__init__(config.api_url, http=http, client=client, **kwargs)
        self.config = config
        self._clock = clock
        self._access_token: str | None = None
        self._token_expires_at = 0.0

    @property
    def is_configured(self) -> bool:
        return self.config.is_configured

    # ------------------------------------------------------------------
    # Auth
    # ------------------------------------------------------------------

    @property
    def has_valid_token(self) -> bool:
        return self._access_token is not None and self._clock() < self._token_expires_at

    def _invalidate_auth(self) -> None:
        self._access_token = None
        self._token_expires_at = 0.0

    async def get_access_token(self) -> str:
        """Return the cached token, fetching a new one when near expiry."""
        self.require_configured()
        if self.has_valid_token:
            return self._access_token  # type: ignore[return-value]

        token_url = f"https://{self.config.auth0_domain}/oauth/token"
        try:
            response = await self._client.post(
                token_url,
                json={
                    "client_id": self.config.client_id,
                    "client_secret": self.config.client_secret,
                    "audience": self.config.audience,
                    "grant_type": "client_credentials",
                },
            )
        except httpx.HTTPError as exc:
            raise TransportError(
                f"Failed to get OAuth2 token: {exc}", source=self.source
            ) from exc

        if not response.is_success:
            try:
                body = response.json()
            except ValueError:
                body = {}
            detail = body.get("error_description") or body.get("error") or "Unknown error"
            raise AuthenticationError(
                f"OAuth2 authentication failed: {detail}", source=self.source
            )

        data = response.json()
        expires_in = int(data.get("expires_in") or DEFAULT_TOKEN_TTL_SECONDS)
        self._access_token = data["access_token"]
        self._token_expires_at = self._clock() + expires_in - TOKEN_REFRESH_BUFFER_SECONDS
        logger.debug("PartnerConnect token refreshed; expires in %ss", expires_in)
        return self._access_token

    async def _auth_headers(self) -> dict[str, str]:
        token = await self.get_access_token()
        return {"Authorization": f"Bearer {token}"}

    # ------------------------------------------------------------------
    # Bills
    # ------------------------------------------------------------------

    async def get_bill(self, uid: str) -> Bill:
        data = await self._json("GET", f"/api/bills/{uid}", what=f"Bill {uid}")
        return Bill.from_payload(data)

    async def get_approved_bills(self) -> list[Bill]:
        data = await self._json(
            "GET", "/api/bills", what="approved bills", params={"status": "approved"}
        )
        items = data if isinstance(data, list) else pick(data, "items", "bills", default=[])
        return [Bill.from_payload(item) for item in items]

    async def check_connection(self) -> None:
        """Raise unless a token can be obtained."""
        await self.get_access_token()
