"""Cross-border rail client (Wise).

Bearer-token auth. The business profile id is discovered once and cached on
the instance; a Canadian business profile is preferred because it holds the
CAD balance payouts are funded from.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any
from uuid import uuid4

import httpx

from payouts_engine.config import HttpConfig, WiseConfig
from payouts_engine.errors import NotFoundError, ProviderError
from payouts_engine.providers.base import ProviderClient, pick, to_decimal, to_text

logger = logging.getLogger(__name__)

MAX_CONTACT_PAGES = 10
REFERENCE_MAX_LENGTH = 10
SOURCE_OF_FUNDS = "verification.source.of.funds.other"


def truncate_reference(reference: str) -> str:
    return reference[:REFERENCE_MAX_LENGTH]


@dataclass(frozen=True)
class WiseContact:
    """A directory contact (v2 contacts API). ``id`` is a UUID string."""

    id: str
    name: str
    email: str | None
    active: bool = True
    hidden: bool = False
    is_self: bool = False

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> WiseContact:
        display = pick(data, "display") or {}
        email = None
        for detail in pick(display, "details", default=[]):
            if str(pick(detail, "label", default="")).lower() == "email":
                email = to_text(pick(detail, "value"))
                break
        return cls(
            id=str(pick(data, "id", default="")),
            name=str(pick(data, "name", default="")),
            email=email,
            active=bool(pick(data, "active", default=True)),
            hidden=bool(pick(data, "hidden", default=False)),
            is_self=bool(pick(data, "self", default=False)),
        )


@dataclass(frozen=True)
class WiseAccount:
    """A payable recipient account (v1 accounts API). ``id`` is numeric."""

    id: int
    account_holder_name: str
    currency: str | None
    type: str | None
    email: str | None = None

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> WiseAccount:
        details = pick(data, "details") or {}
        name = pick(data, "accountHolderName")
        if name is None:
            name = pick(pick(data, "name") or {}, "fullName", default="")
        return cls(
            id=int(pick(data, "id")),
            account_holder_name=str(name),
            currency=to_text(pick(data, "currency")),
            type=to_text(pick(data, "type")),
            email=to_text(pick(details, "email")),
        )


@dataclass(frozen=True)
class WiseQuote:
    id: str
    source_currency: str
    target_currency: str
    source_amount: Decimal
    target_amount: Decimal
    rate: Decimal
    fee: Decimal

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> WiseQuote:
        fee = pick(data, "fee")
        if fee is None:
            for option in pick(data, "paymentOptions", default=[]):
                if pick(option, "payIn") == "BALANCE" and pick(option, "payOut") == "BALANCE":
                    fee = pick(pick(option, "fee") or {}, "total")
                    break
        return cls(
            id=str(pick(data, "id", default="")),
            source_currency=str(pick(data, "sourceCurrency", default="")),
            target_currency=str(pick(data, "targetCurrency", default="")),
            source_amount=to_decimal(pick(data, "sourceAmount")),
            target_amount=to_decimal(pick(data, "targetAmount")),
            rate=to_decimal(pick(data, "rate")),
            fee=to_decimal(fee),
        )


@dataclass(frozen=True)
class WiseTransfer:
    id: str
    status: str | None
    reference: str | None = None
    target_account: str | None = None

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> WiseTransfer:
        return cls(
            id=str(pick(data, "id", default="")),
            status=to_text(pick(data, "status")),
            reference=to_text(pick(data, "reference")),
            target_account=to_text(pick(data, "targetAccount")),
        )


@dataclass(frozen=True)
class WiseBalance:
    id: str
    currency: str
    amount: Decimal
    reserved: Decimal

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> WiseBalance:
        amount = pick(data, "amount") or {}
        reserved = pick(data, "reservedAmount") or {}
        return cls(
            id=str(pick(data, "id", default="")),
            currency=str(pick(data, "currency", default="")),
            amount=to_decimal(pick(amount, "value")),
            reserved=to_decimal(pick(reserved, "value")),
        )


class WiseClient(ProviderClient):
    """Wise API client."""

    source = "wise"

    def __init__(
        self,
        config: WiseConfig,
        *,
        http: HttpConfig | None = None,
        client: httpx.AsyncClient | None = None,
        **kwargs: Any,
    ):
        super().__init__(config.base_url, http=http, client=client, **kwargs)
        self.config = config
        self._business_profile_id: int | None = None

    @property
    def is_configured(self) -> bool:
        return self.config.is_configured

    async def _auth_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.config.api_token}"}

    # ------------------------------------------------------------------
    # Profile
    # ------------------------------------------------------------------

    async def get_business_profile_id(self) -> int:
        if self._business_profile_id is not None:
            return self._business_profile_id

        profiles = await self._json("GET", "/v2/profiles", what="profiles") or []
        business = [
            p for p in profiles if str(pick(p, "type", default="")).upper() == "BUSINESS"
        ]
        chosen = next(
            (p for p in business if "canada" in str(pick(p, "businessName", default="")).lower()),
            business[0] if business else None,
        )
        if chosen is None:
            raise ProviderError("No Wise business profile found", source=self.source)

        self._business_profile_id = int(pick(chosen, "id"))
        logger.info(
            "Using Wise business profile %s (%s)",
            self._business_profile_id, pick(chosen, "businessName", default="unnamed"),
        )
        return self._business_profile_id

    # ------------------------------------------------------------------
    # Contacts and accounts
    # ------------------------------------------------------------------

    async def list_contacts(self) -> list[WiseContact]:
        """All directory contacts, following pagination up to a fixed page limit."""
        profile_id = await self.get_business_profile_id()
        contacts: list[WiseContact] = []
        next_page: str | None = None

        for _ in range(MAX_CONTACT_PAGES):
            params = {"page": next_page} if next_page else None
            page = await self._json(
                "GET", f"/v2/profiles/{profile_id}/contacts", what="contacts", params=params
            ) or {}
            contacts.extend(WiseContact.from_payload(c) for c in pick(page, "contacts", default=[]))
            next_page = pick(page, "nextPage")
            if not next_page:
                break
        return contacts

    async def list_recipients(self) -> list[WiseContact]:
        """Active, visible, non-self contacts."""
        return [c for c in await self.list_contacts() if c.active and not c.hidden and not c.is_self]

    async def find_contact_by_email(self, email: str) -> WiseContact | None:
        wanted = email.strip().lower()
        for contact in await self.list_recipients():
            if contact.email and contact.email.lower() == wanted:
                return contact
        return None

    async def find_contact_by_id(self, contact_id: str) -> WiseContact | None:
        for contact in await self.list_recipients():
            if contact.id == contact_id:
                return contact
        return None

    async def get_contact_accounts(self, contact_id: str) -> list[WiseAccount]:
        profile_id = await self.get_business_profile_id()
        data = await self._json(
            "GET",
            f"/v2/profiles/{profile_id}/contacts/{contact_id}/accounts",
            what=f"Accounts for contact {contact_id}",
        ) or {}
        return [WiseAccount.from_payload(a) for a in pick(data, "content", default=[])]

    async def get_account(self, account_id: int | str) -> WiseAccount | None:
        try:
            data = await self._json("GET", f"/v1/accounts/{account_id}", what=f"Account {account_id}")
        except NotFoundError:
            return None
        return WiseAccount.from_payload(data) if data else None

    async def list_accounts(self, currency: str | None = None) -> list[WiseAccount]:
        profile_id = await self.get_business_profile_id()
        params: dict[str, Any] = {"profileId": profile_id}
        if currency:
            params["currency"] = currency
        data = await self._json("GET", "/v1/accounts", what="accounts", params=params) or []
        return [WiseAccount.from_payload(a) for a in data]

    async def find_account_by_name(self, name: str, currency: str | None = None) -> WiseAccount | None:
        """Exact holder-name match first, then every name part appearing in the holder name."""
        accounts = await self.list_accounts(currency)
        wanted = name.strip().lower()
        for account in accounts:
            if account.account_holder_name.lower() == wanted:
                return account

        parts = wanted.split()
        if not parts:
            return None
        for account in accounts:
            holder_parts = account.account_holder_name.lower().split()
            if all(any(hp in part or part in hp for hp in holder_parts) for part in parts):
                return account
        return None

    async def create_email_recipient(self, name: str, email: str, currency: str) -> int:
        """Create a payable account addressed by email; returns its numeric id."""
        profile_id = await self.get_business_profile_id()
        data = await self._json(
            "POST",
            "/v1/accounts",
            what="email recipient",
            json={
                "profile": profile_id,
                "accountHolderName": name,
                "currency": currency,
                "type": "email",
                "details": {"email": email},
            },
        )
        account_id = int(pick(data, "id"))
        logger.info("Created Wise email recipient %s for %s", account_id, name)
        return account_id

    # ------------------------------------------------------------------
    # Quotes and transfers
    # ------------------------------------------------------------------

    async def create_quote(
        self,
        source_currency: str,
        target_currency: str,
        source_amount: Decimal,
        target_contact_id: str | None = None,
    ) -> WiseQuote:
        profile_id = await self.get_business_profile_id()
        payload: dict[str, Any] = {
            "sourceCurrency": source_currency,
            "targetCurrency": target_currency,
            "sourceAmount": float(source_amount),
            "payOut": "BALANCE",
            "payIn": "BALANCE",
        }
        if target_contact_id:
            payload["targetContactId"] = target_contact_id
        data = await self._json(
            "POST", f"/v3/profiles/{profile_id}/quotes", what="quote", json=payload
        )
        return WiseQuote.from_payload(data)

    async def create_transfer(
        self,
        quote_id: str,
        reference: str,
        target_account_id: int | None = None,
    ) -> WiseTransfer:
        """Create a transfer for a quote.

        Without ``target_account_id`` the quote must carry a target contact.
        """
        payload: dict[str, Any] = {
            "quoteUuid": quote_id,
            "customerTransactionId": str(uuid4()),
            "details": {
                "reference": truncate_reference(reference),
                "sourceOfFunds": SOURCE_OF_FUNDS,
            },
        }
        if target_account_id is not None:
            payload["targetAccount"] = target_account_id
        data = await self._json("POST", "/v1/transfers", what="transfer", json=payload)
        if not data:
            raise ProviderError("Wise returned an empty transfer", source=self.source)
        return WiseTransfer.from_payload(data)

    async def fund_transfer(self, transfer_id: str) -> str:
        """Fund a transfer from the business balance; returns the funding status."""
        profile_id = await self.get_business_profile_id()
        data = await self._json(
            "POST",
            f"/v3/profiles/{profile_id}/transfers/{transfer_id}/payments",
            what=f"funding for transfer {transfer_id}",
            json={"type": "BALANCE"},
        ) or {}
        status = str(pick(data, "status", default=""))
        if status.upper() not in {"COMPLETED", "SUCCESS", ""}:
            raise ProviderError(
                f"Wise funding rejected: {pick(data, 'errorCode', default=status)}",
                source=self.source,
                payload=data,
            )
        return status

    async def get_transfer(self, transfer_id: str) -> WiseTransfer | None:
        try:
            data = await self._json("GET", f"/v1/transfers/{transfer_id}", what=f"Transfer {transfer_id}")
        except NotFoundError:
            return None
        return WiseTransfer.from_payload(data) if data else None

    async def get_balances(self) -> list[WiseBalance]:
        profile_id = await self.get_business_profile_id()
        data = await self._json(
            "GET",
            f"/v4/profiles/{profile_id}/balances",
            what="balances",
            params={"types": "STANDARD"},
        ) or []
        return [WiseBalance.from_payload(b) for b in data]

    async def check_connection(self) -> None:
        await self.get_business_profile_id()
