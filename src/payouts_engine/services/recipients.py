"""Recipient mapping CRUD (accounting vendor -> Wise contact)."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from payouts_engine.errors import ConflictError, DomainError, NotFoundError
from payouts_engine.models import RecipientMapping

logger = logging.getLogger(__name__)

SUPPORTED_CURRENCIES = frozenset({"USD", "CAD"})


@dataclass(frozen=True)
class RecipientInput:
    qbo_vendor_id: str
    payee_name: str
    email: str | None = None
    wise_contact_id: str | None = None
    target_currency: str = "CAD"


class RecipientService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def list(self, *, include_inactive: bool = False) -> list[RecipientMapping]:
        stmt = select(RecipientMapping).order_by(RecipientMapping.payee_name)
        if not include_inactive:
            stmt = stmt.where(RecipientMapping.is_active.is_(True))
        return list((await self.db.execute(stmt)).scalars())

    async def get(self, recipient_id: UUID) -> RecipientMapping:
        mapping = await self.db.get(RecipientMapping, recipient_id)
        if mapping is None:
            raise NotFoundError(f"Recipient {recipient_id} not found")
        return mapping

    async def create(self, data: RecipientInput) -> RecipientMapping:
        if not data.email and not data.wise_contact_id:
            raise DomainError("Either an email or a Wise contact ID is required")
        _check_currency(data.target_currency)

        mapping = RecipientMapping(
            qbo_vendor_id=data.qbo_vendor_id,
            payee_name=data.payee_name,
            email=data.email,
            wise_contact_id=data.wise_contact_id,
            target_currency=data.target_currency,
        )
        self.db.add(mapping)
        try:
            await self.db.commit()
        except IntegrityError as exc:
            await self.db.rollback()
            raise ConflictError(
                f"Recipient for vendor {data.qbo_vendor_id} already exists"
            ) from exc
        logger.info("Recipient mapping created for vendor %s", data.qbo_vendor_id)
        return mapping

    async def update(
        self,
        recipient_id: UUID,
        *,
        payee_name: str | None = None,
        email: str | None = None,
        wise_contact_id: str | None = None,
        target_currency: str | None = None,
        is_active: bool | None = None,
    ) -> RecipientMapping:
        mapping = await self.get(recipient_id)

        # Validate before touching the tracked instance.
        if target_currency is not None:
            _check_currency(target_currency)
        email_changed = email is not None and email != mapping.email
        next_email = email if email_changed else mapping.email
        if wise_contact_id is not None:
            next_contact = wise_contact_id or None
        elif email_changed:
            next_contact = None
        else:
            next_contact = mapping.wise_contact_id
        if not next_email and not next_contact:
            raise DomainError("Either an email or a Wise contact ID is required")

        if email_changed:
            mapping.email = email
            # A new address invalidates anything resolved from the old one
            mapping.wise_account_id = None
        mapping.wise_contact_id = next_contact
        if payee_name is not None:
            mapping.payee_name = payee_name
        if target_currency is not None:
            if target_currency != mapping.target_currency:
                mapping.wise_account_id = None
            mapping.target_currency = target_currency
        if is_active is not None:
            mapping.is_active = is_active

        await self.db.commit()
        return mapping

    async def delete(self, recipient_id: UUID) -> None:
        mapping = await self.get(recipient_id)
        await self.db.delete(mapping)
        await self.db.commit()


def _check_currency(currency: str) -> None:
    if currency not in SUPPORTED_CURRENCIES:
        raise DomainError(f"Unsupported currency {currency}; expected USD or CAD")
