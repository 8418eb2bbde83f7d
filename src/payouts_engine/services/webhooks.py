"""Webhook reconciliation for both payment rails.

Each rail is registered once with:
- a signature verifier (HMAC-SHA256 for Bill.com, RSA-SHA256 for Wise)
- an event parser that pulls (transaction id, provider status) from the body
- an exhaustive status table onto processing | paid | failed
- the record column holding the rail's transaction id

Unknown events, unmapped statuses and unmatched transactions are all
acknowledged without changing anything; only a bad signature is rejected.
Applying an event to a record already in the mapped state is a no-op.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any, Protocol

from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import InstrumentedAttribute

from payouts_engine.config import Settings
from payouts_engine.models import PaymentRecord
from payouts_engine.providers.base import pick
from payouts_engine.services.state_machine import PaymentStateMachine, PaymentStatus

logger = logging.getLogger(__name__)


# ============================================================================
# Signature verification
# ============================================================================


class SignatureVerifier(Protocol):
    """Checks a provider signature over the raw request body."""

    header: str

    def verify(self, body: bytes, signature: str | None) -> bool:
        ...


class HmacSha256Verifier:
    """Hex-encoded HMAC-SHA256 with a shared secret."""

    def __init__(self, secret: str | None, *, header: str):
        self.secret = secret
        self.header = header

    def verify(self, body: bytes, signature: str | None) -> bool:
        if not self.secret or not signature:
            return False
        expected = hmac.new(self.secret.encode(), body, hashlib.sha256).hexdigest()
        return hmac.compare_digest(expected, signature.strip().lower())


class RsaSha256Verifier:
    """Base64-encoded RSA PKCS#1 v1.5 / SHA-256 signature against a PEM public key."""

    def __init__(self, public_key_pem: str | None, *, header: str):
        self.header = header
        self._key: rsa.RSAPublicKey | None = None
        if public_key_pem:
            key = serialization.load_pem_public_key(public_key_pem.encode())
            if not isinstance(key, rsa.RSAPublicKey):
                raise ValueError("Webhook public key must be an RSA key")
            self._key = key

    def verify(self, body: bytes, signature: str | None) -> bool:
        if self._key is None or not signature:
            return False
        try:
            raw = base64.b64decode(signature, validate=True)
            self._key.verify(raw, body, padding.PKCS1v15(), hashes.SHA256())
        except (InvalidSignature, UnsupportedAlgorithm, binascii.Error, ValueError):
            return False
        return True


# ============================================================================
# Status tables
# ============================================================================

BILLCOM_STATUS_MAP: dict[str, PaymentStatus] = {
    "paid": PaymentStatus.PAID,
    "failed": PaymentStatus.FAILED,
    "canceled": PaymentStatus.FAILED,
    "void": PaymentStatus.FAILED,
    "scheduled": PaymentStatus.PROCESSING,
    "processing": PaymentStatus.PROCESSING,
}

WISE_STATUS_MAP: dict[str, PaymentStatus] = {
    "outgoing_payment_sent": PaymentStatus.PAID,
    "cancelled": PaymentStatus.FAILED,
    "bounced_back": PaymentStatus.FAILED,
    "funds_refunded": PaymentStatus.FAILED,
    "charged_back": PaymentStatus.FAILED,
    "incoming_payment_waiting": PaymentStatus.PROCESSING,
    "processing": PaymentStatus.PROCESSING,
    "funds_converted": PaymentStatus.PROCESSING,
}


def map_status(table: Mapping[str, PaymentStatus], provider_status: str | None) -> PaymentStatus | None:
    """Look up a provider status; None means unmapped and must not change state."""
    if not provider_status:
        return None
    return table.get(provider_status.strip().lower())


# ============================================================================
# Event parsing
# ============================================================================


@dataclass(frozen=True)
class StatusEvent:
    """A settlement status change reported by a rail."""

    event_type: str
    transaction_id: str
    provider_status: str


@dataclass(frozen=True)
class WebhookOutcome:
    received: bool
    message: str
    changed: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {"received": self.received, "message": self.message}


class UnhandledEvent(Exception):
    """Event type this reconciler does not act on; acknowledged as-is."""


def parse_billcom_event(payload: Mapping[str, Any]) -> StatusEvent:
    event_type = str(pick(payload, "event", "eventType", default=""))
    entity = str(pick(payload, "entity", default=""))
    if event_type != "SentPay.status" and entity != "SentPay":
        raise UnhandledEvent(event_type or entity or "unknown")

    data = pick(payload, "data") or {}
    payment_id = pick(payload, "id") or pick(data, "id")
    status = pick(payload, "status") or pick(data, "status")
    if not payment_id or not status:
        raise UnhandledEvent(f"{event_type or entity} without id/status")
    return StatusEvent(event_type or "SentPay.status", str(payment_id), str(status))


def parse_wise_event(payload: Mapping[str, Any]) -> StatusEvent:
    event_type = str(pick(payload, "event_type", default=""))
    if event_type != "transfers#state-change":
        raise UnhandledEvent(event_type or "unknown")

    data = pick(payload, "data") or {}
    resource = pick(data, "resource") or {}
    transfer_id = pick(resource, "id")
    state = pick(data, "current_state")
    if not transfer_id or not state:
        raise UnhandledEvent(f"{event_type} without resource id/current_state")
    return StatusEvent(event_type, str(transfer_id), str(state))


# ============================================================================
# Registry
# ============================================================================


@dataclass(frozen=True)
class WebhookRail:
    name: str
    label: str
    verifier: SignatureVerifier
    parse: Callable[[Mapping[str, Any]], StatusEvent]
    statuses: Mapping[str, PaymentStatus]
    id_column: InstrumentedAttribute[str | None]


class WebhookRegistry:
    """Rails accepting webhooks, keyed by name."""

    def __init__(self) -> None:
        self._rails: dict[str, WebhookRail] = {}

    def register(self, rail: WebhookRail) -> None:
        self._rails[rail.name] = rail

    def get(self, name: str) -> WebhookRail:
        return self._rails[name]

    def __contains__(self, name: object) -> bool:
        return name in self._rails


def billcom_rail(secret: str | None) -> WebhookRail:
    return WebhookRail(
        name="billcom",
        label="Bill.com",
        verifier=HmacSha256Verifier(secret, header="x-billcom-signature"),
        parse=parse_billcom_event,
        statuses=BILLCOM_STATUS_MAP,
        id_column=PaymentRecord.billcom_payment_id,
    )


def wise_rail(public_key_pem: str | None) -> WebhookRail:
    return WebhookRail(
        name="wise",
        label="Wise",
        verifier=RsaSha256Verifier(public_key_pem, header="x-signature-sha256"),
        parse=parse_wise_event,
        statuses=WISE_STATUS_MAP,
        id_column=PaymentRecord.wise_transfer_id,
    )


def build_registry(settings: Settings) -> WebhookRegistry:
    registry = WebhookRegistry()
    registry.register(billcom_rail(settings.billcom.webhook_secret))
    registry.register(wise_rail(settings.wise.webhook_public_key))
    return registry


# ============================================================================
# Reconciler
# ============================================================================


class SignatureRejected(Exception):
    """Inbound webhook failed signature verification."""

    def __init__(self, rail: str):
        self.rail = rail
        super().__init__("Invalid webhook signature")


async def find_record(
    db: AsyncSession, id_column: InstrumentedAttribute[str | None], transaction_id: str
) -> PaymentRecord | None:
    """Match on the rail id column or the generic payment reference."""
    stmt = (
        select(PaymentRecord)
        .where(or_(id_column == transaction_id, PaymentRecord.payment_ref == transaction_id))
        .order_by(PaymentRecord.created_at.desc())
        .limit(1)
    )
    return (await db.execute(stmt)).scalar_one_or_none()


class WebhookReconciler:
    """Applies verified rail events to payment records."""

    def __init__(self, db: AsyncSession, registry: WebhookRegistry):
        self.db = db
        self.registry = registry

    async def handle(
        self, rail_name: str, body: bytes, headers: Mapping[str, str]
    ) -> WebhookOutcome:
        rail = self.registry.get(rail_name)
        if not rail.verifier.verify(body, headers.get(rail.verifier.header)):
            logger.warning("%s webhook rejected: invalid signature", rail.label)
            raise SignatureRejected(rail.name)

        try:
            payload = json.loads(body)
        except ValueError:
            logger.warning("%s webhook body is not JSON", rail.label)
            return WebhookOutcome(received=False, message="Malformed payload")
        if not isinstance(payload, dict):
            return WebhookOutcome(received=False, message="Malformed payload")

        try:
            event = rail.parse(payload)
        except UnhandledEvent as exc:
            logger.info("%s webhook event acknowledged without action: %s", rail.label, exc)
            return WebhookOutcome(received=True, message=f"Event {exc} acknowledged")

        return await self.apply(rail, event)

    async def apply(self, rail: WebhookRail, event: StatusEvent) -> WebhookOutcome:
        target = map_status(rail.statuses, event.provider_status)
        if target is None:
            logger.info(
                "%s status %r for %s is not mapped; no change",
                rail.label, event.provider_status, event.transaction_id,
            )
            return WebhookOutcome(
                received=True, message=f"Status {event.provider_status} acknowledged (no change)"
            )

        record = await find_record(self.db, rail.id_column, event.transaction_id)
        if record is None:
            logger.info("%s webhook for unknown transaction %s", rail.label, event.transaction_id)
            return WebhookOutcome(received=True, message="No matching payment record")

        changed = PaymentStateMachine.apply(
            record,
            target,
            reason=f"{rail.label} payment {event.provider_status}",
        )
        if not changed:
            return WebhookOutcome(
                received=True, message=f"Payment {record.id} already {record.status}"
            )

        await self.db.commit()
        logger.info(
            "Payment %s (bill %s) -> %s via %s webhook",
            record.id, record.bill_id, record.status, rail.label,
        )
        return WebhookOutcome(
            received=True, message=f"Payment {record.id} updated to {record.status}", changed=True
        )
