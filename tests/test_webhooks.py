"""Tests for webhook verification and reconciliation.

Tests verify:
1. HMAC-SHA256 and RSA-SHA256 signatures over the raw body
2. Rejected signatures change nothing
3. Mapped statuses move records through the state machine
4. Replays, unmapped statuses and unknown transactions are no-ops
"""

import base64
import hashlib
import hmac
import json
from decimal import Decimal

import pytest
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from payouts_engine.models import PaymentRecord
from payouts_engine.services.state_machine import PaymentStatus
from payouts_engine.services.webhooks import (
    BILLCOM_STATUS_MAP,
    WISE_STATUS_MAP,
    HmacSha256Verifier,
    RsaSha256Verifier,
    SignatureRejected,
    UnhandledEvent,
    WebhookReconciler,
    WebhookRegistry,
    billcom_rail,
    map_status,
    parse_billcom_event,
    parse_wise_event,
    wise_rail,
)

BILLCOM_SECRET = "whsec-test"


@pytest.fixture(scope="module")
def private_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="module")
def public_pem(private_key) -> str:
    return private_key.public_key().public_bytes(
        serialization.Encoding.PEM, serialization.PublicFormat.SubjectPublicKeyInfo
    ).decode()


@pytest.fixture
def registry(public_pem) -> WebhookRegistry:
    registry = WebhookRegistry()
    registry.register(billcom_rail(BILLCOM_SECRET))
    registry.register(wise_rail(public_pem))
    return registry


def hmac_hex(body: bytes, secret: str = BILLCOM_SECRET) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def rsa_b64(private_key, body: bytes) -> str:
    return base64.b64encode(private_key.sign(body, padding.PKCS1v15(), hashes.SHA256())).decode()


def wise_event(transfer_id: str, state: str) -> bytes:
    return json.dumps(
        {
            "event_type": "transfers#state-change",
            "data": {
                "resource": {"id": int(transfer_id), "type": "transfer"},
                "current_state": state,
                "previous_state": "processing",
            },
        }
    ).encode()


def billcom_event(payment_id: str, status: str) -> bytes:
    return json.dumps({"event": "SentPay.status", "data": {"id": payment_id, "status": status}}).encode()


async def add_record(db, **fields) -> PaymentRecord:
    values = dict(tenant_code="CA", bill_id="BILL-CA-1", amount=Decimal("1000.00"), status="processing")
    values.update(fields)
    record = PaymentRecord(**values)
    db.add(record)
    await db.commit()
    return record


class TestVerifiers:
    """Test signature verification."""

    def test_hmac_valid_and_tampered(self):
        verifier = HmacSha256Verifier(BILLCOM_SECRET, header="x-billcom-signature")
        body = b'{"event":"SentPay.status"}'

        assert verifier.verify(body, hmac_hex(body))
        assert verifier.verify(body, hmac_hex(body).upper())
        assert not verifier.verify(body + b" ", hmac_hex(body))
        assert not verifier.verify(body, None)

    def test_hmac_without_secret_rejects(self):
        verifier = HmacSha256Verifier(None, header="x-billcom-signature")
        body = b"{}"
        assert not verifier.verify(body, hmac_hex(body))

    def test_rsa_valid_and_tampered(self, private_key, public_pem):
        verifier = RsaSha256Verifier(public_pem, header="x-signature-sha256")
        body = wise_event("50001", "outgoing_payment_sent")
        signature = rsa_b64(private_key, body)

        assert verifier.verify(body, signature)
        assert not verifier.verify(body.replace(b"sent", b"lost"), signature)
        assert not verifier.verify(body, "not base64!")
        assert not verifier.verify(body, None)

    def test_rsa_without_key_rejects(self, private_key):
        body = b"{}"
        assert not RsaSha256Verifier(None, header="x-signature-sha256").verify(body, rsa_b64(private_key, body))


class TestStatusTables:
    """Test provider status mapping."""

    def test_wise_statuses(self):
        assert map_status(WISE_STATUS_MAP, "outgoing_payment_sent") is PaymentStatus.PAID
        assert map_status(WISE_STATUS_MAP, "bounced_back") is PaymentStatus.FAILED
        assert map_status(WISE_STATUS_MAP, "funds_converted") is PaymentStatus.PROCESSING

    def test_billcom_statuses_case_insensitive(self):
        assert map_status(BILLCOM_STATUS_MAP, "Paid") is PaymentStatus.PAID
        assert map_status(BILLCOM_STATUS_MAP, "VOID") is PaymentStatus.FAILED

    def test_unmapped(self):
        assert map_status(WISE_STATUS_MAP, "waiting_recipient_input_to_proceed") is None
        assert map_status(BILLCOM_STATUS_MAP, None) is None


class TestParsers:
    """Test event extraction."""

    def test_billcom_nested_and_flat(self):
        nested = parse_billcom_event({"event": "SentPay.status", "data": {"id": "SP-1", "status": "paid"}})
        flat = parse_billcom_event({"entity": "SentPay", "id": "SP-2", "status": "failed"})

        assert (nested.transaction_id, nested.provider_status) == ("SP-1", "paid")
        assert (flat.transaction_id, flat.provider_status) == ("SP-2", "failed")

    def test_billcom_other_entity_unhandled(self):
        with pytest.raises(UnhandledEvent):
            parse_billcom_event({"entity": "Vendor", "id": "009V"})

    def test_wise_state_change(self):
        event = parse_wise_event(json.loads(wise_event("50001", "outgoing_payment_sent")))
        assert event.transaction_id == "50001"
        assert event.provider_status == "outgoing_payment_sent"

    def test_wise_other_event_unhandled(self):
        with pytest.raises(UnhandledEvent):
            parse_wise_event({"event_type": "balances#credit", "data": {}})


class TestReconciler:
    """Test applying verified events to payment records."""

    async def test_bad_signature_rejected_without_change(self, db, registry):
        record = await add_record(db, wise_transfer_id="50001")
        body = wise_event("50001", "outgoing_payment_sent")

        with pytest.raises(SignatureRejected):
            await WebhookReconciler(db, registry).handle(
                "wise", body, {"x-signature-sha256": base64.b64encode(b"forged").decode()}
            )

        assert record.status == "processing"

    async def test_wise_sent_marks_paid(self, db, registry, private_key):
        record = await add_record(db, wise_transfer_id="50001")
        body = wise_event("50001", "outgoing_payment_sent")

        outcome = await WebhookReconciler(db, registry).handle(
            "wise", body, {"x-signature-sha256": rsa_b64(private_key, body)}
        )

        assert outcome.received and outcome.changed
        assert record.status == "paid"
        assert record.paid_at is not None

    async def test_replay_is_noop(self, db, registry, private_key):
        """Delivering the same event twice leaves the record untouched."""
        record = await add_record(db, wise_transfer_id="50001")
        body = wise_event("50001", "outgoing_payment_sent")
        headers = {"x-signature-sha256": rsa_b64(private_key, body)}
        reconciler = WebhookReconciler(db, registry)

        await reconciler.handle("wise", body, headers)
        updated_at = record.updated_at
        paid_at = record.paid_at

        outcome = await reconciler.handle("wise", body, headers)

        assert outcome.received is True
        assert outcome.changed is False
        assert record.updated_at == updated_at
        assert record.paid_at == paid_at

    async def test_unmapped_status_changes_nothing(self, db, registry, private_key):
        record = await add_record(db, wise_transfer_id="50001")
        body = wise_event("50001", "waiting_recipient_input_to_proceed")

        outcome = await WebhookReconciler(db, registry).handle(
            "wise", body, {"x-signature-sha256": rsa_b64(private_key, body)}
        )

        assert outcome.received is True
        assert outcome.changed is False
        assert record.status == "processing"

    async def test_bounce_after_paid_marks_failed(self, db, registry, private_key):
        record = await add_record(db, wise_transfer_id="50001", status="paid")
        body = wise_event("50001", "bounced_back")

        await WebhookReconciler(db, registry).handle(
            "wise", body, {"x-signature-sha256": rsa_b64(private_key, body)}
        )

        assert record.status == "failed"
        assert record.failure_reason == "Wise payment bounced_back"

    async def test_late_processing_after_paid_ignored(self, db, registry):
        record = await add_record(db, tenant_code="US", billcom_payment_id="SP-1", status="paid")
        body = billcom_event("SP-1", "processing")

        outcome = await WebhookReconciler(db, registry).handle(
            "billcom", body, {"x-billcom-signature": hmac_hex(body)}
        )

        assert outcome.changed is False
        assert record.status == "paid"

    async def test_billcom_matches_payment_ref(self, db, registry):
        record = await add_record(db, tenant_code="US", payment_ref="SP-7")
        body = billcom_event("SP-7", "paid")

        outcome = await WebhookReconciler(db, registry).handle(
            "billcom", body, {"x-billcom-signature": hmac_hex(body)}
        )

        assert outcome.changed is True
        assert record.status == "paid"

    async def test_unknown_transaction_acknowledged(self, db, registry):
        body = billcom_event("SP-404", "paid")

        outcome = await WebhookReconciler(db, registry).handle(
            "billcom", body, {"x-billcom-signature": hmac_hex(body)}
        )

        assert outcome.received is True
        assert outcome.message == "No matching payment record"

    async def test_malformed_body(self, db, registry):
        body = b"not json"

        outcome = await WebhookReconciler(db, registry).handle(
            "billcom", body, {"x-billcom-signature": hmac_hex(body)}
        )

        assert outcome.received is False
        assert outcome.message == "Malformed payload"

    async def test_unhandled_event_acknowledged(self, db, registry):
        body = json.dumps({"entity": "Vendor", "id": "009V"}).encode()

        outcome = await WebhookReconciler(db, registry).handle(
            "billcom", body, {"x-billcom-signature": hmac_hex(body)}
        )

        assert outcome.received is True
        assert outcome.changed is False

    async def test_unconfigured_secret_rejects(self, db):
        registry = WebhookRegistry()
        registry.register(billcom_rail(None))
        body = billcom_event("SP-1", "paid")

        with pytest.raises(SignatureRejected):
            await WebhookReconciler(db, registry).handle(
                "billcom", body, {"x-billcom-signature": hmac_hex(body)}
            )
