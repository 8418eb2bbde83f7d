"""Payee notification email via the Postmark HTTP API.

Sending is best effort: every failure is reported in the returned
``EmailResult`` and logged, never raised. A payment must not depend on
whether its notification went out.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from decimal import Decimal
from html import escape
from typing import Any

import httpx

from payouts_engine.config import HttpConfig, PostmarkConfig
from payouts_engine.errors import PayoutsError, TransportError
from payouts_engine.providers.base import ProviderClient, pick

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def is_valid_email(email: str | None) -> bool:
    return bool(email and EMAIL_PATTERN.match(email))


def format_amount_display(
    source_amount: Decimal,
    source_currency: str,
    target_amount: Decimal | None,
    target_currency: str,
    exchange_rate: Decimal | None,
) -> str:
    """``CAD $1,000.00`` or ``CAD $1,000.00 (USD $730.00 at rate 0.7300)``."""
    source = f"{source_currency} ${source_amount:,.2f}"
    if (
        target_currency == source_currency
        or not target_amount
        or not exchange_rate
        or exchange_rate == 1
    ):
        return source
    return f"{source} ({target_currency} ${target_amount:,.2f} at rate {exchange_rate:.4f})"


@dataclass(frozen=True)
class PaymentNotification:
    to: str
    payee_name: str
    source_amount: Decimal
    source_currency: str
    target_currency: str
    invoice_reference: str
    transfer_id: str
    target_amount: Decimal | None = None
    exchange_rate: Decimal | None = None


@dataclass(frozen=True)
class EmailResult:
    success: bool
    message_id: str | None = None
    error_message: str | None = None


class PostmarkClient(ProviderClient):
    """Minimal Postmark client for payment notifications."""

    source = "postmark"

    def __init__(
        self,
        config: PostmarkConfig,
        *,
        http: HttpConfig | None = None,
        client: httpx.AsyncClient | None = None,
        **kwargs: Any,
    ):
        super().__init__(config.api_url, http=http, client=client, **kwargs)
        self.config = config

    @property
    def is_configured(self) -> bool:
        return self.config.is_configured

    async def _auth_headers(self) -> dict[str, str]:
        return {
            "X-Postmark-Server-Token": self.config.api_token or "",
            "Accept": "application/json",
        }

    def _render(self, notice: PaymentNotification) -> dict[str, str]:
        amount = format_amount_display(
            notice.source_amount,
            notice.source_currency,
            notice.target_amount,
            notice.target_currency,
            notice.exchange_rate,
        )
        headline = notice.target_amount or notice.source_amount
        subject = (
            f"Payment Initiated: {notice.target_currency} ${headline:,.2f}"
            f" - Invoice {notice.invoice_reference}"
        )
        contact = self.config.finance_email or self.config.from_email
        text = (
            f"Hello {notice.payee_name},\n\n"
            f"A payment of {amount} has been sent for invoice {notice.invoice_reference}.\n"
            f"Transfer reference: {notice.transfer_id}\n"
            "Funds typically arrive within 1-3 business days.\n\n"
            f"Questions? Contact {contact}.\n"
        )
        html = (
            f"<p>Hello {escape(notice.payee_name)},</p>"
            f"<p>A payment of <strong>{escape(amount)}</strong> has been sent for invoice "
            f"{escape(notice.invoice_reference)}.</p>"
            f"<p>Transfer reference: {escape(str(notice.transfer_id))}</p>"
            "<p>Funds typically arrive within 1-3 business days.</p>"
            f"<p>Questions? Contact <a href=\"mailto:{escape(contact)}\">{escape(contact)}</a>.</p>"
        )
        return {"Subject": subject, "TextBody": text, "HtmlBody": html}

    async def send_payment_notification(self, notice: PaymentNotification) -> EmailResult:
        if not self.is_configured:
            logger.info("Postmark not configured; skipping payment email to %s", notice.to)
            return EmailResult(
                success=False,
                error_message="Email service not configured (POSTMARK_API_TOKEN not set)",
            )
        if not is_valid_email(notice.to):
            logger.warning("Invalid payee email address: %s", notice.to)
            return EmailResult(success=False, error_message=f"Invalid email address: {notice.to}")

        message = {
            "From": f"{self.config.from_name} <{self.config.from_email}>",
            "To": notice.to,
            "MessageStream": "outbound",
            "Tag": "payment-confirmation",
            **self._render(notice),
        }
        if self.config.finance_email:
            message["Bcc"] = self.config.finance_email

        # One retry for timeouts and dropped connections
        for attempt in range(2):
            try:
                data = await self._json("POST", "/email", what="email", json=message)
            except TransportError as exc:
                if attempt == 0 and exc.status_code is None:
                    logger.warning("Postmark send failed (%s); retrying once", exc.message)
                    continue
                logger.warning("Payment email to %s failed: %s", notice.to, exc.message)
                return EmailResult(success=False, error_message=exc.message)
            except PayoutsError as exc:
                logger.warning("Payment email to %s failed: %s", notice.to, exc.message)
                return EmailResult(success=False, error_message=exc.message)

            if pick(data, "ErrorCode", default=0):
                error = str(pick(data, "Message", default="Postmark rejected the message"))
                logger.warning("Postmark rejected payment email to %s: %s", notice.to, error)
                return EmailResult(success=False, error_message=error)

            message_id = pick(data, "MessageID")
            logger.info("Payment email sent to %s (%s)", notice.to, message_id)
            return EmailResult(success=True, message_id=message_id)

        return EmailResult(success=False, error_message="Postmark unavailable")
