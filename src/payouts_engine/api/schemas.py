"""Pydantic schemas for API request/response models.

Response bodies use camelCase to match the operator dashboard.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Base schema serialized with camelCase keys."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


# ============================================================================
# Common
# ============================================================================


class ErrorResponse(BaseModel):
    """Error body returned by the exception handlers."""

    detail: str
    code: str


class MessageResponse(CamelModel):
    success: bool = True
    message: str


# ============================================================================
# Control schemas
# ============================================================================


class ControlResultResponse(CamelModel):
    name: str
    passed: bool
    reason: str
    checked_at: datetime


class ControlCheckResponse(CamelModel):
    bill_id: str
    controls: list[ControlResultResponse]
    all_passed: bool
    ready_to_pay: bool


class CheckControlsRequest(CamelModel):
    """Batch control check; at most 50 bills per request."""

    bill_ids: list[str] = Field(min_length=1, max_length=50)


class CheckControlsResponse(CamelModel):
    results: list[ControlCheckResponse]
    errors: dict[str, str] = Field(default_factory=dict)


# ============================================================================
# Bill schemas
# ============================================================================


class BillResponse(CamelModel):
    """A bill from the approval system."""

    uid: str
    description: str
    process_code: str | None = None
    amount: Decimal
    adjusted_bill_payment: Decimal
    client_name: str | None = None
    resource_name: str | None = None
    qbo_vendor_id: str | None = None
    trx_date: datetime | None = None
    external_invoice_doc_num: str | None = None
    external_bill_id: str | None = None
    tenant_code: str


class BillWithControlsResponse(CamelModel):
    bill: BillResponse
    controls: ControlCheckResponse


class BillListResponse(CamelModel):
    items: list[BillWithControlsResponse]
    total: int


class DismissRequest(CamelModel):
    reason: str | None = None


class DismissedBillResponse(CamelModel):
    bill_id: str
    reason: str | None = None
    dismissed_by: str | None = None
    dismissed_at: datetime


# ============================================================================
# Payment schemas
# ============================================================================


class ExecutePaymentRequest(CamelModel):
    process_date: date | None = None
    tenant: str | None = None


class PaymentResultResponse(CamelModel):
    success: bool
    payment_id: UUID | None = None
    bill_id: str
    amount: Decimal
    status: str
    message: str


class PaymentRejectedResponse(PaymentResultResponse):
    """Failed payment result returned when a payment attempt is rejected."""

    detail: str
    code: str
    controls: ControlCheckResponse | None = None


class PaymentRecordResponse(CamelModel):
    id: UUID
    tenant_code: str
    bill_id: str
    payee_name: str | None = None
    amount: Decimal
    status: str
    payment_ref: str | None = None
    billcom_payment_id: str | None = None
    wise_transfer_id: str | None = None
    currency: str | None = None
    exchange_rate: Decimal | None = None
    target_amount: Decimal | None = None
    fee: Decimal | None = None
    failure_reason: str | None = None
    executed_by: str | None = None
    email_sent: bool
    executed_at: datetime | None = None
    paid_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class PaymentStatusResponse(CamelModel):
    record: PaymentRecordResponse
    provider_status: str | None = None
    changed: bool
    error: str | None = None


class MfaStatusResponse(CamelModel):
    configured: bool
    mfa_configured: bool
    trusted: bool


class MfaInitiateResponse(CamelModel):
    challenge_id: str


class MfaValidateRequest(CamelModel):
    challenge_id: str
    code: str = Field(min_length=1)


# ============================================================================
# Webhook schemas
# ============================================================================


class WebhookAckResponse(CamelModel):
    received: bool
    message: str


# ============================================================================
# Recipient schemas
# ============================================================================


class RecipientCreate(CamelModel):
    qbo_vendor_id: str = Field(min_length=1)
    payee_name: str = Field(min_length=1)
    email: str | None = None
    wise_contact_id: str | None = None
    target_currency: str = "CAD"


class RecipientUpdate(CamelModel):
    payee_name: str | None = None
    email: str | None = None
    wise_contact_id: str | None = None
    target_currency: str | None = None
    is_active: bool | None = None


class RecipientResponse(CamelModel):
    id: UUID
    qbo_vendor_id: str
    payee_name: str
    email: str | None = None
    wise_contact_id: str | None = None
    wise_account_id: str | None = None
    target_currency: str
    is_active: bool
    created_at: datetime
    updated_at: datetime


# ============================================================================
# Integration status schemas
# ============================================================================


class IntegrationStatusResponse(CamelModel):
    name: str
    status: str
    detail: str | None = None


class IntegrationReportResponse(CamelModel):
    all_healthy: bool
    integrations: list[IntegrationStatusResponse]


def controls_response(payload: dict[str, Any]) -> ControlCheckResponse:
    """Build a response from ``ControlCheckResults.to_dict()``."""
    return ControlCheckResponse.model_validate(payload)
