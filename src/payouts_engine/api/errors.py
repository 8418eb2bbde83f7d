"""Mapping of payouts errors onto HTTP status codes and bodies."""

from decimal import Decimal
from typing import Any

from fastapi import status

from payouts_engine.api.schemas import PaymentRejectedResponse, controls_response
from payouts_engine.errors import (
    AuthenticationError,
    BillNotFound,
    ConfigurationError,
    ConflictError,
    ControlsNotPassed,
    DomainError,
    DuplicatePayment,
    MfaRequired,
    NotFoundError,
    PayoutsError,
    ProviderError,
    RecipientUnresolved,
    TransportError,
    WrongTenant,
)

# First match wins; subclasses before their bases.
ERROR_STATUS: list[tuple[type[PayoutsError], int, str]] = [
    (ControlsNotPassed, status.HTTP_400_BAD_REQUEST, "CONTROLS_NOT_PASSED"),
    (MfaRequired, status.HTTP_403_FORBIDDEN, "MFA_REQUIRED"),
    (DuplicatePayment, status.HTTP_409_CONFLICT, "DUPLICATE_PAYMENT"),
    (ConflictError, status.HTTP_409_CONFLICT, "CONFLICT"),
    (BillNotFound, status.HTTP_404_NOT_FOUND, "BILL_NOT_FOUND"),
    (NotFoundError, status.HTTP_404_NOT_FOUND, "NOT_FOUND"),
    (ConfigurationError, status.HTTP_503_SERVICE_UNAVAILABLE, "NOT_CONFIGURED"),
    (AuthenticationError, status.HTTP_502_BAD_GATEWAY, "UPSTREAM_AUTH_FAILED"),
    (TransportError, status.HTTP_502_BAD_GATEWAY, "UPSTREAM_UNAVAILABLE"),
    (ProviderError, status.HTTP_502_BAD_GATEWAY, "UPSTREAM_ERROR"),
]

# Rejections of a payment attempt; answered with a failed payment result.
PAYMENT_REJECTIONS: tuple[type[DomainError], ...] = (
    ControlsNotPassed,
    DuplicatePayment,
    MfaRequired,
    WrongTenant,
    RecipientUnresolved,
)


def error_status(exc: PayoutsError) -> tuple[int, str]:
    """HTTP status and error code for a payouts error."""
    for error_type, status_code, code in ERROR_STATUS:
        if isinstance(exc, error_type):
            return status_code, code
    # Remaining domain errors (WrongTenant, RecipientUnresolved, ...)
    return status.HTTP_400_BAD_REQUEST, "INVALID_REQUEST"


def error_body(exc: PayoutsError) -> dict[str, Any]:
    """Error body returned by the exception handlers."""
    _, code = error_status(exc)
    content: dict[str, Any] = {"detail": exc.message, "code": code}
    if isinstance(exc, ControlsNotPassed):
        content["controls"] = exc.results.to_dict()
    elif isinstance(exc, MfaRequired):
        content["status"] = "mfa_required"
    return content


def rejection_body(bill_id: str, exc: DomainError) -> dict[str, Any]:
    """Failed payment result for a rejected payment attempt.

    Carries the same fields as a successful result, with the rejection text
    as ``message``, plus the error ``detail``/``code`` and, for failed
    controls, the control report.
    """
    _, code = error_status(exc)
    rejected = PaymentRejectedResponse(
        success=False,
        payment_id=exc.record_id if isinstance(exc, DuplicatePayment) else None,
        bill_id=bill_id,
        amount=exc.amount if exc.amount is not None else Decimal("0"),
        status="mfa_required" if isinstance(exc, MfaRequired) else "blocked",
        message=exc.message,
        detail=exc.message,
        code=code,
        controls=(
            controls_response(exc.results.to_dict())
            if isinstance(exc, ControlsNotPassed)
            else None
        ),
    )
    return rejected.model_dump(mode="json", by_alias=True)
