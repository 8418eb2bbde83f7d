"""Payment execution, status, and Bill.com MFA endpoints."""

import logging
from typing import Annotated

from fastapi import APIRouter, Path
from fastapi.responses import JSONResponse

from payouts_engine.api.dependencies import Actor, AppSettings, Clients, DbSession
from payouts_engine.api.errors import PAYMENT_REJECTIONS, error_status, rejection_body
from payouts_engine.api.schemas import (
    ErrorResponse,
    ExecutePaymentRequest,
    MessageResponse,
    MfaInitiateResponse,
    MfaStatusResponse,
    MfaValidateRequest,
    PaymentRecordResponse,
    PaymentRejectedResponse,
    PaymentResultResponse,
    PaymentStatusResponse,
)
from payouts_engine.services.payment_router import PaymentRouter
from payouts_engine.services.payment_status import PaymentStatusService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["payments"])


# ============================================================================
# MFA
# ============================================================================


@router.get("/mfa/status", response_model=MfaStatusResponse)
async def mfa_status(clients: Clients) -> MfaStatusResponse:
    """Whether the Bill.com session may currently authorize payments."""
    return MfaStatusResponse.model_validate(clients.billcom.mfa_status())


@router.post(
    "/mfa/initiate",
    response_model=MfaInitiateResponse,
    responses={502: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
)
async def mfa_initiate(clients: Clients) -> MfaInitiateResponse:
    """Send an MFA code to the registered phone."""
    challenge_id = await clients.billcom.initiate_mfa()
    return MfaInitiateResponse(challenge_id=challenge_id)


@router.post(
    "/mfa/validate",
    response_model=MessageResponse,
    responses={502: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
)
async def mfa_validate(clients: Clients, payload: MfaValidateRequest) -> MessageResponse:
    """Complete the challenge; later sessions are trusted."""
    await clients.billcom.validate_mfa(payload.challenge_id, payload.code)
    return MessageResponse(message="MFA validated; device is trusted")


# ============================================================================
# Execution
# ============================================================================


@router.post(
    "/{bill_id}/execute",
    response_model=PaymentResultResponse,
    responses={
        400: {"model": PaymentRejectedResponse},
        403: {"model": PaymentRejectedResponse},
        404: {"model": ErrorResponse},
        409: {"model": PaymentRejectedResponse},
    },
)
async def execute_payment(
    db: DbSession,
    clients: Clients,
    settings: AppSettings,
    actor: Actor,
    bill_id: Annotated[str, Path()],
    payload: ExecutePaymentRequest | None = None,
) -> PaymentResultResponse | JSONResponse:
    """Run controls and pay the bill on its tenant's rail.

    Rejections (failed controls, duplicate, MFA, tenant mismatch, unresolved
    recipient) answer with an unsuccessful payment result.
    """
    payload = payload or ExecutePaymentRequest()
    payments = PaymentRouter(
        db,
        clients,
        default_proving_period_hours=settings.default_proving_period_hours,
        source_currency=settings.wise.source_currency,
    )
    try:
        result = await payments.pay_bill(
            bill_id,
            process_date=payload.process_date,
            requested_tenant=payload.tenant,
            actor=actor,
        )
    except PAYMENT_REJECTIONS as exc:
        logger.info("Payment for bill %s by %s rejected: %s", bill_id, actor, exc.message)
        status_code, _ = error_status(exc)
        return JSONResponse(status_code=status_code, content=rejection_body(bill_id, exc))
    logger.info("Payment for bill %s by %s: %s", bill_id, actor, result.status)
    return PaymentResultResponse.model_validate(result)


@router.get(
    "/{bill_id}/status",
    response_model=PaymentStatusResponse,
    responses={404: {"model": ErrorResponse}},
)
async def payment_status(
    db: DbSession,
    clients: Clients,
    bill_id: Annotated[str, Path()],
) -> PaymentStatusResponse:
    """Latest payment record for the bill, refreshed from its rail."""
    refresh = await PaymentStatusService(db, clients).refresh(bill_id)
    return PaymentStatusResponse(
        record=PaymentRecordResponse.model_validate(refresh.record),
        provider_status=refresh.provider_status,
        changed=refresh.changed,
        error=refresh.error,
    )
