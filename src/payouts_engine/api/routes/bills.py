"""Payment queue endpoints."""

from typing import Annotated

from fastapi import APIRouter, Path, Query, status

from payouts_engine.api.dependencies import Actor, AppSettings, Clients, DbSession
from payouts_engine.api.schemas import (
    BillListResponse,
    BillResponse,
    BillWithControlsResponse,
    CheckControlsRequest,
    CheckControlsResponse,
    DismissedBillResponse,
    DismissRequest,
    ErrorResponse,
    MessageResponse,
    controls_response,
)
from payouts_engine.services.bills import BillQueueService, BillWithControls

router = APIRouter(prefix="/bills", tags=["bills"])


def _service(db: DbSession, clients: Clients, settings: AppSettings) -> BillQueueService:
    return BillQueueService(
        db, clients, default_proving_period_hours=settings.default_proving_period_hours
    )


def _to_response(item: BillWithControls) -> BillWithControlsResponse:
    return BillWithControlsResponse(
        bill=BillResponse.model_validate(item.bill),
        controls=controls_response(item.results.to_dict()),
    )


@router.get("", response_model=BillListResponse)
async def list_bills(
    db: DbSession,
    clients: Clients,
    settings: AppSettings,
    tenant: Annotated[str | None, Query()] = None,
) -> BillListResponse:
    """Approved bills awaiting payment, each with a fresh control run."""
    items = await _service(db, clients, settings).list_with_controls(tenant)
    return BillListResponse(items=[_to_response(i) for i in items], total=len(items))


@router.post(
    "/check-controls",
    response_model=CheckControlsResponse,
    responses={400: {"model": ErrorResponse}},
)
async def check_controls(
    db: DbSession,
    clients: Clients,
    settings: AppSettings,
    payload: CheckControlsRequest,
) -> CheckControlsResponse:
    """Run controls for up to 50 bills."""
    batch = await _service(db, clients, settings).check_many(payload.bill_ids)
    return CheckControlsResponse(
        results=[controls_response(r.to_dict()) for r in batch.results],
        errors=batch.errors,
    )


@router.get(
    "/{bill_id}",
    response_model=BillWithControlsResponse,
    responses={404: {"model": ErrorResponse}},
)
async def get_bill(
    db: DbSession,
    clients: Clients,
    settings: AppSettings,
    bill_id: Annotated[str, Path()],
) -> BillWithControlsResponse:
    item = await _service(db, clients, settings).get_with_controls(bill_id)
    return _to_response(item)


@router.post(
    "/{bill_id}/dismiss",
    response_model=DismissedBillResponse,
    status_code=status.HTTP_201_CREATED,
    responses={409: {"model": ErrorResponse}},
)
async def dismiss_bill(
    db: DbSession,
    clients: Clients,
    settings: AppSettings,
    actor: Actor,
    bill_id: Annotated[str, Path()],
    payload: DismissRequest | None = None,
) -> DismissedBillResponse:
    """Hide a bill from the queue."""
    reason = payload.reason if payload else None
    dismissed = await _service(db, clients, settings).dismiss(bill_id, reason=reason, actor=actor)
    return DismissedBillResponse.model_validate(dismissed)


@router.post(
    "/{bill_id}/restore",
    response_model=MessageResponse,
    responses={404: {"model": ErrorResponse}},
)
async def restore_bill(
    db: DbSession,
    clients: Clients,
    settings: AppSettings,
    bill_id: Annotated[str, Path()],
) -> MessageResponse:
    await _service(db, clients, settings).restore(bill_id)
    return MessageResponse(message=f"Bill {bill_id} restored")
