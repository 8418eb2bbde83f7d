"""Recipient mapping CRUD endpoints."""

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Path, Query, status

from payouts_engine.api.dependencies import DbSession
from payouts_engine.api.schemas import (
    ErrorResponse,
    RecipientCreate,
    RecipientResponse,
    RecipientUpdate,
)
from payouts_engine.services.recipients import RecipientInput, RecipientService

router = APIRouter(prefix="/recipients", tags=["recipients"])


@router.get("", response_model=list[RecipientResponse])
async def list_recipients(
    db: DbSession,
    include_inactive: Annotated[bool, Query(alias="includeInactive")] = False,
) -> list[RecipientResponse]:
    mappings = await RecipientService(db).list(include_inactive=include_inactive)
    return [RecipientResponse.model_validate(m) for m in mappings]


@router.post(
    "",
    response_model=RecipientResponse,
    status_code=status.HTTP_201_CREATED,
    responses={400: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def create_recipient(db: DbSession, payload: RecipientCreate) -> RecipientResponse:
    mapping = await RecipientService(db).create(
        RecipientInput(
            qbo_vendor_id=payload.qbo_vendor_id,
            payee_name=payload.payee_name,
            email=payload.email,
            wise_contact_id=payload.wise_contact_id,
            target_currency=payload.target_currency,
        )
    )
    return RecipientResponse.model_validate(mapping)


@router.get(
    "/{recipient_id}",
    response_model=RecipientResponse,
    responses={404: {"model": ErrorResponse}},
)
async def get_recipient(
    db: DbSession, recipient_id: Annotated[UUID, Path()]
) -> RecipientResponse:
    return RecipientResponse.model_validate(await RecipientService(db).get(recipient_id))


@router.patch(
    "/{recipient_id}",
    response_model=RecipientResponse,
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
async def update_recipient(
    db: DbSession,
    recipient_id: Annotated[UUID, Path()],
    payload: RecipientUpdate,
) -> RecipientResponse:
    mapping = await RecipientService(db).update(
        recipient_id, **payload.model_dump(exclude_unset=True)
    )
    return RecipientResponse.model_validate(mapping)


@router.delete(
    "/{recipient_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    responses={404: {"model": ErrorResponse}},
)
async def delete_recipient(db: DbSession, recipient_id: Annotated[UUID, Path()]) -> None:
    await RecipientService(db).delete(recipient_id)
