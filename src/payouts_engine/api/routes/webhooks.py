"""Inbound rail webhooks.

The raw body is verified before it is parsed; a bad signature gets a 401
and nothing is read or written.
"""

from fastapi import APIRouter, Request

from payouts_engine.api.dependencies import DbSession, Registry
from payouts_engine.api.schemas import WebhookAckResponse
from payouts_engine.services.webhooks import WebhookReconciler

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


async def _handle(rail: str, request: Request, db: DbSession, registry: Registry) -> WebhookAckResponse:
    body = await request.body()
    outcome = await WebhookReconciler(db, registry).handle(rail, body, request.headers)
    return WebhookAckResponse.model_validate(outcome.to_dict())


@router.post("/billcom", response_model=WebhookAckResponse)
async def billcom_webhook(request: Request, db: DbSession, registry: Registry) -> WebhookAckResponse:
    return await _handle("billcom", request, db, registry)


@router.post("/wise", response_model=WebhookAckResponse)
async def wise_webhook(request: Request, db: DbSession, registry: Registry) -> WebhookAckResponse:
    return await _handle("wise", request, db, registry)
