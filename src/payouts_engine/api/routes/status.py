"""Integration connectivity endpoint."""

from fastapi import APIRouter

from payouts_engine.api.dependencies import Clients
from payouts_engine.api.schemas import IntegrationReportResponse
from payouts_engine.services.integration_status import IntegrationStatusService

router = APIRouter(tags=["status"])


@router.get("/status", response_model=IntegrationReportResponse)
async def integration_status(clients: Clients) -> IntegrationReportResponse:
    """Connectivity of every external system; never fails on an outage."""
    report = await IntegrationStatusService(clients).report()
    return IntegrationReportResponse.model_validate(report.to_dict())
