"""API routes."""

from payouts_engine.api.routes.bills import router as bills_router
from payouts_engine.api.routes.health import router as health_router
from payouts_engine.api.routes.payments import router as payments_router
from payouts_engine.api.routes.recipients import router as recipients_router
from payouts_engine.api.routes.status import router as status_router
from payouts_engine.api.routes.webhooks import router as webhooks_router

__all__ = [
    "bills_router",
    "health_router",
    "payments_router",
    "recipients_router",
    "status_router",
    "webhooks_router",
]
