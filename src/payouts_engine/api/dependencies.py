"""FastAPI dependencies for dependency injection."""

from collections.abc import AsyncGenerator
from typing import Annotated

from fastapi import Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession

from payouts_engine.config import Settings, get_settings
from payouts_engine.database import init_db
from payouts_engine.providers.registry import ProviderClients
from payouts_engine.services.webhooks import WebhookRegistry

DEFAULT_ACTOR = "system"


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Get database session dependency."""
    _, factory = init_db()
    async with factory() as session:
        try:
            yield session
        finally:
            await session.close()


def get_clients(request: Request) -> ProviderClients:
    """Adapter set built during application startup."""
    return request.app.state.clients


def get_webhook_registry(request: Request) -> WebhookRegistry:
    return request.app.state.webhooks


async def get_actor(
    x_user_email: Annotated[str | None, Header()] = None
) -> str:
    """Operator identity recorded on payments and dismissals."""
    return x_user_email.strip() if x_user_email and x_user_email.strip() else DEFAULT_ACTOR


# Type aliases for cleaner dependency injection
DbSession = Annotated[AsyncSession, Depends(get_db_session)]
Clients = Annotated[ProviderClients, Depends(get_clients)]
Registry = Annotated[WebhookRegistry, Depends(get_webhook_registry)]
Actor = Annotated[str, Depends(get_actor)]
AppSettings = Annotated[Settings, Depends(get_settings)]
