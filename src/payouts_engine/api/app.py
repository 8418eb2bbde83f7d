"""FastAPI application factory."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from payouts_engine import __version__
from payouts_engine.api.errors import error_body, error_status
from payouts_engine.api.routes import (
    bills_router,
    health_router,
    payments_router,
    recipients_router,
    status_router,
    webhooks_router,
)
from payouts_engine.config import Settings, get_settings, validate_production_config
from payouts_engine.database import dispose_db, init_db
from payouts_engine.errors import PayoutsError
from payouts_engine.providers.registry import build_clients
from payouts_engine.services.webhooks import SignatureRejected, build_registry

logger = logging.getLogger(__name__)


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler."""
    settings = get_settings()
    configure_logging(settings)
    for problem in validate_production_config(settings):
        logger.warning("Configuration: %s", problem)

    # Startup
    init_db()
    app.state.settings = settings
    app.state.clients = build_clients(settings)
    app.state.webhooks = build_registry(settings)
    yield
    # Shutdown
    await app.state.clients.aclose()
    await dispose_db()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="Payouts Engine API",
        description="Controls-gated bill payments over Bill.com (US) and Wise (CA)",
        version=__version__,
        lifespan=lifespan,
    )

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Exception handlers
    @app.exception_handler(PayoutsError)
    async def payouts_exception_handler(
        request: Request, exc: PayoutsError
    ) -> JSONResponse:
        """Map typed errors onto HTTP responses."""
        status_code, _ = error_status(exc)
        if status_code >= 500:
            logger.warning("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=status_code, content=error_body(exc))

    @app.exception_handler(SignatureRejected)
    async def signature_exception_handler(
        request: Request, exc: SignatureRejected
    ) -> JSONResponse:
        """Webhook bodies that fail verification are never processed."""
        return JSONResponse(
            status_code=status.HTTP_401_UNAUTHORIZED,
            content={"received": False, "message": "Invalid webhook signature"},
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(
        request: Request, exc: Exception
    ) -> JSONResponse:
        """Handle unexpected exceptions."""
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "detail": "An unexpected error occurred",
                "code": "INTERNAL_ERROR",
            },
        )

    # Include routers
    app.include_router(health_router)
    app.include_router(bills_router, prefix="/api/v1")
    app.include_router(payments_router, prefix="/api/v1")
    app.include_router(webhooks_router, prefix="/api/v1")
    app.include_router(recipients_router, prefix="/api/v1")
    app.include_router(status_router, prefix="/api/v1")

    return app


# Default app instance for uvicorn
app = create_app()
