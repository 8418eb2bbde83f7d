"""Domain services for the payouts engine."""

from payouts_engine.services.bills import BatchCheck, BillQueueService, BillWithControls
from payouts_engine.services.controls import (
    ControlCheckResults,
    ControlResult,
    ControlsEngine,
    ControlSummary,
    summarize,
)
from payouts_engine.services.integration_status import (
    ConnectionState,
    IntegrationReport,
    IntegrationStatus,
    IntegrationStatusService,
)
from payouts_engine.services.payment_router import PaymentResult, PaymentRouter, RecipientPath
from payouts_engine.services.payment_status import PaymentStatusService, StatusRefresh
from payouts_engine.services.recipients import RecipientInput, RecipientService
from payouts_engine.services.state_machine import (
    InvalidTransitionError,
    PaymentStateMachine,
    PaymentStatus,
)
from payouts_engine.services.webhooks import (
    SignatureRejected,
    WebhookOutcome,
    WebhookReconciler,
    WebhookRegistry,
    build_registry,
)

__all__ = [
    "BatchCheck",
    "BillQueueService",
    "BillWithControls",
    "ConnectionState",
    "ControlCheckResults",
    "ControlResult",
    "ControlsEngine",
    "ControlSummary",
    "IntegrationReport",
    "IntegrationStatus",
    "IntegrationStatusService",
    "InvalidTransitionError",
    "PaymentResult",
    "PaymentRouter",
    "PaymentStateMachine",
    "PaymentStatus",
    "PaymentStatusService",
    "RecipientInput",
    "RecipientPath",
    "RecipientService",
    "SignatureRejected",
    "StatusRefresh",
    "WebhookOutcome",
    "WebhookReconciler",
    "WebhookRegistry",
    "build_registry",
]
