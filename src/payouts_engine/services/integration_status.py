"""Connectivity report for every external system."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any

from payouts_engine.providers.base import ProviderClient
from payouts_engine.providers.registry import ProviderClients
from payouts_engine.result import Err, capture

logger = logging.getLogger(__name__)


class ConnectionState(str, Enum):
    CONNECTED = "connected"
    ERROR = "error"
    NOT_CONFIGURED = "not_configured"


@dataclass(frozen=True)
class IntegrationStatus:
    name: str
    state: ConnectionState
    detail: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "status": self.state.value, "detail": self.detail}


@dataclass(frozen=True)
class IntegrationReport:
    integrations: tuple[IntegrationStatus, ...]

    @property
    def all_healthy(self) -> bool:
        return all(i.state is ConnectionState.CONNECTED for i in self.integrations)

    def to_dict(self) -> dict[str, Any]:
        return {
            "allHealthy": self.all_healthy,
            "integrations": [i.to_dict() for i in self.integrations],
        }


class IntegrationStatusService:
    def __init__(self, clients: ProviderClients):
        self.clients = clients

    def _targets(self) -> list[tuple[str, ProviderClient]]:
        return [
            ("partnerconnect", self.clients.partnerconnect),
            *((f"qbo_{code.lower()}", client) for code, client in sorted(self.clients.qbo.items())),
            ("billcom", self.clients.billcom),
            ("wise", self.clients.wise),
            ("postmark", self.clients.postmark),
        ]

    async def check(self, name: str, client: ProviderClient) -> IntegrationStatus:
        if not client.is_configured:
            return IntegrationStatus(name, ConnectionState.NOT_CONFIGURED)
        # Postmark has no cheap connectivity check; a configured token is the best signal.
        check_connection = getattr(client, "check_connection", None)
        if check_connection is None:
            return IntegrationStatus(name, ConnectionState.CONNECTED)
        outcome = await capture(check_connection())
        if isinstance(outcome, Err):
            return IntegrationStatus(name, ConnectionState.ERROR, outcome.detail)
        return IntegrationStatus(name, ConnectionState.CONNECTED)

    async def report(self) -> IntegrationReport:
        statuses = [await self.check(name, client) for name, client in self._targets()]
        return IntegrationReport(tuple(statuses))
