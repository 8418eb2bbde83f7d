"""Construction of the process-wide adapter set.

Adapters are built once at startup and handed to services explicitly; their
token/session/profile caches live on these instances.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from payouts_engine.config import Settings
from payouts_engine.providers.billcom import BillComClient
from payouts_engine.providers.partnerconnect import PartnerConnectClient
from payouts_engine.providers.postmark import PostmarkClient
from payouts_engine.providers.qbo import QboClient
from payouts_engine.providers.wise import WiseClient


@dataclass
class ProviderClients:
    """Every adapter the services need, keyed by concern."""

    partnerconnect: PartnerConnectClient
    billcom: BillComClient
    wise: WiseClient
    postmark: PostmarkClient
    qbo: dict[str, QboClient] = field(default_factory=dict)

    def qbo_for(self, tenant_code: str) -> QboClient:
        return self.qbo[tenant_code]

    async def aclose(self) -> None:
        for client in (self.partnerconnect, self.billcom, self.wise, self.postmark, *self.qbo.values()):
            await client.aclose()


def build_clients(settings: Settings) -> ProviderClients:
    """Build all adapters from settings."""
    http = settings.http
    return ProviderClients(
        partnerconnect=PartnerConnectClient(settings.partnerconnect, http=http),
        billcom=BillComClient(settings.billcom, http=http),
        wise=WiseClient(settings.wise, http=http),
        postmark=PostmarkClient(settings.postmark, http=http),
        qbo={
            code: QboClient(settings.qbo, code, http=http)
            for code in ("US", "CA")
        },
    )
