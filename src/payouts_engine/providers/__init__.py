"""Provider adapters for the approval system, accounting system, and payment rails."""

from payouts_engine.providers.base import ProviderClient, pick
from payouts_engine.providers.billcom import BillComBill, BillComClient, BillComPayment, BillComVendor
from payouts_engine.providers.partnerconnect import Bill, PartnerConnectClient, normalize_tenant_code
from payouts_engine.providers.postmark import EmailResult, PaymentNotification, PostmarkClient
from payouts_engine.providers.qbo import QboBill, QboClient, QboInvoice
from payouts_engine.providers.registry import ProviderClients, build_clients
from payouts_engine.providers.wise import (
    WiseAccount,
    WiseBalance,
    WiseClient,
    WiseContact,
    WiseQuote,
    WiseTransfer,
)

__all__ = [
    "ProviderClient",
    "pick",
    "Bill",
    "PartnerConnectClient",
    "normalize_tenant_code",
    "QboBill",
    "QboClient",
    "QboInvoice",
    "BillComBill",
    "BillComClient",
    "BillComPayment",
    "BillComVendor",
    "WiseAccount",
    "WiseBalance",
    "WiseClient",
    "WiseContact",
    "WiseQuote",
    "WiseTransfer",
    "EmailResult",
    "PaymentNotification",
    "PostmarkClient",
    "ProviderClients",
    "build_clients",
]
