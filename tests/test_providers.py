"""Tests for provider adapters against mocked HTTP.

Tests verify:
1. Retry with exponential backoff on 429/503, then TransportError
2. Credentials are refreshed exactly once on 401
3. Tokens, sessions and profile ids are cached on the adapter instance
4. QBO's three flavours of "not found" all become NotFoundError
5. Bill.com session expiry and MFA trust handling
6. Postmark never raises
"""

import json
from dataclasses import replace
from decimal import Decimal
from urllib.parse import parse_qs

import httpx
import pytest

from payouts_engine.config import (
    BillComConfig,
    HttpConfig,
    PartnerConnectConfig,
    PostmarkConfig,
    QboConfig,
    WiseConfig,
)
from payouts_engine.errors import (
    AuthenticationError,
    ConfigurationError,
    MfaRequired,
    NotFoundError,
    TransportError,
)
from payouts_engine.providers.base import pick, to_datetime
from payouts_engine.providers.billcom import BillComBill, BillComClient
from payouts_engine.providers.partnerconnect import Bill, PartnerConnectClient, normalize_tenant_code
from payouts_engine.providers.postmark import PaymentNotification, PostmarkClient
from payouts_engine.providers.qbo import QboClient
from payouts_engine.providers.wise import WiseClient, truncate_reference

PC_CONFIG = PartnerConnectConfig(
    api_url="https://pc.test",
    client_id="client",
    client_secret="secret",
    auth0_domain="auth.test",
    audience="pc-api",
)


def mock_client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class Sleeps:
    """Records backoff delays instead of sleeping."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def form(request: httpx.Request) -> dict[str, str]:
    return {k: v[0] for k, v in parse_qs(request.content.decode()).items()}


class TestPayloadHelpers:
    """Test field folding and parsing helpers."""

    def test_pick_folds_case_and_underscores(self):
        payload = {"AdjustedBillPayment": 5, "qbo_vendor_id": "V-1"}
        assert pick(payload, "adjustedBillPayment") == 5
        assert pick(payload, "qboVendorId") == "V-1"
        assert pick(payload, "missing", default="x") == "x"

    def test_naive_timestamps_are_utc(self):
        parsed = to_datetime("2026-03-01T09:30:00")
        assert parsed is not None
        assert parsed.utcoffset().total_seconds() == 0

    def test_tenant_normalization(self):
        assert normalize_tenant_code("Canada") == "CA"
        assert normalize_tenant_code("CAN") == "CA"
        assert normalize_tenant_code("us") == "US"
        assert normalize_tenant_code(None) == "US"

    def test_bill_from_pascal_case_payload(self):
        bill = Bill.from_payload(
            {
                "Uid": "B-9",
                "Description": "Hours",
                "ProcessCode": "Approved",
                "AdjustedBillPayment": "1250.50",
                "ResourceName": "Ana Lucia Gomez",
                "TenantCode": "CA",
                "TrxDate": "2026-03-01T00:00:00",
            }
        )
        assert bill.uid == "B-9"
        assert bill.adjusted_bill_payment == Decimal("1250.50")
        assert bill.tenant_code == "CA"
        assert bill.payee_last_name == "Gomez"

    def test_reference_truncated_to_ten(self):
        assert truncate_reference("INV-12345-Tremblay") == "INV-12345-"


class TestRetryPolicy:
    """Test the shared request loop."""

    async def test_backoff_then_success(self):
        """Two 429s are retried with 1s then 2s delays."""
        responses = iter([429, 429, 200])

        def handler(request: httpx.Request) -> httpx.Response:
            status = next(responses)
            if status == 200:
                return httpx.Response(200, json={"id": 77, "status": "processing"})
            return httpx.Response(status)

        sleeps = Sleeps()
        wise = WiseClient(
            WiseConfig(api_token="tok", api_url="https://wise.test"),
            client=mock_client(handler),
            sleep=sleeps,
        )

        transfer = await wise.get_transfer("77")

        assert transfer is not None
        assert transfer.status == "processing"
        assert sleeps.delays == [1.0, 2.0]

    async def test_gives_up_after_retry_count(self):
        """Persistent 503 surfaces as TransportError after three attempts."""
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(503)

        sleeps = Sleeps()
        wise = WiseClient(
            WiseConfig(api_token="tok", api_url="https://wise.test"),
            http=HttpConfig(retry_count=3, backoff_base_seconds=0.5),
            client=mock_client(handler),
            sleep=sleeps,
        )

        with pytest.raises(TransportError) as exc_info:
            await wise.get_transfer("77")

        assert exc_info.value.status_code == 503
        assert len(calls) == 3
        assert sleeps.delays == [0.5, 1.0]

    async def test_unconfigured_adapter_raises_configuration_error(self):
        wise = WiseClient(WiseConfig(api_token=None), client=mock_client(lambda r: httpx.Response(200)))

        with pytest.raises(ConfigurationError) as exc_info:
            await wise.get_transfer("1")

        assert exc_info.value.message == "wise not configured"

    def test_http_config_validation(self):
        with pytest.raises(ValueError):
            HttpConfig(retry_count=0)
        with pytest.raises(ValueError):
            HttpConfig(timeout_seconds=0)


class TestPartnerConnectClient:
    """Test OAuth2 token handling."""

    async def test_token_cached_between_calls(self):
        token_requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.host == "auth.test":
                token_requests.append(json.loads(request.content))
                return httpx.Response(200, json={"access_token": "t1", "expires_in": 3600})
            assert request.headers["Authorization"] == "Bearer t1"
            return httpx.Response(200, json={"uid": "B-1", "processCode": "Approved"})

        client = PartnerConnectClient(PC_CONFIG, client=mock_client(handler))

        await client.get_bill("B-1")
        await client.get_bill("B-1")

        assert len(token_requests) == 1
        assert token_requests[0]["grant_type"] == "client_credentials"

    async def test_token_refreshed_once_on_401(self):
        tokens = iter(["stale", "fresh"])
        seen_auth = []

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.host == "auth.test":
                return httpx.Response(200, json={"access_token": next(tokens), "expires_in": 3600})
            seen_auth.append(request.headers["Authorization"])
            if request.headers["Authorization"] == "Bearer stale":
                return httpx.Response(401)
            return httpx.Response(200, json={"uid": "B-1"})

        client = PartnerConnectClient(PC_CONFIG, client=mock_client(handler))

        bill = await client.get_bill("B-1")

        assert bill.uid == "B-1"
        assert seen_auth == ["Bearer stale", "Bearer fresh"]

    async def test_repeated_401_raises_authentication_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.host == "auth.test":
                return httpx.Response(200, json={"access_token": "t", "expires_in": 3600})
            return httpx.Response(401)

        client = PartnerConnectClient(PC_CONFIG, client=mock_client(handler))

        with pytest.raises(AuthenticationError):
            await client.get_bill("B-1")

    async def test_missing_bill_is_not_found(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.host == "auth.test":
                return httpx.Response(200, json={"access_token": "t", "expires_in": 3600})
            return httpx.Response(404, json={"detail": "no such bill"})

        client = PartnerConnectClient(PC_CONFIG, client=mock_client(handler))

        with pytest.raises(NotFoundError):
            await client.get_bill("B-404")

    async def test_token_expiry_uses_refresh_buffer(self):
        now = [1000.0]

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"access_token": "t", "expires_in": 120})

        client = PartnerConnectClient(PC_CONFIG, client=mock_client(handler), clock=lambda: now[0])
        await client.get_access_token()
        assert client.has_valid_token

        # 60s buffer: a 120s token is stale after 60s
        now[0] += 61
        assert not client.has_valid_token


class TestQboClient:
    """Test accounting lookups."""

    @pytest.mark.parametrize(
        "status,body",
        [
            (404, {"detail": "missing"}),
            (500, {"detail": "Object Not Found: Invoice"}),
            (400, {"detail": "610: Object Not Found"}),
        ],
    )
    async def test_not_found_variants(self, status, body):
        client = QboClient(
            QboConfig(api_url="https://qbo.test", api_key_us="k"),
            "US",
            client=mock_client(lambda r: httpx.Response(status, json=body)),
        )

        with pytest.raises(NotFoundError):
            await client.get_invoice_by_doc_number("INV-1")

    async def test_invoice_state_and_company_id(self):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(
                200,
                json={
                    "Id": "5",
                    "DocNumber": "INV-1",
                    "TotalAmt": 100,
                    "Balance": 0,
                    "PrivateNote": "Voided",
                    "status": "Voided",
                },
            )

        client = QboClient(
            QboConfig(api_url="https://qbo.test", api_key_ca="ca-key"),
            "CA",
            client=mock_client(handler),
        )

        state = await client.is_invoice_paid("INV-1")

        assert state.voided is True
        assert state.paid is False
        assert requests[0].url.params["company_id"] == "2"
        assert requests[0].headers["X-API-Key"] == "ca-key"


class TestBillComClient:
    """Test session and MFA handling."""

    def _config(self, **overrides) -> BillComConfig:
        values = dict(
            api_url="https://billcom.test/api/v2",
            username="ops@example.com",
            password="pw",
            dev_key="dev",
            org_id="org",
        )
        values.update(overrides)
        return BillComConfig(**values)

    async def test_session_expiry_relogs_once(self):
        logins = []
        vendor_calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path.endswith("/Login.json"):
                logins.append(form(request))
                return httpx.Response(
                    200, json={"response_status": 0, "response_data": {"sessionId": f"S{len(logins)}"}}
                )
            vendor_calls.append(form(request)["sessionId"])
            if len(vendor_calls) == 1:
                return httpx.Response(
                    200,
                    json={
                        "response_status": 1,
                        "response_data": {"error_code": "BDC_1109", "error_message": "Session invalid"},
                    },
                )
            return httpx.Response(
                200,
                json={"response_status": 0, "response_data": {"id": "009V", "name": "Jane", "isActive": "1"}},
            )

        client = BillComClient(self._config(), client=mock_client(handler))

        vendor = await client.get_vendor("009V")

        assert vendor is not None
        assert len(logins) == 2
        assert vendor_calls == ["S1", "S2"]

    async def test_list_vendors_filters_by_name(self):
        queries = []

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path.endswith("/Login.json"):
                return httpx.Response(200, json={"response_status": 0, "response_data": {"sessionId": "S1"}})
            queries.append(json.loads(form(request)["data"]))
            return httpx.Response(
                200,
                json={
                    "response_status": 0,
                    "response_data": [{"id": "009V", "name": "Jane Smith", "isActive": "2"}],
                },
            )

        client = BillComClient(self._config(), client=mock_client(handler))

        [vendor] = await client.list_vendors("Jane Smith")

        assert queries[0]["filters"] == [{"field": "name", "op": "=", "value": "Jane Smith"}]
        assert vendor.id == "009V"
        assert vendor.is_active is False

    async def test_untrusted_session_requires_mfa(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"response_status": 0, "response_data": {"sessionId": "S1"}})

        client = BillComClient(self._config(), client=mock_client(handler))
        bill = BillComBill(
            id="00n1", vendor_id="009V", invoice_number="BD-1", amount=Decimal("10"),
            due_amount=Decimal("10"), payment_status="1", approval_status="3",
        )

        with pytest.raises(MfaRequired):
            await client.pay_bill(bill, Decimal("10"))
        assert client.mfa_status() == {"configured": True, "mfa_configured": False, "trusted": False}

    async def test_trusted_session_pays(self):
        paid = []

        def handler(request: httpx.Request) -> httpx.Response:
            body = form(request)
            if request.url.path.endswith("/Login.json"):
                assert body["mfaId"] == "M1"
                return httpx.Response(200, json={"response_status": 0, "response_data": {"sessionId": "S1"}})
            paid.append(json.loads(body["data"]))
            return httpx.Response(
                200, json={"response_status": 0, "response_data": [{"id": "SP-1", "status": "1"}]}
            )

        client = BillComClient(self._config(mfa_id="M1", device_id="D1"), client=mock_client(handler))
        bill = BillComBill(
            id="00n1", vendor_id="009V", invoice_number="BD-1", amount=Decimal("10"),
            due_amount=Decimal("10"), payment_status="1", approval_status="3",
        )

        payment = await client.pay_bill(bill, Decimal("10.00"))

        assert payment.id == "SP-1"
        assert paid[0]["billPays"] == [{"billId": "00n1", "amount": 10.0}]
        assert client.is_trusted


class TestWiseClient:
    """Test profile discovery and account matching."""

    async def test_prefers_canadian_business_profile_and_caches_it(self):
        profile_requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/v2/profiles":
                profile_requests.append(request)
                return httpx.Response(
                    200,
                    json=[
                        {"id": 1, "type": "PERSONAL"},
                        {"id": 10, "type": "BUSINESS", "businessName": "FP US LLC"},
                        {"id": 20, "type": "BUSINESS", "businessName": "FP Canada Inc"},
                    ],
                )
            return httpx.Response(200, json=[])

        wise = WiseClient(WiseConfig(api_token="tok", api_url="https://wise.test"), client=mock_client(handler))

        assert await wise.get_business_profile_id() == 20
        await wise.list_accounts("CAD")
        assert len(profile_requests) == 1

    async def test_find_account_by_partial_name(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/v2/profiles":
                return httpx.Response(200, json=[{"id": 20, "type": "BUSINESS", "businessName": "FP Canada"}])
            return httpx.Response(
                200,
                json=[
                    {"id": 111, "accountHolderName": "Someone Else", "currency": "CAD"},
                    {"id": 222, "accountHolderName": "Marc-Andre Tremblay", "currency": "CAD"},
                ],
            )

        wise = WiseClient(WiseConfig(api_token="tok", api_url="https://wise.test"), client=mock_client(handler))

        account = await wise.find_account_by_name("Marc Tremblay", "CAD")

        assert account is not None
        assert account.id == 222

    async def test_balances(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/v2/profiles":
                return httpx.Response(200, json=[{"id": 20, "type": "BUSINESS", "businessName": "FP Canada"}])
            assert request.url.path == "/v4/profiles/20/balances"
            assert request.url.params["types"] == "STANDARD"
            return httpx.Response(
                200,
                json=[
                    {
                        "id": 7,
                        "currency": "CAD",
                        "amount": {"value": 12500.5, "currency": "CAD"},
                        "reservedAmount": {"value": 0, "currency": "CAD"},
                    }
                ],
            )

        wise = WiseClient(WiseConfig(api_token="tok", api_url="https://wise.test"), client=mock_client(handler))

        [balance] = await wise.get_balances()

        assert balance.currency == "CAD"
        assert balance.amount == Decimal("12500.5")
        assert balance.reserved == Decimal("0")


class TestPostmarkClient:
    """Test best-effort notification sending."""

    NOTICE = PaymentNotification(
        to="marc@example.ca",
        payee_name="Marc Tremblay",
        source_amount=Decimal("1000.00"),
        source_currency="CAD",
        target_currency="USD",
        invoice_reference="INV-200",
        transfer_id="50001",
        target_amount=Decimal("730.00"),
        exchange_rate=Decimal("0.73"),
    )

    async def test_not_configured_returns_failure(self):
        client = PostmarkClient(PostmarkConfig(api_token=None))

        result = await client.send_payment_notification(self.NOTICE)

        assert result.success is False
        assert "not configured" in (result.error_message or "")

    async def test_sends_with_subject(self):
        sent = []

        def handler(request: httpx.Request) -> httpx.Response:
            sent.append(json.loads(request.content))
            return httpx.Response(200, json={"ErrorCode": 0, "MessageID": "pm-1"})

        client = PostmarkClient(
            PostmarkConfig(api_token="t", api_url="https://pm.test"), client=mock_client(handler)
        )

        result = await client.send_payment_notification(self.NOTICE)

        assert result.success is True
        assert result.message_id == "pm-1"
        assert sent[0]["Subject"] == "Payment Initiated: USD $730.00 - Invoice INV-200"

    async def test_html_body_escapes_payee_fields(self):
        sent = []

        def handler(request: httpx.Request) -> httpx.Response:
            sent.append(json.loads(request.content))
            return httpx.Response(200, json={"ErrorCode": 0, "MessageID": "pm-2"})

        client = PostmarkClient(
            PostmarkConfig(api_token="t", api_url="https://pm.test"), client=mock_client(handler)
        )
        notice = replace(
            self.NOTICE,
            payee_name='<img src=x onerror="alert(1)">',
            invoice_reference="INV-<b>200</b>",
        )

        await client.send_payment_notification(notice)

        html_body = sent[0]["HtmlBody"]
        assert "<img" not in html_body
        assert "&lt;img src=x onerror=&quot;alert(1)&quot;&gt;" in html_body
        assert "INV-&lt;b&gt;200&lt;/b&gt;" in html_body
        assert sent[0]["TextBody"].startswith('Hello <img src=x onerror="alert(1)">')

    async def test_rejection_is_reported_not_raised(self):
        client = PostmarkClient(
            PostmarkConfig(api_token="t", api_url="https://pm.test"),
            client=mock_client(lambda r: httpx.Response(422, json={"ErrorCode": 300, "Message": "Invalid To"})),
        )

        result = await client.send_payment_notification(self.NOTICE)

        assert result.success is False
        assert result.error_message
