"""Tests for the integration connectivity report.

Tests verify:
1. Unconfigured adapters are reported without being called
2. Connectivity check failures become error entries with a detail
3. Adapters without a connectivity check count as connected once configured
"""

from payouts_engine.errors import AuthenticationError
from payouts_engine.services.integration_status import ConnectionState, IntegrationStatusService
from tests.fakes import FakePostmark, FakeWise, make_clients


class TestIntegrationStatus:
    """Test IntegrationStatusService.report."""

    async def test_all_connected(self):
        report = await IntegrationStatusService(make_clients()).report()

        assert report.all_healthy is True
        assert [i.name for i in report.integrations] == [
            "partnerconnect", "qbo_ca", "qbo_us", "billcom", "wise", "postmark",
        ]

    async def test_unconfigured_not_called(self):
        wise = FakeWise()
        wise.is_configured = False
        wise.connection_error = AuthenticationError("should not be called", source="wise")

        report = await IntegrationStatusService(make_clients(wise=wise)).report()

        [status] = [i for i in report.integrations if i.name == "wise"]
        assert status.state is ConnectionState.NOT_CONFIGURED
        assert report.all_healthy is False

    async def test_check_failure(self):
        wise = FakeWise()
        wise.connection_error = AuthenticationError("Wise rejected the API token", source="wise")

        report = await IntegrationStatusService(make_clients(wise=wise)).report()

        [status] = [i for i in report.integrations if i.name == "wise"]
        assert status.state is ConnectionState.ERROR
        assert status.detail == "Wise rejected the API token"
        assert status.to_dict() == {
            "name": "wise", "status": "error", "detail": "Wise rejected the API token",
        }

    async def test_postmark_without_check(self):
        postmark = FakePostmark()

        report = await IntegrationStatusService(make_clients(postmark=postmark)).report()

        [status] = [i for i in report.integrations if i.name == "postmark"]
        assert status.state is ConnectionState.CONNECTED
