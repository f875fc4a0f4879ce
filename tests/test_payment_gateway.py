"""
Staffma Payroll - Payment Gateway Client Tests

Uses the respx mock server to test without a real gateway.
"""

import pytest
from decimal import Decimal

from staffma.models.employee import PaymentChannelKind
from staffma.services.payment_gateway import PaymentGatewayClient, TransferDestination
from staffma.utils.error_handling import ErrorCode, PaymentGatewayException
from tests.fixtures.collaborator_mock import MockPaymentGatewayServer


BANK = TransferDestination(
    channel=PaymentChannelKind.BANK,
    bank_name="Equity Bank",
    account_number="0123456789",
    account_name="Achieng Otieno",
)
WALLET = TransferDestination(
    channel=PaymentChannelKind.WALLET,
    wallet_id="MP-EMP002",
    phone_number="254712345678",
)


@pytest.fixture
def gateway_server() -> MockPaymentGatewayServer:
    return MockPaymentGatewayServer()


@pytest.fixture
def client() -> PaymentGatewayClient:
    return PaymentGatewayClient(secret_key="gw_test_secret", base_url=MockPaymentGatewayServer.BASE_URL, timeout=5)


class TestPaymentGatewayClient:
    """Transfers and error mapping."""
    
    @pytest.mark.asyncio
    async def test_bank_transfer(self, gateway_server, client):
        with gateway_server.activate():
            result = await client.transfer("ref-001", Decimal("80725.00"), "KES", BANK, "Salary 06/2024")
        
        assert result.success is True
        assert result.reference == "GW-000001"
        body = gateway_server.requests[0]["body"]
        assert body["amount"] == "80725.00"
        assert body["destination"] == {
            "type": "bank_account",
            "bankName": "Equity Bank",
            "accountNumber": "0123456789",
            "accountName": "Achieng Otieno",
        }
    
    @pytest.mark.asyncio
    async def test_wallet_transfer(self, gateway_server, client):
        with gateway_server.activate():
            result = await client.transfer("ref-002", Decimal("61255.00"), "KES", WALLET)
        
        assert result.success is True
        assert gateway_server.requests[0]["body"]["destination"]["type"] == "mobile_wallet"
    
    @pytest.mark.asyncio
    async def test_idempotency_key(self, gateway_server, client):
        with gateway_server.activate():
            first = await client.transfer("ref-003", Decimal("100.00"), "KES", WALLET)
            replay = await client.transfer("ref-003", Decimal("100.00"), "KES", WALLET)
        
        headers = gateway_server.requests[0]["headers"]
        assert headers["idempotency-key"] == "ref-003"
        assert headers["authorization"] == "Bearer gw_test_secret"
        assert replay.reference == first.reference
        assert len(gateway_server.transfers) == 1
    
    @pytest.mark.asyncio
    async def test_decline_is_a_result(self, gateway_server, client):
        gateway_server.set_decline("Insufficient float")
        
        with gateway_server.activate():
            result = await client.transfer("ref-004", Decimal("100.00"), "KES", BANK)
        
        assert result.success is False
        assert result.message == "Insufficient float"
    
    @pytest.mark.asyncio
    @pytest.mark.parametrize("status_code", [500, 502, 401, 403])
    async def test_server_and_auth_errors_raise(self, gateway_server, client, status_code):
        gateway_server.set_error(status_code)
        
        with gateway_server.activate():
            with pytest.raises(PaymentGatewayException) as exc_info:
                await client.transfer("ref-005", Decimal("100.00"), "KES", BANK)
        
        assert exc_info.value.code == ErrorCode.PAYMENT_GATEWAY_ERROR
        assert exc_info.value.details["status_code"] == status_code
    
    @pytest.mark.asyncio
    async def test_unreachable(self, gateway_server, client):
        gateway_server.set_connect_error()
        
        with gateway_server.activate():
            with pytest.raises(PaymentGatewayException) as exc_info:
                await client.transfer("ref-006", Decimal("100.00"), "KES", BANK)
        
        assert "unreachable" in exc_info.value.message
