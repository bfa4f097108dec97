"""Tests for the wallet gateways and chat notifications."""

import json
from decimal import Decimal

import httpx
import pytest

from conftest import make_payment
from p2p_settlement.exceptions import SettlementError, TransientNetworkError
from p2p_settlement.notifications import templates
from p2p_settlement.notifications.notifier import LoggingNotifier, TelegramNotifier
from p2p_settlement.settlement.base import TransferRequest
from p2p_settlement.settlement.basal_pay import BasalPayGateway
from p2p_settlement.settlement.mock_provider import MockSettlementGateway

API_URL = "https://wallet.test/api/v1"


def make_gateway(handler):
    http = httpx.AsyncClient(base_url=API_URL, transport=httpx.MockTransport(handler))
    return BasalPayGateway(access_token="token", http_client=http)


def ok(data):
    return httpx.Response(200, json={"success": True, "data": data})


def transfer_request(amount="10"):
    return TransferRequest(
        to_user_id="wallet-user-1",
        amount=Decimal(amount),
        currency_id="usdt",
        memo="P2P Payment ID: pay-1",
        fund_password="fund-secret",
    )


class TestBasalPay:
    @pytest.mark.asyncio
    async def test_transfer_payload(self):
        seen = []

        def handler(request):
            seen.append((request.url.path, json.loads(request.content)))
            return ok({"id": "tx_1", "status": "pending", "amount": "10", "currencyId": "usdt"})

        record = await make_gateway(handler).transfer(transfer_request())

        assert record.id == "tx_1"
        assert record.status == "pending"
        path, body = seen[0]
        assert path == "/api/v1/wallet/transfer"
        assert body == {
            "toUserId": "wallet-user-1",
            "amount": "10",
            "currencyId": "usdt",
            "memo": "P2P Payment ID: pay-1",
            "fundPassword": "fund-secret",
        }

    @pytest.mark.asyncio
    async def test_unsuccessful_flag_fails_the_transfer(self):
        gateway = make_gateway(lambda request: httpx.Response(200, json={"success": False, "message": "no"}))
        with pytest.raises(SettlementError):
            await gateway.transfer(transfer_request())

    @pytest.mark.asyncio
    async def test_http_error_fails_the_transfer(self):
        gateway = make_gateway(lambda request: httpx.Response(400, json={"success": False}))
        with pytest.raises(SettlementError, match="400"):
            await gateway.transfer(transfer_request())

    @pytest.mark.asyncio
    async def test_timeout_is_transient(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        with pytest.raises(TransientNetworkError):
            await make_gateway(handler).get_balance()

    @pytest.mark.asyncio
    async def test_balance_and_fees(self):
        def handler(request):
            if request.url.path.endswith("/wallet/balance/usdt"):
                return ok({"balance": "125.5"})
            return ok({"disbursement_system": {"amount": "0.5"}, "platform_fee": {"amount": "0.25"}})

        gateway = make_gateway(handler)
        assert await gateway.get_balance() == Decimal("125.5")
        fees = await gateway.calculate_fee(Decimal("10"))
        assert fees.total == Decimal("0.75")

    @pytest.mark.asyncio
    async def test_lookup_user(self):
        def handler(request):
            if request.url.path.endswith("/known@example.com"):
                return ok({"id": "wallet-user-1"})
            return httpx.Response(404, json={"success": False})

        gateway = make_gateway(handler)
        assert await gateway.lookup_user_by_email("known@example.com") == "wallet-user-1"
        assert await gateway.lookup_user_by_email("unknown@example.com") is None

    @pytest.mark.asyncio
    async def test_sufficient_balance_includes_fees(self):
        def handler(request):
            if request.url.path.endswith("/wallet/balance/usdt"):
                return ok({"balance": "10.5"})
            return ok({"disbursement_system": {"amount": "0.5"}, "platform_fee": {"amount": "0.25"}})

        gateway = make_gateway(handler)
        assert not await gateway.has_sufficient_balance(Decimal("10"))
        assert await gateway.has_sufficient_balance(Decimal("9"))


class TestMockWallet:
    @pytest.mark.asyncio
    async def test_transfer_debits_balance(self):
        wallet = MockSettlementGateway(balance=Decimal("20"))
        record = await wallet.transfer(transfer_request("15"))

        assert wallet.balance == Decimal("5")
        assert (await wallet.get_transaction_status(record.id))["status"] == "completed"
        with pytest.raises(SettlementError):
            await wallet.transfer(transfer_request("15"))

    @pytest.mark.asyncio
    async def test_forced_failure(self):
        wallet = MockSettlementGateway(failure_rate=1.0)
        with pytest.raises(SettlementError):
            await wallet.transfer(transfer_request())


class TestNotifications:
    @pytest.mark.asyncio
    async def test_telegram_message(self):
        seen = []

        def handler(request):
            seen.append((request.url.path, json.loads(request.content)))
            return httpx.Response(200, json={"ok": True})

        http = httpx.AsyncClient(base_url="https://chat.test/botTOKEN", transport=httpx.MockTransport(handler))
        notifier = TelegramNotifier("TOKEN", http_client=http)

        assert await notifier.send_safely("user-1", "hello")
        assert seen == [("/botTOKEN/sendMessage", {"chat_id": "user-1", "text": "hello", "parse_mode": "Markdown"})]

    @pytest.mark.asyncio
    async def test_delivery_failure_is_swallowed(self):
        http = httpx.AsyncClient(
            base_url="https://chat.test/botTOKEN",
            transport=httpx.MockTransport(lambda request: httpx.Response(500)),
        )
        assert not await TelegramNotifier("TOKEN", http_client=http).send_safely("user-1", "hello")

    @pytest.mark.asyncio
    async def test_no_recipient(self):
        assert not await LoggingNotifier().send_safely(None, "hello")

    def test_confirmation_template(self):
        text = templates.payment_confirmed(make_payment(), "FT100")
        assert "260.100 VND" in text
        assert "FT100" in text
