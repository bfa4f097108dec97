"""Tests for the operator HTTP API."""

from datetime import timedelta
from types import SimpleNamespace

import httpx
import pytest
import pytest_asyncio

from conftest import ACCOUNT_NUMBER, ADMIN_CHAT, FakeFetcher, make_credit, make_payment
from p2p_settlement.context import AppContext
from p2p_settlement.engine.reaper import ExpiryReaper
from p2p_settlement.engine.reconciler import ReconciliationEngine
from p2p_settlement.engine.scheduler import ReconciliationMonitor
from p2p_settlement.main import create_app
from p2p_settlement.models.enums import PaymentStatus
from p2p_settlement.models.payment import utcnow


class StubBank:
    session = None

    async def relogin(self):
        return None


@pytest_asyncio.fixture
async def context(ledger, wallet, notifier, session_factory):
    fetcher = FakeFetcher()
    engine = ReconciliationEngine(
        ledger=ledger,
        fetcher=fetcher,
        settlement=wallet,
        notifier=notifier,
        session_factory=session_factory,
        account_number=ACCOUNT_NUMBER,
        admin_chat_id=ADMIN_CHAT,
        retry_base_delay=0,
    )
    bank = StubBank()
    return AppContext(
        settings=SimpleNamespace(payment_markup_percent=2.0, payment_expiry_minutes=30),
        db_engine=None,
        session_factory=session_factory,
        ledger=ledger,
        bank=bank,
        fetcher=fetcher,
        settlement=wallet,
        notifier=notifier,
        engine=engine,
        monitor=ReconciliationMonitor(engine, bank, notifier, ADMIN_CHAT),
        reaper=ExpiryReaper(ledger, notifier, session_factory),
    )


@pytest_asyncio.fixture
async def client(context):
    app = create_app(context=context, start_jobs=False)
    app.state.context = context
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as http:
        yield http


def live_payment(payment_id="pay-1", **kwargs):
    now = utcnow()
    return make_payment(payment_id, created_at=now - timedelta(minutes=1), expires_at=now + timedelta(hours=1), **kwargs)


class TestHealth:
    @pytest.mark.asyncio
    async def test_health(self, client):
        response = await client.get("/health")
        assert response.status_code == 200
        assert response.json() == {
            "status": "ok",
            "monitor_paused": False,
            "bank_session": False,
            "settlement_provider": "mock_wallet",
        }


class TestPayments:
    @pytest.mark.asyncio
    async def test_list_and_filter(self, client, ledger):
        await ledger.create(live_payment("a"))
        await ledger.create(live_payment("b", memo="87654321"))
        await ledger.transition("b", PaymentStatus.CANCELED)

        everything = (await client.get("/api/payments")).json()
        pending = (await client.get("/api/payments", params={"status": "pending"})).json()
        canceled = (await client.get("/api/payments", params={"status": "canceled"})).json()

        assert {p["id"] for p in everything} == {"a", "b"}
        assert [p["id"] for p in pending] == ["a"]
        assert [p["id"] for p in canceled] == ["b"]

    @pytest.mark.asyncio
    async def test_create_payment(self, client, ledger):
        response = await client.post("/api/payments", json={
            "user_id": "chat-42",
            "email": "buyer@example.com",
            "amount_usdt": "10",
            "base_rate": "25500",
        })

        assert response.status_code == 201
        body = response.json()
        assert body["amount_vnd"] == 260_100
        assert body["status"] == "pending"
        assert await ledger.pending_ids() == [body["id"]]
        assert await ledger.get_active_payment("chat-42") == body["id"]

    @pytest.mark.asyncio
    async def test_create_payment_rejects_small_amounts(self, client, ledger):
        response = await client.post("/api/payments", json={
            "user_id": "chat-42",
            "email": "buyer@example.com",
            "amount_usdt": "0.5",
            "base_rate": "25500",
        })

        assert response.status_code == 422
        assert await ledger.payment_ids() == []

    @pytest.mark.asyncio
    async def test_unknown_status_filter(self, client):
        response = await client.get("/api/payments", params={"status": "refunded"})
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_get_payment(self, client, ledger):
        await ledger.create(live_payment())

        response = await client.get("/api/payments/pay-1")

        assert response.status_code == 200
        body = response.json()
        assert body["memo"] == "12345678"
        assert body["amount_vnd"] == 260_100
        assert body["status"] == "pending"

    @pytest.mark.asyncio
    async def test_missing_payment(self, client):
        assert (await client.get("/api/payments/ghost")).status_code == 404

    @pytest.mark.asyncio
    async def test_malformed_payment(self, client, redis_client):
        await redis_client.hset("payment:broken", mapping={"status": "pending"})
        assert (await client.get("/api/payments/broken")).status_code == 422

    @pytest.mark.asyncio
    async def test_cancel_then_conflict(self, client, ledger):
        await ledger.create(live_payment())

        first = await client.post("/api/payments/pay-1/cancel")
        second = await client.post("/api/payments/pay-1/cancel")

        assert first.status_code == 200
        assert first.json()["status"] == "canceled"
        assert second.status_code == 409
        assert await ledger.pending_ids() == []

        trace = (await client.get("/api/payments/pay-1/trace")).json()
        assert [entry["action"] for entry in trace["audit_trail"]] == ["payment_canceled"]


class TestMonitorAndCycles:
    @pytest.mark.asyncio
    async def test_run_cycle_and_trace(self, client, context, ledger, wallet):
        await ledger.create(live_payment())
        context.fetcher.history = [make_credit("chuyen tien 12345678", 260_100, ref_no="FT900")]

        response = await client.post("/api/monitor/run")

        assert response.status_code == 200
        cycle = response.json()
        assert cycle["status"] == "completed"
        assert cycle["completed_count"] == 1

        payment = (await client.get("/api/payments/pay-1", params={"refresh": "true"})).json()
        assert payment["status"] == "completed"
        assert payment["transaction_ref"] == "FT900"
        assert payment["settlement_status"] == "completed"

        trace = (await client.get("/api/payments/pay-1/trace")).json()
        assert [entry["action"] for entry in trace["audit_trail"]] == [
            "transaction_matched",
            "settlement_executed",
            "payment_completed",
        ]

        detail = (await client.get(f"/api/cycles/{cycle['id']}")).json()
        assert "cycle_completed" in [event["action"] for event in detail["events"]]

        listed = (await client.get("/api/cycles")).json()
        assert [c["id"] for c in listed] == [cycle["id"]]

    @pytest.mark.asyncio
    async def test_failed_run_reports_bad_gateway(self, client, context):
        context.fetcher.balances = []

        response = await client.post("/api/monitor/run")

        assert response.status_code == 502
        status = (await client.get("/api/monitor")).json()
        assert status["consecutive_failures"] == 1
        assert "CycleError" in status["last_error"]

    @pytest.mark.asyncio
    async def test_resume(self, client, context):
        context.monitor.paused = True
        context.monitor.consecutive_failures = 5

        status = (await client.post("/api/monitor/resume")).json()

        assert status["paused"] is False
        assert status["consecutive_failures"] == 0

    @pytest.mark.asyncio
    async def test_sweep(self, client, ledger):
        now = utcnow()
        await ledger.create(make_payment(created_at=now - timedelta(hours=1), expires_at=now - timedelta(minutes=1)))

        response = await client.post("/api/monitor/sweep")

        assert response.json() == {"expired": 1}
        assert (await ledger.get("pay-1")).status == PaymentStatus.EXPIRED

    @pytest.mark.asyncio
    async def test_missing_cycle(self, client):
        assert (await client.get("/api/cycles/nope")).status_code == 404
