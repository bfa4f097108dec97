"""Tests for the expiry reaper."""

from datetime import timedelta

import pytest
from sqlalchemy import select

from conftest import ACCOUNT_NUMBER, ADMIN_CHAT, NOW, FakeFetcher, make_credit, make_payment
from p2p_settlement.engine.reaper import ExpiryReaper
from p2p_settlement.engine.reconciler import ReconciliationEngine
from p2p_settlement.models.audit import AuditLog
from p2p_settlement.models.enums import PaymentStatus


@pytest.fixture
def reaper(ledger, notifier, session_factory):
    return ExpiryReaper(ledger, notifier, session_factory)


class TestSweep:
    @pytest.mark.asyncio
    async def test_expires_past_due_pending_payments(self, reaper, ledger, notifier):
        await ledger.create(make_payment("old", expires_at=NOW - timedelta(minutes=1)))
        await ledger.create(make_payment("fresh", expires_at=NOW + timedelta(minutes=10)))

        expired = await reaper.sweep(NOW)

        assert expired == 1
        assert (await ledger.get("old")).status == PaymentStatus.EXPIRED
        assert (await ledger.get("fresh")).status == PaymentStatus.PENDING
        assert await ledger.pending_ids() == ["fresh"]
        assert await ledger.get_active_payment("user-old") is None
        assert "Payment Expired" in notifier.sent_to("user-old")[0]

    @pytest.mark.asyncio
    async def test_terminal_payments_are_only_dropped_from_index(self, reaper, ledger, notifier):
        await ledger.create(make_payment(expires_at=NOW - timedelta(minutes=1)))
        await ledger.transition("pay-1", PaymentStatus.PROCESSING)
        await ledger.transition("pay-1", PaymentStatus.COMPLETED)

        expired = await reaper.sweep(NOW)

        assert expired == 0
        assert (await ledger.get("pay-1")).status == PaymentStatus.COMPLETED
        assert await ledger.due_for_expiry(NOW) == []
        assert notifier.sent == []

    @pytest.mark.asyncio
    async def test_missing_record_is_dropped(self, reaper, ledger, redis_client):
        await redis_client.zadd("payments:expiry", {"ghost": 1})

        assert await reaper.sweep(NOW) == 0
        assert await ledger.due_for_expiry(NOW) == []

    @pytest.mark.asyncio
    async def test_malformed_record_is_dropped(self, reaper, ledger, redis_client):
        await redis_client.hset("payment:broken", mapping={"status": "pending"})
        await redis_client.zadd("payments:expiry", {"broken": 1})
        await ledger.create(make_payment(expires_at=NOW - timedelta(minutes=1)))

        assert await reaper.sweep(NOW) == 1
        assert await ledger.due_for_expiry(NOW) == []

    @pytest.mark.asyncio
    async def test_sweep_is_audited(self, reaper, ledger, session_factory):
        await ledger.create(make_payment(expires_at=NOW - timedelta(minutes=1)))

        await reaper.sweep(NOW)

        async with session_factory() as session:
            actions = (await session.execute(select(AuditLog.action).order_by(AuditLog.id))).scalars().all()
        assert list(actions) == ["payment_expired", "expiry_sweep"]

    @pytest.mark.asyncio
    async def test_nothing_due(self, reaper, ledger):
        await ledger.create(make_payment(expires_at=NOW + timedelta(minutes=1)))
        assert await reaper.sweep(NOW) == 0

    @pytest.mark.asyncio
    async def test_swept_payment_is_not_settled_by_a_later_match(
        self, reaper, ledger, wallet, notifier, session_factory
    ):
        await ledger.create(make_payment(created_at=NOW - timedelta(minutes=40), expires_at=NOW - timedelta(minutes=10)))
        engine = ReconciliationEngine(
            ledger=ledger,
            fetcher=FakeFetcher(history=[make_credit("12345678", 260_100)]),
            settlement=wallet,
            notifier=notifier,
            session_factory=session_factory,
            account_number=ACCOUNT_NUMBER,
            admin_chat_id=ADMIN_CHAT,
            retry_base_delay=0,
        )

        assert await reaper.sweep(NOW) == 1
        cycle = await engine.run_cycle(NOW)

        assert cycle.pending_count == 0
        assert cycle.completed_count == 0
        assert (await ledger.get("pay-1")).status == PaymentStatus.EXPIRED
        assert wallet.transfers == {}
