"""Shared test fixtures."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional

from fakeredis import FakeServer
from fakeredis.aioredis import FakeRedis
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from p2p_settlement.ledger.redis_ledger import RedisPaymentLedger
from p2p_settlement.models.audit import Base
from p2p_settlement.models.enums import PaymentStatus
from p2p_settlement.models.payment import AccountBalance, BankTransactionRecord, PaymentRequest
from p2p_settlement.notifications.notifier import Notifier
from p2p_settlement.settlement.mock_provider import MockSettlementGateway

ACCOUNT_NUMBER = "0123456789"
ADMIN_CHAT = "admin-chat"

# 12:00 bank time (UTC+7), inside operating hours
NOW = datetime(2025, 3, 10, 5, 0, tzinfo=timezone.utc)


def make_payment(
    payment_id: str = "pay-1",
    memo: str = "12345678",
    amount_vnd: int = 260_100,
    amount_usdt: str = "10",
    created_at: Optional[datetime] = None,
    expires_at: Optional[datetime] = None,
    **overrides,
) -> PaymentRequest:
    created_at = created_at or NOW - timedelta(minutes=5)
    fields = dict(
        id=payment_id,
        user_id=f"user-{payment_id}",
        email=f"{payment_id}@example.com",
        amount_usdt=Decimal(amount_usdt),
        amount_vnd=amount_vnd,
        rate=Decimal("26010"),
        memo=memo,
        status=PaymentStatus.PENDING,
        created_at=created_at,
        expires_at=expires_at or created_at + timedelta(minutes=30),
    )
    fields.update(overrides)
    return PaymentRequest(**fields)


def make_credit(
    description: str,
    amount: int | str,
    ref_no: str = "FT001",
    transaction_date: Optional[str] = "10/03/2025 11:58:00",
) -> BankTransactionRecord:
    return BankTransactionRecord.from_api({
        "postingDate": transaction_date,
        "transactionDate": transaction_date,
        "accountNo": ACCOUNT_NUMBER,
        "creditAmount": str(amount),
        "debitAmount": "0",
        "currency": "VND",
        "description": description,
        "refNo": ref_no,
    })


class FakeFetcher:
    """Stands in for TransactionFetcher with canned balances and history."""

    def __init__(self, history=None, balances=None):
        self.history = list(history or [])
        self.balances = balances if balances is not None else [
            AccountBalance(number=ACCOUNT_NUMBER, name="MONITORED", currency="VND", balance=Decimal("5000000")),
        ]
        self.history_calls = []
        self.error: Optional[Exception] = None

    async def get_balance(self):
        if self.error is not None:
            raise self.error
        return self.balances

    async def get_history(self, account_number, from_date, to_date, now=None):
        self.history_calls.append((account_number, from_date, to_date))
        return self.history


class RecordingNotifier(Notifier):
    def __init__(self, fail: bool = False):
        self.sent: list[tuple[str, str]] = []
        self.fail = fail

    async def send(self, recipient_id: str, text: str) -> None:
        if self.fail:
            raise RuntimeError("chat API down")
        self.sent.append((recipient_id, text))

    def sent_to(self, recipient_id: str) -> list[str]:
        return [text for rid, text in self.sent if rid == recipient_id]


@pytest_asyncio.fixture
async def session_factory():
    """Fresh in-memory audit database for each test, shared across sessions."""
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", echo=False, poolclass=StaticPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest_asyncio.fixture
async def redis_client():
    client = FakeRedis(server=FakeServer(), decode_responses=True)
    yield client
    await client.aclose()


@pytest_asyncio.fixture
async def ledger(redis_client):
    return RedisPaymentLedger(redis_client)


@pytest_asyncio.fixture
async def notifier():
    return RecordingNotifier()


@pytest_asyncio.fixture
async def wallet():
    return MockSettlementGateway(users={"pay-1@example.com": "wallet-user-1"}, balance=Decimal("1000"))
