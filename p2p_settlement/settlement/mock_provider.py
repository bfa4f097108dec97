"""
Mock settlement gateway for local runs.

Simulates wallet API behaviour:
  - Configurable latency (default 100ms)
  - Configurable transfer failure rate (default 0%)
  - Configurable wallet balance, debited on each transfer
  - Realistic transfer IDs
"""

import asyncio
import random
import uuid
from decimal import Decimal
from typing import Any, Optional

from p2p_settlement.exceptions import SettlementError
from p2p_settlement.settlement.base import FeeBreakdown, SettlementGateway, TransferRecord, TransferRequest


class MockSettlementGateway(SettlementGateway):
    """In-process wallet with a known set of users."""

    def __init__(
        self,
        users: Optional[dict[str, str]] = None,
        balance: Decimal = Decimal("10000"),
        failure_rate: float = 0.0,
        latency_ms: int = 0,
        fee: Decimal = Decimal("0"),
    ):
        self.users = dict(users or {})
        self.balance = balance
        self.fee = fee
        self._failure_rate = failure_rate
        self._latency_ms = latency_ms
        self.transfers: dict[str, TransferRecord] = {}

    @property
    def name(self) -> str:
        return "mock_wallet"

    async def _latency(self) -> None:
        if self._latency_ms > 0:
            jitter = random.uniform(0.5, 1.5)
            await asyncio.sleep(self._latency_ms * jitter / 1000)

    async def lookup_user_by_email(self, email: str) -> Optional[str]:
        await self._latency()
        if email not in self.users:
            # Unknown emails get a deterministic id, like a sandbox account
            self.users[email] = f"usr_{uuid.uuid5(uuid.NAMESPACE_URL, email).hex[:12]}"
        return self.users[email]

    async def get_balance(self) -> Decimal:
        await self._latency()
        return self.balance

    async def calculate_fee(self, amount: Decimal, transaction_type: str = "disbursement") -> FeeBreakdown:
        return FeeBreakdown(system_fee=self.fee, platform_fee=Decimal("0"))

    async def transfer(self, request: TransferRequest) -> TransferRecord:
        await self._latency()

        if random.random() < self._failure_rate:
            raise SettlementError("Mock transfer failure: wallet temporarily unavailable")
        if request.amount > self.balance:
            raise SettlementError(f"Mock wallet balance {self.balance} below {request.amount}")

        self.balance -= request.amount
        record = TransferRecord(
            id=f"tx_{uuid.uuid4().hex[:16]}",
            status="completed",
            amount=str(request.amount),
            currency_id=request.currency_id,
        )
        self.transfers[record.id] = record
        return record

    async def get_transaction_status(self, transaction_id: str) -> dict[str, Any]:
        record = self.transfers.get(transaction_id)
        if record is None:
            raise SettlementError(f"Unknown transaction: {transaction_id}")
        return {"id": record.id, "status": record.status}
