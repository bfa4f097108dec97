"""
Abstract settlement gateway interface.

The settlement gateway moves USDT from the operator's wallet to the payer's
wallet once their bank transfer has been reconciled. The production
implementation wraps the Basal Pay wallet API; a mock is provided for local
runs.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Optional


@dataclass
class TransferRequest:
    """Request to transfer stablecoin to a wallet user."""

    to_user_id: str
    amount: Decimal
    currency_id: str
    memo: str
    fund_password: str


@dataclass
class TransferRecord:
    """Transfer created by the wallet provider."""

    id: str
    status: str
    amount: Optional[str] = None
    currency_id: Optional[str] = None


@dataclass
class FeeBreakdown:
    """Fees charged for a wallet transaction."""

    system_fee: Decimal
    platform_fee: Decimal

    @property
    def total(self) -> Decimal:
        return self.system_fee + self.platform_fee


class SettlementGateway(ABC):
    """Abstract base class for wallet providers."""

    @property
    @abstractmethod
    def name(self) -> str:
        ...

    @abstractmethod
    async def lookup_user_by_email(self, email: str) -> Optional[str]:
        """Wallet user id registered under ``email``, or None."""
        ...

    @abstractmethod
    async def get_balance(self) -> Decimal:
        """USDT balance of the operator wallet."""
        ...

    @abstractmethod
    async def calculate_fee(self, amount: Decimal, transaction_type: str = "disbursement") -> FeeBreakdown:
        ...

    @abstractmethod
    async def transfer(self, request: TransferRequest) -> TransferRecord:
        """
        Execute a transfer.

        Raises:
            SettlementError: If the provider rejects or fails the transfer.
        """
        ...

    @abstractmethod
    async def get_transaction_status(self, transaction_id: str) -> dict[str, Any]:
        ...

    async def has_sufficient_balance(self, amount: Decimal) -> bool:
        """True if the wallet covers ``amount`` plus the disbursement fees."""
        balance = await self.get_balance()
        fee = await self.calculate_fee(amount)
        return balance >= amount + fee.total

    async def close(self) -> None:
        pass
