"""
Payment ledger contract.

The ledger is an external key-value store shared with the intake (chat)
flow. It holds one record per payment plus three indices:

  - pending set: payments still waiting for a bank transfer
  - expiry index: payment ids ordered by expiry time (epoch ms)
  - completed set: payments settled successfully

The store offers single-key atomic operations only, so every status change
goes through ``transition``, which checks the current status and applies the
write only if the state machine allows it. Index updates are separate
single-key writes.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Optional

from p2p_settlement.exceptions import ValidationError
from p2p_settlement.models.enums import PaymentStatus
from p2p_settlement.models.payment import PaymentRequest

PENDING_KEY = "payments:pending"
COMPLETED_KEY = "payments:completed"
EXPIRY_KEY = "payments:expiry"


def payment_key(payment_id: str) -> str:
    return f"payment:{payment_id}"


def active_payment_key(user_id: str) -> str:
    return f"user:{user_id}:activePayment"


class PaymentLedger(ABC):
    """Abstract base class for the shared payment store."""

    @abstractmethod
    async def get(self, payment_id: str) -> Optional[PaymentRequest]:
        """
        Load a payment.

        Returns:
            The payment, or None if no record exists.

        Raises:
            ValidationError: If the stored record is missing required fields.
            LedgerError: If the store is unreachable.
        """
        ...

    @abstractmethod
    async def create(self, payment: PaymentRequest) -> None:
        """Store a new pending payment and add it to the pending and expiry indices."""
        ...

    @abstractmethod
    async def transition(
        self,
        payment_id: str,
        target: PaymentStatus,
        fields: Optional[dict[str, Any]] = None,
    ) -> bool:
        """
        Move a payment to ``target`` if its current status allows it.

        ``fields`` are written together with the status, atomically.

        Returns:
            True if the transition was applied, False if the payment is
            missing or its current status does not allow the move.
        """
        ...

    @abstractmethod
    async def update_fields(self, payment_id: str, fields: dict[str, Any]) -> None:
        """Write non-status fields (recipient id, settlement id, error detail)."""
        ...

    @abstractmethod
    async def pending_ids(self) -> list[str]:
        ...

    @abstractmethod
    async def completed_ids(self) -> list[str]:
        ...

    @abstractmethod
    async def payment_ids(self) -> list[str]:
        """Ids of every payment record, whatever its status."""
        ...

    @abstractmethod
    async def mark_completed(self, payment_id: str) -> None:
        """Move a payment from the pending index to the completed index."""
        ...

    @abstractmethod
    async def remove_pending(self, payment_id: str) -> None:
        ...

    @abstractmethod
    async def due_for_expiry(self, now: datetime) -> list[str]:
        """Payment ids in the expiry index due at or before ``now``."""
        ...

    @abstractmethod
    async def remove_from_expiry(self, payment_id: str) -> None:
        ...

    @abstractmethod
    async def get_active_payment(self, user_id: str) -> Optional[str]:
        ...

    @abstractmethod
    async def clear_active_payment(self, user_id: str) -> None:
        ...

    async def release_active_payment(self, user_id: Optional[str], payment_id: str) -> None:
        """Clear the user's active payment pointer if it still points at ``payment_id``."""
        if user_id and await self.get_active_payment(user_id) == payment_id:
            await self.clear_active_payment(user_id)

    async def memo_in_use(self, memo: str) -> bool:
        """True if a pending payment already uses this memo."""
        for payment_id in await self.pending_ids():
            try:
                payment = await self.get(payment_id)
            except ValidationError:
                continue
            if payment is not None and payment.memo == memo:
                return True
        return False
