"""
Expiry reaper.

Sweeps the expiry index on a coarse timer and terminalizes pending payments
whose deadline has passed, whether or not a matching transfer exists. The
reconciliation cycle expires past-due payments through the same
``expire_payment`` path, so the two never disagree about what an expired
payment looks like.
"""

import logging
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from p2p_settlement.audit.logger import format_error, log_event
from p2p_settlement.exceptions import LedgerError, ValidationError
from p2p_settlement.ledger.base import PaymentLedger
from p2p_settlement.models.enums import PaymentStatus
from p2p_settlement.models.payment import PaymentRequest, utcnow
from p2p_settlement.notifications import templates
from p2p_settlement.notifications.notifier import Notifier

logger = logging.getLogger("p2p_settlement.reaper")


async def expire_payment(
    ledger: PaymentLedger,
    notifier: Notifier,
    session: AsyncSession,
    payment: PaymentRequest,
    cycle_id: Optional[str] = None,
) -> bool:
    """
    Move a pending payment to expired.

    The payment leaves the expiry index whatever its status, so a sweep never
    revisits it.

    Returns:
        True if this call expired the payment.
    """
    try:
        expired = await ledger.transition(payment.id, PaymentStatus.EXPIRED)
        if not expired:
            return False

        await ledger.remove_pending(payment.id)
        await ledger.release_active_payment(payment.user_id, payment.id)
        await log_event(session, "payment_expired", cycle_id=cycle_id, payment_id=payment.id, details={
            "expires_at": payment.expires_at,
            "amount_vnd": payment.amount_vnd,
            "memo": payment.memo,
        })
        logger.info("Payment %s expired", payment.id)
        await notifier.send_safely(payment.user_id, templates.payment_expired(payment))
        return True
    finally:
        await ledger.remove_from_expiry(payment.id)


class ExpiryReaper:
    """Periodic sweep of ``payments:expiry``."""

    def __init__(
        self,
        ledger: PaymentLedger,
        notifier: Notifier,
        session_factory: Callable[[], AsyncSession],
    ):
        self.ledger = ledger
        self.notifier = notifier
        self._session_factory = session_factory

    async def sweep(self, now: Optional[datetime] = None) -> int:
        """
        Expire every payment due at or before ``now``.

        Returns:
            Number of payments moved to expired.
        """
        now = now or utcnow()
        due = await self.ledger.due_for_expiry(now)
        if not due:
            return 0

        expired = 0
        async with self._session_factory() as session:
            for payment_id in due:
                try:
                    payment = await self.ledger.get(payment_id)
                    if payment is None:
                        logger.warning("Payment %s in expiry index has no record, dropping it", payment_id)
                        await self.ledger.remove_from_expiry(payment_id)
                        continue
                    if await expire_payment(self.ledger, self.notifier, session, payment):
                        expired += 1
                except ValidationError as e:
                    logger.error("Payment %s is malformed, dropping it from the expiry index: %s", payment_id, e)
                    await log_event(session, "payment_invalid", payment_id=payment_id, details={
                        "error": format_error(e),
                    })
                    await self.ledger.remove_from_expiry(payment_id)
                except LedgerError as e:
                    logger.error("Could not expire payment %s: %s", payment_id, e)

            await log_event(session, "expiry_sweep", details={"due": len(due), "expired": expired})
            await session.commit()

        logger.info("Expiry sweep: %d due, %d expired", len(due), expired)
        return expired
