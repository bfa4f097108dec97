"""
Payment request creation and cancellation.

The chat flow collects amount and email, looks up the exchange rate and
calls ``create_payment``. The requested VND amount is always rounded up:

    amount_vnd = ceil(amount_usdt * base_rate * (1 + markup / 100))

Memos are 8-digit tokens derived from the payment id. A memo already used by
another pending payment would make matching ambiguous, so creation draws a
new id until the memo is free.
"""

import logging
import math
import re
import uuid
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

from p2p_settlement.exceptions import ValidationError
from p2p_settlement.ledger.base import PaymentLedger
from p2p_settlement.models.enums import PaymentStatus
from p2p_settlement.models.payment import PaymentRequest, utcnow

logger = logging.getLogger("p2p_settlement.payments")

MEMO_LENGTH = 8
MIN_AMOUNT_USDT = Decimal("1")
MAX_MEMO_ATTEMPTS = 10
EMAIL_RE = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")


def apply_markup(base_rate: Decimal | float, markup_percent: Decimal | float) -> Decimal:
    return Decimal(str(base_rate)) * (1 + Decimal(str(markup_percent)) / 100)


def compute_amount_vnd(
    amount_usdt: Decimal | float,
    base_rate: Decimal | float,
    markup_percent: Decimal | float,
) -> int:
    """VND to collect for ``amount_usdt``, rounded up to the next dong."""
    return math.ceil(Decimal(str(amount_usdt)) * apply_markup(base_rate, markup_percent))


def memo_for(payment_id: str) -> str:
    numeric = int(payment_id.replace("-", "")[:8], 16)
    return str(numeric % 10**MEMO_LENGTH).zfill(MEMO_LENGTH)


async def create_payment(
    ledger: PaymentLedger,
    user_id: str,
    email: str,
    amount_usdt: Decimal | float,
    base_rate: Decimal | float,
    markup_percent: Decimal | float,
    expiry_minutes: int,
    recipient_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> PaymentRequest:
    """
    Create and store a pending payment request.

    Raises:
        ValidationError: On a missing or invalid field, or if no free memo
            could be found.
    """
    if not user_id:
        raise ValidationError("Payment requires a user id")
    if not email or not EMAIL_RE.match(email):
        raise ValidationError(f"Invalid email address: {email!r}")
    amount = Decimal(str(amount_usdt))
    if amount < MIN_AMOUNT_USDT:
        raise ValidationError(f"Minimum amount is {MIN_AMOUNT_USDT} USDT, got {amount}")
    if Decimal(str(base_rate)) <= 0:
        raise ValidationError(f"Invalid exchange rate: {base_rate}")

    for _ in range(MAX_MEMO_ATTEMPTS):
        payment_id = str(uuid.uuid4())
        memo = memo_for(payment_id)
        if not await ledger.memo_in_use(memo):
            break
        logger.warning("Memo %s already pending, drawing a new payment id", memo)
    else:
        raise ValidationError("Could not allocate a unique memo")

    now = now or utcnow()
    payment = PaymentRequest(
        id=payment_id,
        user_id=user_id,
        email=email,
        amount_usdt=amount,
        amount_vnd=compute_amount_vnd(amount, base_rate, markup_percent),
        rate=apply_markup(base_rate, markup_percent),
        memo=memo,
        status=PaymentStatus.PENDING,
        created_at=now,
        expires_at=now + timedelta(minutes=expiry_minutes),
        recipient_id=recipient_id,
    )
    await ledger.create(payment)

    logger.info(
        "Payment created: %s for user %s - %s USDT (%d VND)",
        payment.id,
        user_id,
        payment.amount_usdt,
        payment.amount_vnd,
    )
    return payment


async def cancel_payment(ledger: PaymentLedger, payment_id: str) -> bool:
    """
    Cancel a pending payment.

    Returns:
        False if the payment does not exist or is no longer pending.
    """
    payment = await ledger.get(payment_id)
    if payment is None:
        return False
    if not await ledger.transition(payment_id, PaymentStatus.CANCELED):
        return False

    await ledger.remove_pending(payment_id)
    await ledger.remove_from_expiry(payment_id)
    await ledger.release_active_payment(payment.user_id, payment_id)
    logger.info("Payment %s canceled", payment_id)
    return True
