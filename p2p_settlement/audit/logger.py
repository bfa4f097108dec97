"""
Immutable audit trail for payment state changes.

Every transition gets an append-only audit log entry with:
  - Cycle ID (which reconciliation cycle triggered it, if any)
  - Payment ID
  - Action (what happened)
  - Details (matched transaction, settlement id, error detail)
  - Timestamp (UTC)

The ledger only holds the latest state of a payment; this trail is what an
operator reads when a payment lands in manual review.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from p2p_settlement.models.audit import AuditLog

logger = logging.getLogger("p2p_settlement.audit")


async def log_event(
    session: AsyncSession,
    action: str,
    cycle_id: Optional[str] = None,
    payment_id: Optional[str] = None,
    details: Optional[dict[str, Any]] = None,
) -> AuditLog:
    """
    Create an immutable audit log entry.

    Args:
        session: Database session.
        action: What happened (e.g. "transaction_matched", "settlement_failed").
        cycle_id: The reconciliation cycle that triggered this event.
        payment_id: The payment this event relates to.
        details: Arbitrary context (serialized to JSON).

    Returns:
        The created AuditLog record.
    """
    entry = AuditLog(
        cycle_id=cycle_id,
        payment_id=payment_id,
        action=action,
        details=json.dumps(details, default=str) if details else None,
        timestamp=datetime.now(timezone.utc),
    )
    session.add(entry)
    logger.info(
        "AUDIT | cycle=%s payment=%s action=%s | %s",
        cycle_id[:8] if cycle_id else "-",
        payment_id or "-",
        action,
        json.dumps(details, default=str)[:200] if details else "",
    )
    return entry


def format_error(error: BaseException) -> str:
    """One-line error detail stored on a payment for operator follow-up."""
    return f"{type(error).__name__}: {error}"
