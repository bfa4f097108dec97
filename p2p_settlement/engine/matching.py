"""
Transaction matching for pending payments.

A bank credit matches a payment when:
  1. its free-text description contains the payment memo, and
  2. |credit amount - requested VND amount| <= tolerance (0 = exact match)

The bank does not guarantee chronological order in history responses, so
when several credits qualify the earliest transaction timestamp wins.
Credits whose timestamp cannot be parsed rank after dated ones, and any
remaining tie keeps the order the bank returned.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Iterable, Optional

from p2p_settlement.models.payment import BankTransactionRecord


@dataclass
class MatchResult:
    """Result of matching one payment against a batch of credits."""

    transaction: Optional[BankTransactionRecord] = None
    candidates: list[BankTransactionRecord] = field(default_factory=list)

    @property
    def matched(self) -> bool:
        return self.transaction is not None


def credit_transactions(transactions: Iterable[BankTransactionRecord]) -> list[BankTransactionRecord]:
    """Incoming transfers with a positive amount, in fetch order."""
    return [tx for tx in transactions if tx.is_credit]


def transaction_matches(
    transaction: BankTransactionRecord,
    memo: str,
    amount_vnd: int,
    tolerance: int = 0,
) -> bool:
    if not memo or memo not in (transaction.description or ""):
        return False
    return abs(transaction.credit_amount - Decimal(amount_vnd)) <= tolerance


def _chronological_key(indexed: tuple[int, BankTransactionRecord]):
    index, tx = indexed
    when = tx.transaction_datetime
    return (when is None, when or datetime.min, index)


def find_match(
    memo: str,
    amount_vnd: int,
    credits: Iterable[BankTransactionRecord],
    tolerance: int = 0,
    claimed_refs: Optional[set[str]] = None,
) -> MatchResult:
    """
    Find the credit that settles a payment.

    Args:
        memo: The payment's memo token.
        amount_vnd: Requested amount in VND.
        credits: Candidate credit transactions, in fetch order.
        tolerance: Maximum absolute amount difference in VND.
        claimed_refs: Transaction references already matched to another
            payment; they are never matched twice.

    Returns:
        MatchResult with the winning transaction (if any) and all candidates.
    """
    if tolerance < 0:
        raise ValueError(f"Tolerance must be non-negative, got {tolerance}")

    claimed_refs = claimed_refs or set()
    candidates = [
        (i, tx)
        for i, tx in enumerate(credits)
        if tx.ref_no not in claimed_refs and transaction_matches(tx, memo, amount_vnd, tolerance)
    ]
    if not candidates:
        return MatchResult()

    ordered = [tx for _, tx in sorted(candidates, key=_chronological_key)]
    return MatchResult(transaction=ordered[0], candidates=ordered)
