"""
Reconciliation engine: one poll cycle over the monitored bank account.

A cycle runs these steps:

  1. Balance check (confirms the session and the monitored account)
  2. Transaction history for the last hour
  3. Credit filter (positive incoming amounts only)
  4. Every pending payment, oldest first: expire if past its deadline,
     otherwise look for a matching credit
  5. On a match: pending -> processing, settle USDT, processing -> completed
     (or manual_review if settlement fails)

Idempotency guarantees:
  - Every status change is a compare-and-set in the ledger, so a payment
    can leave ``pending`` exactly once
  - Payments with an existing settlement id are completed without a second
    transfer, including ones an interrupted cycle left in ``processing``
  - A payment left in ``processing`` with no settlement id goes to manual
    review rather than being transferred again
  - Re-running a cycle over the same history settles nothing new

One payment failing never aborts the cycle. A failure before a match leaves
the payment pending with the error recorded; a failure after a match routes
it to manual review.
"""

import logging
import uuid
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from p2p_settlement.audit.logger import format_error, log_event
from p2p_settlement.bank.fetcher import TransactionFetcher
from p2p_settlement.engine.matching import credit_transactions, find_match
from p2p_settlement.engine.reaper import expire_payment
from p2p_settlement.engine.retry import with_retry
from p2p_settlement.exceptions import CycleError, LedgerError, SettlementError, ValidationError
from p2p_settlement.ledger.base import PaymentLedger
from p2p_settlement.models.audit import CycleRun
from p2p_settlement.models.enums import CycleStatus, PaymentOutcome, PaymentStatus
from p2p_settlement.models.payment import BankTransactionRecord, PaymentRequest, utcnow
from p2p_settlement.notifications import templates
from p2p_settlement.notifications.notifier import Notifier
from p2p_settlement.settlement.base import SettlementGateway, TransferRequest

logger = logging.getLogger("p2p_settlement.reconciler")

LOOKBACK = timedelta(hours=1)
SETTLEMENT_CURRENCY = "usdt"


class ReconciliationEngine:
    """Matches bank credits to pending payments and settles them."""

    def __init__(
        self,
        ledger: PaymentLedger,
        fetcher: TransactionFetcher,
        settlement: SettlementGateway,
        notifier: Notifier,
        session_factory: Callable[[], AsyncSession],
        account_number: str,
        tolerance_vnd: int = 0,
        fund_password: str = "",
        admin_chat_id: Optional[str] = None,
        network_max_retries: int = 3,
        retry_base_delay: float = 1.0,
        bank_utc_offset_hours: int = 7,
    ):
        if tolerance_vnd < 0:
            raise ValueError(f"Tolerance must be non-negative, got {tolerance_vnd}")
        self.ledger = ledger
        self.fetcher = fetcher
        self.settlement = settlement
        self.notifier = notifier
        self.account_number = account_number
        self.tolerance_vnd = tolerance_vnd
        self.fund_password = fund_password
        self.admin_chat_id = admin_chat_id
        self._session_factory = session_factory
        self._retry = {"max_retries": network_max_retries, "base_delay": retry_base_delay}
        self._bank_tz = timezone(timedelta(hours=bank_utc_offset_hours))

    async def run_cycle(self, now: Optional[datetime] = None) -> CycleRun:
        """
        Execute one reconciliation cycle.

        Returns:
            The completed CycleRun with summary counts.

        Raises:
            CycleError: If the monitored account is not visible.
            SettlementEngineError: If the bank could not be read. The cycle
                is recorded as failed before the error propagates.
        """
        now = now or utcnow()

        async with self._session_factory() as session:
            cycle = CycleRun(
                id=str(uuid.uuid4()),
                status=CycleStatus.RUNNING.value,
                transactions_seen=0,
                credits_seen=0,
                error_count=0,
                started_at=now,
            )
            session.add(cycle)
            await session.flush()

            try:
                credits = await self._fetch_credits(cycle, now)
                pending = await self._load_pending(session, cycle)
            except Exception as e:
                cycle.status = CycleStatus.FAILED.value
                cycle.error = format_error(e)
                cycle.completed_at = utcnow()
                await log_event(session, "cycle_failed", cycle_id=cycle.id, details={"error": cycle.error})
                await session.commit()
                raise

            outcomes: Counter[PaymentOutcome] = Counter()
            claimed_refs: set[str] = set()

            for payment in pending:
                try:
                    outcome = await self._process_single_payment(session, cycle, payment, credits, claimed_refs, now)
                except Exception as e:
                    logger.exception("Payment %s failed before settlement", payment.id)
                    await self._record_error(session, cycle, payment, e)
                    outcome = PaymentOutcome.ERROR
                outcomes[outcome] += 1

            cycle.pending_count = len(pending)
            cycle.completed_count = outcomes[PaymentOutcome.COMPLETED]
            cycle.manual_review_count = outcomes[PaymentOutcome.MANUAL_REVIEW]
            cycle.expired_count = outcomes[PaymentOutcome.EXPIRED]
            cycle.error_count += outcomes[PaymentOutcome.ERROR]
            cycle.status = CycleStatus.COMPLETED.value
            cycle.completed_at = utcnow()

            await log_event(session, "cycle_completed", cycle_id=cycle.id, details={
                outcome.value: count for outcome, count in outcomes.items()
            })
            await session.commit()

        logger.info(
            "Cycle %s summary: credits=%d, pending=%d, completed=%d, manual_review=%d, expired=%d, errors=%d",
            cycle.id[:8],
            cycle.credits_seen,
            cycle.pending_count,
            cycle.completed_count,
            cycle.manual_review_count,
            cycle.expired_count,
            cycle.error_count,
        )
        return cycle

    async def _fetch_credits(self, cycle: CycleRun, now: datetime) -> list[BankTransactionRecord]:
        balances = await with_retry(self.fetcher.get_balance, **self._retry)
        if not balances:
            raise CycleError("Balance check returned no accounts")
        if not any(acct.number == self.account_number for acct in balances):
            raise CycleError(f"Monitored account {self.account_number} not found")

        bank_now = now.astimezone(self._bank_tz)
        history = await with_retry(
            self.fetcher.get_history,
            self.account_number,
            bank_now - LOOKBACK,
            bank_now,
            now=bank_now,
            **self._retry,
        )
        history = history or []
        credits = credit_transactions(history)

        cycle.transactions_seen = len(history)
        cycle.credits_seen = len(credits)
        logger.debug("Cycle %s: %d transactions, %d credits", cycle.id[:8], len(history), len(credits))
        return credits

    async def _load_pending(self, session: AsyncSession, cycle: CycleRun) -> list[PaymentRequest]:
        """Pending payments ordered by creation time. Broken records are logged and skipped."""
        payments = []
        for payment_id in await self.ledger.pending_ids():
            try:
                payment = await self.ledger.get(payment_id)
            except ValidationError as e:
                logger.error("Skipping malformed payment %s: %s", payment_id, e)
                cycle.error_count += 1
                await log_event(session, "payment_invalid", cycle_id=cycle.id, payment_id=payment_id, details={
                    "error": format_error(e),
                })
                continue

            if payment is None:
                logger.warning("Pending payment %s has no record, dropping it from the index", payment_id)
                await self.ledger.remove_pending(payment_id)
                continue
            payments.append(payment)

        payments.sort(key=lambda p: p.created_at)
        return payments

    async def _process_single_payment(
        self,
        session: AsyncSession,
        cycle: CycleRun,
        payment: PaymentRequest,
        credits: list[BankTransactionRecord],
        claimed_refs: set[str],
        now: datetime,
    ) -> PaymentOutcome:
        """Expire, match and settle one pending payment, or finish one left in processing."""
        if payment.status == PaymentStatus.PROCESSING:
            return await self._recover_processing(session, cycle, payment)
        if payment.status != PaymentStatus.PENDING:
            return PaymentOutcome.SKIPPED

        if payment.is_expired(now):
            expired = await expire_payment(self.ledger, self.notifier, session, payment, cycle_id=cycle.id)
            return PaymentOutcome.EXPIRED if expired else PaymentOutcome.SKIPPED

        match = find_match(payment.memo, payment.amount_vnd, credits, self.tolerance_vnd, claimed_refs)
        if not match.matched:
            return PaymentOutcome.UNMATCHED

        tx = match.transaction
        if len(match.candidates) > 1:
            logger.warning(
                "Payment %s has %d candidate transactions, taking earliest %s",
                payment.id,
                len(match.candidates),
                tx.ref_no,
            )

        moved = await self.ledger.transition(payment.id, PaymentStatus.PROCESSING, {
            "transaction_ref": tx.ref_no,
            "transaction_date": tx.transaction_date,
            "vndReceivedAt": now,
        })
        if not moved:
            logger.info("Payment %s left pending before it could be claimed", payment.id)
            return PaymentOutcome.SKIPPED

        if tx.ref_no:
            claimed_refs.add(tx.ref_no)
        payment.status = PaymentStatus.PROCESSING
        payment.transaction_ref = tx.ref_no
        payment.transaction_date = tx.transaction_date

        await log_event(session, "transaction_matched", cycle_id=cycle.id, payment_id=payment.id, details={
            "ref_no": tx.ref_no,
            "credit_amount": tx.credit_amount,
            "amount_vnd": payment.amount_vnd,
            "transaction_date": tx.transaction_date,
            "candidates": len(match.candidates),
        })

        try:
            if payment.settlement_id:
                logger.info("USDT already sent for payment %s, marking as completed", payment.id)
            else:
                await self._settle(session, cycle, payment)
            await self._complete(payment)

        except SettlementError as e:
            await self._route_to_manual_review(session, cycle, payment, e, "settlement_failed")
            return PaymentOutcome.MANUAL_REVIEW

        except Exception as e:
            logger.exception("Unexpected error settling payment %s", payment.id)
            await self._route_to_manual_review(session, cycle, payment, e, "processing_failed")
            return PaymentOutcome.MANUAL_REVIEW

        await self._announce_completion(session, cycle, payment)
        return PaymentOutcome.COMPLETED

    async def _recover_processing(
        self,
        session: AsyncSession,
        cycle: CycleRun,
        payment: PaymentRequest,
    ) -> PaymentOutcome:
        """
        Finish a payment an earlier cycle left in processing.

        With a settlement id the USDT already went out, so the payment is
        completed without another transfer. Without one there is no telling
        whether the transfer reached the wallet, so an operator decides.
        """
        if not payment.settlement_id:
            logger.warning("Payment %s was left processing with no settlement id", payment.id)
            error = SettlementError("Payment was left processing without a settlement id")
            await self._route_to_manual_review(session, cycle, payment, error, "processing_interrupted")
            return PaymentOutcome.MANUAL_REVIEW

        logger.info("Recovering payment %s left processing after transfer %s", payment.id, payment.settlement_id)
        try:
            await self._complete(payment)
        except LedgerError as e:
            await self._route_to_manual_review(session, cycle, payment, e, "processing_failed")
            return PaymentOutcome.MANUAL_REVIEW

        await self._announce_completion(session, cycle, payment, recovered=True)
        return PaymentOutcome.COMPLETED

    async def _complete(self, payment: PaymentRequest) -> None:
        completed = await self.ledger.transition(payment.id, PaymentStatus.COMPLETED, {
            "settlement_id": payment.settlement_id,
            "settlement_status": payment.settlement_status,
        })
        if not completed:
            raise LedgerError(f"Payment {payment.id} left processing before completion")
        await self.ledger.mark_completed(payment.id)
        await self.ledger.release_active_payment(payment.user_id, payment.id)
        payment.status = PaymentStatus.COMPLETED

    async def _announce_completion(
        self,
        session: AsyncSession,
        cycle: CycleRun,
        payment: PaymentRequest,
        recovered: bool = False,
    ) -> None:
        details = {"ref_no": payment.transaction_ref, "settlement_id": payment.settlement_id}
        if recovered:
            details["recovered"] = True
        await log_event(session, "payment_completed", cycle_id=cycle.id, payment_id=payment.id, details=details)
        logger.info("Payment %s fully processed and completed", payment.id)

        ref_no = payment.transaction_ref or ""
        await self.notifier.send_safely(payment.user_id, templates.payment_confirmed(payment, ref_no))
        await self.notifier.send_safely(self.admin_chat_id, templates.admin_payment_completed(payment, ref_no))

    async def _resolve_recipient(self, payment: PaymentRequest) -> str:
        if payment.recipient_id:
            return payment.recipient_id

        recipient = None
        if payment.email:
            recipient = await with_retry(self.settlement.lookup_user_by_email, payment.email, **self._retry)
        if not recipient:
            raise SettlementError("Could not determine recipient user ID for USDT transfer")

        await self.ledger.update_fields(payment.id, {"recipient_id": recipient})
        payment.recipient_id = recipient
        return recipient

    async def _settle(self, session: AsyncSession, cycle: CycleRun, payment: PaymentRequest) -> None:
        """Transfer USDT to the payer. Read calls are retried, the transfer never is."""
        recipient = await self._resolve_recipient(payment)

        if not await with_retry(self.settlement.has_sufficient_balance, payment.amount_usdt, **self._retry):
            raise SettlementError(
                f"Insufficient USDT balance to process transfer of {payment.amount_usdt} USDT"
            )

        record = await self.settlement.transfer(
            TransferRequest(
                to_user_id=recipient,
                amount=payment.amount_usdt,
                currency_id=SETTLEMENT_CURRENCY,
                memo=f"P2P Payment ID: {payment.id[:8]}",
                fund_password=self.fund_password,
            )
        )
        payment.settlement_id = record.id
        payment.settlement_status = record.status
        await self.ledger.update_fields(payment.id, {
            "settlement_id": record.id,
            "settlement_status": record.status,
        })

        await log_event(session, "settlement_executed", cycle_id=cycle.id, payment_id=payment.id, details={
            "provider": self.settlement.name,
            "transfer_id": record.id,
            "status": record.status,
            "amount_usdt": payment.amount_usdt,
            "recipient": recipient,
        })
        logger.info(
            "USDT transfer completed for payment %s: %s USDT to %s",
            payment.id,
            payment.amount_usdt,
            recipient,
        )

    async def _route_to_manual_review(
        self,
        session: AsyncSession,
        cycle: CycleRun,
        payment: PaymentRequest,
        error: Exception,
        action: str,
    ) -> None:
        detail = format_error(error)
        routed = await self.ledger.transition(payment.id, PaymentStatus.MANUAL_REVIEW, {"error": detail})
        await self.ledger.remove_pending(payment.id)
        if routed:
            payment.status = PaymentStatus.MANUAL_REVIEW
        payment.error = detail

        await log_event(session, action, cycle_id=cycle.id, payment_id=payment.id, details={
            "error": detail,
            "routed_to_manual_review": routed,
        })
        logger.error("Payment %s moved to manual review: %s", payment.id, detail)
        await self.notifier.send_safely(self.admin_chat_id, templates.admin_settlement_failed(payment, str(error)))

    async def _record_error(
        self,
        session: AsyncSession,
        cycle: CycleRun,
        payment: PaymentRequest,
        error: Exception,
    ) -> None:
        """Keep the error detail on a payment that stays pending."""
        detail = format_error(error)
        try:
            await self.ledger.update_fields(payment.id, {"error": detail})
        except LedgerError as e:
            logger.error("Could not record error on payment %s: %s", payment.id, e)
        await log_event(session, "payment_error", cycle_id=cycle.id, payment_id=payment.id, details={
            "error": detail,
            "status": payment.status.value,
        })
