"""
Payment intake, query, trace and cancel endpoints.

GET  /payments              - List payments, optionally filtered by status.
POST /payments              - Create a pending payment request.
GET  /payments/{id}         - A single payment (optionally refreshing the
                              wallet transfer status).
GET  /payments/{id}/trace   - Full audit trail for a payment.
POST /payments/{id}/cancel  - Cancel a pending payment.
"""

import json
import logging
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from p2p_settlement.api.dependencies import get_context, get_session
from p2p_settlement.audit.logger import log_event
from p2p_settlement.context import AppContext
from p2p_settlement.engine.payments import cancel_payment, create_payment
from p2p_settlement.exceptions import LedgerError, SettlementEngineError, ValidationError
from p2p_settlement.models.audit import AuditLog
from p2p_settlement.models.enums import PaymentStatus
from p2p_settlement.models.payment import PaymentRequest

logger = logging.getLogger("p2p_settlement.api")

router = APIRouter(prefix="/payments", tags=["payments"])


class PaymentDetail(BaseModel):
    id: str
    user_id: str
    email: str
    amount_usdt: str
    amount_vnd: int
    rate: str
    memo: str
    status: str
    created_at: str
    expires_at: str
    transaction_ref: Optional[str] = None
    transaction_date: Optional[str] = None
    recipient_id: Optional[str] = None
    settlement_id: Optional[str] = None
    settlement_status: Optional[str] = None
    error: Optional[str] = None


class PaymentCreate(BaseModel):
    user_id: str
    email: str
    amount_usdt: Decimal
    base_rate: Decimal
    recipient_id: Optional[str] = None


class AuditEntry(BaseModel):
    id: int
    cycle_id: Optional[str]
    action: str
    details: Optional[dict] = None
    timestamp: Optional[str]


class PaymentTrace(BaseModel):
    payment: PaymentDetail
    audit_trail: list[AuditEntry]


def _payment_to_detail(p: PaymentRequest) -> PaymentDetail:
    return PaymentDetail(
        id=p.id,
        user_id=p.user_id,
        email=p.email,
        amount_usdt=str(p.amount_usdt),
        amount_vnd=p.amount_vnd,
        rate=str(p.rate),
        memo=p.memo,
        status=p.status.value,
        created_at=p.created_at.isoformat(),
        expires_at=p.expires_at.isoformat(),
        transaction_ref=p.transaction_ref,
        transaction_date=p.transaction_date,
        recipient_id=p.recipient_id,
        settlement_id=p.settlement_id,
        settlement_status=p.settlement_status,
        error=p.error,
    )


async def _load_payment(context: AppContext, payment_id: str) -> PaymentRequest:
    try:
        payment = await context.ledger.get(payment_id)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except LedgerError as e:
        raise HTTPException(status_code=503, detail=str(e))
    if payment is None:
        raise HTTPException(status_code=404, detail=f"Payment not found: {payment_id}")
    return payment


@router.get("", response_model=list[PaymentDetail])
async def list_payments(
    status: Optional[PaymentStatus] = Query(None, description="Filter by status"),
    context: AppContext = Depends(get_context),
):
    """List payments, newest first. Records that fail to decode are skipped."""
    try:
        if status == PaymentStatus.PENDING:
            ids = await context.ledger.pending_ids()
        elif status == PaymentStatus.COMPLETED:
            ids = await context.ledger.completed_ids()
        else:
            ids = await context.ledger.payment_ids()

        payments = []
        for payment_id in ids:
            try:
                payment = await context.ledger.get(payment_id)
            except ValidationError as e:
                logger.warning("Skipping malformed payment %s: %s", payment_id, e)
                continue
            if payment is not None and (status is None or payment.status == status):
                payments.append(payment)
    except LedgerError as e:
        raise HTTPException(status_code=503, detail=str(e))

    payments.sort(key=lambda p: p.created_at, reverse=True)
    return [_payment_to_detail(p) for p in payments]


@router.post("", response_model=PaymentDetail, status_code=201)
async def create(
    body: PaymentCreate,
    context: AppContext = Depends(get_context),
    session: AsyncSession = Depends(get_session),
):
    """
    Create a pending payment request.

    The caller supplies the base exchange rate; the configured markup and
    expiry window are applied here.
    """
    try:
        payment = await create_payment(
            context.ledger,
            body.user_id,
            body.email,
            body.amount_usdt,
            body.base_rate,
            context.settings.payment_markup_percent,
            context.settings.payment_expiry_minutes,
            recipient_id=body.recipient_id,
        )
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except LedgerError as e:
        raise HTTPException(status_code=503, detail=str(e))

    await log_event(session, "payment_created", payment_id=payment.id, details={
        "amount_usdt": payment.amount_usdt,
        "amount_vnd": payment.amount_vnd,
        "memo": payment.memo,
    })
    await session.commit()
    return _payment_to_detail(payment)


@router.get("/{payment_id}", response_model=PaymentDetail)
async def get_payment(
    payment_id: str,
    refresh: bool = Query(False, description="Refresh the wallet transfer status"),
    context: AppContext = Depends(get_context),
):
    """Get a single payment with full details."""
    payment = await _load_payment(context, payment_id)

    if refresh and payment.settlement_id:
        try:
            data = await context.settlement.get_transaction_status(payment.settlement_id)
        except SettlementEngineError as e:
            raise HTTPException(status_code=502, detail=f"Settlement status unavailable: {e}")
        settlement_status = data.get("status") if isinstance(data, dict) else None
        if settlement_status and settlement_status != payment.settlement_status:
            await context.ledger.update_fields(payment.id, {"settlement_status": settlement_status})
            payment.settlement_status = settlement_status

    return _payment_to_detail(payment)


@router.get("/{payment_id}/trace", response_model=PaymentTrace)
async def get_payment_trace(
    payment_id: str,
    context: AppContext = Depends(get_context),
    session: AsyncSession = Depends(get_session),
):
    """
    Full audit trail for a payment.

    Returns the payment plus every audit log entry, ordered chronologically.
    This is where an operator starts when a payment lands in manual review.
    """
    payment = await _load_payment(context, payment_id)

    result = await session.execute(
        select(AuditLog)
        .where(AuditLog.payment_id == payment_id)
        .order_by(AuditLog.timestamp.asc(), AuditLog.id.asc())
    )

    audit_trail = []
    for log in result.scalars().all():
        details = None
        if log.details:
            try:
                details = json.loads(log.details)
            except (json.JSONDecodeError, TypeError):
                details = {"raw": log.details}

        audit_trail.append(AuditEntry(
            id=log.id,
            cycle_id=log.cycle_id,
            action=log.action,
            details=details,
            timestamp=log.timestamp.isoformat() if log.timestamp else None,
        ))

    return PaymentTrace(payment=_payment_to_detail(payment), audit_trail=audit_trail)


@router.post("/{payment_id}/cancel", response_model=PaymentDetail)
async def cancel(
    payment_id: str,
    context: AppContext = Depends(get_context),
    session: AsyncSession = Depends(get_session),
):
    """Cancel a pending payment. Anything past pending is left untouched (409)."""
    payment = await _load_payment(context, payment_id)
    try:
        canceled = await cancel_payment(context.ledger, payment_id)
    except LedgerError as e:
        raise HTTPException(status_code=503, detail=str(e))
    if not canceled:
        raise HTTPException(
            status_code=409,
            detail=f"Payment {payment_id} is {payment.status.value} and cannot be canceled",
        )

    await log_event(session, "payment_canceled", payment_id=payment_id, details={
        "previous_status": payment.status.value,
    })
    await session.commit()
    return _payment_to_detail(await _load_payment(context, payment_id))
