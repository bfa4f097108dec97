"""
Reconciliation cycle endpoints.

GET /cycles       - Recent cycles with summary counts.
GET /cycles/{id}  - One cycle with its audit entries.
"""

import json
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from p2p_settlement.api.dependencies import get_session
from p2p_settlement.models.audit import AuditLog, CycleRun

router = APIRouter(prefix="/cycles", tags=["cycles"])


class CycleEvent(BaseModel):
    payment_id: Optional[str]
    action: str
    details: Optional[dict] = None
    timestamp: Optional[str]


class CycleResponse(BaseModel):
    id: str
    status: str
    transactions_seen: int
    credits_seen: int
    pending_count: int
    completed_count: int
    manual_review_count: int
    expired_count: int
    error_count: int
    error: Optional[str] = None
    started_at: Optional[str]
    completed_at: Optional[str]
    events: Optional[list[CycleEvent]] = None


def _cycle_to_response(cycle: CycleRun, logs: list[AuditLog] | None = None) -> CycleResponse:
    events = None
    if logs is not None:
        events = []
        for log in logs:
            details = None
            if log.details:
                try:
                    details = json.loads(log.details)
                except (json.JSONDecodeError, TypeError):
                    details = {"raw": log.details}
            events.append(CycleEvent(
                payment_id=log.payment_id,
                action=log.action,
                details=details,
                timestamp=log.timestamp.isoformat() if log.timestamp else None,
            ))

    return CycleResponse(
        id=cycle.id,
        status=cycle.status,
        transactions_seen=cycle.transactions_seen or 0,
        credits_seen=cycle.credits_seen or 0,
        pending_count=cycle.pending_count or 0,
        completed_count=cycle.completed_count or 0,
        manual_review_count=cycle.manual_review_count or 0,
        expired_count=cycle.expired_count or 0,
        error_count=cycle.error_count or 0,
        error=cycle.error,
        started_at=cycle.started_at.isoformat() if cycle.started_at else None,
        completed_at=cycle.completed_at.isoformat() if cycle.completed_at else None,
        events=events,
    )


@router.get("", response_model=list[CycleResponse])
async def list_cycles(
    limit: int = Query(50, ge=1, le=500),
    session: AsyncSession = Depends(get_session),
):
    """Most recent cycles first."""
    result = await session.execute(
        select(CycleRun).order_by(CycleRun.started_at.desc()).limit(limit)
    )
    return [_cycle_to_response(c) for c in result.scalars().all()]


@router.get("/{cycle_id}", response_model=CycleResponse)
async def get_cycle(cycle_id: str, session: AsyncSession = Depends(get_session)):
    cycle = await session.get(CycleRun, cycle_id)
    if not cycle:
        raise HTTPException(status_code=404, detail=f"Cycle not found: {cycle_id}")

    result = await session.execute(
        select(AuditLog)
        .where(AuditLog.cycle_id == cycle_id)
        .order_by(AuditLog.timestamp.asc(), AuditLog.id.asc())
    )
    return _cycle_to_response(cycle, list(result.scalars().all()))
