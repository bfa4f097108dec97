"""
Monitor control endpoints.

GET  /monitor         - Pause flag, failure counter, last cycle.
POST /monitor/resume  - Resume after an automatic pause.
POST /monitor/run     - Run one reconciliation cycle now (skipped if busy).
POST /monitor/sweep   - Run the expiry sweep now.
"""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from p2p_settlement.api.cycles import CycleResponse, _cycle_to_response
from p2p_settlement.api.dependencies import get_context
from p2p_settlement.context import AppContext
from p2p_settlement.exceptions import LedgerError

router = APIRouter(prefix="/monitor", tags=["monitor"])


class MonitorStatus(BaseModel):
    paused: bool
    busy: bool
    within_operating_hours: bool
    consecutive_failures: int
    max_consecutive_failures: int
    last_error: Optional[str] = None
    last_cycle_id: Optional[str] = None
    last_run_at: Optional[datetime] = None


class SweepResponse(BaseModel):
    expired: int


@router.get("", response_model=MonitorStatus)
async def monitor_status(context: AppContext = Depends(get_context)):
    return MonitorStatus(**context.monitor.status())


@router.post("/resume", response_model=MonitorStatus)
async def resume_monitor(context: AppContext = Depends(get_context)):
    """Clear the pause flag and failure counter. Cycles start again on the next tick."""
    context.monitor.resume()
    return MonitorStatus(**context.monitor.status())


@router.post("/run", response_model=CycleResponse)
async def run_cycle_now(context: AppContext = Depends(get_context)):
    """
    Run one cycle immediately, ignoring the pause flag and operating window.

    Returns 409 if a cycle is already running and 502 if the cycle failed
    (the failure counts toward the pause threshold like any other).
    """
    if context.monitor.busy:
        raise HTTPException(status_code=409, detail="A reconciliation cycle is already running")

    cycle = await context.monitor.tick(force=True)
    if cycle is None:
        raise HTTPException(status_code=502, detail=f"Cycle failed: {context.monitor.last_error}")
    return _cycle_to_response(cycle)


@router.post("/sweep", response_model=SweepResponse)
async def sweep_now(context: AppContext = Depends(get_context)):
    try:
        expired = await context.reaper.sweep()
    except LedgerError as e:
        raise HTTPException(status_code=503, detail=str(e))
    return SweepResponse(expired=expired)
