"""Liveness endpoint."""

from fastapi import APIRouter, Depends

from p2p_settlement.api.dependencies import get_context
from p2p_settlement.context import AppContext

router = APIRouter(tags=["health"])


@router.get("/health")
async def health(context: AppContext = Depends(get_context)):
    return {
        "status": "ok",
        "monitor_paused": context.monitor.paused,
        "bank_session": context.bank.session is not None,
        "settlement_provider": context.settlement.name,
    }
