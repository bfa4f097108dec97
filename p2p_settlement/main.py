"""
P2P Settlement Engine - bank transfer reconciliation and USDT settlement.

Polls the monitored bank account, matches incoming transfers against pending
payment requests in the shared ledger and settles each match as a USDT
wallet transfer. The HTTP API is for operators: inspecting payments and
cycles, cancelling payments, and resuming a paused monitor.

Start the server:
    uvicorn p2p_settlement.main:app
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from p2p_settlement.api.cycles import router as cycles_router
from p2p_settlement.api.health import router as health_router
from p2p_settlement.api.monitor import router as monitor_router
from p2p_settlement.api.payments import router as payments_router
from p2p_settlement.config import settings
from p2p_settlement.context import AppContext, build_context
from p2p_settlement.database import init_db
from p2p_settlement.engine.scheduler import PeriodicJob

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)


def create_app(context: Optional[AppContext] = None, start_jobs: bool = True) -> FastAPI:
    """
    Build the API application.

    Without an explicit ``context`` one is built from the environment at
    startup and closed at shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        ctx = context or build_context(settings)
        await init_db(ctx.db_engine)
        app.state.context = ctx

        jobs = []
        if start_jobs:
            jobs = [
                PeriodicJob("transaction-monitor", ctx.settings.poll_interval_seconds, ctx.monitor.tick),
                PeriodicJob("expiry-reaper", ctx.settings.reaper_interval_seconds, ctx.reaper.sweep),
            ]
        for job in jobs:
            job.start()

        yield

        for job in jobs:
            await job.stop()
        if context is None:
            await ctx.close()

    app = FastAPI(
        title="P2P Settlement Engine",
        description=(
            "Reconciles VND bank transfers against pending payment requests and settles "
            "them as USDT wallet transfers, with compare-and-set state transitions and an "
            "immutable audit trail."
        ),
        version="0.1.0",
        lifespan=lifespan,
    )

    app.include_router(health_router)
    app.include_router(payments_router, prefix="/api")
    app.include_router(monitor_router, prefix="/api")
    app.include_router(cycles_router, prefix="/api")
    return app


app = create_app()
