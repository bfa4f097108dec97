"""FastAPI dependencies: the application context and an audit DB session."""

from typing import AsyncGenerator

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from p2p_settlement.context import AppContext


def get_context(request: Request) -> AppContext:
    return request.app.state.context


async def get_session(context: AppContext = Depends(get_context)) -> AsyncGenerator[AsyncSession, None]:
    async with context.session_factory() as session:
        yield session
