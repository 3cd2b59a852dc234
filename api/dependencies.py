"""
FastAPI dependencies
"""

from typing import AsyncIterator
from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession
from bootstrap.service import BootstrapService


async def get_db(request: Request) -> AsyncIterator[AsyncSession]:
    """Get database session bound to the application's catalog store"""
    async with request.app.state.session_maker() as session:
        yield session


def get_service(request: Request) -> BootstrapService:
    return request.app.state.bootstrap_service
