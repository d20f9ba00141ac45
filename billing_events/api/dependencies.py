"""FastAPI dependencies."""
from typing import AsyncGenerator

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession

from billing_events.services import Services


def get_services(request: Request) -> Services:
    return request.app.state.services


async def get_db(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """Read-only session for routes that query directly."""
    services: Services = request.app.state.services
    async with services.database.session_factory() as session:
        yield session
