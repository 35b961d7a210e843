"""FastAPI dependency injection providers.

These are used with Depends() in route handlers to inject the session
factory, units of work, services, the caller identity and configuration.

Authentication happens upstream; the gateway forwards the authenticated
user id in ``X-User-Id`` and the platform roles in ``X-User-Roles``
(comma-separated).
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from dataclasses import dataclass

from fastapi import Depends, Header, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from marketplace_trust.infrastructure.database.engine import get_session_factory
from marketplace_trust.infrastructure.database.unit_of_work import UnitOfWork
from marketplace_trust.services.dispute_service import DisputeService


@dataclass(frozen=True)
class Caller:
    """The forwarded identity of the calling user."""

    user_id: int
    roles: str | None


def get_db_session_factory() -> async_sessionmaker[AsyncSession]:
    """Provide the session factory bound to the application engine."""
    return get_session_factory()


async def get_unit_of_work(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_db_session_factory),
) -> AsyncGenerator[UnitOfWork, None]:
    """Yield a unit of work for a request; committed after the handler returns."""
    async with UnitOfWork(session_factory) as uow:
        yield uow


def get_dispute_service(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_db_session_factory),
) -> DisputeService:
    """Provide a DisputeService that opens one unit of work per call."""
    return DisputeService(session_factory)


def get_caller(
    x_user_id: int | None = Header(default=None, alias="X-User-Id"),
    x_user_roles: str | None = Header(default=None, alias="X-User-Roles"),
) -> Caller:
    """Read the caller identity forwarded by the gateway."""
    if x_user_id is None:
        raise HTTPException(status_code=401, detail="X-User-Id header is required")
    return Caller(user_id=x_user_id, roles=x_user_roles)
