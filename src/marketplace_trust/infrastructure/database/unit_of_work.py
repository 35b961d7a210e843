"""Explicit unit of work around one AsyncSession transaction.

Every mutation of the ledger or the dispute store happens inside one
UnitOfWork. Both services receive the same instance, so a resolution event,
the case snapshot and the ledger transition commit or roll back together.

Usage:
    async with UnitOfWork(get_session_factory()) as uow:
        ledger = EscrowLedger(uow)
        store = DisputeCaseStore(uow, ledger)
        await store.append_event(case_id, actor, change)
    # committed here; any exception rolled everything back
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from marketplace_trust.domain.exceptions import PersistenceError
from marketplace_trust.infrastructure.database.repositories import (
    AccountRepository,
    DisputeCaseRepository,
    DisputeEventRepository,
    TransactionRepository,
)
from marketplace_trust.logging_config import get_logger

if TYPE_CHECKING:
    from types import TracebackType

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = get_logger(__name__)


class UnitOfWork:
    """Async context manager: commit on success, roll back on any error.

    SQLAlchemy errors, including those raised by the final commit, surface as
    PersistenceError; domain errors propagate unchanged after the rollback.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory
        self._session: AsyncSession | None = None

    @property
    def session(self) -> AsyncSession:
        if self._session is None:
            raise RuntimeError("UnitOfWork used outside of its 'async with' block")
        return self._session

    async def __aenter__(self) -> UnitOfWork:
        self._session = self._session_factory()
        self.accounts = AccountRepository(self._session)
        self.transactions = TransactionRepository(self._session)
        self.cases = DisputeCaseRepository(self._session)
        self.events = DisputeEventRepository(self._session)
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        session = self.session
        try:
            if exc is None:
                try:
                    await session.commit()
                except SQLAlchemyError as err:
                    await session.rollback()
                    logger.error("uow.commit_failed", error=str(err))
                    raise _persistence_error(err) from err
            else:
                await session.rollback()
                logger.debug("uow.rolled_back", error_type=exc_type.__name__ if exc_type else None)
                if isinstance(exc, SQLAlchemyError):
                    raise _persistence_error(exc) from exc
        finally:
            await session.close()
            self._session = None

    async def flush(self) -> None:
        """Flush pending writes, translating database failures."""
        try:
            await self.session.flush()
        except SQLAlchemyError as err:
            raise _persistence_error(err) from err


def _persistence_error(err: SQLAlchemyError) -> PersistenceError:
    if isinstance(err, IntegrityError):
        return PersistenceError(f"Integrity constraint violated: {err.orig}")
    return PersistenceError(f"Database error: {err.__class__.__name__}")
