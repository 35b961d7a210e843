"""Shared test fixtures for the marketplace trust layer test suite.

Provides:
    - An in-memory SQLite database (aiosqlite) with the full schema
    - A deterministic, ticking clock
    - Actor contexts for every actor type
    - Factory helpers for funded transactions and open cases
    - An httpx client bound to the FastAPI app
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from marketplace_trust.api.deps import get_db_session_factory
from marketplace_trust.domain.authorization import ActorContext, build_actor
from marketplace_trust.domain.enums import AccountStatus, TransactionStatus
from marketplace_trust.infrastructure.database.orm_models import Base
from marketplace_trust.infrastructure.database.unit_of_work import UnitOfWork
from marketplace_trust.main import create_app
from marketplace_trust.services.dispute_case_store import DisputeCaseStore
from marketplace_trust.services.escrow_ledger import EscrowLedger

CUSTOMER_ID = 1
PROVIDER_ID = 2
MEDIATOR_ID = 50
ADMIN_ID = 99
OUTSIDER_ID = 77


class TickingClock:
    """Returns a fixed instant and moves forward one second per call."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        current = self.now
        self.now = self.now + timedelta(seconds=1)
        return current

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


# ---------------------------------------------------------------------------
# Database Fixtures
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def session_factory() -> async_sessionmaker[AsyncSession]:
    """A fresh in-memory database per test."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(bind=engine, expire_on_commit=False, autoflush=False)
    await engine.dispose()


# ---------------------------------------------------------------------------
# Domain Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def now() -> datetime:
    return datetime(2025, 3, 1, 12, 0, tzinfo=UTC)


@pytest.fixture
def clock(now: datetime) -> TickingClock:
    return TickingClock(now)


@pytest.fixture
def customer() -> ActorContext:
    return build_actor(CUSTOMER_ID, ["client"])


@pytest.fixture
def provider() -> ActorContext:
    return build_actor(PROVIDER_ID, ["freelancer"])


@pytest.fixture
def mediator() -> ActorContext:
    return build_actor(MEDIATOR_ID, ["trust_safety"])


@pytest.fixture
def admin() -> ActorContext:
    return build_actor(ADMIN_ID, ["admin", "user"])


@pytest.fixture
def outsider() -> ActorContext:
    return build_actor(OUTSIDER_ID, ["customer"])


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------


class TrustFactory:
    """Seeds accounts, transactions and cases, each in its own committed unit of work."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: TickingClock,
    ) -> None:
        self.session_factory = session_factory
        self.clock = clock

    async def account(self, user_id: int = CUSTOMER_ID, currency_code: str = "USD"):
        async with UnitOfWork(self.session_factory) as uow:
            ledger = EscrowLedger(uow, clock=self.clock)
            account = await ledger.create_account(
                user_id=user_id, provider="stripe", currency_code=currency_code
            )
            await ledger.update_account_status(account.id, AccountStatus.ACTIVE)
        return account

    async def transaction(
        self,
        actor: ActorContext,
        *,
        account=None,
        amount: str = "500.00",
        fee_amount: str = "25.00",
        status: TransactionStatus = TransactionStatus.FUNDED,
        reference: str | None = None,
        scheduled_release_at: datetime | None = None,
    ):
        """Create a transaction on an active account and walk it to ``status``."""
        if account is None:
            account = await self.account()

        path = {
            TransactionStatus.INITIATED: [],
            TransactionStatus.FUNDED: [TransactionStatus.FUNDED],
            TransactionStatus.IN_ESCROW: [TransactionStatus.FUNDED, TransactionStatus.IN_ESCROW],
            TransactionStatus.RELEASED: [
                TransactionStatus.FUNDED,
                TransactionStatus.IN_ESCROW,
                TransactionStatus.RELEASED,
            ],
        }[status]

        async with UnitOfWork(self.session_factory) as uow:
            ledger = EscrowLedger(uow, clock=self.clock)
            txn = await ledger.create_transaction(
                account_id=account.id,
                type="project",
                amount=Decimal(amount),
                fee_amount=Decimal(fee_amount),
                initiated_by_id=CUSTOMER_ID,
                counterparty_id=PROVIDER_ID,
                reference=reference,
                scheduled_release_at=scheduled_release_at,
            )
            for target in path:
                txn = await ledger.transition(txn.id, target, actor)
        return txn

    async def case(self, actor: ActorContext, transaction_id, **kwargs):
        async with UnitOfWork(self.session_factory) as uow:
            ledger = EscrowLedger(uow, clock=self.clock)
            store = DisputeCaseStore(uow, ledger, clock=self.clock)
            case = await store.open_case(
                transaction_id,
                actor,
                reason_code=kwargs.pop("reason_code", "quality_issue"),
                summary=kwargs.pop("summary", "Delivered work does not match the brief"),
                **kwargs,
            )
        return case


@pytest.fixture
def factory(
    session_factory: async_sessionmaker[AsyncSession], clock: TickingClock
) -> TrustFactory:
    return TrustFactory(session_factory, clock)


# ---------------------------------------------------------------------------
# API Fixtures
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def client(session_factory: async_sessionmaker[AsyncSession]) -> AsyncClient:
    """HTTP client bound to the app with its database swapped for the test one.

    The lifespan is not run, so no engine is created for the configured URL.
    """
    app = create_app()
    app.dependency_overrides[get_db_session_factory] = lambda: session_factory
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
