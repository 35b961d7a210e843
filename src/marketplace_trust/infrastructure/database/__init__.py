"""Database infrastructure — engine, ORM models, repositories and unit of work."""

from marketplace_trust.infrastructure.database.engine import (
    close_db,
    get_session_factory,
    init_db,
)
from marketplace_trust.infrastructure.database.orm_models import (
    Base,
    DisputeCase,
    DisputeEvent,
    EscrowAccount,
    EscrowTransaction,
)
from marketplace_trust.infrastructure.database.repositories import (
    AccountRepository,
    DisputeCaseRepository,
    DisputeEventRepository,
    TransactionRepository,
)
from marketplace_trust.infrastructure.database.unit_of_work import UnitOfWork

__all__ = [
    "Base",
    "EscrowAccount",
    "EscrowTransaction",
    "DisputeCase",
    "DisputeEvent",
    "AccountRepository",
    "TransactionRepository",
    "DisputeCaseRepository",
    "DisputeEventRepository",
    "UnitOfWork",
    "get_session_factory",
    "init_db",
    "close_db",
]
