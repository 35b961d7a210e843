"""Repository classes for database access.

Repositories encapsulate all SQL queries and provide a clean interface
to the service layer. They accept an AsyncSession and never manage
their own transactions (that's the UnitOfWork's responsibility).

Rows that are about to be mutated are loaded with ``for_update=True``
(``SELECT ... FOR UPDATE``); plain reads never lock.
"""

from __future__ import annotations

from decimal import Decimal
from typing import TYPE_CHECKING

from sqlalchemy import exists, func, or_, select
from sqlalchemy.orm import selectinload

from marketplace_trust.domain.enums import (
    ACTIVE_DISPUTE_STATUSES,
    DISPUTABLE_TRANSACTION_STATUSES,
    HELD_TRANSACTION_STATUSES,
    DisputeStatus,
    TransactionStatus,
)
from marketplace_trust.infrastructure.database.orm_models import (
    DisputeCase,
    DisputeEvent,
    EscrowAccount,
    EscrowTransaction,
)

if TYPE_CHECKING:
    import uuid
    from collections.abc import Iterable, Sequence
    from datetime import datetime

    from sqlalchemy.ext.asyncio import AsyncSession
    from sqlalchemy.sql.elements import ColumnElement

    from marketplace_trust.domain.enums import AccountStatus, ActorType


def _transaction_participant(user_id: int) -> ColumnElement[bool]:
    """Rows whose transaction involves ``user_id`` (needs the account join)."""
    return or_(
        EscrowAccount.user_id == user_id,
        EscrowTransaction.initiated_by_id == user_id,
        EscrowTransaction.counterparty_id == user_id,
    )


def _open_case_exists() -> ColumnElement[bool]:
    return exists().where(
        DisputeCase.escrow_transaction_id == EscrowTransaction.id,
        DisputeCase.status != DisputeStatus.CLOSED.value,
    )


class AccountRepository:
    """Data access for escrow accounts."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, account: EscrowAccount) -> EscrowAccount:
        self._session.add(account)
        await self._session.flush()
        return account

    async def get_by_id(
        self, account_id: uuid.UUID, *, for_update: bool = False
    ) -> EscrowAccount | None:
        """Fetch an account by its UUID, optionally locking the row."""
        stmt = select(EscrowAccount).where(EscrowAccount.id == account_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_user(self, user_id: int) -> list[EscrowAccount]:
        result = await self._session.execute(
            select(EscrowAccount)
            .where(EscrowAccount.user_id == user_id)
            .order_by(EscrowAccount.created_at.asc())
        )
        return list(result.scalars().all())

    async def get_by_statuses(
        self, statuses: Iterable[AccountStatus], limit: int
    ) -> list[EscrowAccount]:
        """Most recently updated accounts in any of ``statuses``."""
        result = await self._session.execute(
            select(EscrowAccount)
            .where(EscrowAccount.status.in_([s.value for s in statuses]))
            .order_by(EscrowAccount.updated_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())


class TransactionRepository:
    """Data access for escrow transactions."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, transaction: EscrowTransaction) -> EscrowTransaction:
        self._session.add(transaction)
        await self._session.flush()
        return transaction

    async def get_by_id(
        self, transaction_id: uuid.UUID, *, for_update: bool = False
    ) -> EscrowTransaction | None:
        """Fetch a transaction with its account loaded, optionally locking the row."""
        stmt = (
            select(EscrowTransaction)
            .where(EscrowTransaction.id == transaction_id)
            .options(selectinload(EscrowTransaction.account))
        )
        if for_update:
            stmt = stmt.with_for_update(of=EscrowTransaction)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_reference(self, reference: str) -> EscrowTransaction | None:
        result = await self._session.execute(
            select(EscrowTransaction).where(EscrowTransaction.reference == reference)
        )
        return result.scalar_one_or_none()

    async def get_for_user(self, user_id: int) -> list[EscrowTransaction]:
        """Transactions the user owns, initiated or is the counterparty of, newest first."""
        result = await self._session.execute(
            select(EscrowTransaction)
            .join(EscrowAccount, EscrowTransaction.account_id == EscrowAccount.id)
            .where(_transaction_participant(user_id))
            .options(selectinload(EscrowTransaction.account))
            .order_by(EscrowTransaction.created_at.desc())
        )
        return list(result.scalars().all())

    async def get_held_by_account(self, account_id: uuid.UUID) -> list[EscrowTransaction]:
        """Transactions whose funds are currently counted in the account balance."""
        result = await self._session.execute(
            select(EscrowTransaction).where(
                EscrowTransaction.account_id == account_id,
                EscrowTransaction.status.in_([s.value for s in HELD_TRANSACTION_STATUSES]),
            )
        )
        return list(result.scalars().all())

    async def get_eligible_for_dispute(
        self, user_id: int | None, limit: int
    ) -> list[EscrowTransaction]:
        """Funded or held transactions with no non-closed dispute.

        ``user_id=None`` means the caller may see every transaction.
        """
        stmt = (
            select(EscrowTransaction)
            .join(EscrowAccount, EscrowTransaction.account_id == EscrowAccount.id)
            .where(
                EscrowTransaction.status.in_(
                    [s.value for s in DISPUTABLE_TRANSACTION_STATUSES]
                ),
                ~_open_case_exists(),
            )
            .order_by(EscrowTransaction.created_at.desc())
            .limit(limit)
        )
        if user_id is not None:
            stmt = stmt.where(_transaction_participant(user_id))
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def totals_by_status(self) -> dict[str, tuple[int, Decimal]]:
        """(transaction count, summed amount) per status."""
        result = await self._session.execute(
            select(
                EscrowTransaction.status,
                func.count(EscrowTransaction.id),
                func.coalesce(func.sum(EscrowTransaction.amount), 0),
            ).group_by(EscrowTransaction.status)
        )
        return {
            status: (count, Decimal(str(total)).quantize(Decimal("0.0001")))
            for status, count, total in result.all()
        }

    async def get_release_queue(self, limit: int) -> list[EscrowTransaction]:
        """Held transactions by scheduled release, unscheduled ones last."""
        result = await self._session.execute(
            select(EscrowTransaction)
            .where(EscrowTransaction.status == TransactionStatus.IN_ESCROW.value)
            .order_by(
                EscrowTransaction.scheduled_release_at.asc().nulls_last(),
                EscrowTransaction.created_at.asc(),
            )
            .limit(limit)
        )
        return list(result.scalars().all())


class DisputeCaseRepository:
    """Data access for dispute cases."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, case: DisputeCase) -> DisputeCase:
        self._session.add(case)
        await self._session.flush()
        return case

    async def get_by_id(
        self, case_id: uuid.UUID, *, for_update: bool = False
    ) -> DisputeCase | None:
        """Fetch a case with its transaction and account loaded.

        With ``for_update`` the case row is locked, which serialises
        concurrent event appends on the same case.
        """
        stmt = (
            select(DisputeCase)
            .where(DisputeCase.id == case_id)
            .options(
                selectinload(DisputeCase.transaction).selectinload(EscrowTransaction.account)
            )
        )
        if for_update:
            stmt = stmt.with_for_update(of=DisputeCase)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_active_for_transaction(
        self, transaction_id: uuid.UUID
    ) -> DisputeCase | None:
        """The non-closed case of a transaction, if any."""
        result = await self._session.execute(
            select(DisputeCase).where(
                DisputeCase.escrow_transaction_id == transaction_id,
                DisputeCase.status != DisputeStatus.CLOSED.value,
            )
        )
        return result.scalars().first()

    async def get_for_participant(
        self,
        user_id: int,
        statuses: Sequence[DisputeStatus] | None = None,
    ) -> list[DisputeCase]:
        """Cases the user takes part in: account owner, initiator,
        counterparty, opener or assignee. Newest first."""
        stmt = (
            select(DisputeCase)
            .join(EscrowTransaction, DisputeCase.escrow_transaction_id == EscrowTransaction.id)
            .join(EscrowAccount, EscrowTransaction.account_id == EscrowAccount.id)
            .where(
                or_(
                    _transaction_participant(user_id),
                    DisputeCase.opened_by_id == user_id,
                    DisputeCase.assigned_to_id == user_id,
                )
            )
            .options(
                selectinload(DisputeCase.transaction).selectinload(EscrowTransaction.account)
            )
            .order_by(DisputeCase.opened_at.desc())
        )
        if statuses:
            stmt = stmt.where(DisputeCase.status.in_([s.value for s in statuses]))
        result = await self._session.execute(stmt)
        return list(result.scalars().unique().all())

    async def count_by_stage(self) -> dict[str, int]:
        result = await self._session.execute(
            select(DisputeCase.stage, func.count(DisputeCase.id)).group_by(DisputeCase.stage)
        )
        return {stage: count for stage, count in result.all()}

    async def get_active_queue(self, limit: int) -> list[DisputeCase]:
        """Most recently updated active cases with their transactions."""
        result = await self._session.execute(
            select(DisputeCase)
            .where(DisputeCase.status.in_([s.value for s in ACTIVE_DISPUTE_STATUSES]))
            .options(selectinload(DisputeCase.transaction))
            .order_by(DisputeCase.updated_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())


class DisputeEventRepository:
    """Data access for the append-only dispute event log."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def record(self, event: DisputeEvent) -> DisputeEvent:
        """Append a new event. This is the ONLY write operation allowed."""
        self._session.add(event)
        await self._session.flush()
        return event

    async def get_by_case(self, case_id: uuid.UUID) -> list[DisputeEvent]:
        """Fetch all events of a case in chronological order."""
        result = await self._session.execute(
            select(DisputeEvent)
            .where(DisputeEvent.dispute_case_id == case_id)
            .order_by(DisputeEvent.event_at.asc(), DisputeEvent.created_at.asc())
        )
        return list(result.scalars().all())

    async def get_latest_by_cases(
        self, case_ids: Sequence[uuid.UUID]
    ) -> dict[uuid.UUID, DisputeEvent]:
        """The event with the greatest event time per case, one row per case."""
        if not case_ids:
            return {}
        ranked = (
            select(
                DisputeEvent.id,
                func.row_number()
                .over(
                    partition_by=DisputeEvent.dispute_case_id,
                    order_by=(DisputeEvent.event_at.desc(), DisputeEvent.created_at.desc()),
                )
                .label("position"),
            )
            .where(DisputeEvent.dispute_case_id.in_(case_ids))
            .subquery()
        )
        result = await self._session.execute(
            select(DisputeEvent)
            .join(ranked, DisputeEvent.id == ranked.c.id)
            .where(ranked.c.position == 1)
        )
        return {event.dispute_case_id: event for event in result.scalars().all()}

    async def first_response_by_cases(
        self,
        case_ids: Sequence[uuid.UUID],
        actor_types: Iterable[ActorType],
    ) -> dict[uuid.UUID, datetime]:
        """Earliest event after opening by one of ``actor_types``, per case."""
        if not case_ids:
            return {}
        result = await self._session.execute(
            select(DisputeEvent.dispute_case_id, func.min(DisputeEvent.event_at))
            .join(DisputeCase, DisputeEvent.dispute_case_id == DisputeCase.id)
            .where(
                DisputeEvent.dispute_case_id.in_(case_ids),
                DisputeEvent.actor_type.in_([a.value for a in actor_types]),
                DisputeEvent.event_at > DisputeCase.opened_at,
            )
            .group_by(DisputeEvent.dispute_case_id)
        )
        return {case_id: first_at for case_id, first_at in result.all()}

    async def count_by_cases(
        self, case_ids: Sequence[uuid.UUID]
    ) -> dict[uuid.UUID, tuple[int, int]]:
        """(event count, evidence attachment count) per case."""
        if not case_ids:
            return {}
        result = await self._session.execute(
            select(
                DisputeEvent.dispute_case_id,
                func.count(DisputeEvent.id),
                func.count(func.coalesce(DisputeEvent.evidence_key, DisputeEvent.evidence_url)),
            )
            .where(DisputeEvent.dispute_case_id.in_(case_ids))
            .group_by(DisputeEvent.dispute_case_id)
        )
        return {case_id: (total, attachments) for case_id, total, attachments in result.all()}
