"""Dispute Service — the read/write surface consumed by external dashboards.

Each call resolves the caller once into an ActorContext, opens exactly one
UnitOfWork, wires the ledger and the case store onto it and returns pydantic
read models. Both the REST routes and background jobs call into this
service, so there is a single source of truth for the unit-of-work boundary.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING

from marketplace_trust.domain.authorization import (
    SYSTEM_ACTOR,
    ActorContext,
    Permission,
    authorize_action,
    build_actor,
)
from marketplace_trust.infrastructure.database.unit_of_work import UnitOfWork
from marketplace_trust.logging_config import bind_actor_context
from marketplace_trust.schemas.disputes import (
    AppendDisputeEventResponse,
    DisputeCaseDetailResponse,
    DisputeCaseResponse,
    DisputeDashboardResponse,
    DisputeEventResponse,
)
from marketplace_trust.schemas.escrow import EscrowTransactionResponse
from marketplace_trust.services.dashboard_service import DashboardAggregator
from marketplace_trust.services.dispute_case_store import DisputeCaseStore
from marketplace_trust.services.escrow_ledger import EscrowLedger

if TYPE_CHECKING:
    import uuid
    from collections.abc import Callable, Iterable

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from marketplace_trust.infrastructure.database.orm_models import DisputeCase
    from marketplace_trust.schemas.disputes import (
        AppendDisputeEventRequest,
        OpenDisputeRequest,
    )


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _case_detail(case: DisputeCase, events: list) -> DisputeCaseDetailResponse:
    return DisputeCaseDetailResponse(
        **DisputeCaseResponse.model_validate(case).model_dump(),
        transaction=EscrowTransactionResponse.model_validate(case.transaction),
        events=[DisputeEventResponse.model_validate(e) for e in events],
    )


class DisputeService:
    """Dispute use cases, one unit of work per call."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock

    def _actor(self, user_id: int | None, actor_roles: Iterable[str] | str | None) -> ActorContext:
        actor = build_actor(user_id, actor_roles)
        bind_actor_context(actor.actor_id, actor.actor_type.value)
        return actor

    def _components(self, uow: UnitOfWork) -> tuple[EscrowLedger, DisputeCaseStore]:
        ledger = EscrowLedger(uow, clock=self._clock)
        return ledger, DisputeCaseStore(uow, ledger, clock=self._clock)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_dispute_dashboard(
        self,
        user_id: int,
        status: Iterable[str] | str | None = None,
        actor_roles: Iterable[str] | str | None = None,
    ) -> DisputeDashboardResponse:
        actor = self._actor(user_id, actor_roles)
        async with UnitOfWork(self._session_factory) as uow:
            return await DashboardAggregator(uow, clock=self._clock).get_dashboard(actor, status)

    async def get_dispute(
        self,
        user_id: int,
        dispute_id: uuid.UUID,
        actor_roles: Iterable[str] | str | None = None,
    ) -> DisputeCaseDetailResponse:
        actor = self._actor(user_id, actor_roles)
        async with UnitOfWork(self._session_factory) as uow:
            _, store = self._components(uow)
            case = await store.get_case(dispute_id, actor)
            events = await store.list_events(dispute_id, actor)
            return _case_detail(case, events)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def open_dispute(
        self,
        user_id: int,
        payload: OpenDisputeRequest,
        actor_roles: Iterable[str] | str | None = None,
    ) -> DisputeCaseDetailResponse:
        actor = self._actor(user_id, actor_roles)
        async with UnitOfWork(self._session_factory) as uow:
            _, store = self._components(uow)
            case = await store.open_case(
                payload.transaction_id,
                actor,
                reason_code=payload.reason_code,
                summary=payload.summary,
                priority=payload.priority,
                customer_deadline_at=payload.customer_deadline_at,
                provider_deadline_at=payload.provider_deadline_at,
                assigned_to_id=payload.assigned_to_id,
                metadata=payload.metadata,
            )
            case = await uow.cases.get_by_id(case.id)
            events = await uow.events.get_by_case(case.id)
            return _case_detail(case, events)

    async def append_dispute_event(
        self,
        user_id: int,
        dispute_id: uuid.UUID,
        payload: AppendDisputeEventRequest,
        actor_roles: Iterable[str] | str | None = None,
        actor_id: int | None = None,
    ) -> AppendDisputeEventResponse:
        """Append one event; ``actor_id`` overrides ``user_id`` as the recorded actor."""
        actor = self._actor(actor_id if actor_id is not None else user_id, actor_roles)
        async with UnitOfWork(self._session_factory) as uow:
            _, store = self._components(uow)
            event = await store.append_event(
                dispute_id,
                actor,
                payload.to_change(),
                evidence=payload.to_evidence(),
                metadata=payload.metadata,
            )
            case = await uow.cases.get_by_id(dispute_id)
            return AppendDisputeEventResponse(
                event=DisputeEventResponse.model_validate(event),
                case=DisputeCaseResponse.model_validate(case),
                transaction=EscrowTransactionResponse.model_validate(case.transaction),
            )

    async def escalate_breaches(
        self,
        dispute_id: uuid.UUID,
        user_id: int | None = None,
        actor_roles: Iterable[str] | str | None = None,
    ) -> list[DisputeEventResponse]:
        """Record unescalated deadline breaches of one case.

        Without a caller the notices are posted by the system actor.
        """
        if user_id is None and actor_roles is None:
            actor = SYSTEM_ACTOR
            bind_actor_context(actor.actor_id, actor.actor_type.value)
        else:
            actor = self._actor(user_id, actor_roles)
        authorize_action(actor.actor_type, Permission.POST_SYSTEM_NOTICE)
        async with UnitOfWork(self._session_factory) as uow:
            _, store = self._components(uow)
            events = await store.escalate_breaches(dispute_id, actor=actor)
            return [DisputeEventResponse.model_validate(e) for e in events]
