"""Escrow ledger REST API routes (read-only).

Balances only change through ledger transitions triggered by dispute
events or the payment integration, so nothing here writes.

Routes:
    GET    /api/v1/escrow/transactions                      — Caller's transactions
    GET    /api/v1/escrow/accounts/{id}/reconciliation      — Stored vs recomputed balances
    GET    /api/v1/escrow/overview                          — Platform-wide trust overview
"""

from __future__ import annotations

import uuid  # noqa: TC003 - FastAPI resolves path parameter types at runtime

from fastapi import APIRouter, Depends

from marketplace_trust.api.deps import Caller, get_caller, get_unit_of_work
from marketplace_trust.domain.authorization import Permission, authorize_action, build_actor
from marketplace_trust.infrastructure.database.unit_of_work import UnitOfWork
from marketplace_trust.schemas.escrow import EscrowTransactionResponse, ReconciliationResponse
from marketplace_trust.schemas.overview import TrustOverviewResponse
from marketplace_trust.services.dashboard_service import DashboardAggregator
from marketplace_trust.services.escrow_ledger import EscrowLedger

router = APIRouter(prefix="/api/v1/escrow", tags=["Escrow"])


@router.get(
    "/transactions",
    response_model=list[EscrowTransactionResponse],
    summary="List the caller's escrow transactions",
)
async def list_transactions(
    caller: Caller = Depends(get_caller),
    uow: UnitOfWork = Depends(get_unit_of_work),
) -> list[EscrowTransactionResponse]:
    """Transactions the caller owns, initiated or is the counterparty of."""
    ledger = EscrowLedger(uow)
    transactions = await ledger.list_transactions_for_user(caller.user_id)
    return [EscrowTransactionResponse.model_validate(t) for t in transactions]


@router.get(
    "/accounts/{account_id}/reconciliation",
    response_model=ReconciliationResponse,
    summary="Compare stored balances with held transactions",
)
async def get_reconciliation(
    account_id: uuid.UUID,
    caller: Caller = Depends(get_caller),
    uow: UnitOfWork = Depends(get_unit_of_work),
) -> ReconciliationResponse:
    """Mediators and admins only."""
    actor = build_actor(caller.user_id, caller.roles)
    authorize_action(actor.actor_type, Permission.VIEW_LEDGER)
    snapshot = await EscrowLedger(uow).get_reconciliation_snapshot(account_id)
    return ReconciliationResponse.model_validate(snapshot)


@router.get(
    "/overview",
    response_model=TrustOverviewResponse,
    summary="Ledger totals, queues and release aging across the platform",
)
async def get_trust_overview(
    caller: Caller = Depends(get_caller),
    uow: UnitOfWork = Depends(get_unit_of_work),
) -> TrustOverviewResponse:
    """Mediators and admins only."""
    actor = build_actor(caller.user_id, caller.roles)
    return await DashboardAggregator(uow).get_trust_overview(actor)
