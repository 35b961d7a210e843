"""Dispute REST API routes.

These endpoints are the read/write surface consumed by external
dashboards. They validate request shapes and hand everything else to
DisputeService; no business rule lives here.

Routes:
    GET    /api/v1/disputes/dashboard                — Dashboard read model
    POST   /api/v1/disputes                          — Open a dispute
    GET    /api/v1/disputes/{id}                     — Case detail with events
    POST   /api/v1/disputes/{id}/events              — Append an event
    POST   /api/v1/disputes/{id}/escalations         — Escalate breached deadlines
"""

from __future__ import annotations

import uuid  # noqa: TC003 - FastAPI resolves path parameter types at runtime

from fastapi import APIRouter, Depends, Query

from marketplace_trust.api.deps import Caller, get_caller, get_dispute_service
from marketplace_trust.logging_config import get_logger
from marketplace_trust.schemas.disputes import (
    AppendDisputeEventRequest,
    AppendDisputeEventResponse,
    DisputeCaseDetailResponse,
    DisputeDashboardResponse,
    DisputeEventResponse,
    OpenDisputeRequest,
)
from marketplace_trust.services.dispute_service import DisputeService

router = APIRouter(prefix="/api/v1/disputes", tags=["Disputes"])
logger = get_logger(__name__)


# ---------------------------------------------------------------------------
# Dashboard
# ---------------------------------------------------------------------------


@router.get(
    "/dashboard",
    response_model=DisputeDashboardResponse,
    summary="Dispute dashboard for the caller",
)
async def get_dispute_dashboard(
    status: list[str] | None = Query(
        default=None,
        description="Filter by case status; repeat or comma-separate for several",
    ),
    caller: Caller = Depends(get_caller),
    svc: DisputeService = Depends(get_dispute_service),
) -> DisputeDashboardResponse:
    """Summary counts, deadlines, cases and eligible transactions."""
    return await svc.get_dispute_dashboard(
        caller.user_id,
        status=",".join(status) if status else None,
        actor_roles=caller.roles,
    )


# ---------------------------------------------------------------------------
# Open
# ---------------------------------------------------------------------------


@router.post(
    "",
    response_model=DisputeCaseDetailResponse,
    status_code=201,
    summary="Open a dispute against an escrow transaction",
)
async def open_dispute(
    request: OpenDisputeRequest,
    caller: Caller = Depends(get_caller),
    svc: DisputeService = Depends(get_dispute_service),
) -> DisputeCaseDetailResponse:
    """Create the case and move the transaction to disputed."""
    case = await svc.open_dispute(caller.user_id, request, actor_roles=caller.roles)
    logger.info("api.dispute_opened", case_id=str(case.id))
    return case


# ---------------------------------------------------------------------------
# Detail
# ---------------------------------------------------------------------------


@router.get(
    "/{dispute_id}",
    response_model=DisputeCaseDetailResponse,
    summary="Get a dispute case with its event log",
)
async def get_dispute(
    dispute_id: uuid.UUID,
    caller: Caller = Depends(get_caller),
    svc: DisputeService = Depends(get_dispute_service),
) -> DisputeCaseDetailResponse:
    return await svc.get_dispute(caller.user_id, dispute_id, actor_roles=caller.roles)


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


@router.post(
    "/{dispute_id}/events",
    response_model=AppendDisputeEventResponse,
    status_code=201,
    summary="Append an event to a dispute case",
)
async def append_dispute_event(
    dispute_id: uuid.UUID,
    request: AppendDisputeEventRequest,
    caller: Caller = Depends(get_caller),
    svc: DisputeService = Depends(get_dispute_service),
) -> AppendDisputeEventResponse:
    """Comments, evidence, deadline changes, stage moves and resolutions."""
    return await svc.append_dispute_event(
        caller.user_id,
        dispute_id,
        request,
        actor_roles=caller.roles,
    )


@router.post(
    "/{dispute_id}/escalations",
    response_model=list[DisputeEventResponse],
    summary="Escalate breached deadlines of a dispute case",
)
async def escalate_dispute(
    dispute_id: uuid.UUID,
    caller: Caller = Depends(get_caller),
    svc: DisputeService = Depends(get_dispute_service),
) -> list[DisputeEventResponse]:
    """Post one system notice per breached deadline not yet escalated."""
    return await svc.escalate_breaches(
        dispute_id, user_id=caller.user_id, actor_roles=caller.roles
    )
