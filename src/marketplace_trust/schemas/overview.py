"""Pydantic schemas for the platform-wide trust overview."""

from __future__ import annotations

from datetime import datetime  # noqa: TC003
from decimal import Decimal  # noqa: TC003

from pydantic import BaseModel, Field

from marketplace_trust.schemas.disputes import DisputeCaseResponse
from marketplace_trust.schemas.escrow import (  # noqa: TC001
    EscrowAccountResponse,
    EscrowTransactionResponse,
)


class StatusTotal(BaseModel):
    count: int = 0
    total_amount: Decimal = Field(default=Decimal("0"), description="Summed gross amount")


class DisputeQueueItem(DisputeCaseResponse):
    """An active case in the overview queue."""

    transaction: EscrowTransactionResponse


class TrustOverviewResponse(BaseModel):
    """Ledger and dispute totals for mediators and admins."""

    generated_at: datetime
    totals_by_status: dict[str, StatusTotal] = Field(default_factory=dict)
    disputes_by_stage: dict[str, int] = Field(default_factory=dict)
    active_accounts: list[EscrowAccountResponse] = Field(default_factory=list)
    release_queue: list[EscrowTransactionResponse] = Field(default_factory=list)
    dispute_queue: list[DisputeQueueItem] = Field(default_factory=list)
    release_aging: dict[str, int] = Field(
        default_factory=dict,
        description="Held transactions by days until scheduled release",
    )
