"""Pydantic schemas for escrow ledger reads.

These schemas define the response shapes shared by the dispute API and
the dashboard. They are separate from the ORM models to maintain clean
boundaries between the API and database layers.
"""

from __future__ import annotations

import uuid  # noqa: TC003 - resolved at runtime by pydantic
from datetime import datetime  # noqa: TC003
from decimal import Decimal  # noqa: TC003

from pydantic import BaseModel, ConfigDict

from marketplace_trust.domain.enums import (  # noqa: TC001
    AccountStatus,
    TransactionStatus,
    TransactionType,
)


class EscrowTransactionResponse(BaseModel):
    """Response schema for an escrow transaction (audit trail omitted)."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    account_id: uuid.UUID
    reference: str
    type: TransactionType
    status: TransactionStatus
    amount: Decimal
    currency_code: str
    fee_amount: Decimal
    net_amount: Decimal
    initiated_by_id: int
    counterparty_id: int | None = None
    project_id: int | None = None
    gig_id: int | None = None
    milestone_label: str | None = None
    scheduled_release_at: datetime | None = None
    released_at: datetime | None = None
    refunded_at: datetime | None = None
    cancelled_at: datetime | None = None
    created_at: datetime


class ReconciliationResponse(BaseModel):
    """Stored account balances next to the balances recomputed from the ledger."""

    model_config = ConfigDict(from_attributes=True)

    account_id: uuid.UUID
    currency_code: str
    stored_balance: Decimal
    stored_pending_release: Decimal
    computed_balance: Decimal
    computed_pending_release: Decimal
    held_transactions: int
    last_reconciled_at: datetime | None = None
    is_balanced: bool


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    version: str = "0.1.0"
    database: str = "unknown"


class EscrowAccountResponse(BaseModel):
    """Response schema for an escrow account."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    user_id: int
    provider: str
    status: AccountStatus
    currency_code: str
    current_balance: Decimal
    pending_release_total: Decimal
    last_reconciled_at: datetime | None = None
    updated_at: datetime
