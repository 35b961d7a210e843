"""Pydantic API schemas."""

from marketplace_trust.schemas.disputes import (
    AppendDisputeEventRequest,
    AppendDisputeEventResponse,
    DisputeCaseDetailResponse,
    DisputeCaseResponse,
    DisputeDashboardResponse,
    DisputeEventResponse,
    EvidencePayload,
    OpenDisputeRequest,
    RiskAlertResponse,
)
from marketplace_trust.schemas.escrow import (
    EscrowAccountResponse,
    EscrowTransactionResponse,
    HealthResponse,
    ReconciliationResponse,
)
from marketplace_trust.schemas.overview import TrustOverviewResponse

__all__ = [
    "AppendDisputeEventRequest",
    "AppendDisputeEventResponse",
    "DisputeCaseDetailResponse",
    "DisputeCaseResponse",
    "DisputeDashboardResponse",
    "DisputeEventResponse",
    "EscrowAccountResponse",
    "EscrowTransactionResponse",
    "EvidencePayload",
    "HealthResponse",
    "OpenDisputeRequest",
    "ReconciliationResponse",
    "RiskAlertResponse",
    "TrustOverviewResponse",
]
