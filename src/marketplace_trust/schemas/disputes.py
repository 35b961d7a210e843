"""Pydantic schemas for the Dispute API and the dispute dashboard.

Request bodies reject unknown fields and out-of-set enum values before any
service is called. Response schemas read straight from the ORM rows.
"""

from __future__ import annotations

import uuid  # noqa: TC003 - resolved at runtime by pydantic
from datetime import datetime  # noqa: TC003
from decimal import Decimal  # noqa: TC003

from pydantic import AwareDatetime, BaseModel, ConfigDict, Field

from marketplace_trust.domain.case_projection import UNSET, CaseChange, EvidenceReference
from marketplace_trust.domain.enums import (
    ActionType,
    ActorType,
    AlertSeverity,
    DeadlineParty,
    DisputePriority,
    DisputeStage,
    DisputeStatus,
    SlaSeverity,
    TransactionResolution,
)
from marketplace_trust.schemas.escrow import EscrowTransactionResponse  # noqa: TC001


# ---------------------------------------------------------------------------
# Request Schemas
# ---------------------------------------------------------------------------


class OpenDisputeRequest(BaseModel):
    """Request body for opening a dispute against an escrow transaction."""

    model_config = ConfigDict(extra="forbid")

    transaction_id: uuid.UUID = Field(..., description="Escrow transaction under dispute")
    reason_code: str = Field(
        ...,
        min_length=1,
        max_length=64,
        description="Reason code, e.g. quality_issue or missed_deadline",
        examples=["quality_issue"],
    )
    summary: str = Field(..., min_length=1, max_length=5000)
    priority: DisputePriority = DisputePriority.MEDIUM
    customer_deadline_at: AwareDatetime | None = None
    provider_deadline_at: AwareDatetime | None = None
    assigned_to_id: int | None = Field(default=None, description="Mediator to assign")
    metadata: dict | None = None


class EvidencePayload(BaseModel):
    """Opaque reference to evidence held in external storage."""

    model_config = ConfigDict(extra="forbid")

    key: str | None = Field(default=None, max_length=255)
    url: str | None = Field(default=None, max_length=2048)
    file_name: str | None = Field(default=None, max_length=255)
    content_type: str | None = Field(default=None, max_length=120)

    def to_reference(self) -> EvidenceReference:
        return EvidenceReference(
            key=self.key,
            url=self.url,
            file_name=self.file_name,
            content_type=self.content_type,
        )


class AppendDisputeEventRequest(BaseModel):
    """Request body for appending an event to a dispute case.

    Which optional fields are allowed depends on ``action_type``; the
    store rejects a field that does not belong to the action.
    A deadline sent as ``null`` clears it; an omitted deadline is untouched.
    """

    model_config = ConfigDict(extra="forbid")

    action_type: ActionType
    notes: str | None = Field(default=None, max_length=10_000)
    evidence: EvidencePayload | None = None
    stage: DisputeStage | None = None
    status: DisputeStatus | None = None
    priority: DisputePriority | None = None
    customer_deadline_at: AwareDatetime | None = None
    provider_deadline_at: AwareDatetime | None = None
    resolution_notes: str | None = Field(default=None, max_length=10_000)
    assigned_to_id: int | None = None
    transaction_resolution: TransactionResolution | None = None
    metadata: dict | None = None

    def to_change(self) -> CaseChange:
        sent = self.model_fields_set
        return CaseChange(
            action_type=self.action_type,
            notes=self.notes,
            stage=self.stage,
            status=self.status,
            priority=self.priority,
            customer_deadline_at=(
                self.customer_deadline_at if "customer_deadline_at" in sent else UNSET
            ),
            provider_deadline_at=(
                self.provider_deadline_at if "provider_deadline_at" in sent else UNSET
            ),
            resolution_notes=self.resolution_notes,
            assigned_to_id=self.assigned_to_id,
            transaction_resolution=self.transaction_resolution,
        )

    def to_evidence(self) -> EvidenceReference | None:
        return self.evidence.to_reference() if self.evidence else None


# ---------------------------------------------------------------------------
# Response Schemas
# ---------------------------------------------------------------------------


class DisputeEventResponse(BaseModel):
    """Response schema for a dispute event."""

    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    id: uuid.UUID
    dispute_case_id: uuid.UUID
    actor_id: int | None = None
    actor_type: ActorType
    action_type: ActionType
    notes: str | None = None
    evidence_key: str | None = None
    evidence_url: str | None = None
    evidence_file_name: str | None = None
    evidence_content_type: str | None = None
    event_at: datetime
    metadata: dict | None = Field(default=None, validation_alias="metadata_json")


class DisputeCaseResponse(BaseModel):
    """Response schema for a dispute case summary."""

    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    id: uuid.UUID
    escrow_transaction_id: uuid.UUID
    opened_by_id: int
    assigned_to_id: int | None = None
    stage: DisputeStage
    status: DisputeStatus
    priority: DisputePriority
    reason_code: str
    summary: str
    customer_deadline_at: datetime | None = None
    provider_deadline_at: datetime | None = None
    resolution_notes: str | None = None
    opened_at: datetime
    resolved_at: datetime | None = None
    metadata: dict | None = Field(default=None, validation_alias="metadata_json")
    created_at: datetime
    updated_at: datetime


class DisputeCaseDetailResponse(DisputeCaseResponse):
    """A case with its transaction and full event log."""

    transaction: EscrowTransactionResponse
    events: list[DisputeEventResponse] = Field(default_factory=list)


class AppendDisputeEventResponse(BaseModel):
    """The stored event with the case and transaction as it left them."""

    event: DisputeEventResponse
    case: DisputeCaseResponse
    transaction: EscrowTransactionResponse


# ---------------------------------------------------------------------------
# Dashboard
# ---------------------------------------------------------------------------


class ExposureTotal(BaseModel):
    """Held funds under active cases in one currency."""

    currency: str
    amount: Decimal


class RiskAlertResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    case_id: uuid.UUID
    kind: str
    severity: AlertSeverity
    title: str
    summary: str
    owner_id: int | None = Field(default=None, description="Assigned mediator, if any")


class DashboardSummary(BaseModel):
    total_cases: int = 0
    open_cases: int = 0
    awaiting_customer: int = 0
    urgent_cases: int = 0
    due_within_72h: int = Field(
        default=0,
        description="Active cases with a deadline inside the at-risk window, past-due included",
    )
    progressed_cases: int = Field(default=0, description="Active cases past intake")
    sla_breaches: int = Field(default=0, description="Active cases with a past-due deadline")
    resolution_rate: float | None = Field(
        default=None, description="Share of cases settled or closed"
    )
    progression_rate: float | None = Field(
        default=None, description="Share of cases that left intake, whatever their status"
    )
    average_first_response_minutes: float | None = None
    trust_score: int | None = Field(default=None, ge=0, le=100)
    open_exposure: list[ExposureTotal] = Field(default_factory=list)
    last_updated_at: datetime | None = None
    next_sla_review_at: datetime | None = Field(
        default=None,
        description="Nearest active deadline, or one response window from now",
    )


class DashboardMetrics(BaseModel):
    by_stage: dict[str, int] = Field(default_factory=dict)
    by_status: dict[str, int] = Field(default_factory=dict)


class UpcomingDeadline(BaseModel):
    """One deadline of an active case, nearest first in the dashboard."""

    case_id: uuid.UUID
    transaction_reference: str
    party: DeadlineParty
    due_at: datetime
    severity: SlaSeverity | None = None
    is_past_due: bool
    is_caller_deadline: bool = Field(
        default=False,
        description="True when the deadline is owed by the caller's side",
    )


class CaseMetrics(BaseModel):
    customer_deadline_severity: SlaSeverity | None = None
    provider_deadline_severity: SlaSeverity | None = None
    days_open: int = 0
    event_count: int = 0
    attachment_count: int = 0
    first_response_minutes: float | None = None


class DashboardCase(DisputeCaseResponse):
    """A case as listed on the dashboard."""

    transaction: EscrowTransactionResponse
    metrics: CaseMetrics
    latest_event: DisputeEventResponse | None = None


class DashboardPermissions(BaseModel):
    actor_type: ActorType
    can_open: bool
    can_comment: bool = False
    can_upload_evidence: bool = False
    can_adjust_deadline: bool = False
    can_advance_stage: bool = False
    can_override_stage: bool = False
    can_change_status: bool = False
    can_resolve_transaction: bool = False


class DashboardMetadata(BaseModel):
    """Lookup values for dashboard forms."""

    generated_at: datetime
    at_risk_window_hours: int
    reason_codes: list[str]
    stages: list[DisputeStage]
    statuses: list[DisputeStatus]
    priorities: list[DisputePriority]


class DisputeDashboardResponse(BaseModel):
    summary: DashboardSummary
    metrics: DashboardMetrics
    upcoming_deadlines: list[UpcomingDeadline] = Field(default_factory=list)
    cases: list[DashboardCase] = Field(default_factory=list)
    risk_alerts: list[RiskAlertResponse] = Field(default_factory=list)
    eligible_transactions: list[EscrowTransactionResponse] = Field(default_factory=list)
    permissions: DashboardPermissions
    metadata: DashboardMetadata
