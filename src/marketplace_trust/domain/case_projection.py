"""Projection of the dispute event log onto the case summary.

DisputeEvent rows are the system of record. The stage, status, priority,
deadlines, resolution notes, assignee and resolved_at columns of a case are
a cache of "every event applied in order", kept by calling ``apply_event``
inside the same unit of work that inserts the event.

``apply_event`` is pure: it takes the current snapshot and one change and
either returns the next snapshot or raises ValidationError. It never
touches the database.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field, replace
from datetime import datetime

from marketplace_trust.domain.enums import (
    RESOLVED_DISPUTE_STATUSES,
    ActionType,
    DisputePriority,
    DisputeStage,
    DisputeStatus,
    TransactionResolution,
)
from marketplace_trust.domain.exceptions import InvalidStateTransitionError, ValidationError
from marketplace_trust.domain.sla import ESCALATIONS_METADATA_KEY
from marketplace_trust.domain.state_machine import next_stage


class _Unset(enum.Enum):
    UNSET = "UNSET"


UNSET = _Unset.UNSET
"""Marks a deadline field the event does not touch (None clears it)."""


@dataclass(frozen=True)
class EvidenceReference:
    """Opaque pointer to evidence kept in external storage."""

    key: str | None = None
    url: str | None = None
    file_name: str | None = None
    content_type: str | None = None

    @property
    def is_present(self) -> bool:
        return bool(self.key or self.url)


@dataclass(frozen=True)
class CaseSnapshot:
    """The derived, cached part of a dispute case."""

    stage: DisputeStage
    status: DisputeStatus
    priority: DisputePriority
    customer_deadline_at: datetime | None = None
    provider_deadline_at: datetime | None = None
    resolution_notes: str | None = None
    assigned_to_id: int | None = None
    resolved_at: datetime | None = None
    metadata_json: dict = field(default_factory=dict)

    @property
    def is_resolved(self) -> bool:
        return self.resolved_at is not None


@dataclass(frozen=True)
class CaseChange:
    """What a single event asks to change. Built from the request payload."""

    action_type: ActionType
    notes: str | None = None
    has_evidence: bool = False
    stage: DisputeStage | None = None
    status: DisputeStatus | None = None
    priority: DisputePriority | None = None
    customer_deadline_at: datetime | None | _Unset = UNSET
    provider_deadline_at: datetime | None | _Unset = UNSET
    resolution_notes: str | None = None
    assigned_to_id: int | None = None
    transaction_resolution: TransactionResolution | None = None
    escalation_key: str | None = None

    def present_fields(self) -> set[str]:
        """Names of the optional fields this change actually carries."""
        present = set()
        for name in ("stage", "status", "priority", "resolution_notes", "assigned_to_id",
                     "transaction_resolution", "escalation_key", "notes"):
            if getattr(self, name) is not None:
                present.add(name)
        for name in ("customer_deadline_at", "provider_deadline_at"):
            if getattr(self, name) is not UNSET:
                present.add(name)
        if self.has_evidence:
            present.add("evidence")
        return present

    @property
    def mutates_case(self) -> bool:
        return bool(self.present_fields() - {"notes", "evidence"}) or self.action_type in (
            ActionType.STAGE_ADVANCED,
            ActionType.STAGE_OVERRIDE,
        )


_STATUS_FIELDS = {
    "status",
    "priority",
    "resolution_notes",
    "assigned_to_id",
    "transaction_resolution",
}
_DEADLINE_FIELDS = {"customer_deadline_at", "provider_deadline_at"}

ALLOWED_FIELDS: dict[ActionType, set[str]] = {
    ActionType.COMMENT: {"notes", "evidence"},
    ActionType.EVIDENCE_UPLOAD: {"notes", "evidence"},
    ActionType.DEADLINE_ADJUSTED: {"notes"} | _DEADLINE_FIELDS,
    ActionType.STAGE_ADVANCED: {"notes", "stage"},
    ActionType.STAGE_OVERRIDE: {"notes", "stage"},
    ActionType.STATUS_CHANGE: {"notes"} | _STATUS_FIELDS,
    ActionType.SYSTEM_NOTICE: {"notes", "escalation_key"},
}


def validate_change(change: CaseChange) -> None:
    """Check that the payload matches its action type.

    Raises:
        ValidationError: On a field the action type does not carry, or a
            missing field it requires.
    """
    present = change.present_fields()
    unexpected = present - ALLOWED_FIELDS[change.action_type]
    if unexpected:
        raise ValidationError(
            f"Fields {sorted(unexpected)} are not allowed on a "
            f"'{change.action_type}' event"
        )

    action = change.action_type
    if action is ActionType.COMMENT and not change.notes:
        raise ValidationError("A comment requires notes")
    if action is ActionType.EVIDENCE_UPLOAD and not change.has_evidence:
        raise ValidationError("An evidence upload requires an evidence reference")
    if action is ActionType.DEADLINE_ADJUSTED and not present & _DEADLINE_FIELDS:
        raise ValidationError("A deadline adjustment requires at least one deadline")
    if action is ActionType.STAGE_OVERRIDE and change.stage is None:
        raise ValidationError("A stage override requires a target stage")
    if action is ActionType.STATUS_CHANGE and not present & _STATUS_FIELDS:
        raise ValidationError("A status change requires a status, priority or resolution")
    if action is ActionType.SYSTEM_NOTICE and not (change.notes or change.escalation_key):
        raise ValidationError("A system notice requires notes")


def open_snapshot(
    *,
    priority: DisputePriority = DisputePriority.MEDIUM,
    customer_deadline_at: datetime | None = None,
    provider_deadline_at: datetime | None = None,
    assigned_to_id: int | None = None,
    metadata: dict | None = None,
) -> CaseSnapshot:
    """Snapshot of a freshly opened case."""
    return CaseSnapshot(
        stage=DisputeStage.INTAKE,
        status=DisputeStatus.OPEN,
        priority=priority,
        customer_deadline_at=customer_deadline_at,
        provider_deadline_at=provider_deadline_at,
        assigned_to_id=assigned_to_id,
        metadata_json=dict(metadata or {}),
    )


def apply_event(snapshot: CaseSnapshot, change: CaseChange, at: datetime) -> CaseSnapshot:
    """Return the snapshot after ``change`` is applied at time ``at``."""
    validate_change(change)

    if snapshot.is_resolved and change.mutates_case:
        raise ValidationError("Dispute case is resolved and can no longer change")

    updates: dict = {}
    action = change.action_type

    if action is ActionType.STAGE_ADVANCED:
        target = next_stage(snapshot.stage)
        if change.stage is not None and change.stage != target:
            raise InvalidStateTransitionError("dispute stage", snapshot.stage, change.stage)
        updates["stage"] = target

    elif action is ActionType.STAGE_OVERRIDE:
        if DisputeStage(change.stage).order <= DisputeStage(snapshot.stage).order:
            raise InvalidStateTransitionError("dispute stage", snapshot.stage, change.stage)
        updates["stage"] = change.stage

    elif action is ActionType.STATUS_CHANGE:
        if change.status is not None and change.status != snapshot.status:
            if snapshot.status == DisputeStatus.CLOSED:
                raise InvalidStateTransitionError("dispute status", snapshot.status, change.status)
            updates["status"] = change.status
        if change.priority is not None:
            updates["priority"] = change.priority
        if change.resolution_notes is not None:
            updates["resolution_notes"] = change.resolution_notes
        if change.assigned_to_id is not None:
            updates["assigned_to_id"] = change.assigned_to_id

    elif action is ActionType.DEADLINE_ADJUSTED:
        if change.customer_deadline_at is not UNSET:
            updates["customer_deadline_at"] = change.customer_deadline_at
        if change.provider_deadline_at is not UNSET:
            updates["provider_deadline_at"] = change.provider_deadline_at

    elif action is ActionType.SYSTEM_NOTICE and change.escalation_key:
        escalations = list(snapshot.metadata_json.get(ESCALATIONS_METADATA_KEY) or [])
        if change.escalation_key not in escalations:
            escalations.append(change.escalation_key)
        updates["metadata_json"] = {**snapshot.metadata_json, ESCALATIONS_METADATA_KEY: escalations}

    nxt = replace(snapshot, **updates)
    resolved = nxt.stage == DisputeStage.RESOLVED and nxt.status in RESOLVED_DISPUTE_STATUSES
    return replace(nxt, resolved_at=(snapshot.resolved_at or at) if resolved else None)
