"""SLA evaluation for dispute deadlines.

Pure functions: severity is computed on read from "now" and a window, never
by a timer. Each deadline is classified on its own, so a case can be
breached on the customer side while the provider side is still on track.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Protocol

from marketplace_trust.domain.enums import (
    ACTIVE_DISPUTE_STATUSES,
    DeadlineParty,
    DisputePriority,
    DisputeStage,
    DisputeStatus,
    SlaSeverity,
)

DEFAULT_AT_RISK_WINDOW_HOURS = 72


class CaseLike(Protocol):
    """The fields the evaluator reads from a dispute case (ORM row or snapshot)."""

    stage: str
    status: str
    priority: str
    customer_deadline_at: datetime | None
    provider_deadline_at: datetime | None
    metadata_json: dict | None


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def classify_deadline(
    now: datetime,
    due_at: datetime | None,
    at_risk_window_hours: float = DEFAULT_AT_RISK_WINDOW_HOURS,
) -> SlaSeverity | None:
    """Classify one deadline.

    Returns:
        BREACHED if the deadline has passed, AT_RISK if it falls within the
        window (bounds inclusive), None if it is on track or absent.
    """
    if due_at is None:
        return None
    now = ensure_utc(now)
    due_at = ensure_utc(due_at)
    if due_at < now:
        return SlaSeverity.BREACHED
    if due_at <= now + timedelta(hours=at_risk_window_hours):
        return SlaSeverity.AT_RISK
    return None


def case_deadlines(case: CaseLike) -> list[tuple[DeadlineParty, datetime]]:
    """Return the (party, due_at) pairs a case currently carries."""
    deadlines = []
    if case.customer_deadline_at is not None:
        deadlines.append((DeadlineParty.CUSTOMER, ensure_utc(case.customer_deadline_at)))
    if case.provider_deadline_at is not None:
        deadlines.append((DeadlineParty.PROVIDER, ensure_utc(case.provider_deadline_at)))
    return deadlines


def is_active(case: CaseLike) -> bool:
    return DisputeStatus(case.status) in ACTIVE_DISPUTE_STATUSES


@dataclass(frozen=True)
class CaseAggregate:
    """Case-level deadline metrics over one snapshot of cases."""

    total: int = 0
    due_within_window: int = 0
    urgent_cases: int = 0
    by_stage: dict[str, int] = field(default_factory=dict)
    by_status: dict[str, int] = field(default_factory=dict)


def aggregate(
    cases: list[CaseLike],
    now: datetime,
    at_risk_window_hours: float = DEFAULT_AT_RISK_WINDOW_HOURS,
) -> CaseAggregate:
    """Compute deadline and distribution counts. Safe to recompute on every read.

    Only active cases contribute to ``due_within_window`` and ``urgent_cases``;
    a past-due deadline counts as due within the window.
    """
    by_stage: Counter[str] = Counter({stage.value: 0 for stage in DisputeStage})
    by_status: Counter[str] = Counter({status.value: 0 for status in DisputeStatus})
    due = 0
    urgent = 0

    for case in cases:
        by_stage[str(case.stage)] += 1
        by_status[str(case.status)] += 1
        if not is_active(case):
            continue
        if case.priority == DisputePriority.URGENT:
            urgent += 1
        if any(
            classify_deadline(now, due_at, at_risk_window_hours) is not None
            for _, due_at in case_deadlines(case)
        ):
            due += 1

    return CaseAggregate(
        total=len(cases),
        due_within_window=due,
        urgent_cases=urgent,
        by_stage=dict(by_stage),
        by_status=dict(by_status),
    )


# ---------------------------------------------------------------------------
# Escalation
# ---------------------------------------------------------------------------

ESCALATIONS_METADATA_KEY = "escalations"


@dataclass(frozen=True)
class Escalation:
    """A breached deadline that has not been escalated yet."""

    party: DeadlineParty
    due_at: datetime

    @property
    def key(self) -> str:
        """Identity of the breach; the same deadline always yields the same key."""
        return f"{self.party.value}:{self.due_at.isoformat()}"


def escalated_keys(metadata: dict | None) -> set[str]:
    if not metadata:
        return set()
    return set(metadata.get(ESCALATIONS_METADATA_KEY) or [])


def pending_escalations(case: CaseLike, now: datetime) -> list[Escalation]:
    """Breached deadlines of an active case that are not yet flagged as escalated."""
    if not is_active(case):
        return []
    already = escalated_keys(case.metadata_json)
    pending = []
    for party, due_at in case_deadlines(case):
        if classify_deadline(now, due_at) is not SlaSeverity.BREACHED:
            continue
        escalation = Escalation(party=party, due_at=due_at)
        if escalation.key not in already:
            pending.append(escalation)
    return pending
