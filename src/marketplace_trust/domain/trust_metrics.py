"""Trust metrics for the dispute dashboard and the escrow overview.

Pure functions over rows the caller has already loaded: rates, time to
first response, the composite trust score, per-case risk alerts, open
exposure and release-aging buckets. Nothing here reads the clock or the
database; "now" is always passed in.
"""

from __future__ import annotations

import math
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Protocol

from marketplace_trust.domain.enums import (
    PROGRESSED_STAGES,
    RESOLVED_DISPUTE_STATUSES,
    AlertSeverity,
    DisputePriority,
    DisputeStage,
    DisputeStatus,
)
from marketplace_trust.domain.sla import CaseLike, case_deadlines, ensure_utc, is_active

if TYPE_CHECKING:
    import uuid
    from collections.abc import Iterable

DEFAULT_RESPONSE_TARGET_MINUTES = 24 * 60
DEFAULT_RESOLUTION_TARGET_HOURS = 120
DEFAULT_EXPOSURE_THRESHOLD = Decimal("1500")
SUMMARY_PREVIEW_LENGTH = 140

RELEASE_AGING_BUCKETS = ("0-3_days", "4-7_days", "8-14_days", "15+_days")


class AlertCase(CaseLike, Protocol):
    id: uuid.UUID
    summary: str
    assigned_to_id: int | None


@dataclass(frozen=True)
class RiskAlert:
    """One reason a case needs attention, keyed ``dispute-<case>-<kind>``."""

    case_id: uuid.UUID
    kind: str
    severity: AlertSeverity
    title: str
    summary: str
    owner_id: int | None = None

    @property
    def id(self) -> str:
        return f"dispute-{self.case_id}-{self.kind}"


def _round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


def rate(part: int, total: int) -> float | None:
    """``part / total``, or None when there is nothing to divide."""
    if not total:
        return None
    return part / total


def first_response_minutes(
    opened_at: datetime | None, responded_at: datetime | None
) -> float | None:
    """Minutes from opening to the first responder event, one decimal place."""
    if opened_at is None or responded_at is None:
        return None
    minutes = (ensure_utc(responded_at) - ensure_utc(opened_at)).total_seconds() / 60
    if minutes < 0:
        return None
    return round(minutes, 1)


def average_minutes(samples: Iterable[float | None]) -> float | None:
    values = [s for s in samples if s is not None]
    if not values:
        return None
    return round(sum(values) / len(values), 1)


def trust_score(
    *,
    total: int,
    resolution_rate: float | None,
    progression_rate: float | None,
    average_first_response_minutes: float | None,
    sla_breaches: int,
    response_target_minutes: int = DEFAULT_RESPONSE_TARGET_MINUTES,
) -> int | None:
    """Composite 0-100 score for a set of cases; None for an empty set.

    Starts at 60, adds up to 24 for resolutions, up to 8 for progression
    past intake and up to 12 for answering within the response target,
    then subtracts 6 per breached case (at most 30).
    """
    if not total:
        return None

    score = 60
    if resolution_rate is not None:
        score += _round_half_up(resolution_rate * 24)
    if progression_rate is not None:
        score += _round_half_up(progression_rate * 8)
    if average_first_response_minutes is not None and average_first_response_minutes >= 0:
        ratio = average_first_response_minutes / (
            response_target_minutes or DEFAULT_RESPONSE_TARGET_MINUTES
        )
        contribution = 12.0 if ratio <= 1 else max(0.0, 12 - (ratio - 1) * 18)
        score += _round_half_up(contribution)
    if sla_breaches > 0:
        score -= min(30, sla_breaches * 6)

    return max(0, min(100, score))


def _preview(summary: str | None) -> str | None:
    if summary and len(summary) > SUMMARY_PREVIEW_LENGTH:
        return summary[: SUMMARY_PREVIEW_LENGTH - 3] + "..."
    return summary


def risk_alerts(
    case: AlertCase,
    now: datetime,
    *,
    days_open: int,
    first_response: float | None,
    exposure: Decimal | None,
    currency_code: str,
    resolution_target_hours: int = DEFAULT_RESOLUTION_TARGET_HOURS,
    response_target_minutes: int = DEFAULT_RESPONSE_TARGET_MINUTES,
    exposure_threshold: Decimal = DEFAULT_EXPOSURE_THRESHOLD,
) -> list[RiskAlert]:
    """Alerts for one active case.

    A breached deadline yields a single critical alert and nothing else.
    Otherwise priority, waiting on the customer, aging past the resolution
    target, a slow first response and a large exposure past intake each
    add one alert.
    """
    if not is_active(case):
        return []

    preview = _preview(case.summary)
    alerts: list[RiskAlert] = []

    def add(kind: str, severity: AlertSeverity, title: str, fallback: str) -> None:
        alerts.append(
            RiskAlert(
                case_id=case.id,
                kind=kind,
                severity=severity,
                title=title,
                summary=preview or fallback,
                owner_id=case.assigned_to_id,
            )
        )

    now = ensure_utc(now)
    if any(due_at < now for _, due_at in case_deadlines(case)):
        add(
            "sla",
            AlertSeverity.CRITICAL,
            "SLA window breached",
            "Response window has elapsed without resolution.",
        )
        return alerts

    priority = DisputePriority(case.priority)
    if priority is DisputePriority.URGENT:
        add(
            "priority",
            AlertSeverity.CRITICAL,
            "Urgent dispute needs action",
            "Escalate with stakeholders to prevent trust impact.",
        )
    elif priority is DisputePriority.HIGH:
        add(
            "priority",
            AlertSeverity.HIGH,
            "High-priority case under review",
            "Coordinate updates with the assigned specialist.",
        )

    if DisputeStatus(case.status) is DisputeStatus.AWAITING_CUSTOMER:
        add(
            "awaiting",
            AlertSeverity.HIGH,
            "Awaiting customer response",
            "Follow up with the customer to keep momentum.",
        )

    aging_threshold_days = max(2, math.ceil(resolution_target_hours / 24))
    if days_open > aging_threshold_days:
        add(
            "aging",
            AlertSeverity.MEDIUM,
            "Case aging beyond target",
            "Resolution cadence has slowed below trust targets.",
        )

    if first_response is not None and first_response > response_target_minutes:
        add(
            "response",
            AlertSeverity.MEDIUM,
            "Slow first response detected",
            "Ensure future responses land within SLA expectations.",
        )

    if (
        DisputeStage(case.stage) in PROGRESSED_STAGES
        and exposure is not None
        and exposure >= exposure_threshold
    ):
        alerts.append(
            RiskAlert(
                case_id=case.id,
                kind="exposure",
                severity=AlertSeverity.MEDIUM,
                title="High-value dispute in mediation or later",
                summary=(
                    f"Escrow exposure {exposure:,.0f} {currency_code} requires close monitoring."
                ),
                owner_id=case.assigned_to_id,
            )
        )

    return alerts


def sort_alerts(alerts: Iterable[RiskAlert]) -> list[RiskAlert]:
    """Most severe first, then by alert id."""
    return sorted(alerts, key=lambda a: (a.severity.order, a.id))


def open_exposure(entries: Iterable[tuple[str, str, Decimal]]) -> dict[str, Decimal]:
    """Sum of held amounts per currency over active cases.

    Each entry is ``(case status, currency code, amount)``. Currencies are
    never added together.
    """
    totals: dict[str, Decimal] = defaultdict(Decimal)
    for status, currency, amount in entries:
        if DisputeStatus(status) in RESOLVED_DISPUTE_STATUSES:
            continue
        if amount > 0:
            totals[currency] += amount
    return dict(sorted(totals.items()))


def release_aging_bucket(now: datetime, scheduled_release_at: datetime | None) -> str | None:
    """Bucket of days until the scheduled release; overdue releases land in 0-3."""
    if scheduled_release_at is None:
        return None
    seconds = (ensure_utc(scheduled_release_at) - ensure_utc(now)).total_seconds()
    days = math.floor(seconds / 86400)
    if days <= 3:
        return "0-3_days"
    if days <= 7:
        return "4-7_days"
    if days <= 14:
        return "8-14_days"
    return "15+_days"


def release_aging(now: datetime, scheduled: Iterable[datetime | None]) -> dict[str, int]:
    """Count scheduled releases per aging bucket; unscheduled ones are skipped."""
    buckets = dict.fromkeys(RELEASE_AGING_BUCKETS, 0)
    for scheduled_release_at in scheduled:
        bucket = release_aging_bucket(now, scheduled_release_at)
        if bucket is not None:
            buckets[bucket] += 1
    return buckets
