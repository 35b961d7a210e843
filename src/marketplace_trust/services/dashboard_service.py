"""Dashboard Aggregator — the dispute read model for one principal.

A pure reader: it never locks and never writes. Severity, counts, trust
metrics and the latest event are recomputed from committed rows on every
call, so there is no cached aggregate to go stale.

Also builds the platform-wide trust overview for mediators and admins.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import TYPE_CHECKING

from marketplace_trust.config import get_settings
from marketplace_trust.domain.authorization import Permission, authorize_action, is_allowed
from marketplace_trust.domain.enums import (
    HELD_TRANSACTION_STATUSES,
    PROGRESSED_STAGES,
    REASON_CODES,
    RESOLVED_DISPUTE_STATUSES,
    RESPONDER_ACTOR_TYPES,
    AccountStatus,
    ActorType,
    DeadlineParty,
    DisputePriority,
    DisputeStage,
    DisputeStatus,
    SlaSeverity,
    TransactionStatus,
)
from marketplace_trust.domain.exceptions import ValidationError
from marketplace_trust.domain.sla import (
    aggregate,
    case_deadlines,
    classify_deadline,
    ensure_utc,
    is_active,
)
from marketplace_trust.domain.trust_metrics import (
    average_minutes,
    first_response_minutes,
    open_exposure,
    rate,
    release_aging,
    risk_alerts,
    sort_alerts,
    trust_score,
)
from marketplace_trust.logging_config import get_logger
from marketplace_trust.schemas.disputes import (
    CaseMetrics,
    DashboardCase,
    DashboardMetadata,
    DashboardMetrics,
    DashboardPermissions,
    DashboardSummary,
    DisputeCaseResponse,
    DisputeDashboardResponse,
    DisputeEventResponse,
    ExposureTotal,
    RiskAlertResponse,
    UpcomingDeadline,
)
from marketplace_trust.schemas.escrow import EscrowAccountResponse, EscrowTransactionResponse
from marketplace_trust.schemas.overview import (
    DisputeQueueItem,
    StatusTotal,
    TrustOverviewResponse,
)

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

    from marketplace_trust.domain.authorization import ActorContext
    from marketplace_trust.domain.sla import CaseAggregate
    from marketplace_trust.infrastructure.database.orm_models import DisputeCase, DisputeEvent
    from marketplace_trust.infrastructure.database.unit_of_work import UnitOfWork

logger = get_logger(__name__)

_CALLER_DEADLINE_PARTY = {
    ActorType.CUSTOMER: DeadlineParty.CUSTOMER,
    ActorType.PROVIDER: DeadlineParty.PROVIDER,
}

_OVERVIEW_ACCOUNT_STATUSES = (AccountStatus.PENDING, AccountStatus.ACTIVE)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def parse_status_filter(statuses: Iterable[str] | str | None) -> list[DisputeStatus]:
    """Turn a status filter into enum members, rejecting anything outside the set."""
    if statuses is None:
        return []
    if isinstance(statuses, str):
        statuses = statuses.split(",")
    parsed = []
    for raw in statuses:
        value = raw.strip().lower()
        if not value or value == "all":
            continue
        try:
            parsed.append(DisputeStatus(value))
        except ValueError as err:
            raise ValidationError(f"Unknown dispute status filter '{raw}'") from err
    return parsed


def _exposure(case: DisputeCase) -> Decimal:
    """Net amount the case still keeps in escrow; zero once the funds have moved."""
    txn = case.transaction
    if TransactionStatus(txn.status) not in HELD_TRANSACTION_STATUSES:
        return Decimal("0")
    return Decimal(txn.net_amount)


class DashboardAggregator:
    """Builds the dispute dashboard for the calling principal."""

    def __init__(
        self,
        uow: UnitOfWork,
        clock: Callable[[], datetime] = _utcnow,
        at_risk_window_hours: int | None = None,
    ) -> None:
        settings = get_settings()
        self._uow = uow
        self._clock = clock
        self._window = (
            settings.sla_at_risk_window_hours
            if at_risk_window_hours is None
            else at_risk_window_hours
        )
        self._deadline_limit = settings.dashboard_deadline_limit
        self._eligible_limit = settings.eligible_transaction_limit
        self._response_sla = timedelta(hours=settings.response_sla_hours)
        self._response_target_minutes = settings.response_sla_hours * 60
        self._resolution_sla_hours = settings.resolution_sla_hours
        self._exposure_threshold = settings.high_exposure_threshold
        self._queue_limit = settings.overview_queue_limit
        self._account_limit = settings.overview_account_limit

    async def get_dashboard(
        self,
        actor: ActorContext,
        statuses: Iterable[str] | str | None = None,
    ) -> DisputeDashboardResponse:
        """Summary, metrics, deadlines, alerts, cases and eligible transactions for ``actor``.

        Cases are those the caller takes part in (account owner, initiator,
        counterparty, opener or assignee), narrowed by the status filter.
        """
        if actor.actor_id is None:
            raise ValidationError("A user id is required to build a dashboard")

        status_filter = parse_status_filter(statuses)
        now = self._clock()

        cases = await self._uow.cases.get_for_participant(actor.actor_id, status_filter)
        case_ids = [case.id for case in cases]
        latest = await self._uow.events.get_latest_by_cases(case_ids)
        counts = await self._uow.events.count_by_cases(case_ids)
        responded = await self._uow.events.first_response_by_cases(
            case_ids, RESPONDER_ACTOR_TYPES
        )
        first_response = {
            case.id: first_response_minutes(case.opened_at, responded.get(case.id))
            for case in cases
        }

        eligible = []
        if is_allowed(actor.actor_type, Permission.OPEN_CASE):
            eligible = await self._uow.transactions.get_eligible_for_dispute(
                actor.actor_id if actor.is_party else None,
                self._eligible_limit,
            )

        upcoming = self._upcoming_deadlines(cases, actor, now)
        alerts = sort_alerts(
            alert
            for case in cases
            for alert in risk_alerts(
                case,
                now,
                days_open=self._days_open(case, now),
                first_response=first_response[case.id],
                exposure=_exposure(case),
                currency_code=case.transaction.currency_code,
                resolution_target_hours=self._resolution_sla_hours,
                response_target_minutes=self._response_target_minutes,
                exposure_threshold=self._exposure_threshold,
            )
        )
        totals = aggregate(cases, now, self._window)
        summary = self._summary(cases, totals, now, upcoming, first_response)

        dashboard = DisputeDashboardResponse(
            summary=summary,
            metrics=DashboardMetrics(by_stage=totals.by_stage, by_status=totals.by_status),
            upcoming_deadlines=upcoming,
            cases=[
                self._dashboard_case(
                    case,
                    now,
                    latest.get(case.id),
                    counts.get(case.id, (0, 0)),
                    first_response[case.id],
                )
                for case in cases
            ],
            risk_alerts=[RiskAlertResponse.model_validate(alert) for alert in alerts],
            eligible_transactions=[
                EscrowTransactionResponse.model_validate(txn) for txn in eligible
            ],
            permissions=self._permissions(actor),
            metadata=DashboardMetadata(
                generated_at=now,
                at_risk_window_hours=self._window,
                reason_codes=list(REASON_CODES),
                stages=list(DisputeStage),
                statuses=list(DisputeStatus),
                priorities=list(DisputePriority),
            ),
        )

        logger.debug(
            "dashboard.built",
            actor_id=actor.actor_id,
            actor_type=actor.actor_type.value,
            cases=summary.total_cases,
            due_within_window=summary.due_within_72h,
            risk_alerts=len(alerts),
            trust_score=summary.trust_score,
            eligible=len(eligible),
        )
        return dashboard

    async def get_trust_overview(self, actor: ActorContext) -> TrustOverviewResponse:
        """Platform-wide ledger and dispute totals. Mediators and admins only.

        Release aging is computed over the release queue, so it covers the
        transactions due to be released soonest.
        """
        authorize_action(actor.actor_type, Permission.VIEW_LEDGER)
        now = self._clock()

        status_totals = await self._uow.transactions.totals_by_status()
        stage_counts = await self._uow.cases.count_by_stage()
        accounts = await self._uow.accounts.get_by_statuses(
            _OVERVIEW_ACCOUNT_STATUSES, self._account_limit
        )
        release_queue = await self._uow.transactions.get_release_queue(self._queue_limit)
        dispute_queue = await self._uow.cases.get_active_queue(self._queue_limit)

        totals = {status.value: StatusTotal() for status in TransactionStatus}
        for status, (count, amount) in status_totals.items():
            totals[status] = StatusTotal(count=count, total_amount=amount)

        overview = TrustOverviewResponse(
            generated_at=now,
            totals_by_status=totals,
            disputes_by_stage={
                stage.value: stage_counts.get(stage.value, 0) for stage in DisputeStage
            },
            active_accounts=[EscrowAccountResponse.model_validate(a) for a in accounts],
            release_queue=[EscrowTransactionResponse.model_validate(t) for t in release_queue],
            dispute_queue=[
                DisputeQueueItem(
                    **DisputeCaseResponse.model_validate(case).model_dump(),
                    transaction=EscrowTransactionResponse.model_validate(case.transaction),
                )
                for case in dispute_queue
            ],
            release_aging=release_aging(now, (t.scheduled_release_at for t in release_queue)),
        )

        logger.debug(
            "dashboard.overview_built",
            actor_type=actor.actor_type.value,
            accounts=len(accounts),
            release_queue=len(release_queue),
            dispute_queue=len(dispute_queue),
        )
        return overview

    # ------------------------------------------------------------------
    # Sections
    # ------------------------------------------------------------------

    def _summary(
        self,
        cases: list[DisputeCase],
        totals: CaseAggregate,
        now: datetime,
        upcoming: list[UpcomingDeadline],
        first_response: dict,
    ) -> DashboardSummary:
        sla_breaches = sum(1 for c in cases if self._is_breached(c, now))
        resolution_rate = rate(
            sum(1 for c in cases if DisputeStatus(c.status) in RESOLVED_DISPUTE_STATUSES),
            len(cases),
        )
        progression_rate = rate(
            sum(1 for c in cases if DisputeStage(c.stage) in PROGRESSED_STAGES),
            len(cases),
        )
        average_response = average_minutes(first_response.values())
        exposure = open_exposure(
            (c.status, c.transaction.currency_code, _exposure(c)) for c in cases
        )

        next_review = None
        if upcoming:
            next_review = upcoming[0].due_at
        elif cases:
            next_review = ensure_utc(now) + self._response_sla

        return DashboardSummary(
            total_cases=totals.total,
            open_cases=sum(1 for c in cases if is_active(c)),
            awaiting_customer=sum(
                1 for c in cases if c.status == DisputeStatus.AWAITING_CUSTOMER.value
            ),
            urgent_cases=totals.urgent_cases,
            due_within_72h=totals.due_within_window,
            progressed_cases=sum(
                1 for c in cases if is_active(c) and c.stage != DisputeStage.INTAKE.value
            ),
            sla_breaches=sla_breaches,
            resolution_rate=resolution_rate,
            progression_rate=progression_rate,
            average_first_response_minutes=average_response,
            trust_score=trust_score(
                total=len(cases),
                resolution_rate=resolution_rate,
                progression_rate=progression_rate,
                average_first_response_minutes=average_response,
                sla_breaches=sla_breaches,
                response_target_minutes=self._response_target_minutes,
            ),
            open_exposure=[
                ExposureTotal(currency=currency, amount=amount)
                for currency, amount in exposure.items()
            ],
            last_updated_at=(
                max(ensure_utc(c.updated_at) for c in cases) if cases else None
            ),
            next_sla_review_at=next_review,
        )

    def _is_breached(self, case: DisputeCase, now: datetime) -> bool:
        return is_active(case) and any(
            classify_deadline(now, due_at, self._window) is SlaSeverity.BREACHED
            for _, due_at in case_deadlines(case)
        )

    @staticmethod
    def _days_open(case: DisputeCase, now: datetime) -> int:
        opened_at = ensure_utc(case.opened_at)
        return max(0, (ensure_utc(case.resolved_at or now) - opened_at).days)

    def _upcoming_deadlines(
        self,
        cases: list[DisputeCase],
        actor: ActorContext,
        now: datetime,
    ) -> list[UpcomingDeadline]:
        """Deadlines of active cases, nearest first, capped by configuration."""
        caller_party = _CALLER_DEADLINE_PARTY.get(actor.actor_type)
        deadlines = []
        for case in cases:
            if not is_active(case):
                continue
            for party, due_at in case_deadlines(case):
                deadlines.append(
                    UpcomingDeadline(
                        case_id=case.id,
                        transaction_reference=case.transaction.reference,
                        party=party,
                        due_at=due_at,
                        severity=classify_deadline(now, due_at, self._window),
                        is_past_due=due_at < ensure_utc(now),
                        is_caller_deadline=party == caller_party,
                    )
                )
        deadlines.sort(key=lambda d: d.due_at)
        return deadlines[: self._deadline_limit]

    def _dashboard_case(
        self,
        case: DisputeCase,
        now: datetime,
        latest_event: DisputeEvent | None,
        counts: tuple[int, int],
        first_response: float | None,
    ) -> DashboardCase:
        event_count, attachment_count = counts
        metrics = CaseMetrics(
            customer_deadline_severity=(
                classify_deadline(now, case.customer_deadline_at, self._window)
                if is_active(case)
                else None
            ),
            provider_deadline_severity=(
                classify_deadline(now, case.provider_deadline_at, self._window)
                if is_active(case)
                else None
            ),
            days_open=self._days_open(case, now),
            event_count=event_count,
            attachment_count=attachment_count,
            first_response_minutes=first_response,
        )
        return DashboardCase(
            **DisputeCaseResponse.model_validate(case).model_dump(),
            transaction=EscrowTransactionResponse.model_validate(case.transaction),
            metrics=metrics,
            latest_event=(
                DisputeEventResponse.model_validate(latest_event) if latest_event else None
            ),
        )

    @staticmethod
    def _permissions(actor: ActorContext) -> DashboardPermissions:
        def allowed(permission: Permission) -> bool:
            return is_allowed(actor.actor_type, permission)

        return DashboardPermissions(
            actor_type=actor.actor_type,
            can_open=allowed(Permission.OPEN_CASE),
            can_comment=allowed(Permission.COMMENT),
            can_upload_evidence=allowed(Permission.UPLOAD_EVIDENCE),
            can_adjust_deadline=allowed(Permission.ADJUST_DEADLINE),
            can_advance_stage=allowed(Permission.ADVANCE_STAGE),
            can_override_stage=allowed(Permission.OVERRIDE_STAGE),
            can_change_status=allowed(Permission.CHANGE_STATUS),
            can_resolve_transaction=allowed(Permission.RESOLVE_TRANSACTION),
        )


