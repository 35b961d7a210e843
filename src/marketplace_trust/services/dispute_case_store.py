"""Dispute Case Store — dispute cases and their append-only event log.

Every write follows the same order inside the caller's unit of work:

    1. authorize the actor for everything the payload asks for
    2. validate the payload against its action type
    3. lock the case row (FOR UPDATE) and check the caller may see it
    4. project the event onto the cached case summary (pure apply_event)
    5. insert the event and write the new summary
    6. move funds through the ledger when a resolution is requested

An exception at any step leaves the unit of work to roll back, so a case
never carries a summary its event log does not explain.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from marketplace_trust.domain.authorization import (
    ACTION_PERMISSIONS,
    SYSTEM_ACTOR,
    ActorContext,
    Permission,
    authorize_action,
    authorize_all,
    can_view_case,
)
from marketplace_trust.domain.case_projection import (
    CaseChange,
    CaseSnapshot,
    EvidenceReference,
    apply_event,
    open_snapshot,
    validate_change,
)
from marketplace_trust.domain.enums import (
    DISPUTABLE_TRANSACTION_STATUSES,
    RESOLVED_DISPUTE_STATUSES,
    ActionType,
    DisputePriority,
    DisputeStage,
    DisputeStatus,
    TransactionStatus,
)
from marketplace_trust.domain.exceptions import (
    ConflictError,
    NotFoundError,
    ValidationError,
)
from marketplace_trust.domain.sla import Escalation, ensure_utc, pending_escalations
from marketplace_trust.infrastructure.database.orm_models import DisputeCase, DisputeEvent
from marketplace_trust.logging_config import get_logger

if TYPE_CHECKING:
    import uuid
    from collections.abc import Callable

    from marketplace_trust.infrastructure.database.unit_of_work import UnitOfWork
    from marketplace_trust.services.escrow_ledger import EscrowLedger

logger = get_logger(__name__)

MAX_REASON_CODE_LENGTH = 64

_SNAPSHOT_FIELDS = (
    "stage",
    "status",
    "priority",
    "customer_deadline_at",
    "provider_deadline_at",
    "resolution_notes",
    "assigned_to_id",
    "resolved_at",
)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def required_permissions(change: CaseChange) -> set[Permission]:
    """Everything the actor must hold for this change, derived from the payload."""
    permissions = {ACTION_PERMISSIONS[change.action_type]}
    if change.transaction_resolution is not None:
        permissions.add(Permission.RESOLVE_TRANSACTION)
    return permissions


def snapshot_of(case: DisputeCase) -> CaseSnapshot:
    """Read the cached summary of an ORM row as a typed snapshot."""
    return CaseSnapshot(
        stage=DisputeStage(case.stage),
        status=DisputeStatus(case.status),
        priority=DisputePriority(case.priority),
        customer_deadline_at=case.customer_deadline_at,
        provider_deadline_at=case.provider_deadline_at,
        resolution_notes=case.resolution_notes,
        assigned_to_id=case.assigned_to_id,
        resolved_at=case.resolved_at,
        metadata_json=dict(case.metadata_json or {}),
    )


def _json_value(value: object) -> object:
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def _diff(before: CaseSnapshot, after: CaseSnapshot) -> dict[str, dict]:
    changes = {}
    for name in _SNAPSHOT_FIELDS:
        old, new = getattr(before, name), getattr(after, name)
        if old != new:
            changes[name] = {"from": _json_value(old), "to": _json_value(new)}
    return changes


class DisputeCaseStore:
    """Opens dispute cases and appends to their event log."""

    def __init__(
        self,
        uow: UnitOfWork,
        ledger: EscrowLedger,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._uow = uow
        self._ledger = ledger
        self._clock = clock

    # ------------------------------------------------------------------
    # Opening
    # ------------------------------------------------------------------

    async def open_case(
        self,
        transaction_id: uuid.UUID,
        actor: ActorContext,
        reason_code: str,
        summary: str,
        priority: DisputePriority | str = DisputePriority.MEDIUM,
        customer_deadline_at: datetime | None = None,
        provider_deadline_at: datetime | None = None,
        assigned_to_id: int | None = None,
        metadata: dict | None = None,
    ) -> DisputeCase:
        """Open a dispute against a funded or held transaction.

        Creates the case (intake/open), records the opening event and flips
        the transaction to disputed, all in the caller's unit of work.

        Raises:
            AuthorizationError: The actor type may not open cases.
            ValidationError: Bad input, or the transaction is not disputable.
            NotFoundError: Unknown transaction, or one the caller is not part of.
            ConflictError: The transaction already has a non-closed case.
        """
        authorize_action(actor.actor_type, Permission.OPEN_CASE)

        reason_code = (reason_code or "").strip()
        summary = (summary or "").strip()
        if not reason_code:
            raise ValidationError("reason_code is required")
        if len(reason_code) > MAX_REASON_CODE_LENGTH:
            raise ValidationError(
                f"reason_code must be at most {MAX_REASON_CODE_LENGTH} characters"
            )
        if not summary:
            raise ValidationError("summary is required")
        try:
            priority = DisputePriority(priority)
        except ValueError as err:
            raise ValidationError(f"Unknown priority '{priority}'") from err

        txn = await self._uow.transactions.get_by_id(transaction_id, for_update=True)
        if txn is None:
            raise NotFoundError("Escrow transaction", transaction_id)
        account = await self._uow.accounts.get_by_id(txn.account_id)
        visible = can_view_case(
            actor,
            account_owner_id=account.user_id if account is not None else None,
            initiated_by_id=txn.initiated_by_id,
            counterparty_id=txn.counterparty_id,
        )
        if not visible:
            raise NotFoundError("Escrow transaction", transaction_id)

        # A disputed transaction reports the case holding it as a conflict;
        # every other ineligible status is a validation error.
        status = TransactionStatus(txn.status)
        if status is not TransactionStatus.DISPUTED:
            self._require_disputable(txn.id, status)
        existing = await self._uow.cases.get_active_for_transaction(txn.id)
        if existing is not None:
            raise ConflictError(
                f"Transaction {transaction_id} already has an active dispute ({existing.id})"
            )
        self._require_disputable(txn.id, status)

        now = self._clock()
        snapshot = open_snapshot(
            priority=priority,
            customer_deadline_at=ensure_utc(customer_deadline_at) if customer_deadline_at else None,
            provider_deadline_at=ensure_utc(provider_deadline_at) if provider_deadline_at else None,
            assigned_to_id=assigned_to_id,
            metadata=metadata,
        )
        case = DisputeCase(
            escrow_transaction_id=txn.id,
            opened_by_id=actor.actor_id,
            reason_code=reason_code,
            summary=summary,
            opened_at=now,
        )
        self._write_snapshot(case, snapshot)
        case = await self._uow.cases.create(case)

        await self._uow.events.record(
            DisputeEvent(
                dispute_case_id=case.id,
                actor_id=actor.actor_id,
                actor_type=actor.actor_type.value,
                action_type=ActionType.COMMENT.value,
                notes=summary,
                event_at=now,
                metadata_json={"case_opened": True, "reason_code": reason_code},
            )
        )

        await self._ledger.transition(
            txn.id,
            TransactionStatus.DISPUTED,
            actor,
            notes=f"Dispute {case.id} opened: {reason_code}",
        )

        logger.info(
            "dispute.case_opened",
            case_id=str(case.id),
            transaction_id=str(txn.id),
            reason_code=reason_code,
            priority=priority.value,
            actor_type=actor.actor_type.value,
        )
        return case

    # ------------------------------------------------------------------
    # Event log
    # ------------------------------------------------------------------

    async def append_event(
        self,
        case_id: uuid.UUID,
        actor: ActorContext,
        change: CaseChange,
        evidence: EvidenceReference | None = None,
        metadata: dict | None = None,
    ) -> DisputeEvent:
        """Append one event and update the cached case summary with it.

        Raises:
            AuthorizationError: Before anything is read or written.
            ValidationError: Payload/action mismatch or an illegal move.
            NotFoundError: Unknown case, or one the caller cannot see.
        """
        change = replace(change, has_evidence=evidence is not None and evidence.is_present)

        authorize_all(actor.actor_type, required_permissions(change))
        validate_change(change)

        case = await self._uow.cases.get_by_id(case_id, for_update=True)
        if case is None or not self._visible(actor, case):
            raise NotFoundError("Dispute case", case_id)

        now = self._clock()
        before = snapshot_of(case)
        after = apply_event(before, change, now)
        self._require_fund_resolution(case, after, change)

        event_metadata = dict(metadata or {})
        changes = _diff(before, after)
        if changes:
            event_metadata["changes"] = changes
        if change.transaction_resolution is not None:
            event_metadata["transaction_resolution"] = change.transaction_resolution.value

        event = await self._uow.events.record(
            DisputeEvent(
                dispute_case_id=case.id,
                actor_id=actor.actor_id,
                actor_type=actor.actor_type.value,
                action_type=change.action_type.value,
                notes=change.notes,
                evidence_key=evidence.key if evidence else None,
                evidence_url=evidence.url if evidence else None,
                evidence_file_name=evidence.file_name if evidence else None,
                evidence_content_type=evidence.content_type if evidence else None,
                event_at=now,
                metadata_json=event_metadata or None,
            )
        )
        self._write_snapshot(case, after)
        await self._uow.flush()

        if change.transaction_resolution is not None:
            await self._ledger.transition(
                case.escrow_transaction_id,
                change.transaction_resolution.target_status,
                actor,
                notes=change.resolution_notes or change.notes,
            )

        logger.info(
            "dispute.event_appended",
            case_id=str(case.id),
            event_id=str(event.id),
            action_type=change.action_type.value,
            actor_type=actor.actor_type.value,
            stage=case.stage,
            status=case.status,
            transaction_resolution=(
                change.transaction_resolution.value if change.transaction_resolution else None
            ),
        )
        return event

    # ------------------------------------------------------------------
    # Escalation
    # ------------------------------------------------------------------

    async def record_escalation(
        self,
        case_id: uuid.UUID,
        escalation: Escalation,
        actor: ActorContext = SYSTEM_ACTOR,
    ) -> DisputeEvent:
        """Flag one breached deadline on the case via a system notice."""
        change = CaseChange(
            action_type=ActionType.SYSTEM_NOTICE,
            notes=(
                f"The {escalation.party.value} deadline of "
                f"{escalation.due_at.isoformat()} has been breached"
            ),
            escalation_key=escalation.key,
        )
        event = await self.append_event(
            case_id,
            actor,
            change,
            metadata={
                "escalation": {
                    "key": escalation.key,
                    "party": escalation.party.value,
                    "due_at": escalation.due_at.isoformat(),
                }
            },
        )
        logger.warning(
            "dispute.deadline_escalated",
            case_id=str(case_id),
            party=escalation.party.value,
            due_at=escalation.due_at.isoformat(),
        )
        return event

    async def escalate_breaches(
        self,
        case_id: uuid.UUID,
        now: datetime | None = None,
        actor: ActorContext = SYSTEM_ACTOR,
    ) -> list[DisputeEvent]:
        """Record every breached deadline of the case that is not yet escalated.

        Running it again for the same breach records nothing.
        """
        case = await self._uow.cases.get_by_id(case_id, for_update=True)
        if case is None or not self._visible(actor, case):
            raise NotFoundError("Dispute case", case_id)

        recorded = []
        for escalation in pending_escalations(case, now or self._clock()):
            recorded.append(await self.record_escalation(case_id, escalation, actor))
        return recorded

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_case(self, case_id: uuid.UUID, actor: ActorContext) -> DisputeCase:
        case = await self._uow.cases.get_by_id(case_id)
        if case is None or not self._visible(actor, case):
            raise NotFoundError("Dispute case", case_id)
        return case

    async def list_events(self, case_id: uuid.UUID, actor: ActorContext) -> list[DisputeEvent]:
        """Events of a visible case in event-time order."""
        await self.get_case(case_id, actor)
        return await self._uow.events.get_by_case(case_id)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _visible(actor: ActorContext, case: DisputeCase) -> bool:
        txn = case.transaction
        return can_view_case(
            actor,
            account_owner_id=txn.account.user_id,
            initiated_by_id=txn.initiated_by_id,
            counterparty_id=txn.counterparty_id,
            opened_by_id=case.opened_by_id,
            assigned_to_id=case.assigned_to_id,
        )

    @staticmethod
    def _require_disputable(transaction_id: uuid.UUID, status: TransactionStatus) -> None:
        if status not in DISPUTABLE_TRANSACTION_STATUSES:
            raise ValidationError(
                f"Transaction {transaction_id} is {status.value}; disputes can only be "
                "opened on funded or in-escrow transactions"
            )

    @staticmethod
    def _require_fund_resolution(
        case: DisputeCase, after: CaseSnapshot, change: CaseChange
    ) -> None:
        """A case cannot settle or close while its funds are still frozen by it."""
        if (
            after.status in RESOLVED_DISPUTE_STATUSES
            and case.transaction.status == TransactionStatus.DISPUTED.value
            and change.transaction_resolution is None
        ):
            raise ValidationError(
                f"Dispute case {case.id} cannot become {after.status.value} while its "
                "transaction is disputed; send a transaction_resolution "
                "(release, refund or hold)"
            )

    @staticmethod
    def _write_snapshot(case: DisputeCase, snapshot: CaseSnapshot) -> None:
        for name in _SNAPSHOT_FIELDS:
            value = getattr(snapshot, name)
            if name in ("stage", "status", "priority"):
                value = str(value)
            setattr(case, name, value)
        case.metadata_json = dict(snapshot.metadata_json) or None


