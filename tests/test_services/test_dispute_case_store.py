"""Tests for the dispute case store.

These tests verify that:
    1. Opening a case flips the transaction to disputed in the same unit of work.
    2. A transaction carries at most one non-closed case.
    3. Authorization is checked before anything is read or written.
    4. A resolution moves funds atomically with the event and the case summary.
    5. Escalating the same breach twice records a single notice.
"""

from __future__ import annotations

import uuid
from datetime import timedelta
from decimal import Decimal

import pytest

from marketplace_trust.domain.case_projection import CaseChange, EvidenceReference
from marketplace_trust.domain.enums import (
    ActionType,
    DisputeStage,
    DisputeStatus,
    TransactionResolution,
    TransactionStatus,
)
from marketplace_trust.domain.exceptions import (
    AuthorizationError,
    ConflictError,
    InvalidStateTransitionError,
    NotFoundError,
    ValidationError,
)
from marketplace_trust.domain.sla import ESCALATIONS_METADATA_KEY
from marketplace_trust.infrastructure.database.unit_of_work import UnitOfWork
from marketplace_trust.services.dispute_case_store import DisputeCaseStore
from marketplace_trust.services.escrow_ledger import EscrowLedger


async def _append(factory, case_id, actor, change, evidence=None):
    async with UnitOfWork(factory.session_factory) as uow:
        ledger = EscrowLedger(uow, clock=factory.clock)
        store = DisputeCaseStore(uow, ledger, clock=factory.clock)
        return await store.append_event(case_id, actor, change, evidence=evidence)


async def _state(factory, case_id, actor):
    """Reload a case with its transaction, account and events."""
    async with UnitOfWork(factory.session_factory) as uow:
        store = DisputeCaseStore(uow, EscrowLedger(uow))
        case = await store.get_case(case_id, actor)
        events = await store.list_events(case_id, actor)
        return case, case.transaction, case.transaction.account, events


async def _escalate(factory, case_id):
    async with UnitOfWork(factory.session_factory) as uow:
        ledger = EscrowLedger(uow, clock=factory.clock)
        return await DisputeCaseStore(uow, ledger, clock=factory.clock).escalate_breaches(case_id)


class TestOpenCase:
    @pytest.mark.asyncio
    async def test_open_flips_transaction_to_disputed(self, factory, customer, admin) -> None:
        txn = await factory.transaction(customer)
        case = await factory.case(customer, txn.id, reason_code="missed_deadline")

        assert case.stage == DisputeStage.INTAKE
        assert case.status == DisputeStatus.OPEN
        assert case.opened_by_id == customer.actor_id
        assert case.resolved_at is None

        stored, stored_txn, account, events = await _state(factory, case.id, admin)
        assert stored_txn.status == TransactionStatus.DISPUTED
        assert stored_txn.audit_trail[-1]["to"] == "disputed"
        assert account.current_balance == Decimal("500.00")
        assert len(events) == 1
        assert events[0].action_type == ActionType.COMMENT
        assert events[0].metadata_json["case_opened"] is True

    @pytest.mark.asyncio
    async def test_second_open_conflicts(self, factory, customer, provider) -> None:
        txn = await factory.transaction(customer)
        await factory.case(customer, txn.id)

        with pytest.raises(ConflictError):
            await factory.case(provider, txn.id)

    @pytest.mark.asyncio
    async def test_released_transaction_is_not_disputable(self, factory, customer) -> None:
        txn = await factory.transaction(customer, status=TransactionStatus.RELEASED)
        with pytest.raises(ValidationError, match="disputes can only be opened"):
            await factory.case(customer, txn.id)

    @pytest.mark.asyncio
    async def test_outsider_cannot_see_transaction(self, factory, customer, outsider) -> None:
        txn = await factory.transaction(customer)
        with pytest.raises(NotFoundError):
            await factory.case(outsider, txn.id)

    @pytest.mark.asyncio
    async def test_mediator_cannot_open(self, factory, customer, mediator) -> None:
        txn = await factory.transaction(customer)
        with pytest.raises(AuthorizationError):
            await factory.case(mediator, txn.id)

    @pytest.mark.asyncio
    async def test_unknown_transaction(self, factory, customer) -> None:
        with pytest.raises(NotFoundError):
            await factory.case(customer, uuid.uuid4())

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("kwargs", "message"),
        [
            ({"reason_code": "  "}, "reason_code is required"),
            ({"reason_code": "x" * 65}, "at most 64"),
            ({"summary": ""}, "summary is required"),
            ({"priority": "critical"}, "Unknown priority"),
        ],
    )
    async def test_invalid_input(self, factory, customer, kwargs, message: str) -> None:
        txn = await factory.transaction(customer)
        with pytest.raises(ValidationError, match=message):
            await factory.case(customer, txn.id, **kwargs)

    @pytest.mark.asyncio
    async def test_reopen_after_close(self, factory, customer, mediator) -> None:
        txn = await factory.transaction(customer)
        first = await factory.case(customer, txn.id)
        await _append(
            factory,
            first.id,
            mediator,
            CaseChange(
                action_type=ActionType.STATUS_CHANGE,
                status=DisputeStatus.CLOSED,
                transaction_resolution=TransactionResolution.HOLD,
            ),
        )

        second = await factory.case(customer, txn.id)
        assert second.id != first.id

    @pytest.mark.asyncio
    async def test_released_after_settlement_is_not_disputable(
        self, factory, customer, mediator
    ) -> None:
        txn = await factory.transaction(customer)
        case = await factory.case(customer, txn.id)
        await _append(
            factory,
            case.id,
            mediator,
            CaseChange(
                action_type=ActionType.STATUS_CHANGE,
                status=DisputeStatus.SETTLED,
                transaction_resolution=TransactionResolution.RELEASE,
            ),
        )

        with pytest.raises(ValidationError, match="is released"):
            await factory.case(customer, txn.id)


class TestAppendEvent:
    @pytest.mark.asyncio
    async def test_evidence_upload(self, factory, customer, admin) -> None:
        txn = await factory.transaction(customer)
        case = await factory.case(customer, txn.id)

        event = await _append(
            factory,
            case.id,
            customer,
            CaseChange(action_type=ActionType.EVIDENCE_UPLOAD, notes="Signed brief"),
            evidence=EvidenceReference(key="disputes/brief.pdf", file_name="brief.pdf"),
        )
        assert event.evidence_key == "disputes/brief.pdf"
        assert event.actor_type == "customer"

        _, _, _, events = await _state(factory, case.id, admin)
        assert [e.action_type for e in events] == ["comment", "evidence_upload"]

    @pytest.mark.asyncio
    async def test_provider_cannot_resolve(self, factory, customer, provider, admin) -> None:
        txn = await factory.transaction(customer)
        case = await factory.case(customer, txn.id)

        with pytest.raises(AuthorizationError):
            await _append(
                factory,
                case.id,
                provider,
                CaseChange(
                    action_type=ActionType.STATUS_CHANGE,
                    status=DisputeStatus.SETTLED,
                    transaction_resolution=TransactionResolution.RELEASE,
                ),
            )

        stored, stored_txn, _, events = await _state(factory, case.id, admin)
        assert stored.status == DisputeStatus.OPEN
        assert stored_txn.status == TransactionStatus.DISPUTED
        assert len(events) == 1

    @pytest.mark.asyncio
    async def test_override_is_admin_only(self, factory, customer, mediator, admin) -> None:
        txn = await factory.transaction(customer)
        case = await factory.case(customer, txn.id)
        override = CaseChange(action_type=ActionType.STAGE_OVERRIDE, stage=DisputeStage.ARBITRATION)

        with pytest.raises(AuthorizationError):
            await _append(factory, case.id, mediator, override)

        await _append(factory, case.id, admin, override)
        stored, _, _, events = await _state(factory, case.id, admin)
        assert stored.stage == DisputeStage.ARBITRATION
        assert events[-1].metadata_json["changes"]["stage"] == {
            "from": "intake",
            "to": "arbitration",
        }

    @pytest.mark.asyncio
    async def test_regular_advance_cannot_skip(self, factory, customer, mediator) -> None:
        txn = await factory.transaction(customer)
        case = await factory.case(customer, txn.id)
        with pytest.raises(InvalidStateTransitionError):
            await _append(
                factory,
                case.id,
                mediator,
                CaseChange(action_type=ActionType.STAGE_ADVANCED, stage=DisputeStage.RESOLVED),
            )

    @pytest.mark.asyncio
    async def test_outsider_gets_not_found(self, factory, customer, outsider) -> None:
        txn = await factory.transaction(customer)
        case = await factory.case(customer, txn.id)
        with pytest.raises(NotFoundError):
            await _append(
                factory, case.id, outsider, CaseChange(action_type=ActionType.COMMENT, notes="hi")
            )


class TestResolution:
    @pytest.mark.asyncio
    async def test_release_resolves_case_and_moves_funds(
        self, factory, customer, mediator, admin
    ) -> None:
        txn = await factory.transaction(customer)
        case = await factory.case(customer, txn.id)
        await _append(
            factory,
            case.id,
            admin,
            CaseChange(action_type=ActionType.STAGE_OVERRIDE, stage=DisputeStage.RESOLVED),
        )

        await _append(
            factory,
            case.id,
            mediator,
            CaseChange(
                action_type=ActionType.STATUS_CHANGE,
                status=DisputeStatus.SETTLED,
                resolution_notes="Work accepted after revision",
                transaction_resolution=TransactionResolution.RELEASE,
            ),
        )

        stored, stored_txn, account, events = await _state(factory, case.id, admin)
        assert stored.status == DisputeStatus.SETTLED
        assert stored.resolved_at is not None
        assert stored.resolution_notes == "Work accepted after revision"
        assert stored_txn.status == TransactionStatus.RELEASED
        assert stored_txn.released_at is not None
        assert account.current_balance == 0
        assert account.pending_release_total == 0
        assert events[-1].metadata_json["transaction_resolution"] == "release"

    @pytest.mark.asyncio
    async def test_failed_ledger_move_rolls_back_event(
        self, factory, customer, mediator, admin
    ) -> None:
        txn = await factory.transaction(customer)
        case = await factory.case(customer, txn.id)

        # Funds paid out through the rail behind the dispute's back.
        async with UnitOfWork(factory.session_factory) as uow:
            await EscrowLedger(uow).transition(txn.id, TransactionStatus.RELEASED, admin)

        with pytest.raises(InvalidStateTransitionError):
            await _append(
                factory,
                case.id,
                mediator,
                CaseChange(
                    action_type=ActionType.STATUS_CHANGE,
                    status=DisputeStatus.UNDER_REVIEW,
                    transaction_resolution=TransactionResolution.REFUND,
                ),
            )

        stored, stored_txn, _, events = await _state(factory, case.id, admin)
        assert stored.status == DisputeStatus.OPEN
        assert stored_txn.status == TransactionStatus.RELEASED
        assert len(events) == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [DisputeStatus.SETTLED, DisputeStatus.CLOSED])
    async def test_ending_case_requires_fund_resolution(
        self, factory, customer, admin, status
    ) -> None:
        txn = await factory.transaction(customer)
        case = await factory.case(customer, txn.id)
        await _append(
            factory,
            case.id,
            admin,
            CaseChange(action_type=ActionType.STAGE_OVERRIDE, stage=DisputeStage.RESOLVED),
        )

        with pytest.raises(ValidationError, match="transaction_resolution"):
            await _append(
                factory,
                case.id,
                admin,
                CaseChange(action_type=ActionType.STATUS_CHANGE, status=status),
            )

        stored, stored_txn, _, events = await _state(factory, case.id, admin)
        assert stored.status == DisputeStatus.OPEN
        assert stored.resolved_at is None
        assert stored_txn.status == TransactionStatus.DISPUTED
        assert len(events) == 2

    @pytest.mark.asyncio
    async def test_closed_with_hold_frees_transaction(self, factory, customer, admin) -> None:
        txn = await factory.transaction(customer)
        case = await factory.case(customer, txn.id)
        await _append(
            factory,
            case.id,
            admin,
            CaseChange(action_type=ActionType.STAGE_OVERRIDE, stage=DisputeStage.RESOLVED),
        )
        await _append(
            factory,
            case.id,
            admin,
            CaseChange(
                action_type=ActionType.STATUS_CHANGE,
                status=DisputeStatus.CLOSED,
                transaction_resolution=TransactionResolution.HOLD,
            ),
        )

        stored, stored_txn, _, _ = await _state(factory, case.id, admin)
        assert stored.resolved_at is not None
        assert stored_txn.status == TransactionStatus.IN_ESCROW

        reopened = await factory.case(customer, txn.id)
        assert reopened.id != case.id

    @pytest.mark.asyncio
    async def test_closing_after_earlier_hold_needs_no_resolution(
        self, factory, customer, mediator, admin
    ) -> None:
        txn = await factory.transaction(customer)
        case = await factory.case(customer, txn.id)
        await _append(
            factory,
            case.id,
            mediator,
            CaseChange(
                action_type=ActionType.STATUS_CHANGE,
                status=DisputeStatus.UNDER_REVIEW,
                transaction_resolution=TransactionResolution.HOLD,
            ),
        )
        await _append(
            factory,
            case.id,
            mediator,
            CaseChange(action_type=ActionType.STATUS_CHANGE, status=DisputeStatus.CLOSED),
        )

        stored, stored_txn, _, _ = await _state(factory, case.id, admin)
        assert stored.status == DisputeStatus.CLOSED
        assert stored_txn.status == TransactionStatus.IN_ESCROW

    @pytest.mark.asyncio
    async def test_resolved_case_is_frozen(self, factory, customer, admin) -> None:
        txn = await factory.transaction(customer)
        case = await factory.case(customer, txn.id)
        await _append(
            factory,
            case.id,
            admin,
            CaseChange(action_type=ActionType.STAGE_OVERRIDE, stage=DisputeStage.RESOLVED),
        )
        await _append(
            factory,
            case.id,
            admin,
            CaseChange(
                action_type=ActionType.STATUS_CHANGE,
                status=DisputeStatus.CLOSED,
                transaction_resolution=TransactionResolution.REFUND,
            ),
        )

        with pytest.raises(ValidationError, match="resolved"):
            await _append(
                factory,
                case.id,
                admin,
                CaseChange(action_type=ActionType.STATUS_CHANGE, status=DisputeStatus.OPEN),
            )


class TestEscalation:
    @pytest.mark.asyncio
    async def test_breach_is_escalated_once(self, factory, customer, admin, now) -> None:
        txn = await factory.transaction(customer)
        case = await factory.case(
            customer,
            txn.id,
            customer_deadline_at=now - timedelta(hours=1),
            provider_deadline_at=now + timedelta(days=10),
        )

        first = await _escalate(factory, case.id)
        second = await _escalate(factory, case.id)

        assert len(first) == 1
        assert first[0].action_type == ActionType.SYSTEM_NOTICE
        assert first[0].actor_type == "system"
        assert first[0].actor_id is None
        assert second == []

        stored, _, _, events = await _state(factory, case.id, admin)
        assert len(stored.metadata_json[ESCALATIONS_METADATA_KEY]) == 1
        assert len(events) == 2

    @pytest.mark.asyncio
    async def test_both_sides_breached(self, factory, customer, now) -> None:
        txn = await factory.transaction(customer)
        case = await factory.case(
            customer,
            txn.id,
            customer_deadline_at=now - timedelta(hours=2),
            provider_deadline_at=now - timedelta(hours=1),
        )
        events = await _escalate(factory, case.id)
        assert sorted(e.metadata_json["escalation"]["party"] for e in events) == [
            "customer",
            "provider",
        ]

    @pytest.mark.asyncio
    async def test_nothing_to_escalate(self, factory, customer, now) -> None:
        txn = await factory.transaction(customer)
        case = await factory.case(customer, txn.id, customer_deadline_at=now + timedelta(hours=5))
        assert await _escalate(factory, case.id) == []
