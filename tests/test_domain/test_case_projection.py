"""Tests for projecting dispute events onto the cached case summary."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from marketplace_trust.domain.case_projection import (
    UNSET,
    CaseChange,
    apply_event,
    open_snapshot,
    validate_change,
)
from marketplace_trust.domain.enums import (
    ActionType,
    DisputePriority,
    DisputeStage,
    DisputeStatus,
    TransactionResolution,
)
from marketplace_trust.domain.exceptions import InvalidStateTransitionError, ValidationError
from marketplace_trust.domain.sla import ESCALATIONS_METADATA_KEY

AT = datetime(2025, 3, 1, 12, 0, tzinfo=UTC)


class TestValidateChange:
    def test_comment_requires_notes(self) -> None:
        with pytest.raises(ValidationError, match="requires notes"):
            validate_change(CaseChange(action_type=ActionType.COMMENT))

    def test_evidence_upload_requires_reference(self) -> None:
        with pytest.raises(ValidationError, match="evidence reference"):
            validate_change(CaseChange(action_type=ActionType.EVIDENCE_UPLOAD, notes="invoice"))

    def test_foreign_fields_are_rejected(self) -> None:
        with pytest.raises(ValidationError, match="not allowed"):
            validate_change(
                CaseChange(
                    action_type=ActionType.COMMENT,
                    notes="hi",
                    status=DisputeStatus.SETTLED,
                )
            )

    def test_resolution_only_on_status_change(self) -> None:
        with pytest.raises(ValidationError):
            validate_change(
                CaseChange(
                    action_type=ActionType.STAGE_ADVANCED,
                    transaction_resolution=TransactionResolution.RELEASE,
                )
            )

    def test_deadline_adjustment_requires_a_deadline(self) -> None:
        with pytest.raises(ValidationError):
            validate_change(CaseChange(action_type=ActionType.DEADLINE_ADJUSTED, notes="later"))

    def test_clearing_a_deadline_counts_as_present(self) -> None:
        change = CaseChange(action_type=ActionType.DEADLINE_ADJUSTED, customer_deadline_at=None)
        validate_change(change)
        assert "customer_deadline_at" in change.present_fields()


class TestApplyEvent:
    def test_comment_leaves_summary_untouched(self) -> None:
        before = open_snapshot()
        after = apply_event(before, CaseChange(action_type=ActionType.COMMENT, notes="hi"), AT)
        assert after == before

    def test_stage_advances_one_step(self) -> None:
        after = apply_event(
            open_snapshot(), CaseChange(action_type=ActionType.STAGE_ADVANCED), AT
        )
        assert after.stage == DisputeStage.MEDIATION

    def test_stage_advance_cannot_skip(self) -> None:
        with pytest.raises(InvalidStateTransitionError):
            apply_event(
                open_snapshot(),
                CaseChange(action_type=ActionType.STAGE_ADVANCED, stage=DisputeStage.ARBITRATION),
                AT,
            )

    def test_override_jumps_forward_only(self) -> None:
        after = apply_event(
            open_snapshot(),
            CaseChange(action_type=ActionType.STAGE_OVERRIDE, stage=DisputeStage.ARBITRATION),
            AT,
        )
        assert after.stage == DisputeStage.ARBITRATION

        with pytest.raises(InvalidStateTransitionError):
            apply_event(
                after,
                CaseChange(action_type=ActionType.STAGE_OVERRIDE, stage=DisputeStage.INTAKE),
                AT,
            )

    def test_deadline_set_and_cleared(self) -> None:
        due = AT + timedelta(days=2)
        snapshot = apply_event(
            open_snapshot(),
            CaseChange(action_type=ActionType.DEADLINE_ADJUSTED, customer_deadline_at=due),
            AT,
        )
        assert snapshot.customer_deadline_at == due
        assert snapshot.provider_deadline_at is None

        cleared = apply_event(
            snapshot,
            CaseChange(
                action_type=ActionType.DEADLINE_ADJUSTED,
                customer_deadline_at=None,
                provider_deadline_at=UNSET,
            ),
            AT,
        )
        assert cleared.customer_deadline_at is None

    def test_status_change_updates_priority_and_assignee(self) -> None:
        after = apply_event(
            open_snapshot(),
            CaseChange(
                action_type=ActionType.STATUS_CHANGE,
                status=DisputeStatus.UNDER_REVIEW,
                priority=DisputePriority.URGENT,
                assigned_to_id=50,
            ),
            AT,
        )
        assert after.status == DisputeStatus.UNDER_REVIEW
        assert after.priority == DisputePriority.URGENT
        assert after.assigned_to_id == 50

    def test_system_notice_records_escalation_key_once(self) -> None:
        change = CaseChange(action_type=ActionType.SYSTEM_NOTICE, escalation_key="customer:x")
        once = apply_event(open_snapshot(), change, AT)
        twice = apply_event(once, change, AT)
        assert twice.metadata_json[ESCALATIONS_METADATA_KEY] == ["customer:x"]


class TestResolvedAt:
    def _at_resolved_stage(self):
        return apply_event(
            open_snapshot(),
            CaseChange(action_type=ActionType.STAGE_OVERRIDE, stage=DisputeStage.RESOLVED),
            AT,
        )

    def test_resolved_stage_alone_does_not_resolve(self) -> None:
        snapshot = self._at_resolved_stage()
        assert snapshot.stage == DisputeStage.RESOLVED
        assert snapshot.resolved_at is None

    def test_settled_at_resolved_stage_sets_resolved_at(self) -> None:
        later = AT + timedelta(hours=1)
        snapshot = apply_event(
            self._at_resolved_stage(),
            CaseChange(action_type=ActionType.STATUS_CHANGE, status=DisputeStatus.SETTLED),
            later,
        )
        assert snapshot.resolved_at == later

    def test_settled_before_resolved_stage_does_not_resolve(self) -> None:
        snapshot = apply_event(
            open_snapshot(),
            CaseChange(action_type=ActionType.STATUS_CHANGE, status=DisputeStatus.SETTLED),
            AT,
        )
        assert snapshot.resolved_at is None

        resolved = apply_event(
            apply_event(snapshot, CaseChange(action_type=ActionType.STAGE_ADVANCED), AT),
            CaseChange(action_type=ActionType.STAGE_OVERRIDE, stage=DisputeStage.RESOLVED),
            AT,
        )
        assert resolved.resolved_at == AT

    def test_resolved_case_rejects_further_changes(self) -> None:
        resolved = apply_event(
            self._at_resolved_stage(),
            CaseChange(action_type=ActionType.STATUS_CHANGE, status=DisputeStatus.CLOSED),
            AT,
        )
        with pytest.raises(ValidationError, match="resolved"):
            apply_event(
                resolved,
                CaseChange(action_type=ActionType.STATUS_CHANGE, priority=DisputePriority.LOW),
                AT,
            )

    def test_resolved_case_still_accepts_comments(self) -> None:
        resolved = apply_event(
            self._at_resolved_stage(),
            CaseChange(action_type=ActionType.STATUS_CHANGE, status=DisputeStatus.SETTLED),
            AT,
        )
        after = apply_event(
            resolved, CaseChange(action_type=ActionType.COMMENT, notes="thanks"), AT
        )
        assert after.resolved_at == resolved.resolved_at
