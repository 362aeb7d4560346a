"""Tests for the pure quorum rule."""
from uuid import uuid4

import pytest

from itil_change.models import ApprovalRecord, ApprovalStatus, RiskLevel
from itil_change.services import QuorumOutcome, evaluate_quorum, required_approvals


def record(status):
    return ApprovalRecord(
        change_id=uuid4(),
        tenant_id=uuid4(),
        approver_id=uuid4(),
        status=status
    )


class TestRequiredApprovals:

    @pytest.mark.parametrize("risk_level, expected", [
        (RiskLevel.LOW, 1),
        (RiskLevel.MEDIUM, 1),
        (RiskLevel.HIGH, 2),
        (RiskLevel.VERY_HIGH, 2),
    ])
    def test_required_approvals_by_risk(self, risk_level, expected):
        assert required_approvals(risk_level) == expected

    def test_accepts_raw_value(self):
        assert required_approvals("very_high") == 2


class TestEvaluateQuorum:

    def test_no_votes_is_pending(self):
        result = evaluate_quorum([], RiskLevel.LOW)
        assert result.outcome == QuorumOutcome.PENDING
        assert result.required == 1

    def test_single_approval_resolves_medium_risk(self):
        vote = record(ApprovalStatus.APPROVED)
        result = evaluate_quorum([vote], RiskLevel.MEDIUM)
        assert result.outcome == QuorumOutcome.APPROVED
        assert result.approved_by == (vote.approver_id,)

    def test_single_approval_leaves_high_risk_pending(self):
        result = evaluate_quorum([record(ApprovalStatus.APPROVED)], RiskLevel.HIGH)
        assert result.outcome == QuorumOutcome.PENDING

    def test_any_rejection_wins_over_approvals(self):
        records = [
            record(ApprovalStatus.APPROVED),
            record(ApprovalStatus.APPROVED),
            record(ApprovalStatus.REJECTED),
        ]
        result = evaluate_quorum(records, RiskLevel.LOW)
        assert result.outcome == QuorumOutcome.REJECTED
        assert result.rejected_by == (records[2].approver_id,)

    def test_pending_votes_do_not_count(self):
        records = [record(ApprovalStatus.APPROVED), record(ApprovalStatus.PENDING)]
        result = evaluate_quorum(records, RiskLevel.HIGH)
        assert result.outcome == QuorumOutcome.PENDING

    def test_policy_can_be_swapped(self):
        records = [record(ApprovalStatus.APPROVED), record(ApprovalStatus.APPROVED)]
        result = evaluate_quorum(records, RiskLevel.LOW, policy=lambda risk: 3)
        assert result.outcome == QuorumOutcome.PENDING
        assert result.required == 3
