"""Tests for approval votes and quorum resolution."""
import asyncio

import pytest

from itil_change.models import (
    Actor,
    ApprovalStatus,
    ChangeStatus,
    HistoryAction,
    RiskLevel,
    Role,
)
from itil_change.services import (
    ChangeNotFound,
    Forbidden,
    StaleApproval,
    StorageUnavailable,
)

pytestmark = pytest.mark.anyio


class TestQuorumScenarios:

    async def test_medium_risk_single_approval_schedules(
        self, container, manager, change_in_approval
    ):
        change = await change_in_approval(RiskLevel.MEDIUM)

        await container.approvals.submit_approval(change.id, manager, "approved")

        stored = await container.change_repo.get(change.id)
        assert stored.status == ChangeStatus.SCHEDULED
        assert stored.approved_by == [manager.id]

    async def test_high_risk_needs_two_approvals(
        self, container, manager, second_manager, change_in_approval
    ):
        change = await change_in_approval(RiskLevel.HIGH)

        await container.approvals.submit_approval(change.id, manager, "approved")
        assert (await container.change_repo.get(change.id)).status == ChangeStatus.APPROVAL

        await container.approvals.submit_approval(change.id, second_manager, "approved")
        stored = await container.change_repo.get(change.id)
        assert stored.status == ChangeStatus.SCHEDULED
        assert set(stored.approved_by) == {manager.id, second_manager.id}

    async def test_rejection_resolves_and_later_votes_are_stale(
        self, container, manager, second_manager, third_manager, change_in_approval
    ):
        change = await change_in_approval(RiskLevel.HIGH)

        await container.approvals.submit_approval(change.id, manager, "approved")
        await container.approvals.submit_approval(
            change.id, second_manager, "rejected", comment="No rollback tested"
        )

        assert (await container.change_repo.get(change.id)).status == ChangeStatus.REJECTED
        with pytest.raises(StaleApproval):
            await container.approvals.submit_approval(change.id, third_manager, "approved")

    async def test_vote_after_scheduling_is_stale(
        self, container, manager, second_manager, change_in_approval
    ):
        change = await change_in_approval(RiskLevel.LOW)
        await container.approvals.submit_approval(change.id, manager, "approved")

        with pytest.raises(StaleApproval):
            await container.approvals.submit_approval(change.id, second_manager, "rejected")

        assert (await container.change_repo.get(change.id)).status == ChangeStatus.SCHEDULED


class TestVoteRecording:

    async def test_revote_replaces_earlier_decision(
        self, container, manager, change_in_approval
    ):
        change = await change_in_approval(RiskLevel.HIGH)

        await container.approvals.submit_approval(change.id, manager, "approved")
        await container.approvals.submit_approval(change.id, manager, "approved", comment="Still fine")

        records = await container.approvals.list_approvals(change.id, manager)
        assert len(records) == 1
        assert records[0].comment == "Still fine"
        assert (await container.change_repo.get(change.id)).status == ChangeStatus.APPROVAL

    async def test_changing_vote_to_rejected(self, container, manager, change_in_approval):
        change = await change_in_approval(RiskLevel.HIGH)

        await container.approvals.submit_approval(change.id, manager, "approved")
        record = await container.approvals.submit_approval(change.id, manager, "rejected")

        assert record.status == ApprovalStatus.REJECTED
        records = await container.approvals.list_approvals(change.id, manager)
        assert [r.status for r in records] == [ApprovalStatus.REJECTED]
        assert (await container.change_repo.get(change.id)).status == ChangeStatus.REJECTED

    async def test_history_for_vote_and_resolution(self, container, manager, change_in_approval):
        change = await change_in_approval(RiskLevel.MEDIUM)

        await container.approvals.submit_approval(change.id, manager, "approved", comment="Go")

        entries = await container.audit.list_history(change.id).to_list(limit=2)
        resolved, vote = entries
        assert vote.action == HistoryAction.APPROVED
        assert vote.details == {"approver": str(manager.id), "comment": "Go"}
        assert resolved.action == HistoryAction.STATUS_CHANGED
        assert resolved.details == {
            "from": "approval",
            "to": "scheduled",
            "reason": "All required approvals received",
        }

    async def test_rejection_reason_recorded(self, container, manager, change_in_approval):
        change = await change_in_approval()

        await container.approvals.submit_approval(change.id, manager, "rejected")

        latest = (await container.audit.list_history(change.id).to_list(limit=1))[0]
        assert latest.details["reason"] == "One or more approvers rejected the change"


class TestApproverChecks:

    async def test_technician_cannot_vote(self, container, technician, change_in_approval):
        change = await change_in_approval()

        with pytest.raises(Forbidden) as exc_info:
            await container.approvals.submit_approval(change.id, technician, "approved")

        assert exc_info.value.field == "approver"

    async def test_claimed_role_is_not_trusted(self, container, technician, change_in_approval):
        change = await change_in_approval()
        claimed = Actor(id=technician.id, role=Role.MANAGER, tenant_id=technician.tenant_id)

        with pytest.raises(Forbidden):
            await container.approvals.submit_approval(change.id, claimed, "approved")

        assert await container.approvals.list_approvals(change.id, claimed) == []

    async def test_inactive_manager_cannot_vote(self, container, inactive_manager, change_in_approval):
        change = await change_in_approval()

        with pytest.raises(Forbidden):
            await container.approvals.submit_approval(change.id, inactive_manager, "approved")

    async def test_vote_before_approval_phase(self, container, manager, create_change):
        change = await create_change()

        with pytest.raises(Forbidden) as exc_info:
            await container.approvals.submit_approval(change.id, manager, "approved")

        assert exc_info.value.condition == "status_must_be_approval"

    async def test_other_tenant_cannot_vote_or_list(self, container, outsider, change_in_approval):
        change = await change_in_approval()

        with pytest.raises(ChangeNotFound):
            await container.approvals.submit_approval(change.id, outsider, "approved")
        with pytest.raises(ChangeNotFound):
            await container.approvals.list_approvals(change.id, outsider)


class TestConcurrentVotes:

    async def test_simultaneous_last_votes_schedule_once(
        self, container, manager, second_manager, third_manager, change_in_approval
    ):
        change = await change_in_approval(RiskLevel.HIGH)
        await container.approvals.submit_approval(change.id, manager, "approved")

        results = await asyncio.gather(
            container.approvals.submit_approval(change.id, second_manager, "approved"),
            container.approvals.submit_approval(change.id, third_manager, "approved"),
            return_exceptions=True
        )

        stale = [r for r in results if isinstance(r, StaleApproval)]
        assert len(stale) == 1
        entries = await container.audit.list_history(change.id).to_list()
        scheduled = [
            e for e in entries
            if e.action == HistoryAction.STATUS_CHANGED and e.details["to"] == "scheduled"
        ]
        assert len(scheduled) == 1
        assert (await container.change_repo.get(change.id)).status == ChangeStatus.SCHEDULED

    async def test_failed_history_write_discards_vote(
        self, container, manager, change_in_approval, monkeypatch
    ):
        change = await change_in_approval()

        async def unavailable(entry):
            raise StorageUnavailable("history store down")

        monkeypatch.setattr(container.history_repo, "add", unavailable)

        with pytest.raises(StorageUnavailable):
            await container.approvals.submit_approval(change.id, manager, "approved")

        monkeypatch.undo()
        assert await container.approvals.list_approvals(change.id, manager) == []
        assert (await container.change_repo.get(change.id)).status == ChangeStatus.APPROVAL
