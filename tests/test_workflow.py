"""Tests for the change lifecycle: creation, field updates and transitions."""
from datetime import datetime, timezone
from uuid import uuid4

import pytest

from itil_change.models import (
    ChangePatch,
    ChangeRequest,
    ChangeStatus,
    ChangeType,
    HistoryAction,
    Impact,
    RiskLevel,
)
from itil_change.services import (
    ChangeNotFound,
    Forbidden,
    InvalidDateRange,
    InvalidFieldValue,
    InvalidTransition,
    StorageUnavailable,
    TRANSITIONS,
)

pytestmark = pytest.mark.anyio

START = datetime(2024, 4, 1, 22, 0, tzinfo=timezone.utc)
END = datetime(2024, 4, 2, 2, 0, tzinfo=timezone.utc)

ILLEGAL_EDGES = [
    (current, target)
    for current in ChangeStatus
    for target in ChangeStatus
    if target not in TRANSITIONS[current]
]


async def history_actions(container, change_id):
    entries = await container.audit.list_history(change_id).to_list()
    return [entry.action for entry in entries]


class TestCreateChange:

    async def test_defaults(self, container, manager, create_change):
        change = await create_change()

        assert change.status == ChangeStatus.DRAFT
        assert change.change_type == ChangeType.NORMAL
        assert change.risk_level == RiskLevel.MEDIUM
        assert change.impact == Impact.DEPARTMENT
        assert change.created_by == manager.id
        assert change.requested_by == manager.id
        assert change.tenant_id == manager.tenant_id
        assert await container.change_repo.get(change.id) == change

    async def test_records_created_entry(self, container, create_change):
        change = await create_change()

        entries = await container.audit.list_history(change.id).to_list()
        assert [e.action for e in entries] == [HistoryAction.CREATED]
        assert entries[0].details["change"]["title"] == "Upgrade mail relay"

    async def test_no_window_without_planned_dates(self, container, create_change):
        change = await create_change(planned_start=START)
        assert await container.schedule_repo.get_for_change(change.id) is None

    async def test_window_opened_with_both_planned_dates(self, container, create_change):
        change = await create_change(planned_start=START, planned_end=END)

        window = await container.schedule_repo.get_for_change(change.id)
        assert window.scheduled_start == START
        assert window.scheduled_end == END
        assert await history_actions(container, change.id) == [
            HistoryAction.SCHEDULED, HistoryAction.CREATED
        ]

    async def test_inverted_planned_dates_rejected(self, container, create_change):
        with pytest.raises(InvalidDateRange) as exc_info:
            await create_change(planned_start=END, planned_end=START)

        assert exc_info.value.field == "planned_end"
        assert container.store.changes == {}

    async def test_blank_title_rejected(self, create_change):
        with pytest.raises(InvalidFieldValue) as exc_info:
            await create_change(title="   ")
        assert exc_info.value.field == "title"

    async def test_inactive_user_cannot_create(self, container, inactive_manager, new_change):
        with pytest.raises(Forbidden) as exc_info:
            await container.workflow.create_change(new_change(), inactive_manager)
        assert exc_info.value.condition == "inactive_user"

    async def test_assignee_must_be_active(self, create_change):
        with pytest.raises(InvalidFieldValue) as exc_info:
            await create_change(assigned_to=uuid4())
        assert exc_info.value.field == "assigned_to"


class TestTransitions:

    async def test_happy_path_to_approval(self, container, manager, change_in_approval):
        change = await change_in_approval()

        assert change.status == ChangeStatus.APPROVAL
        entries = await container.audit.list_history(change.id).to_list()
        moves = [
            (e.details["from"], e.details["to"])
            for e in entries if e.action == HistoryAction.STATUS_CHANGED
        ]
        assert moves == [
            ("assessment", "approval"),
            ("submitted", "assessment"),
            ("draft", "submitted"),
        ]

    @pytest.mark.parametrize("current, target", ILLEGAL_EDGES)
    async def test_undefined_edges_fail(self, container, manager, current, target):
        change = ChangeRequest(
            tenant_id=manager.tenant_id,
            created_by=manager.id,
            title="Rotate certificates",
            justification="Expiring",
            status=current
        )
        await container.change_repo.save(change)

        with pytest.raises(InvalidTransition) as exc_info:
            await container.workflow.request_transition(change.id, target, manager)

        assert exc_info.value.condition == f"{current.value}->{target.value}"
        stored = await container.change_repo.get(change.id)
        assert stored.status == current
        assert await history_actions(container, change.id) == []

    async def test_illegal_edge_leaves_change_untouched(self, container, manager, create_change):
        change = await create_change()

        with pytest.raises(InvalidTransition):
            await container.workflow.request_transition(change.id, ChangeStatus.SCHEDULED, manager)

        assert await container.change_repo.get(change.id) == change

    @pytest.mark.parametrize("target", [ChangeStatus.SCHEDULED, ChangeStatus.REJECTED])
    async def test_vote_edges_closed_to_direct_requests(
        self, container, manager, change_in_approval, target
    ):
        change = await change_in_approval()

        with pytest.raises(Forbidden) as exc_info:
            await container.workflow.request_transition(change.id, target, manager)

        assert exc_info.value.condition == "quorum_required"

    async def test_approval_can_still_be_cancelled(self, container, manager, change_in_approval):
        change = await change_in_approval()

        cancelled = await container.workflow.request_transition(
            change.id, ChangeStatus.CANCELLED, manager
        )
        assert cancelled.status == ChangeStatus.CANCELLED

    async def test_plain_user_cannot_submit(self, container, requester, create_change):
        change = await create_change()

        with pytest.raises(Forbidden) as exc_info:
            await container.workflow.request_transition(change.id, ChangeStatus.SUBMITTED, requester)
        assert exc_info.value.condition == "editor_required"

    async def test_assigned_technician_can_submit(self, container, technician, create_change):
        change = await create_change(assigned_to=technician.id)

        submitted = await container.workflow.request_transition(
            change.id, ChangeStatus.SUBMITTED, technician
        )
        assert submitted.status == ChangeStatus.SUBMITTED

    async def test_unassigned_technician_cannot_submit(self, container, technician, create_change):
        change = await create_change()

        with pytest.raises(Forbidden):
            await container.workflow.request_transition(change.id, ChangeStatus.SUBMITTED, technician)

    async def test_technician_cannot_start_assessment(self, container, manager, technician, create_change):
        change = await create_change(assigned_to=technician.id)
        await container.workflow.request_transition(change.id, ChangeStatus.SUBMITTED, technician)

        with pytest.raises(Forbidden) as exc_info:
            await container.workflow.request_transition(change.id, ChangeStatus.ASSESSMENT, technician)
        assert exc_info.value.condition == "manager_or_admin_required"

    async def test_other_tenant_sees_not_found(self, container, outsider, create_change):
        change = await create_change()

        with pytest.raises(ChangeNotFound):
            await container.workflow.request_transition(change.id, ChangeStatus.SUBMITTED, outsider)

    async def test_unknown_change(self, container, manager):
        with pytest.raises(ChangeNotFound):
            await container.workflow.request_transition(uuid4(), ChangeStatus.SUBMITTED, manager)


class TestActualDateStamping:

    async def test_implementation_stamps_actual_start_once(
        self, container, manager, change_in_approval
    ):
        change = await change_in_approval()
        await container.approvals.submit_approval(change.id, manager, "approved")

        started = await container.workflow.request_transition(
            change.id, ChangeStatus.IMPLEMENTATION, manager
        )
        assert started.actual_start is not None
        assert started.actual_start == started.updated_at

        with pytest.raises(InvalidTransition):
            await container.workflow.request_transition(
                change.id, ChangeStatus.IMPLEMENTATION, manager
            )

        stored = await container.change_repo.get(change.id)
        assert stored.actual_start == started.actual_start
        window = await container.schedule_repo.get_for_change(change.id)
        assert window.actual_start == started.actual_start

    async def test_review_stamps_actual_end(self, container, manager, change_in_approval):
        change = await change_in_approval()
        await container.approvals.submit_approval(change.id, manager, "approved")
        started = await container.workflow.request_transition(
            change.id, ChangeStatus.IMPLEMENTATION, manager
        )

        reviewed = await container.workflow.request_transition(
            change.id, ChangeStatus.REVIEW, manager
        )

        assert reviewed.actual_start == started.actual_start
        assert reviewed.actual_end > reviewed.actual_start
        closed = await container.workflow.request_transition(change.id, ChangeStatus.CLOSED, manager)
        assert closed.actual_end == reviewed.actual_end


class TestUpdateFields:

    async def test_records_only_differing_fields(self, container, manager, create_change):
        change = await create_change()

        updated = await container.workflow.update_fields(
            change.id,
            ChangePatch(title="Upgrade mail relay", risk_level=RiskLevel.HIGH),
            manager
        )

        assert updated.risk_level == RiskLevel.HIGH
        assert updated.version == change.version + 1
        entries = await container.audit.list_history(change.id).to_list()
        assert entries[0].action == HistoryAction.UPDATED
        assert entries[0].details == {"changes": {"risk_level": {"from": "medium", "to": "high"}}}

    async def test_no_difference_writes_nothing(self, container, manager, create_change):
        change = await create_change()

        result = await container.workflow.update_fields(
            change.id, ChangePatch(description=change.description), manager
        )

        assert result == change
        assert await history_actions(container, change.id) == [HistoryAction.CREATED]

    async def test_explicit_null_clears_field(self, container, manager, create_change):
        change = await create_change(backout_plan="Restore snapshot")

        updated = await container.workflow.update_fields(
            change.id, ChangePatch(backout_plan=None), manager
        )

        assert updated.backout_plan is None

    async def test_required_field_cannot_be_cleared(self, container, manager, create_change):
        change = await create_change()

        with pytest.raises(InvalidFieldValue) as exc_info:
            await container.workflow.update_fields(change.id, ChangePatch(impact=None), manager)

        assert exc_info.value.field == "impact"

    async def test_requester_cannot_be_cleared(self, container, manager, create_change):
        change = await create_change()

        with pytest.raises(InvalidFieldValue) as exc_info:
            await container.workflow.update_fields(
                change.id, ChangePatch(requested_by=None), manager
            )

        assert exc_info.value.field == "requested_by"
        assert (await container.change_repo.get(change.id)).requested_by == manager.id

    async def test_risk_frozen_while_vote_is_open(
        self, container, manager, change_in_approval
    ):
        change = await change_in_approval(RiskLevel.HIGH)
        await container.approvals.submit_approval(change.id, manager, "approved")

        with pytest.raises(Forbidden) as exc_info:
            await container.workflow.update_fields(
                change.id, ChangePatch(risk_level=RiskLevel.LOW), manager
            )

        assert exc_info.value.field == "risk_level"
        assert exc_info.value.condition == "vote_in_progress"
        stored = await container.change_repo.get(change.id)
        assert stored.status == ChangeStatus.APPROVAL
        assert stored.risk_level == RiskLevel.HIGH

    async def test_other_fields_editable_while_vote_is_open(
        self, container, manager, change_in_approval
    ):
        change = await change_in_approval(RiskLevel.HIGH)

        updated = await container.workflow.update_fields(
            change.id, ChangePatch(backout_plan="Restore snapshot"), manager
        )

        assert updated.backout_plan == "Restore snapshot"
        assert updated.status == ChangeStatus.APPROVAL

    async def test_invalid_date_range_writes_nothing(self, container, manager, create_change):
        change = await create_change(planned_start=START, planned_end=END)
        before = await history_actions(container, change.id)

        with pytest.raises(InvalidDateRange):
            await container.workflow.update_fields(
                change.id,
                ChangePatch(title="Renamed", planned_end=datetime(2024, 3, 31, tzinfo=timezone.utc)),
                manager
            )

        assert await container.change_repo.get(change.id) == change
        window = await container.schedule_repo.get_for_change(change.id)
        assert window.scheduled_end == END
        assert await history_actions(container, change.id) == before

    async def test_planned_dates_carried_to_window(self, container, manager, create_change):
        change = await create_change(planned_start=START, planned_end=END)
        later = datetime(2024, 4, 2, 4, 0, tzinfo=timezone.utc)

        await container.workflow.update_fields(change.id, ChangePatch(planned_end=later), manager)

        window = await container.schedule_repo.get_for_change(change.id)
        assert window.scheduled_end == later
        assert await history_actions(container, change.id) == [
            HistoryAction.SCHEDULE_UPDATED,
            HistoryAction.UPDATED,
            HistoryAction.SCHEDULED,
            HistoryAction.CREATED,
        ]

    async def test_requires_editor(self, container, requester, create_change):
        change = await create_change()

        with pytest.raises(Forbidden):
            await container.workflow.update_fields(change.id, ChangePatch(title="Mine now"), requester)

    async def test_history_failure_rolls_back_update(
        self, container, manager, create_change, monkeypatch
    ):
        change = await create_change()

        async def unavailable(entry):
            raise StorageUnavailable("history store down")

        monkeypatch.setattr(container.history_repo, "add", unavailable)

        with pytest.raises(StorageUnavailable):
            await container.workflow.update_fields(change.id, ChangePatch(title="Renamed"), manager)

        assert await container.change_repo.get(change.id) == change
