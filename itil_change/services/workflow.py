"""
Change State Machine

The lifecycle every change request moves through:

draft → submitted → assessment → approval → scheduled → implementation → review → closed

rejected and cancelled are terminal side-exits from draft, submitted,
assessment and approval. Nothing leaves closed, rejected or cancelled.

The approval → scheduled / rejected edges belong to the approval vote:
only the ApprovalAggregator takes them, once quorum is resolved.
"""

import logging
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, Iterable, Optional, Tuple
from uuid import UUID

from ..models.change import (
    Actor,
    ChangePatch,
    ChangeRequest,
    ChangeStatus,
    HistoryAction,
    NewChange,
    utcnow
)
from .audit import jsonable
from .concurrency import atomic_write
from .errors import (
    ChangeNotFound,
    Forbidden,
    InvalidDateRange,
    InvalidFieldValue,
    InvalidTransition
)

logger = logging.getLogger(__name__)


class EdgeRule(str, Enum):
    EDITOR = "editor"          # Manager, admin, or assigned technician
    PRIVILEGED = "privileged"  # Manager or admin
    QUORUM = "quorum"          # Approval vote only


TRANSITIONS: Dict[ChangeStatus, FrozenSet[ChangeStatus]] = {
    ChangeStatus.DRAFT: frozenset({
        ChangeStatus.SUBMITTED, ChangeStatus.REJECTED, ChangeStatus.CANCELLED,
    }),
    ChangeStatus.SUBMITTED: frozenset({
        ChangeStatus.ASSESSMENT, ChangeStatus.REJECTED, ChangeStatus.CANCELLED,
    }),
    ChangeStatus.ASSESSMENT: frozenset({
        ChangeStatus.APPROVAL, ChangeStatus.REJECTED, ChangeStatus.CANCELLED,
    }),
    ChangeStatus.APPROVAL: frozenset({
        ChangeStatus.SCHEDULED, ChangeStatus.REJECTED, ChangeStatus.CANCELLED,
    }),
    ChangeStatus.SCHEDULED: frozenset({ChangeStatus.IMPLEMENTATION}),
    ChangeStatus.IMPLEMENTATION: frozenset({ChangeStatus.REVIEW}),
    ChangeStatus.REVIEW: frozenset({ChangeStatus.CLOSED}),
    ChangeStatus.CLOSED: frozenset(),
    ChangeStatus.REJECTED: frozenset(),
    ChangeStatus.CANCELLED: frozenset(),
}

# Edges not listed here are open to editors
EDGE_RULES: Dict[Tuple[ChangeStatus, ChangeStatus], EdgeRule] = {
    (ChangeStatus.DRAFT, ChangeStatus.REJECTED): EdgeRule.PRIVILEGED,
    (ChangeStatus.SUBMITTED, ChangeStatus.ASSESSMENT): EdgeRule.PRIVILEGED,
    (ChangeStatus.SUBMITTED, ChangeStatus.REJECTED): EdgeRule.PRIVILEGED,
    (ChangeStatus.ASSESSMENT, ChangeStatus.APPROVAL): EdgeRule.PRIVILEGED,
    (ChangeStatus.ASSESSMENT, ChangeStatus.REJECTED): EdgeRule.PRIVILEGED,
    (ChangeStatus.APPROVAL, ChangeStatus.SCHEDULED): EdgeRule.QUORUM,
    (ChangeStatus.APPROVAL, ChangeStatus.REJECTED): EdgeRule.QUORUM,
    (ChangeStatus.REVIEW, ChangeStatus.CLOSED): EdgeRule.PRIVILEGED,
}

# Fields that must stay present and non-blank
REQUIRED_TEXT = ("title", "justification")
NOT_NULL = ("description", "change_type", "risk_level", "impact", "requested_by")

# Fields the approval vote depends on; frozen while it is open
VOTE_INPUTS = ("risk_level",)


def is_legal(current: ChangeStatus, target: ChangeStatus) -> bool:
    return target in TRANSITIONS[current]


def edge_rule(current: ChangeStatus, target: ChangeStatus) -> EdgeRule:
    return EDGE_RULES.get((current, target), EdgeRule.EDITOR)


def check_planned(start, end) -> None:
    if start is not None and end is not None and end <= start:
        raise InvalidDateRange("planned_start", "planned_end")


class ChangeStateMachine:
    """
    Top-level controller for change requests.

    Every mutation runs under the change's lock, is validated before
    anything is written, and lands together with its history entry.
    """

    def __init__(
        self,
        change_repo,
        audit,
        schedule,
        guard,
        locks,
        store,
        clock: Callable = utcnow
    ):
        self.change_repo = change_repo
        self.audit = audit
        self.schedule = schedule
        self.guard = guard
        self.locks = locks
        self.store = store
        self.clock = clock

    async def create_change(self, data: NewChange, actor: Actor) -> ChangeRequest:
        """
        Create a change in draft.

        Opens the schedule window right away when both planned dates
        are given.
        """
        await self.guard.require_active(actor)
        self._check_text(data.model_dump(include=set(REQUIRED_TEXT)))
        check_planned(data.planned_start, data.planned_end)
        if data.assigned_to is not None:
            await self._check_assignee(data.assigned_to)

        now = self.clock()
        change = ChangeRequest(
            tenant_id=actor.tenant_id,
            created_by=actor.id,
            status=ChangeStatus.DRAFT,
            created_at=now,
            updated_at=now,
            **data.model_dump(exclude={"requested_by"}),
            requested_by=data.requested_by or actor.id
        )

        async with self.locks.hold(change.id):
            async with atomic_write(self.store, "change creation", change.id):
                await self.change_repo.save(change)
                await self.audit.append(change, actor.id, HistoryAction.CREATED, {
                    "change": change.model_dump(mode="json"),
                })
                if change.planned_start is not None and change.planned_end is not None:
                    await self.schedule.apply_planned(change, {}, actor.id)

        logger.info("Change %s created by %s", change.id, actor.id)
        return change

    async def update_fields(
        self,
        change_id: UUID,
        patch: ChangePatch,
        actor: Actor
    ) -> ChangeRequest:
        """
        Apply a sparse field update.

        All differing fields are recorded in one `updated` entry. Date
        and value checks run first; if any fails nothing is written.
        """
        touched = patch.touched()

        async with self.locks.hold(change_id):
            change = await self._load(change_id)
            await self.guard.require_editor(change, actor, "edit a change")

            diff = {
                name: {"from": jsonable(getattr(change, name)), "to": jsonable(value)}
                for name, value in touched.items()
                if getattr(change, name) != value
            }
            if not diff:
                return change

            await self._validate_patch(change, {name: touched[name] for name in diff})

            updated = change.model_copy(update={name: touched[name] for name in diff})
            planned = {
                name: touched[name]
                for name in ("planned_start", "planned_end")
                if name in diff
            }
            if planned:
                await self.schedule.preview(updated, planned)

            updated.version += 1
            updated.updated_at = self.clock()

            async with atomic_write(self.store, "field update", change.id):
                await self.change_repo.save(updated)
                await self.audit.append(updated, actor.id, HistoryAction.UPDATED, {
                    "changes": diff,
                })
                if planned:
                    await self.schedule.apply_planned(updated, planned, actor.id)

        logger.info("Change %s updated by %s: %s", change_id, actor.id, sorted(diff))
        return updated

    async def request_transition(
        self,
        change_id: UUID,
        target: ChangeStatus,
        actor: Actor
    ) -> ChangeRequest:
        """
        Move a change to `target`.

        Raises InvalidTransition for edges the lifecycle does not define
        and Forbidden when the actor may not take the edge.
        """
        target = ChangeStatus(target)

        async with self.locks.hold(change_id):
            change = await self._load(change_id)
            self.guard.require_tenant(change, actor)

            if not is_legal(change.status, target):
                raise InvalidTransition(change.status.value, target.value)

            rule = edge_rule(change.status, target)
            if rule == EdgeRule.QUORUM:
                raise Forbidden(
                    f"Moving from '{change.status.value}' to '{target.value}' "
                    "is decided by the approval vote.",
                    field="status",
                    condition="quorum_required"
                )
            action = f"move a change to {target.value}"
            if rule == EdgeRule.PRIVILEGED:
                await self.guard.require_privileged(change, actor, action)
            else:
                await self.guard.require_editor(change, actor, action)

            async with atomic_write(self.store, "status transition", change.id):
                return await self.apply_transition(change, target, actor.id)

    async def apply_transition(
        self,
        change: ChangeRequest,
        target: ChangeStatus,
        user_id: UUID,
        reason: Optional[str] = None,
        approved_by: Optional[Iterable[UUID]] = None
    ) -> ChangeRequest:
        """
        Perform an already authorized transition.

        Callers hold the change lock and an open transaction. Stamps
        actual_start on entering implementation and actual_end on
        entering review or closed, when not yet set.
        """
        if not is_legal(change.status, target):
            raise InvalidTransition(change.status.value, target.value)

        previous = change.status
        now = self.clock()

        change.status = target
        change.version += 1
        change.updated_at = now
        if approved_by is not None:
            change.approved_by = list(approved_by)

        details: Dict[str, Any] = {"from": previous.value, "to": target.value}
        if reason:
            details["reason"] = reason
        await self.audit.append(change, user_id, HistoryAction.STATUS_CHANGED, details)

        if target == ChangeStatus.IMPLEMENTATION and change.actual_start is None:
            await self.schedule.stamp_actuals(change, user_id, actual_start=now)
        if target in (ChangeStatus.REVIEW, ChangeStatus.CLOSED) and change.actual_end is None:
            await self.schedule.stamp_actuals(change, user_id, actual_end=now)

        await self.change_repo.save(change)

        logger.info(
            "Change %s moved %s -> %s by %s",
            change.id, previous.value, target.value, user_id
        )
        return change

    # =========================================================================
    # Private helpers
    # =========================================================================

    async def _load(self, change_id: UUID) -> ChangeRequest:
        change = await self.change_repo.get(change_id)
        if change is None:
            raise ChangeNotFound(f"Change {change_id} not found.", field="id")
        return change

    async def _validate_patch(self, change: ChangeRequest, updates: Dict[str, Any]) -> None:
        self._check_text(updates)

        if change.status == ChangeStatus.APPROVAL:
            for name in VOTE_INPUTS:
                if name in updates:
                    raise Forbidden(
                        f"{name} cannot change while the approval vote is open.",
                        field=name,
                        condition="vote_in_progress"
                    )

        for name in NOT_NULL:
            if name in updates and updates[name] is None:
                raise InvalidFieldValue(
                    f"{name} cannot be cleared.",
                    field=name,
                    condition="not_null"
                )

        if "planned_start" in updates or "planned_end" in updates:
            check_planned(
                updates.get("planned_start", change.planned_start),
                updates.get("planned_end", change.planned_end)
            )

        if updates.get("assigned_to") is not None:
            await self._check_assignee(updates["assigned_to"])

    @staticmethod
    def _check_text(values: Dict[str, Any]) -> None:
        for name in REQUIRED_TEXT:
            if name in values and not (values[name] or "").strip():
                raise InvalidFieldValue(
                    f"{name} is required.",
                    field=name,
                    condition="non_empty"
                )

    async def _check_assignee(self, user_id: UUID) -> None:
        if not await self.guard.is_active_user(user_id):
            raise InvalidFieldValue(
                "Changes can only be assigned to active users.",
                field="assigned_to",
                condition="active_user"
            )
