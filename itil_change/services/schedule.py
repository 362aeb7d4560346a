"""
Change Schedule Synchronizer

Owns the ScheduleWindow of a change.

- Created on first write, seeded from the change's planned dates
- Later writes touch only the supplied fields
- scheduled_end > scheduled_start, actual_end >= actual_start
- actual dates are stamped by status transitions, never by callers
"""

import logging
from typing import Any, Callable, Dict, Optional
from uuid import UUID

from ..models.change import (
    Actor,
    ChangeRequest,
    HistoryAction,
    ScheduleDates,
    ScheduleWindow,
    utcnow
)
from .concurrency import atomic_write
from .errors import ChangeNotFound, Forbidden, InvalidDateRange

logger = logging.getLogger(__name__)

# Request keys that land on a differently named window field
WINDOW_FIELD = {
    "planned_start": "scheduled_start",
    "planned_end": "scheduled_end",
}

SNAPSHOT_FIELDS = (
    "scheduled_start",
    "scheduled_end",
    "actual_start",
    "actual_end",
    "maintenance_window",
    "notification_sent",
)

MACHINE_OWNED = ("actual_start", "actual_end")


def check_window(window: ScheduleWindow) -> None:
    if (
        window.scheduled_start is not None
        and window.scheduled_end is not None
        and window.scheduled_end <= window.scheduled_start
    ):
        raise InvalidDateRange("scheduled_start", "scheduled_end")
    if (
        window.actual_start is not None
        and window.actual_end is not None
        and window.actual_end < window.actual_start
    ):
        raise InvalidDateRange("actual_start", "actual_end", strict=False)


def snapshot(window: Optional[ScheduleWindow]) -> Dict[str, Any]:
    if window is None:
        return {}
    return {name: getattr(window, name) for name in SNAPSHOT_FIELDS}


class ScheduleSynchronizer:
    """
    Single entry point for schedule writes.

    sync_window() is the caller-facing operation. apply_planned() and
    stamp_actuals() are used by the ChangeStateMachine while it holds
    the change lock inside its own transaction.
    """

    def __init__(
        self,
        change_repo,
        schedule_repo,
        audit,
        guard,
        locks,
        store,
        clock: Callable = utcnow
    ):
        self.change_repo = change_repo
        self.schedule_repo = schedule_repo
        self.audit = audit
        self.guard = guard
        self.locks = locks
        self.store = store
        self.clock = clock

    async def get_window(self, change_id: UUID, actor: Actor) -> Optional[ScheduleWindow]:
        change = await self._load(change_id)
        self.guard.require_tenant(change, actor)
        return await self.schedule_repo.get_for_change(change_id)

    async def sync_window(
        self,
        change_id: UUID,
        dates: ScheduleDates,
        actor: Actor
    ) -> ScheduleWindow:
        """
        Create or update the schedule window of a change.

        Raises Forbidden for actual dates, InvalidDateRange when a pair
        would be out of order. Nothing is written on failure.
        """
        updates = {
            key: value for key, value in dates.touched().items()
            if value is not None or key not in ("maintenance_window", "notification_sent")
        }
        async with self.locks.hold(change_id):
            change = await self._load(change_id)
            await self.guard.require_editor(change, actor, "reschedule a change")

            for name in MACHINE_OWNED:
                if name in updates:
                    raise Forbidden(
                        "Actual dates are recorded by status transitions.",
                        field=name,
                        condition="machine_owned"
                    )

            existing = await self.schedule_repo.get_for_change(change.id)
            window = self.plan_window(change, existing, updates)

            async with atomic_write(self.store, "schedule update", change.id):
                return await self._persist(change, existing, window, actor.id)

    async def preview(self, change: ChangeRequest, updates: Dict[str, Any]) -> ScheduleWindow:
        """Validate the window `updates` would produce. Writes nothing."""
        existing = await self.schedule_repo.get_for_change(change.id)
        return self.plan_window(change, existing, updates)

    async def apply_planned(
        self,
        change: ChangeRequest,
        updates: Dict[str, Any],
        user_id: UUID
    ) -> Optional[ScheduleWindow]:
        """
        Carry planned date edits of the change over to its window.

        No window is opened while the change has no planned date at all.
        """
        existing = await self.schedule_repo.get_for_change(change.id)
        if existing is None and change.planned_start is None and change.planned_end is None:
            return None
        window = self.plan_window(change, existing, updates)
        return await self._persist(change, existing, window, user_id)

    async def stamp_actuals(
        self,
        change: ChangeRequest,
        user_id: UUID,
        actual_start=None,
        actual_end=None
    ) -> ScheduleWindow:
        """
        Stamp actual dates on the change and its window.

        Only status transitions call this; the caller saves the change.
        """
        if actual_start is not None:
            change.actual_start = actual_start
        if actual_end is not None:
            change.actual_end = actual_end

        updates = {
            name: getattr(change, name)
            for name in MACHINE_OWNED
            if getattr(change, name) is not None
        }
        existing = await self.schedule_repo.get_for_change(change.id)
        window = self.plan_window(change, existing, updates)
        return await self._persist(change, existing, window, user_id)

    def plan_window(
        self,
        change: ChangeRequest,
        existing: Optional[ScheduleWindow],
        updates: Dict[str, Any]
    ) -> ScheduleWindow:
        if existing is None:
            window = ScheduleWindow(
                change_id=change.id,
                tenant_id=change.tenant_id,
                scheduled_start=change.planned_start,
                scheduled_end=change.planned_end
            )
        else:
            window = existing.model_copy()

        for key, value in updates.items():
            setattr(window, WINDOW_FIELD.get(key, key), value)

        check_window(window)
        return window

    # =========================================================================
    # Private helpers
    # =========================================================================

    async def _persist(
        self,
        change: ChangeRequest,
        existing: Optional[ScheduleWindow],
        window: ScheduleWindow,
        user_id: UUID
    ) -> ScheduleWindow:
        now = self.clock()

        if existing is None:
            window.created_at = now
            window.updated_at = now
            await self.schedule_repo.save(window)
            await self.audit.append(change, user_id, HistoryAction.SCHEDULED, {
                "scheduled_start": window.scheduled_start,
                "scheduled_end": window.scheduled_end,
                "maintenance_window": window.maintenance_window,
            })
            logger.info("Opened schedule window for change %s", change.id)
            return window

        before, after = snapshot(existing), snapshot(window)
        if before == after:
            return existing

        window.updated_at = now
        await self.schedule_repo.save(window)
        await self.audit.append(change, user_id, HistoryAction.SCHEDULE_UPDATED, {
            "from": before,
            "to": after,
        })
        return window

    async def _load(self, change_id: UUID) -> ChangeRequest:
        change = await self.change_repo.get(change_id)
        if change is None:
            raise ChangeNotFound(f"Change {change_id} not found.", field="id")
        return change
