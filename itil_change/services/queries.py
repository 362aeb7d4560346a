"""
Change read side: lookups, filtered listing, statistics.
"""

from collections import Counter
from typing import Any, Dict, List, Optional, Tuple
from uuid import UUID

from pydantic import BaseModel, Field, field_validator

from ..models.change import (
    Actor,
    ChangeRequest,
    ChangeStatus,
    ChangeType,
    Impact,
    LinkKind,
    RiskLevel
)
from .errors import ChangeNotFound, InvalidFieldValue

SORTABLE_FIELDS = frozenset({
    "created_at",
    "updated_at",
    "planned_start",
    "planned_end",
    "title",
    "status",
    "risk_level",
})

UPCOMING_LIMIT = 5


class ChangeFilter(BaseModel):
    """Listing filters. List-valued filters match any of the values."""
    status: Optional[List[ChangeStatus]] = None
    change_type: Optional[List[ChangeType]] = None
    risk_level: Optional[List[RiskLevel]] = None
    impact: Optional[List[Impact]] = None
    assigned_to: Optional[UUID] = None
    created_by: Optional[UUID] = None
    requested_by: Optional[UUID] = None
    service_id: Optional[UUID] = None
    category_id: Optional[UUID] = None

    limit: int = Field(default=50, ge=1, le=500)
    offset: int = Field(default=0, ge=0)
    order_by: str = "created_at"
    descending: bool = True

    @field_validator("status", "change_type", "risk_level", "impact", mode="before")
    @classmethod
    def wrap_single_value(cls, value):
        if value is None or isinstance(value, (list, tuple, set)):
            return value
        return [value]

    def matches(self, change: ChangeRequest) -> bool:
        for name in ("status", "change_type", "risk_level", "impact"):
            allowed = getattr(self, name)
            if allowed and getattr(change, name) not in allowed:
                return False
        for name in ("assigned_to", "created_by", "requested_by", "service_id", "category_id"):
            wanted = getattr(self, name)
            if wanted is not None and getattr(change, name) != wanted:
                return False
        return True


class ChangeStats(BaseModel):
    status_counts: Dict[str, int]
    type_counts: Dict[str, int]
    risk_counts: Dict[str, int]
    total_count: int
    upcoming_changes: List[ChangeRequest]


def sort_changes(
    changes: List[ChangeRequest],
    order_by: str,
    descending: bool
) -> List[ChangeRequest]:
    """Sort on one field; changes without a value go last either way."""
    if order_by not in SORTABLE_FIELDS:
        raise InvalidFieldValue(
            f"Cannot order changes by '{order_by}'.",
            field="order_by",
            condition=f"one_of:{','.join(sorted(SORTABLE_FIELDS))}"
        )
    present = [c for c in changes if getattr(c, order_by) is not None]
    missing = [c for c in changes if getattr(c, order_by) is None]
    present.sort(key=lambda c: getattr(c, order_by), reverse=descending)
    return present + missing


class ChangeQueryService:
    """Tenant-scoped reads over changes and their links."""

    def __init__(self, change_repo, link_repo):
        self.change_repo = change_repo
        self.link_repo = link_repo

    async def get_change(self, change_id: UUID, actor: Actor) -> ChangeRequest:
        change = await self.change_repo.get(change_id)
        if change is None or change.tenant_id != actor.tenant_id:
            raise ChangeNotFound(f"Change {change_id} not found.", field="id")
        return change

    async def list_changes(
        self,
        actor: Actor,
        filters: Optional[ChangeFilter] = None
    ) -> Tuple[List[ChangeRequest], int]:
        """Returns one page of matching changes and the total match count."""
        filters = filters or ChangeFilter()
        changes = [
            c for c in await self.change_repo.list_for_tenant(actor.tenant_id)
            if filters.matches(c)
        ]
        ordered = sort_changes(changes, filters.order_by, filters.descending)
        return ordered[filters.offset:filters.offset + filters.limit], len(changes)

    async def change_stats(self, actor: Actor) -> ChangeStats:
        changes = await self.change_repo.list_for_tenant(actor.tenant_id)

        upcoming = sort_changes(
            [c for c in changes if c.status == ChangeStatus.SCHEDULED],
            "planned_start",
            descending=False
        )

        return ChangeStats(
            status_counts=_count(c.status.value for c in changes),
            type_counts=_count(c.change_type.value for c in changes),
            risk_counts=_count(c.risk_level.value for c in changes),
            total_count=len(changes),
            upcoming_changes=upcoming[:UPCOMING_LIMIT]
        )

    async def changes_for_ticket(self, ticket_id: UUID, actor: Actor) -> List[ChangeRequest]:
        return await self._changes_linked_to(ticket_id, LinkKind.TICKET, actor)

    async def changes_for_problem(self, problem_id: UUID, actor: Actor) -> List[ChangeRequest]:
        return await self._changes_linked_to(problem_id, LinkKind.PROBLEM, actor)

    async def _changes_linked_to(
        self,
        other_id: UUID,
        kind: LinkKind,
        actor: Actor
    ) -> List[ChangeRequest]:
        links = await self.link_repo.list_for_other(other_id, kind)
        changes = await self.change_repo.get_many([link.change_id for link in links])
        return [c for c in changes if c.tenant_id == actor.tenant_id]


def _count(values: Any) -> Dict[str, int]:
    return dict(Counter(values))
