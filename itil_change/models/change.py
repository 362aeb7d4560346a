"""
ITIL Change Model

Change request aggregate and everything it owns.

Core principles:
1. Change = proposed modification tracked through a fixed lifecycle
2. Approvals are one record per approver, never duplicated
3. Schedule window mirrors the plan, the machine stamps the actuals
4. History is append-only, never edited
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Optional
from uuid import UUID, uuid4

from pydantic import AfterValidator, BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes as UTC so comparisons never mix naive and aware."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


UtcDatetime = Annotated[datetime, AfterValidator(as_utc)]


# =============================================================================
# ENUMS
# =============================================================================

class ChangeStatus(str, Enum):
    DRAFT = "draft"
    SUBMITTED = "submitted"
    ASSESSMENT = "assessment"
    APPROVAL = "approval"
    SCHEDULED = "scheduled"
    IMPLEMENTATION = "implementation"
    REVIEW = "review"
    CLOSED = "closed"
    REJECTED = "rejected"    # Terminal side-exit
    CANCELLED = "cancelled"  # Terminal side-exit


class ChangeType(str, Enum):
    STANDARD = "standard"
    NORMAL = "normal"
    EMERGENCY = "emergency"
    PRE_APPROVED = "pre_approved"


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    VERY_HIGH = "very_high"


class Impact(str, Enum):
    INDIVIDUAL = "individual"
    DEPARTMENT = "department"
    MULTIPLE_DEPARTMENTS = "multiple_departments"
    ORGANIZATION_WIDE = "organization_wide"


class ApprovalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class ApprovalDecision(str, Enum):
    APPROVED = "approved"
    REJECTED = "rejected"


class HistoryAction(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    STATUS_CHANGED = "status_changed"
    APPROVED = "approved"
    REJECTED = "rejected"
    SCHEDULED = "scheduled"
    SCHEDULE_UPDATED = "schedule_updated"
    LINKED_TICKET = "linked_ticket"
    UNLINKED_TICKET = "unlinked_ticket"
    LINKED_PROBLEM = "linked_problem"
    UNLINKED_PROBLEM = "unlinked_problem"


class LinkKind(str, Enum):
    TICKET = "ticket"
    PROBLEM = "problem"


class Role(str, Enum):
    ADMIN = "admin"
    MANAGER = "manager"
    TECHNICIAN = "technician"
    USER = "user"


PRIVILEGED_ROLES = frozenset({Role.ADMIN, Role.MANAGER})

TERMINAL_STATUSES = frozenset({
    ChangeStatus.CLOSED,
    ChangeStatus.REJECTED,
    ChangeStatus.CANCELLED,
})


# =============================================================================
# CORE MODELS
# =============================================================================

class Actor(BaseModel):
    """Who is acting. Passed explicitly into every workflow operation."""
    id: UUID
    role: Role = Role.USER
    tenant_id: UUID

    @property
    def is_privileged(self) -> bool:
        return self.role in PRIVILEGED_ROLES


class ChangeRequest(BaseModel):
    """
    The change aggregate root.

    status and actual_* are owned by the workflow; callers never write
    them directly.
    """
    id: UUID = Field(default_factory=uuid4)
    tenant_id: UUID

    # Content
    title: str
    description: str = ""
    justification: str
    implementation_plan: Optional[str] = None
    test_plan: Optional[str] = None
    backout_plan: Optional[str] = None

    # Classification
    change_type: ChangeType = ChangeType.NORMAL
    risk_level: RiskLevel = RiskLevel.MEDIUM
    impact: Impact = Impact.DEPARTMENT
    category_id: Optional[UUID] = None
    service_id: Optional[UUID] = None
    affected_services: Optional[List[str]] = None
    affected_configuration_items: Optional[List[str]] = None

    # Workflow
    status: ChangeStatus = ChangeStatus.DRAFT
    created_by: UUID  # Immutable
    requested_by: Optional[UUID] = None
    assigned_to: Optional[UUID] = None
    approved_by: List[UUID] = Field(default_factory=list)  # Resolved approvers

    # Schedule
    planned_start: Optional[UtcDatetime] = None
    planned_end: Optional[UtcDatetime] = None
    actual_start: Optional[UtcDatetime] = None  # Stamped by the machine
    actual_end: Optional[UtcDatetime] = None    # Stamped by the machine

    # Notes captured during implementation/review
    review_notes: Optional[str] = None
    implementation_notes: Optional[str] = None

    # Bookkeeping
    version: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class ApprovalRecord(BaseModel):
    """One approver's vote on one change. Unique on (change_id, approver_id)."""
    id: UUID = Field(default_factory=uuid4)
    change_id: UUID
    tenant_id: UUID
    approver_id: UUID

    status: ApprovalStatus = ApprovalStatus.PENDING
    comment: Optional[str] = None
    approval_date: Optional[UtcDatetime] = None

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class ScheduleWindow(BaseModel):
    """
    Time-box during which a change is implemented.

    scheduled_* start as a mirror of the change's planned_* and are then
    independently updatable.
    """
    id: UUID = Field(default_factory=uuid4)
    change_id: UUID
    tenant_id: UUID

    scheduled_start: Optional[UtcDatetime] = None
    scheduled_end: Optional[UtcDatetime] = None
    actual_start: Optional[UtcDatetime] = None
    actual_end: Optional[UtcDatetime] = None

    maintenance_window: bool = False
    notification_sent: bool = False

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class HistoryEntry(BaseModel):
    """
    Immutable audit record of one action against a change.

    sequence is assigned by the store and breaks created_at ties.
    """
    model_config = ConfigDict(frozen=True)

    id: UUID = Field(default_factory=uuid4)
    change_id: UUID
    tenant_id: UUID
    user_id: UUID
    action: HistoryAction
    details: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    sequence: int = 0


class ChangeLink(BaseModel):
    """Join record between a change and a ticket or problem."""
    id: UUID = Field(default_factory=uuid4)
    change_id: UUID
    other_id: UUID
    kind: LinkKind
    tenant_id: UUID
    created_by: UUID
    created_at: datetime = Field(default_factory=utcnow)


# =============================================================================
# REQUEST SHAPES
# =============================================================================

class NewChange(BaseModel):
    """Data accepted when creating a change."""
    model_config = ConfigDict(extra="forbid")

    title: str
    description: str = ""
    justification: str
    change_type: ChangeType = ChangeType.NORMAL
    risk_level: RiskLevel = RiskLevel.MEDIUM
    impact: Impact = Impact.DEPARTMENT
    implementation_plan: Optional[str] = None
    test_plan: Optional[str] = None
    backout_plan: Optional[str] = None
    category_id: Optional[UUID] = None
    service_id: Optional[UUID] = None
    assigned_to: Optional[UUID] = None
    requested_by: Optional[UUID] = None
    planned_start: Optional[UtcDatetime] = None
    planned_end: Optional[UtcDatetime] = None
    affected_services: Optional[List[str]] = None
    affected_configuration_items: Optional[List[str]] = None


class ChangePatch(BaseModel):
    """
    Sparse field update.

    Only fields explicitly set are touched (see touched()); an explicit
    None clears the field. Workflow-owned fields are not accepted.
    """
    model_config = ConfigDict(extra="forbid")

    title: Optional[str] = None
    description: Optional[str] = None
    justification: Optional[str] = None
    change_type: Optional[ChangeType] = None
    risk_level: Optional[RiskLevel] = None
    impact: Optional[Impact] = None
    implementation_plan: Optional[str] = None
    test_plan: Optional[str] = None
    backout_plan: Optional[str] = None
    category_id: Optional[UUID] = None
    service_id: Optional[UUID] = None
    assigned_to: Optional[UUID] = None
    requested_by: Optional[UUID] = None
    planned_start: Optional[UtcDatetime] = None
    planned_end: Optional[UtcDatetime] = None
    affected_services: Optional[List[str]] = None
    affected_configuration_items: Optional[List[str]] = None
    review_notes: Optional[str] = None
    implementation_notes: Optional[str] = None

    def touched(self) -> Dict[str, Any]:
        return {name: getattr(self, name) for name in self.model_fields_set}


class ScheduleDates(BaseModel):
    """Sparse schedule window update. Unset fields are left untouched."""
    model_config = ConfigDict(extra="forbid")

    planned_start: Optional[UtcDatetime] = None
    planned_end: Optional[UtcDatetime] = None
    actual_start: Optional[UtcDatetime] = None
    actual_end: Optional[UtcDatetime] = None
    maintenance_window: Optional[bool] = None
    notification_sent: Optional[bool] = None

    def touched(self) -> Dict[str, Any]:
        return {name: getattr(self, name) for name in self.model_fields_set}
