"""
ITIL Change Models

Change request aggregate, votes, schedule window, history and links.
"""

from .change import (
    # Enums
    ChangeStatus,
    ChangeType,
    RiskLevel,
    Impact,
    ApprovalStatus,
    ApprovalDecision,
    HistoryAction,
    LinkKind,
    Role,
    PRIVILEGED_ROLES,
    TERMINAL_STATUSES,

    # Core models
    Actor,
    ChangeRequest,
    ApprovalRecord,
    ScheduleWindow,
    HistoryEntry,
    ChangeLink,

    # Request shapes
    NewChange,
    ChangePatch,
    ScheduleDates,

    # Time helpers
    utcnow,
    as_utc,
)

__all__ = [
    "ChangeStatus", "ChangeType", "RiskLevel", "Impact", "ApprovalStatus",
    "ApprovalDecision", "HistoryAction", "LinkKind", "Role",
    "PRIVILEGED_ROLES", "TERMINAL_STATUSES",
    "Actor", "ChangeRequest", "ApprovalRecord", "ScheduleWindow", "HistoryEntry", "ChangeLink",
    "NewChange", "ChangePatch", "ScheduleDates",
    "utcnow", "as_utc",
]
