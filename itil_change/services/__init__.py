"""
ITIL Change Engine Services

Core business logic for change management workflow.
"""

from .errors import (
    ChangeWorkflowError,
    ChangeNotFound,
    InvalidTransition,
    Forbidden,
    InvalidDateRange,
    InvalidFieldValue,
    AlreadyLinked,
    LinkNotFound,
    StaleApproval,
    StorageUnavailable,
    ChangeBusy,
)
from .audit import AuditRecorder, HistoryStream
from .links import LinkManager
from .schedule import ScheduleSynchronizer
from .approval import (
    ApprovalAggregator,
    QuorumOutcome,
    QuorumResult,
    REQUIRED_APPROVALS,
    evaluate_quorum,
    required_approvals,
)
from .workflow import ChangeStateMachine, EdgeRule, TRANSITIONS, is_legal
from .permissions import ChangeGuard
from .concurrency import ChangeLockRegistry, atomic_write
from .retry import RetryPolicy, call_with_retry
from .queries import ChangeQueryService, ChangeFilter, ChangeStats

__all__ = [
    # Errors
    "ChangeWorkflowError", "ChangeNotFound", "InvalidTransition", "Forbidden",
    "InvalidDateRange", "InvalidFieldValue", "AlreadyLinked", "LinkNotFound",
    "StaleApproval", "StorageUnavailable", "ChangeBusy",

    # Audit trail
    "AuditRecorder", "HistoryStream",

    # Links
    "LinkManager",

    # Schedule
    "ScheduleSynchronizer",

    # Approval quorum
    "ApprovalAggregator", "QuorumOutcome", "QuorumResult", "REQUIRED_APPROVALS",
    "evaluate_quorum", "required_approvals",

    # Lifecycle
    "ChangeStateMachine", "EdgeRule", "TRANSITIONS", "is_legal",

    # Plumbing
    "ChangeGuard", "ChangeLockRegistry", "atomic_write", "RetryPolicy", "call_with_retry",

    # Reads
    "ChangeQueryService", "ChangeFilter", "ChangeStats",
]
