"""
Change Approval Aggregator

Multi-approver vote that gates a change out of the approval state.

Quorum rule:
- Any rejected vote resolves the change to rejected immediately
- Otherwise required approvals come from the risk level
  (low/medium: 1, high/very_high: 2)
- Reaching the requirement moves the change to scheduled

A resolved vote never reopens. Late votes fail with StaleApproval.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Tuple
from uuid import UUID

from ..models.change import (
    Actor,
    ApprovalDecision,
    ApprovalRecord,
    ApprovalStatus,
    ChangeRequest,
    ChangeStatus,
    HistoryAction,
    RiskLevel,
    utcnow
)
from .concurrency import atomic_write
from .errors import ChangeNotFound, Forbidden, StaleApproval

logger = logging.getLogger(__name__)


REQUIRED_APPROVALS: Dict[RiskLevel, int] = {
    RiskLevel.LOW: 1,
    RiskLevel.MEDIUM: 1,
    RiskLevel.HIGH: 2,
    RiskLevel.VERY_HIGH: 2,
}

# States a change only reaches once its vote has been resolved
PAST_APPROVAL = frozenset({
    ChangeStatus.SCHEDULED,
    ChangeStatus.IMPLEMENTATION,
    ChangeStatus.REVIEW,
    ChangeStatus.CLOSED,
})

REJECTION_REASON = "One or more approvers rejected the change"
QUORUM_REASON = "All required approvals received"


def required_approvals(risk_level: RiskLevel) -> int:
    return REQUIRED_APPROVALS[RiskLevel(risk_level)]


class QuorumOutcome(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


@dataclass(frozen=True)
class QuorumResult:
    outcome: QuorumOutcome
    required: int
    approved_by: Tuple[UUID, ...]
    rejected_by: Tuple[UUID, ...]


def evaluate_quorum(
    records: Iterable[ApprovalRecord],
    risk_level: RiskLevel,
    policy: Callable[[RiskLevel], int] = required_approvals
) -> QuorumResult:
    """Pure quorum check. Pending votes count for nothing."""
    records = list(records)
    approved = tuple(r.approver_id for r in records if r.status == ApprovalStatus.APPROVED)
    rejected = tuple(r.approver_id for r in records if r.status == ApprovalStatus.REJECTED)
    required = policy(risk_level)

    if rejected:
        outcome = QuorumOutcome.REJECTED
    elif len(approved) >= required:
        outcome = QuorumOutcome.APPROVED
    else:
        outcome = QuorumOutcome.PENDING

    return QuorumResult(
        outcome=outcome,
        required=required,
        approved_by=approved,
        rejected_by=rejected
    )


class ApprovalAggregator:
    """
    Collects approver decisions and resolves the vote.

    Upsert, recount and the resulting transition run under the change
    lock in one transaction, so two last votes cannot both schedule a
    change; the later one sees the new status and is stale.
    """

    def __init__(
        self,
        change_repo,
        approval_repo,
        audit,
        workflow,
        guard,
        locks,
        store,
        quorum_policy: Callable[[RiskLevel], int] = required_approvals,
        clock: Callable = utcnow
    ):
        self.change_repo = change_repo
        self.approval_repo = approval_repo
        self.audit = audit
        self.workflow = workflow
        self.guard = guard
        self.locks = locks
        self.store = store
        self.quorum_policy = quorum_policy
        self.clock = clock

    async def submit_approval(
        self,
        change_id: UUID,
        approver: Actor,
        decision: ApprovalDecision,
        comment: Optional[str] = None
    ) -> ApprovalRecord:
        """
        Record (or replace) an approver's decision and re-evaluate quorum.
        """
        decision = ApprovalDecision(decision)

        async with self.locks.hold(change_id):
            change = await self._load(change_id)
            await self.guard.require_approver(change, approver)
            if change.status != ChangeStatus.APPROVAL:
                await self._reject_out_of_phase(change)

            now = self.clock()
            record = await self.approval_repo.get(change.id, approver.id)
            if record is None:
                record = ApprovalRecord(
                    change_id=change.id,
                    tenant_id=change.tenant_id,
                    approver_id=approver.id,
                    created_at=now
                )
            record.status = ApprovalStatus(decision.value)
            record.comment = comment
            record.approval_date = now
            record.updated_at = now

            async with atomic_write(self.store, "approval vote", change.id):
                await self.approval_repo.save(record)
                await self.audit.append(change, approver.id, HistoryAction(decision.value), {
                    "approver": approver.id,
                    "comment": comment,
                })
                await self._resolve(change, approver.id)

        return record

    async def list_approvals(self, change_id: UUID, actor: Actor) -> List[ApprovalRecord]:
        change = await self._load(change_id)
        self.guard.require_tenant(change, actor)
        return await self.approval_repo.list_for_change(change_id)

    # =========================================================================
    # Private helpers
    # =========================================================================

    async def _resolve(self, change: ChangeRequest, user_id: UUID) -> QuorumResult:
        records = await self.approval_repo.list_for_change(change.id)
        result = evaluate_quorum(records, change.risk_level, self.quorum_policy)

        if result.outcome == QuorumOutcome.REJECTED:
            await self.workflow.apply_transition(
                change, ChangeStatus.REJECTED, user_id, reason=REJECTION_REASON
            )
            logger.info("Change %s rejected by vote of %s", change.id, list(result.rejected_by))
        elif result.outcome == QuorumOutcome.APPROVED:
            await self.workflow.apply_transition(
                change,
                ChangeStatus.SCHEDULED,
                user_id,
                reason=QUORUM_REASON,
                approved_by=result.approved_by
            )
            logger.info(
                "Change %s reached quorum (%d/%d)",
                change.id, len(result.approved_by), result.required
            )
        return result

    async def _reject_out_of_phase(self, change: ChangeRequest) -> None:
        records = await self.approval_repo.list_for_change(change.id)
        if change.status in PAST_APPROVAL or records:
            raise StaleApproval(
                f"The approval vote on change {change.id} is already resolved; "
                f"the change is '{change.status.value}'.",
                field="status",
                condition=f"status={change.status.value}"
            )
        raise Forbidden(
            f"Change {change.id} is not awaiting approval.",
            field="status",
            condition="status_must_be_approval"
        )

    async def _load(self, change_id: UUID) -> ChangeRequest:
        change = await self.change_repo.get(change_id)
        if change is None:
            raise ChangeNotFound(f"Change {change_id} not found.", field="id")
        return change
