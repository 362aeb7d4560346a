"""
ITIL Change API

FastAPI application with:
- Change creation and sparse field updates
- Lifecycle transitions
- Approval votes with quorum
- Schedule window
- Ticket/problem links
- Audit history
"""

import logging
from typing import List, Optional
from uuid import UUID

from fastapi import Depends, FastAPI, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from .. import __version__
from ..config import configure_logging, settings as default_settings
from ..models import (
    Actor,
    ApprovalDecision,
    ApprovalRecord,
    ChangeLink,
    ChangePatch,
    ChangeRequest,
    ChangeStatus,
    ChangeType,
    HistoryEntry,
    Impact,
    LinkKind,
    NewChange,
    RiskLevel,
    ScheduleDates,
    ScheduleWindow,
)
from ..services import (
    AlreadyLinked,
    ChangeFilter,
    ChangeNotFound,
    ChangeStats,
    ChangeWorkflowError,
    Forbidden,
    InvalidDateRange,
    InvalidFieldValue,
    InvalidTransition,
    LinkNotFound,
    StaleApproval,
    StorageUnavailable,
)
from .dependencies import ServiceContainer, get_actor, get_services

logger = logging.getLogger(__name__)

# Most specific class first
ERROR_STATUS = [
    (ChangeNotFound, status.HTTP_404_NOT_FOUND),
    (LinkNotFound, status.HTTP_404_NOT_FOUND),
    (Forbidden, status.HTTP_403_FORBIDDEN),
    (InvalidTransition, status.HTTP_409_CONFLICT),
    (AlreadyLinked, status.HTTP_409_CONFLICT),
    (StaleApproval, status.HTTP_409_CONFLICT),
    (InvalidDateRange, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (InvalidFieldValue, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (StorageUnavailable, status.HTTP_503_SERVICE_UNAVAILABLE),
]


def status_for(exc: ChangeWorkflowError) -> int:
    for error_class, code in ERROR_STATUS:
        if isinstance(exc, error_class):
            return code
    return status.HTTP_400_BAD_REQUEST


# =============================================================================
# REQUEST/RESPONSE MODELS
# =============================================================================

class TransitionRequest(BaseModel):
    status: ChangeStatus


class ApprovalRequest(BaseModel):
    decision: ApprovalDecision
    comment: Optional[str] = None


class LinkRequest(BaseModel):
    other_id: UUID


class ChangeListResponse(BaseModel):
    changes: List[ChangeRequest]
    count: int


class HistoryResponse(BaseModel):
    change_id: UUID
    entries: List[HistoryEntry]


# =============================================================================
# APP SETUP
# =============================================================================

def create_app(services: Optional[ServiceContainer] = None) -> FastAPI:
    settings = services.settings if services else default_settings
    configure_logging(settings)

    app = FastAPI(
        title="ITIL Change Engine",
        description="Change management workflow with quorum approvals and audit trail",
        version=__version__
    )
    app.state.services = services or ServiceContainer(settings=settings)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.get_cors_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ChangeWorkflowError)
    async def workflow_error_handler(request: Request, exc: ChangeWorkflowError):
        code = status_for(exc)
        if code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        else:
            logger.warning(
                "%s %s rejected: %s (%s)",
                request.method, request.url.path, exc.kind, exc.condition
            )
        return JSONResponse(status_code=code, content=exc.to_dict())

    register_routes(app)
    return app


def register_routes(app: FastAPI) -> None:

    # =========================================================================
    # HEALTH CHECK
    # =========================================================================

    @app.get("/health")
    async def health_check():
        return {
            "status": "healthy",
            "service": "itil-change-engine",
            "version": __version__
        }

    # =========================================================================
    # CHANGE ENDPOINTS
    # =========================================================================

    @app.post("/changes", status_code=status.HTTP_201_CREATED, response_model=ChangeRequest)
    async def create_change(
        request: NewChange,
        actor: Actor = Depends(get_actor),
        services: ServiceContainer = Depends(get_services)
    ):
        """
        Create a change in draft.

        A schedule window is opened when both planned dates are given.
        """
        return await services.workflow.create_change(request, actor)

    @app.get("/changes", response_model=ChangeListResponse)
    async def list_changes(
        status_filter: Optional[List[ChangeStatus]] = Query(None, alias="status"),
        change_type: Optional[List[ChangeType]] = Query(None),
        risk_level: Optional[List[RiskLevel]] = Query(None),
        impact: Optional[List[Impact]] = Query(None),
        assigned_to: Optional[UUID] = None,
        created_by: Optional[UUID] = None,
        requested_by: Optional[UUID] = None,
        service_id: Optional[UUID] = None,
        category_id: Optional[UUID] = None,
        limit: int = Query(50, ge=1, le=500),
        offset: int = Query(0, ge=0),
        order_by: str = "created_at",
        descending: bool = True,
        actor: Actor = Depends(get_actor),
        services: ServiceContainer = Depends(get_services)
    ):
        filters = ChangeFilter(
            status=status_filter,
            change_type=change_type,
            risk_level=risk_level,
            impact=impact,
            assigned_to=assigned_to,
            created_by=created_by,
            requested_by=requested_by,
            service_id=service_id,
            category_id=category_id,
            limit=limit,
            offset=offset,
            order_by=order_by,
            descending=descending
        )
        changes, count = await services.queries.list_changes(actor, filters)
        return ChangeListResponse(changes=changes, count=count)

    @app.get("/changes/stats", response_model=ChangeStats)
    async def change_stats(
        actor: Actor = Depends(get_actor),
        services: ServiceContainer = Depends(get_services)
    ):
        """Counts by status, type and risk, plus the next scheduled changes."""
        return await services.queries.change_stats(actor)

    @app.get("/changes/{change_id}", response_model=ChangeRequest)
    async def get_change(
        change_id: UUID,
        actor: Actor = Depends(get_actor),
        services: ServiceContainer = Depends(get_services)
    ):
        return await services.queries.get_change(change_id, actor)

    @app.patch("/changes/{change_id}", response_model=ChangeRequest)
    async def update_change(
        change_id: UUID,
        patch: ChangePatch,
        actor: Actor = Depends(get_actor),
        services: ServiceContainer = Depends(get_services)
    ):
        """
        Update some fields of a change.

        Only keys present in the body are touched; null clears a field.
        """
        return await services.workflow.update_fields(change_id, patch, actor)

    @app.post("/changes/{change_id}/transitions", response_model=ChangeRequest)
    async def transition_change(
        change_id: UUID,
        request: TransitionRequest,
        actor: Actor = Depends(get_actor),
        services: ServiceContainer = Depends(get_services)
    ):
        return await services.workflow.request_transition(change_id, request.status, actor)

    # =========================================================================
    # APPROVAL ENDPOINTS
    # =========================================================================

    @app.get("/changes/{change_id}/approvals", response_model=List[ApprovalRecord])
    async def list_approvals(
        change_id: UUID,
        actor: Actor = Depends(get_actor),
        services: ServiceContainer = Depends(get_services)
    ):
        return await services.approvals.list_approvals(change_id, actor)

    @app.post("/changes/{change_id}/approvals", response_model=ApprovalRecord)
    async def submit_approval(
        change_id: UUID,
        request: ApprovalRequest,
        actor: Actor = Depends(get_actor),
        services: ServiceContainer = Depends(get_services)
    ):
        """
        Approve or reject a change awaiting approval.

        Re-voting replaces the approver's earlier decision.
        """
        return await services.approvals.submit_approval(
            change_id, actor, request.decision, request.comment
        )

    # =========================================================================
    # SCHEDULE ENDPOINTS
    # =========================================================================

    @app.get("/changes/{change_id}/schedule", response_model=Optional[ScheduleWindow])
    async def get_schedule(
        change_id: UUID,
        actor: Actor = Depends(get_actor),
        services: ServiceContainer = Depends(get_services)
    ):
        return await services.schedule.get_window(change_id, actor)

    @app.put("/changes/{change_id}/schedule", response_model=ScheduleWindow)
    async def sync_schedule(
        change_id: UUID,
        dates: ScheduleDates,
        actor: Actor = Depends(get_actor),
        services: ServiceContainer = Depends(get_services)
    ):
        return await services.schedule.sync_window(change_id, dates, actor)

    # =========================================================================
    # LINK ENDPOINTS
    # =========================================================================

    @app.get("/changes/{change_id}/links", response_model=List[ChangeLink])
    async def list_links(
        change_id: UUID,
        kind: Optional[LinkKind] = None,
        actor: Actor = Depends(get_actor),
        services: ServiceContainer = Depends(get_services)
    ):
        return await services.links.list_links(change_id, actor, kind)

    @app.post(
        "/changes/{change_id}/links/{kind}",
        status_code=status.HTTP_201_CREATED,
        response_model=ChangeLink
    )
    async def link(
        change_id: UUID,
        kind: LinkKind,
        request: LinkRequest,
        actor: Actor = Depends(get_actor),
        services: ServiceContainer = Depends(get_services)
    ):
        return await services.links.link(change_id, request.other_id, kind, actor)

    @app.delete("/changes/{change_id}/links/{kind}/{other_id}", response_model=ChangeLink)
    async def unlink(
        change_id: UUID,
        kind: LinkKind,
        other_id: UUID,
        actor: Actor = Depends(get_actor),
        services: ServiceContainer = Depends(get_services)
    ):
        return await services.links.unlink(change_id, other_id, kind, actor)

    @app.get("/tickets/{ticket_id}/changes", response_model=List[ChangeRequest])
    async def changes_for_ticket(
        ticket_id: UUID,
        actor: Actor = Depends(get_actor),
        services: ServiceContainer = Depends(get_services)
    ):
        return await services.queries.changes_for_ticket(ticket_id, actor)

    @app.get("/problems/{problem_id}/changes", response_model=List[ChangeRequest])
    async def changes_for_problem(
        problem_id: UUID,
        actor: Actor = Depends(get_actor),
        services: ServiceContainer = Depends(get_services)
    ):
        return await services.queries.changes_for_problem(problem_id, actor)

    # =========================================================================
    # HISTORY ENDPOINTS
    # =========================================================================

    @app.get("/changes/{change_id}/history", response_model=HistoryResponse)
    async def get_history(
        change_id: UUID,
        limit: Optional[int] = Query(None, ge=1),
        actor: Actor = Depends(get_actor),
        services: ServiceContainer = Depends(get_services)
    ):
        """Audit trail, newest first."""
        await services.queries.get_change(change_id, actor)
        entries = await services.audit.list_history(change_id).to_list(limit)
        return HistoryResponse(change_id=change_id, entries=entries)


app = create_app()


# =============================================================================
# RUN
# =============================================================================

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
