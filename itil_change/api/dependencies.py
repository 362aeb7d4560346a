"""
Service wiring and request-scoped dependencies.
"""

from typing import Callable, Optional
from uuid import UUID

from fastapi import Header, Request

from ..config import Settings
from ..models.change import Actor, Role, utcnow
from ..services import (
    ApprovalAggregator,
    AuditRecorder,
    ChangeGuard,
    ChangeLockRegistry,
    ChangeQueryService,
    ChangeStateMachine,
    LinkManager,
    RetryPolicy,
    ScheduleSynchronizer,
)
from ..storage import (
    ApprovalRepository,
    ChangeRepository,
    HistoryRepository,
    InMemoryEntityHistory,
    InMemoryStore,
    InMemoryUserDirectory,
    LinkRepository,
    ScheduleRepository,
)


class ServiceContainer:
    """
    Builds the workflow services around one store.

    Collaborators (user directory, ticket/problem history) and the
    clock can be swapped in; in-memory ones are used otherwise.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        store: Optional[InMemoryStore] = None,
        user_directory=None,
        ticket_history=None,
        problem_history=None,
        clock: Callable = utcnow
    ):
        self.settings = settings or Settings()
        self.store = store or InMemoryStore()
        self.user_directory = user_directory or InMemoryUserDirectory()
        self.ticket_history = ticket_history or InMemoryEntityHistory("ticket")
        self.problem_history = problem_history or InMemoryEntityHistory("problem")

        retry_policy = RetryPolicy.from_settings(self.settings)

        self.change_repo = ChangeRepository(self.store)
        self.approval_repo = ApprovalRepository(self.store)
        self.schedule_repo = ScheduleRepository(self.store)
        self.history_repo = HistoryRepository(self.store)
        self.link_repo = LinkRepository(self.store)

        self.locks = ChangeLockRegistry(timeout=self.settings.LOCK_TIMEOUT_SECONDS)
        self.guard = ChangeGuard(self.user_directory, retry_policy)

        self.audit = AuditRecorder(
            self.history_repo,
            page_size=self.settings.HISTORY_PAGE_SIZE,
            clock=clock
        )
        self.schedule = ScheduleSynchronizer(
            self.change_repo, self.schedule_repo, self.audit,
            self.guard, self.locks, self.store, clock=clock
        )
        self.workflow = ChangeStateMachine(
            self.change_repo, self.audit, self.schedule,
            self.guard, self.locks, self.store, clock=clock
        )
        self.approvals = ApprovalAggregator(
            self.change_repo, self.approval_repo, self.audit, self.workflow,
            self.guard, self.locks, self.store, clock=clock
        )
        self.links = LinkManager(
            self.change_repo, self.link_repo, self.audit,
            self.guard, self.locks, self.store,
            self.ticket_history, self.problem_history,
            retry_policy=retry_policy, clock=clock
        )
        self.queries = ChangeQueryService(self.change_repo, self.link_repo)


def get_services(request: Request) -> ServiceContainer:
    return request.app.state.services


def get_actor(
    x_user_id: UUID = Header(...),
    x_user_role: Role = Header(Role.USER),
    x_tenant_id: UUID = Header(...)
) -> Actor:
    """The acting user, as asserted by the authenticating proxy."""
    return Actor(id=x_user_id, role=x_user_role, tenant_id=x_tenant_id)
