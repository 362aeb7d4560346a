"""
Change permission guard.

Who may touch a change:
1. Only actors of the change's tenant
2. Only actors the user directory reports as active
3. Editors: managers, admins, or the technician the change is assigned to
4. Approvers: managers and admins, as recorded in the user directory
"""

from uuid import UUID

from ..models.change import (
    PRIVILEGED_ROLES,
    Actor,
    ChangeRequest,
    Role
)
from .errors import ChangeNotFound, Forbidden
from .retry import RetryPolicy, call_with_retry


class ChangeGuard:
    """
    Raises Forbidden (or ChangeNotFound across tenants) before any write.
    """

    def __init__(self, user_directory, retry_policy: RetryPolicy = RetryPolicy()):
        self.directory = user_directory
        self.retry_policy = retry_policy

    def require_tenant(self, change: ChangeRequest, actor: Actor) -> None:
        # Other tenants' changes do not exist as far as the actor can tell
        if change.tenant_id != actor.tenant_id:
            raise ChangeNotFound(f"Change {change.id} not found.", field="id")

    async def require_active(self, actor: Actor) -> None:
        active = await call_with_retry(
            self.directory.is_active,
            actor.id,
            policy=self.retry_policy,
            description="user directory is_active"
        )
        if not active:
            raise Forbidden(
                "Inactive users cannot modify changes.",
                field="actor",
                condition="inactive_user"
            )

    async def require_editor(self, change: ChangeRequest, actor: Actor, action: str) -> None:
        self.require_tenant(change, actor)
        await self.require_active(actor)
        if not self.is_editor(change, actor):
            raise Forbidden(
                f"Only managers, admins or the assigned technician can {action}.",
                field="actor",
                condition="editor_required"
            )

    async def require_privileged(self, change: ChangeRequest, actor: Actor, action: str) -> None:
        self.require_tenant(change, actor)
        await self.require_active(actor)
        if not actor.is_privileged:
            raise Forbidden(
                f"Only managers or admins can {action}.",
                field="actor",
                condition="manager_or_admin_required"
            )

    async def require_approver(self, change: ChangeRequest, approver: Actor) -> None:
        """Approval rights come from the directory, not from the caller's claim."""
        self.require_tenant(change, approver)
        await self.require_active(approver)
        role = await call_with_retry(
            self.directory.get_role,
            approver.id,
            policy=self.retry_policy,
            description="user directory get_role"
        )
        if role is None or Role(role) not in PRIVILEGED_ROLES:
            raise Forbidden(
                "User does not have approval rights.",
                field="approver",
                condition="manager_or_admin_required"
            )

    async def is_active_user(self, user_id: UUID) -> bool:
        return await call_with_retry(
            self.directory.is_active,
            user_id,
            policy=self.retry_policy,
            description="user directory is_active"
        )

    @staticmethod
    def is_editor(change: ChangeRequest, actor: Actor) -> bool:
        if actor.is_privileged:
            return True
        return actor.role == Role.TECHNICIAN and change.assigned_to == actor.id
