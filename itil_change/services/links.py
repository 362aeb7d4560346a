"""
Change Link Manager

Many-to-many links between a change and tickets or problems.

Each link and unlink is written to the change's history and mirrored
into the ticket's or problem's own history, which another service owns.
"""

import logging
from typing import Callable, Dict, List, Optional, Tuple
from uuid import UUID

from ..models.change import (
    Actor,
    ChangeLink,
    ChangeRequest,
    HistoryAction,
    LinkKind,
    utcnow
)
from .concurrency import atomic_write
from .errors import AlreadyLinked, ChangeNotFound, LinkNotFound, StorageUnavailable
from .retry import RetryPolicy, call_with_retry

logger = logging.getLogger(__name__)

# kind -> (link action, unlink action, detail key)
LINK_ACTIONS: Dict[LinkKind, Tuple[HistoryAction, HistoryAction, str]] = {
    LinkKind.TICKET: (
        HistoryAction.LINKED_TICKET, HistoryAction.UNLINKED_TICKET, "ticket_id"
    ),
    LinkKind.PROBLEM: (
        HistoryAction.LINKED_PROBLEM, HistoryAction.UNLINKED_PROBLEM, "problem_id"
    ),
}

MIRROR_LINKED = "linked_to_change"
MIRROR_UNLINKED = "unlinked_from_change"

# Entry that cancels out a mirrored action
MIRROR_REVERT = {
    MIRROR_LINKED: MIRROR_UNLINKED,
    MIRROR_UNLINKED: MIRROR_LINKED,
}


class LinkManager:
    """
    Maintains change ↔ ticket and change ↔ problem links.

    The mirrored history call is the last step of the transaction and
    carries the id of the change history entry as its idempotency key,
    so retries of a call that already landed are ignored. If it still
    fails after retries, the link and its change history entry are
    rolled back and a reverting entry is sent to the other service.
    """

    def __init__(
        self,
        change_repo,
        link_repo,
        audit,
        guard,
        locks,
        store,
        ticket_history,
        problem_history,
        retry_policy: RetryPolicy = RetryPolicy(),
        clock: Callable = utcnow
    ):
        self.change_repo = change_repo
        self.link_repo = link_repo
        self.audit = audit
        self.guard = guard
        self.locks = locks
        self.store = store
        self.mirrors = {
            LinkKind.TICKET: ticket_history,
            LinkKind.PROBLEM: problem_history,
        }
        self.retry_policy = retry_policy
        self.clock = clock

    async def link(
        self,
        change_id: UUID,
        other_id: UUID,
        kind: LinkKind,
        actor: Actor
    ) -> ChangeLink:
        kind = LinkKind(kind)
        linked_action, _, key = LINK_ACTIONS[kind]

        async with self.locks.hold(change_id):
            change = await self._load(change_id)
            await self.guard.require_editor(change, actor, f"link a {kind.value}")

            if await self.link_repo.get(change.id, other_id, kind) is not None:
                raise AlreadyLinked(
                    f"Change {change.id} is already linked to {kind.value} {other_id}.",
                    field=key,
                    condition="unique_link"
                )

            link = ChangeLink(
                change_id=change.id,
                other_id=other_id,
                kind=kind,
                tenant_id=change.tenant_id,
                created_by=actor.id,
                created_at=self.clock()
            )

            async with atomic_write(self.store, f"{kind.value} link", change.id):
                await self.link_repo.add(link)
                entry = await self.audit.append(change, actor.id, linked_action, {key: other_id})
                await self._mirror(kind, other_id, MIRROR_LINKED, change.id, str(entry.id))

        logger.info("Linked change %s to %s %s", change_id, kind.value, other_id)
        return link

    async def unlink(
        self,
        change_id: UUID,
        other_id: UUID,
        kind: LinkKind,
        actor: Actor
    ) -> ChangeLink:
        kind = LinkKind(kind)
        _, unlinked_action, key = LINK_ACTIONS[kind]

        async with self.locks.hold(change_id):
            change = await self._load(change_id)
            await self.guard.require_editor(change, actor, f"unlink a {kind.value}")

            link = await self.link_repo.get(change.id, other_id, kind)
            if link is None:
                raise LinkNotFound(
                    f"Change {change.id} is not linked to {kind.value} {other_id}.",
                    field=key,
                    condition="link_exists"
                )

            async with atomic_write(self.store, f"{kind.value} unlink", change.id):
                await self.link_repo.delete(link)
                entry = await self.audit.append(change, actor.id, unlinked_action, {key: other_id})
                await self._mirror(kind, other_id, MIRROR_UNLINKED, change.id, str(entry.id))

        logger.info("Unlinked change %s from %s %s", change_id, kind.value, other_id)
        return link

    async def list_links(
        self,
        change_id: UUID,
        actor: Actor,
        kind: Optional[LinkKind] = None
    ) -> List[ChangeLink]:
        change = await self._load(change_id)
        self.guard.require_tenant(change, actor)
        return await self.link_repo.list_for_change(
            change_id, LinkKind(kind) if kind else None
        )

    # =========================================================================
    # Private helpers
    # =========================================================================

    async def _mirror(
        self,
        kind: LinkKind,
        other_id: UUID,
        action: str,
        change_id: UUID,
        idempotency_key: str
    ) -> None:
        details = {"change_id": str(change_id)}
        try:
            await call_with_retry(
                self.mirrors[kind].append_history,
                other_id,
                action,
                details,
                idempotency_key,
                policy=self.retry_policy,
                description=f"{kind.value} history mirror"
            )
        except StorageUnavailable:
            await self._revert_mirror(kind, other_id, action, details, idempotency_key)
            raise

    async def _revert_mirror(
        self,
        kind: LinkKind,
        other_id: UUID,
        action: str,
        details: Dict[str, str],
        idempotency_key: str
    ) -> None:
        """
        Cancel out a mirrored entry that may have landed before its call
        timed out. The caller's StorageUnavailable propagates either way.
        """
        revert = MIRROR_REVERT[action]
        try:
            await call_with_retry(
                self.mirrors[kind].append_history,
                other_id,
                revert,
                details,
                f"{idempotency_key}:revert",
                policy=self.retry_policy,
                description=f"{kind.value} history revert"
            )
        except StorageUnavailable:
            logger.error(
                "Could not send %s to %s %s; its history may still show %s for change %s",
                revert, kind.value, other_id, action, details["change_id"]
            )
            return
        logger.warning(
            "Sent %s to %s %s after %s could not be confirmed",
            revert, kind.value, other_id, action
        )

    async def _load(self, change_id: UUID) -> ChangeRequest:
        change = await self.change_repo.get(change_id)
        if change is None:
            raise ChangeNotFound(f"Change {change_id} not found.", field="id")
        return change
