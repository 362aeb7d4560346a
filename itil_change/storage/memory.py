"""
In-memory repositories and collaborators.

Repositories hand out copies so a caller mutating a model never touches
stored state until it calls save(). Writes made inside
InMemoryStore.transaction() are journalled and undone together if the
block raises, which keeps a mutation and its history entry atomic.
"""

import itertools
from contextlib import asynccontextmanager
from contextvars import ContextVar
from datetime import datetime
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Set, Tuple
from uuid import UUID

from ..models.change import (
    ApprovalRecord,
    ChangeLink,
    ChangeRequest,
    HistoryEntry,
    LinkKind,
    Role,
    ScheduleWindow,
)

_MISSING = object()


def history_key(entry: HistoryEntry) -> Tuple[datetime, int]:
    return entry.created_at, entry.sequence


class InMemoryStore:
    """Tables shared by the repositories, plus the transaction journal."""

    def __init__(self):
        self.changes: Dict[UUID, ChangeRequest] = {}
        self.approvals: Dict[Tuple[UUID, UUID], ApprovalRecord] = {}
        self.schedules: Dict[UUID, ScheduleWindow] = {}
        self.history: Dict[UUID, List[HistoryEntry]] = {}
        self.links: Dict[Tuple[LinkKind, UUID, UUID], ChangeLink] = {}
        self._sequence = itertools.count(1)
        self._journal: ContextVar[Optional[List[Callable[[], None]]]] = ContextVar(
            f"journal-{id(self)}", default=None
        )

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        """
        Group writes so they land together or not at all.

        Nested calls join the outer transaction.
        """
        if self._journal.get() is not None:
            yield
            return

        journal: List[Callable[[], None]] = []
        token = self._journal.set(journal)
        try:
            yield
        except BaseException:
            for undo in reversed(journal):
                undo()
            raise
        finally:
            self._journal.reset(token)

    def next_sequence(self) -> int:
        return next(self._sequence)

    def put(self, table: Dict, key: Any, value: Any) -> None:
        previous = table.get(key, _MISSING)
        table[key] = value

        def undo():
            if previous is _MISSING:
                table.pop(key, None)
            else:
                table[key] = previous

        self._record(undo)

    def remove(self, table: Dict, key: Any) -> None:
        previous = table.pop(key)
        self._record(lambda: table.__setitem__(key, previous))

    def append(self, rows: List, value: Any) -> None:
        rows.append(value)
        self._record(lambda: rows.remove(value))

    def _record(self, undo: Callable[[], None]) -> None:
        journal = self._journal.get()
        if journal is not None:
            journal.append(undo)


# =============================================================================
# REPOSITORIES
# =============================================================================

class ChangeRepository:
    def __init__(self, store: InMemoryStore):
        self.store = store

    async def get(self, change_id: UUID) -> Optional[ChangeRequest]:
        change = self.store.changes.get(change_id)
        return change.model_copy(deep=True) if change else None

    async def save(self, change: ChangeRequest) -> None:
        self.store.put(self.store.changes, change.id, change.model_copy(deep=True))

    async def list_for_tenant(self, tenant_id: UUID) -> List[ChangeRequest]:
        return [
            c.model_copy(deep=True)
            for c in self.store.changes.values()
            if c.tenant_id == tenant_id
        ]

    async def get_many(self, change_ids: List[UUID]) -> List[ChangeRequest]:
        return [
            self.store.changes[cid].model_copy(deep=True)
            for cid in change_ids
            if cid in self.store.changes
        ]


class ApprovalRepository:
    def __init__(self, store: InMemoryStore):
        self.store = store

    async def get(self, change_id: UUID, approver_id: UUID) -> Optional[ApprovalRecord]:
        record = self.store.approvals.get((change_id, approver_id))
        return record.model_copy() if record else None

    async def save(self, record: ApprovalRecord) -> None:
        key = (record.change_id, record.approver_id)
        self.store.put(self.store.approvals, key, record.model_copy())

    async def list_for_change(self, change_id: UUID) -> List[ApprovalRecord]:
        records = [
            r.model_copy()
            for (cid, _), r in self.store.approvals.items()
            if cid == change_id
        ]
        records.sort(key=lambda r: r.created_at)
        return records


class ScheduleRepository:
    def __init__(self, store: InMemoryStore):
        self.store = store

    async def get_for_change(self, change_id: UUID) -> Optional[ScheduleWindow]:
        window = self.store.schedules.get(change_id)
        return window.model_copy() if window else None

    async def save(self, window: ScheduleWindow) -> None:
        self.store.put(self.store.schedules, window.change_id, window.model_copy())


class HistoryRepository:
    """Insert and read only. There is no update or delete."""

    def __init__(self, store: InMemoryStore):
        self.store = store

    async def add(self, entry: HistoryEntry) -> HistoryEntry:
        stored = entry.model_copy(update={"sequence": self.store.next_sequence()})
        rows = self.store.history.setdefault(entry.change_id, [])
        self.store.append(rows, stored)
        return stored

    async def list_page(
        self,
        change_id: UUID,
        before: Optional[Tuple[datetime, int]],
        limit: int
    ) -> List[HistoryEntry]:
        """
        Newest first, starting strictly below the `before` key
        (created_at, sequence) of the last entry already read.
        """
        rows = sorted(
            (
                e for e in self.store.history.get(change_id, [])
                if before is None or history_key(e) < before
            ),
            key=history_key,
            reverse=True
        )
        return rows[:limit]

    async def count(self, change_id: UUID) -> int:
        return len(self.store.history.get(change_id, []))


class LinkRepository:
    def __init__(self, store: InMemoryStore):
        self.store = store

    async def get(
        self,
        change_id: UUID,
        other_id: UUID,
        kind: LinkKind
    ) -> Optional[ChangeLink]:
        link = self.store.links.get((kind, change_id, other_id))
        return link.model_copy() if link else None

    async def add(self, link: ChangeLink) -> None:
        key = (link.kind, link.change_id, link.other_id)
        self.store.put(self.store.links, key, link.model_copy())

    async def delete(self, link: ChangeLink) -> None:
        self.store.remove(self.store.links, (link.kind, link.change_id, link.other_id))

    async def list_for_change(
        self,
        change_id: UUID,
        kind: Optional[LinkKind] = None
    ) -> List[ChangeLink]:
        links = [
            link.model_copy()
            for (k, cid, _), link in self.store.links.items()
            if cid == change_id and (kind is None or k == kind)
        ]
        links.sort(key=lambda link: link.created_at)
        return links

    async def list_for_other(self, other_id: UUID, kind: LinkKind) -> List[ChangeLink]:
        return [
            link.model_copy()
            for (k, _, oid), link in self.store.links.items()
            if oid == other_id and k == kind
        ]


# =============================================================================
# COLLABORATORS
# =============================================================================

class InMemoryUserDirectory:
    """User/role directory: get_role(user_id) and is_active(user_id)."""

    def __init__(self):
        self.users: Dict[UUID, Tuple[Role, bool]] = {}

    def add_user(self, user_id: UUID, role: Role, active: bool = True) -> None:
        self.users[user_id] = (Role(role), active)

    async def get_role(self, user_id: UUID) -> Optional[Role]:
        user = self.users.get(user_id)
        return user[0] if user else None

    async def is_active(self, user_id: UUID) -> bool:
        user = self.users.get(user_id)
        return bool(user and user[1])


class InMemoryEntityHistory:
    """
    History stream of a ticket or problem, owned by another service.

    Only append_history(entity_id, action, details, idempotency_key) is
    used by the change workflow. A repeated key is ignored, so a retried
    call that already landed is not recorded twice.
    """

    def __init__(self, entity: str):
        self.entity = entity
        self.entries: Dict[UUID, List[Tuple[str, dict]]] = {}
        self.keys: Dict[UUID, Set[str]] = {}

    async def append_history(
        self,
        entity_id: UUID,
        action: str,
        details: dict,
        idempotency_key: Optional[str] = None
    ) -> None:
        if idempotency_key is not None:
            seen = self.keys.setdefault(entity_id, set())
            if idempotency_key in seen:
                return
            seen.add(idempotency_key)
        self.entries.setdefault(entity_id, []).append((action, dict(details)))

    def actions(self, entity_id: UUID) -> List[str]:
        return [action for action, _ in self.entries.get(entity_id, [])]
