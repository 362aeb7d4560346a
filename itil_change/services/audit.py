"""
Change Audit Recorder

Append-only history of everything done to a change.

- Field-level {from, to} diffs and named actions
- Entries are never updated or deleted
- Read back newest first, one page at a time
"""

from typing import Any, AsyncIterator, Callable, Dict, Optional
from uuid import UUID

from pydantic_core import to_jsonable_python

from ..models.change import (
    ChangeRequest,
    HistoryAction,
    HistoryEntry,
    utcnow
)


def jsonable(value: Any) -> Any:
    """Render enums, UUIDs and datetimes the way they are stored in details."""
    return to_jsonable_python(value)


class HistoryStream:
    """
    Lazy, restartable view over a change's history.

    Each `async for` starts again from the newest entry and pulls pages
    from the repository as it goes. Pages continue strictly below the
    last entry read, so a write made mid-read cannot shift later pages
    and nothing comes out twice.
    """

    def __init__(self, history_repo, change_id: UUID, page_size: int):
        self.history_repo = history_repo
        self.change_id = change_id
        self.page_size = max(1, page_size)

    async def __aiter__(self) -> AsyncIterator[HistoryEntry]:
        before = None
        while True:
            page = await self.history_repo.list_page(
                self.change_id, before, self.page_size
            )
            for entry in page:
                yield entry
            if len(page) < self.page_size:
                return
            last = page[-1]
            before = (last.created_at, last.sequence)

    async def to_list(self, limit: Optional[int] = None) -> list:
        entries = []
        if limit is not None and limit < 1:
            return entries
        async for entry in self:
            entries.append(entry)
            if len(entries) == limit:
                break
        return entries


class AuditRecorder:
    """
    Writes and reads the change history.

    Pure insert: no business rules live here. A storage failure
    propagates as StorageUnavailable from the repository.
    """

    def __init__(
        self,
        history_repo,
        page_size: int = 50,
        clock: Callable = utcnow
    ):
        self.history_repo = history_repo
        self.page_size = page_size
        self.clock = clock

    async def append(
        self,
        change: ChangeRequest,
        user_id: UUID,
        action: HistoryAction,
        details: Optional[Dict[str, Any]] = None
    ) -> HistoryEntry:
        entry = HistoryEntry(
            change_id=change.id,
            tenant_id=change.tenant_id,
            user_id=user_id,
            action=action,
            details=jsonable(details or {}),
            created_at=self.clock()
        )
        return await self.history_repo.add(entry)

    def list_history(self, change_id: UUID) -> HistoryStream:
        return HistoryStream(self.history_repo, change_id, self.page_size)
