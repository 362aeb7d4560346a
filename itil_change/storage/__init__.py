"""
Storage for the change workflow.

In-memory repositories with journalled transactions, and in-memory
stand-ins for the ticket/problem history and user directory services.
"""

from .memory import (
    InMemoryStore,
    ChangeRepository,
    ApprovalRepository,
    ScheduleRepository,
    HistoryRepository,
    LinkRepository,
    InMemoryUserDirectory,
    InMemoryEntityHistory,
)

__all__ = [
    "InMemoryStore",
    "ChangeRepository", "ApprovalRepository", "ScheduleRepository",
    "HistoryRepository", "LinkRepository",
    "InMemoryUserDirectory", "InMemoryEntityHistory",
]
