"""
Change workflow errors.

Every rejected operation names what was wrong (field) and why
(condition) so the caller can render an actionable message.
"""

from typing import Optional


class ChangeWorkflowError(Exception):
    """Base class for change workflow failures."""

    retryable = False

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        condition: Optional[str] = None
    ):
        super().__init__(message)
        self.message = message
        self.field = field
        self.condition = condition

    @property
    def kind(self) -> str:
        return type(self).__name__

    def to_dict(self) -> dict:
        return {
            "error": self.kind,
            "detail": self.message,
            "field": self.field,
            "condition": self.condition,
        }


class ChangeNotFound(ChangeWorkflowError):
    """Raised when a change does not exist or belongs to another tenant."""
    pass


class InvalidTransition(ChangeWorkflowError):
    """Raised when a status edge is not defined by the lifecycle."""

    def __init__(self, current: str, target: str):
        super().__init__(
            f"Cannot move change from '{current}' to '{target}'.",
            field="status",
            condition=f"{current}->{target}"
        )
        self.current = current
        self.target = target


class Forbidden(ChangeWorkflowError):
    """Raised when the actor may not perform the operation."""
    pass


class InvalidDateRange(ChangeWorkflowError):
    """Raised when an end date does not follow its start date."""

    def __init__(self, start_field: str, end_field: str, strict: bool = True):
        relation = ">" if strict else ">="
        super().__init__(
            f"{end_field} must be {'after' if strict else 'on or after'} {start_field}.",
            field=end_field,
            condition=f"{end_field} {relation} {start_field}"
        )
        self.start_field = start_field
        self.end_field = end_field


class InvalidFieldValue(ChangeWorkflowError):
    """Raised when a field value is rejected before any write."""
    pass


class AlreadyLinked(ChangeWorkflowError):
    """Raised when a change is already linked to the ticket/problem."""
    pass


class LinkNotFound(ChangeWorkflowError):
    """Raised when unlinking an association that does not exist."""
    pass


class StaleApproval(ChangeWorkflowError):
    """Raised when a vote arrives after the approval was resolved."""
    pass


class StorageUnavailable(ChangeWorkflowError):
    """
    Raised when the store or an external collaborator cannot be reached.

    The only error class a caller may retry.
    """

    retryable = True


class ChangeBusy(StorageUnavailable):
    """Raised when the change stays locked by another writer too long."""
    pass
