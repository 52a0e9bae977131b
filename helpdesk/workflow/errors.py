"""Error taxonomy raised by the ticket workflow engine.

Every error carries a ``kind`` tag. Callers such as the HTTP adapter translate
the kind into a transport-specific status and never need to know the concrete
exception class.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .state import TicketStatus


class WorkflowError(RuntimeError):
    """Base error for ticket workflow issues."""

    kind = "workflow_error"


class TicketValidationError(WorkflowError):
    """Raised for malformed or missing input."""

    kind = "validation"


class ResourceNotFoundError(WorkflowError):
    """Raised when a referenced ticket, user or factory does not exist."""

    kind = "not_found"


class TicketNotFoundError(ResourceNotFoundError):
    """Raised when an operation targets a non-existent ticket."""

    def __init__(self, ticket_id: str) -> None:
        super().__init__(f"Ticket {ticket_id} not found")
        self.ticket_id = ticket_id


class InvalidTicketStateError(WorkflowError):
    """Raised when the ticket's current status does not satisfy an operation's precondition."""

    kind = "invalid_state"


class InvalidTicketTransitionError(WorkflowError):
    """Raised when attempting to transition to a status that is not reachable."""

    kind = "invalid_transition"

    def __init__(self, message: str, *, current: TicketStatus, target: TicketStatus) -> None:
        super().__init__(message)
        self.current = current
        self.target = target


class CapacityExceededError(WorkflowError):
    """Raised when an assignee already carries the maximum workload."""

    kind = "capacity"

    def __init__(self, user_id: str, *, workload: int, limit: int) -> None:
        super().__init__(f"User {user_id} has reached the maximum workload limit ({limit} active tickets)")
        self.user_id = user_id
        self.workload = workload
        self.limit = limit


class ConcurrencyConflictError(WorkflowError):
    """Raised when a concurrent writer changed the ticket first; the caller may retry."""

    kind = "concurrency_conflict"


class StorageError(WorkflowError):
    """Raised when the backing store fails unexpectedly."""

    kind = "storage"
