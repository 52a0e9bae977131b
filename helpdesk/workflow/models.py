from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Mapping, Sequence

from .state import TicketPriority, TicketStatus


class AuditAction(str, Enum):
    """Closed set of actions recorded in the audit trail."""

    CREATED = "created"
    UPDATED = "updated"
    STATUS_CHANGED = "status_changed"
    ASSIGNED = "assigned"
    APPROVED = "approved"
    REJECTED = "rejected"
    COMMENTED = "commented"
    CLOSED = "closed"


class ApprovalDecision(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class UserRole(str, Enum):
    ADMIN = "admin"
    MANAGER = "manager"
    SUPPORT_STAFF = "support_staff"
    EMPLOYEE = "employee"


# Roles allowed to hold an assignment.
ASSIGNABLE_ROLES: frozenset[UserRole] = frozenset({UserRole.SUPPORT_STAFF, UserRole.MANAGER})

# Roles allowed to leave internal comments.
STAFF_ROLES: frozenset[UserRole] = frozenset({UserRole.ADMIN, UserRole.MANAGER, UserRole.SUPPORT_STAFF})


@dataclass(slots=True)
class Ticket:
    """Aggregate root representing a support ticket."""

    id: str
    ticket_number: str
    title: str
    description: str
    priority: TicketPriority
    status: TicketStatus
    factory_id: str
    requester_id: str
    urgency_level: int
    created_at: datetime
    updated_at: datetime
    version: int = 1
    category: str | None = None
    business_impact: str | None = None
    assigned_to: str | None = None
    sla_deadline: datetime | None = None
    approved_at: datetime | None = None
    assigned_at: datetime | None = None
    resolved_at: datetime | None = None
    closed_at: datetime | None = None


@dataclass(slots=True)
class ApprovalRecord:
    """Admin decision attached to a ticket that went through review."""

    id: str
    ticket_id: str
    decision: ApprovalDecision
    created_at: datetime
    admin_id: str | None = None
    reason: str | None = None
    decided_at: datetime | None = None

    def is_pending(self) -> bool:
        return self.decision is ApprovalDecision.PENDING

    def is_approved(self) -> bool:
        return self.decision is ApprovalDecision.APPROVED

    def is_rejected(self) -> bool:
        return self.decision is ApprovalDecision.REJECTED


@dataclass(slots=True)
class AssignmentRecord:
    """One entry of a ticket's assignment history."""

    id: str
    ticket_id: str
    assigned_to: str
    assigned_by: str
    is_active: bool
    created_at: datetime
    reason: str | None = None
    completed_at: datetime | None = None


@dataclass(slots=True)
class AuditEntry:
    """Immutable history entry describing one state-changing action."""

    id: str
    ticket_id: str
    actor_id: str
    action: AuditAction
    created_at: datetime
    field_name: str | None = None
    old_value: str | None = None
    new_value: str | None = None
    comment: str | None = None
    metadata: Mapping[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class Comment:
    id: str
    ticket_id: str
    author_id: str
    content: str
    is_internal: bool
    created_at: datetime


@dataclass(slots=True)
class DirectoryUser:
    """Projection of a user as seen by the workflow engine."""

    id: str
    role: UserRole
    is_active: bool
    factory_id: str | None
    full_name: str = ""

    def can_hold_assignments(self) -> bool:
        return self.is_active and self.role in ASSIGNABLE_ROLES


@dataclass(slots=True)
class AssignmentOutcome:
    """Successful allocation produced by an auto-assign batch."""

    ticket_id: str
    ticket_number: str
    assigned_to: str


@dataclass(slots=True)
class AssignmentFailure:
    """Ticket an auto-assign batch could not allocate."""

    ticket_id: str
    ticket_number: str
    attempted_assignee: str
    error_kind: str
    message: str


@dataclass(slots=True)
class AutoAssignResult:
    assigned: Sequence[AssignmentOutcome]
    failed: Sequence[AssignmentFailure]


@dataclass(slots=True)
class DecisionFailure:
    ticket_id: str
    error_kind: str
    message: str


@dataclass(slots=True)
class BulkDecisionResult:
    processed: Sequence[Ticket]
    failed: Sequence[DecisionFailure]


@dataclass(slots=True)
class StaffWorkload:
    """Per staff member view of active tickets."""

    user_id: str
    full_name: str
    factory_id: str | None
    total: int = 0
    high_priority: int = 0
    overdue: int = 0
    in_progress: int = 0


@dataclass(slots=True)
class DecidedApproval:
    """A decided approval together with the ticket it belongs to."""

    approval: ApprovalRecord
    ticket_number: str
    ticket_title: str
    ticket_status: TicketStatus
    ticket_priority: TicketPriority


@dataclass(slots=True)
class ApprovalHistory:
    items: Sequence[DecidedApproval]
    total: int
    page: int
    limit: int

    @property
    def pages(self) -> int:
        return (self.total + self.limit - 1) // self.limit if self.limit > 0 else 0
