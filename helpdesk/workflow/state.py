from __future__ import annotations

from enum import Enum
from typing import Mapping

from .errors import InvalidTicketTransitionError


class TicketStatus(str, Enum):
    """Supported states for a ticket's lifecycle."""

    PENDING = "pending"
    ADMIN_REVIEW = "admin_review"
    APPROVED = "approved"
    REJECTED = "rejected"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CLOSED = "closed"


class TicketPriority(str, Enum):
    """Ticket priorities, declared from least to most urgent."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


_PRIORITY_RANK: dict[TicketPriority, int] = {priority: index for index, priority in enumerate(TicketPriority)}

# Statuses that count towards a staff member's workload.
WORKLOAD_STATUSES: frozenset[TicketStatus] = frozenset({TicketStatus.APPROVED, TicketStatus.IN_PROGRESS})

# Statuses for which the SLA no longer applies.
FINISHED_STATUSES: frozenset[TicketStatus] = frozenset(
    {TicketStatus.COMPLETED, TicketStatus.CLOSED, TicketStatus.REJECTED}
)


class TicketStateMachine:
    """Validate ticket lifecycle transitions."""

    _TRANSITIONS: Mapping[TicketStatus, frozenset[TicketStatus]] = {
        TicketStatus.PENDING: frozenset({TicketStatus.ADMIN_REVIEW}),
        TicketStatus.ADMIN_REVIEW: frozenset({TicketStatus.APPROVED, TicketStatus.REJECTED}),
        TicketStatus.APPROVED: frozenset({TicketStatus.IN_PROGRESS}),
        TicketStatus.REJECTED: frozenset(),
        TicketStatus.IN_PROGRESS: frozenset({TicketStatus.COMPLETED}),
        TicketStatus.COMPLETED: frozenset({TicketStatus.CLOSED}),
        TicketStatus.CLOSED: frozenset(),
    }

    # Timestamp column stamped when a ticket first enters the status.
    _ENTRY_TIMESTAMPS: Mapping[TicketStatus, str] = {
        TicketStatus.APPROVED: "approved_at",
        TicketStatus.IN_PROGRESS: "assigned_at",
        TicketStatus.COMPLETED: "resolved_at",
        TicketStatus.CLOSED: "closed_at",
    }

    @classmethod
    def initial_state(cls) -> TicketStatus:
        return TicketStatus.PENDING

    @classmethod
    def allowed_targets(cls, current: TicketStatus) -> frozenset[TicketStatus]:
        return cls._TRANSITIONS.get(current, frozenset())

    @classmethod
    def can_transition(cls, current: TicketStatus, new: TicketStatus) -> bool:
        return new in cls.allowed_targets(current)

    @classmethod
    def is_terminal(cls, status: TicketStatus) -> bool:
        return not cls.allowed_targets(status)

    @classmethod
    def entry_timestamp(cls, status: TicketStatus) -> str | None:
        return cls._ENTRY_TIMESTAMPS.get(status)

    @classmethod
    def assert_transition(cls, current: TicketStatus, new: TicketStatus) -> None:
        if not cls.can_transition(current, new):
            raise InvalidTicketTransitionError(
                f"Invalid status transition from {current.value} to {new.value}",
                current=current,
                target=new,
            )
