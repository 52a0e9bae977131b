"""Ticket lifecycle, approval and assignment workflow."""

from .assignment import AssignmentLedger, WorkloadBalancer
from .audit import AuditLog
from .approval import ApprovalLedger
from .directory import FactoryDirectory, SqlFactoryDirectory, SqlUserDirectory, UserDirectory
from .errors import (
    CapacityExceededError,
    ConcurrencyConflictError,
    InvalidTicketStateError,
    InvalidTicketTransitionError,
    ResourceNotFoundError,
    StorageError,
    TicketNotFoundError,
    TicketValidationError,
    WorkflowError,
)
from .models import (
    ApprovalDecision,
    ApprovalHistory,
    ApprovalRecord,
    AssignmentRecord,
    AuditAction,
    AuditEntry,
    AutoAssignResult,
    BulkDecisionResult,
    Comment,
    DecidedApproval,
    DirectoryUser,
    StaffWorkload,
    Ticket,
    UserRole,
)
from .notifications import DatabaseNotifier, LoggingNotifier, Notifier
from .repository import TicketRepository
from .service import TicketWorkflowService
from .state import TicketPriority, TicketStateMachine, TicketStatus

__all__ = [
    "ApprovalDecision",
    "ApprovalHistory",
    "ApprovalLedger",
    "ApprovalRecord",
    "AssignmentLedger",
    "AssignmentRecord",
    "AuditAction",
    "AuditEntry",
    "AuditLog",
    "AutoAssignResult",
    "BulkDecisionResult",
    "CapacityExceededError",
    "Comment",
    "ConcurrencyConflictError",
    "DecidedApproval",
    "DatabaseNotifier",
    "DirectoryUser",
    "FactoryDirectory",
    "InvalidTicketStateError",
    "InvalidTicketTransitionError",
    "LoggingNotifier",
    "Notifier",
    "ResourceNotFoundError",
    "SqlFactoryDirectory",
    "SqlUserDirectory",
    "StaffWorkload",
    "StorageError",
    "Ticket",
    "TicketNotFoundError",
    "TicketPriority",
    "TicketRepository",
    "TicketStateMachine",
    "TicketStatus",
    "TicketValidationError",
    "TicketWorkflowService",
    "UserDirectory",
    "UserRole",
    "WorkflowError",
    "WorkloadBalancer",
]
