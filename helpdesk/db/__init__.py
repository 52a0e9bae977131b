"""Database models and utilities."""

from .models import (
    FactoryTable,
    NotificationTable,
    TicketApprovalTable,
    TicketAssignmentTable,
    TicketAuditLogTable,
    TicketCommentTable,
    TicketTable,
    UserTable,
)

__all__ = [
    "FactoryTable",
    "NotificationTable",
    "TicketApprovalTable",
    "TicketAssignmentTable",
    "TicketAuditLogTable",
    "TicketCommentTable",
    "TicketTable",
    "UserTable",
]
