"""SQLModel table definitions for the helpdesk data layer."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import BigInteger, Boolean, Column, DateTime, ForeignKey, Index, Integer, JSON, String, Text, text
from sqlmodel import Field, SQLModel


def _utcnow() -> datetime:
    """Return a timezone aware UTC timestamp."""

    return datetime.now(timezone.utc)


def _uuid_str() -> str:
    """Generate a random UUID string."""

    return str(uuid.uuid4())


class FactoryTable(SQLModel, table=True):
    """Factory departments tickets are scoped to."""

    __tablename__ = "factories"

    id: str = Field(default_factory=_uuid_str, primary_key=True, index=True)
    name: str = Field(sa_column=Column(String(100), nullable=False, unique=True))
    description: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    is_active: bool = Field(default=True, sa_column=Column(Boolean, nullable=False, default=True))
    created_at: datetime = Field(default_factory=_utcnow, sa_column=Column(DateTime(timezone=True), nullable=False))


class UserTable(SQLModel, table=True):
    """Directory of requesters, support staff, managers and admins."""

    __tablename__ = "users"

    id: str = Field(default_factory=_uuid_str, primary_key=True, index=True)
    username: str = Field(sa_column=Column(String(150), nullable=False, unique=True))
    full_name: str = Field(sa_column=Column(String(255), nullable=False))
    email: str | None = Field(default=None, sa_column=Column(String(255), nullable=True, unique=True))
    role: str = Field(sa_column=Column(String(50), nullable=False, index=True))
    factory_id: str | None = Field(
        default=None,
        sa_column=Column(String(36), ForeignKey("factories.id"), nullable=True, index=True),
    )
    is_active: bool = Field(default=True, sa_column=Column(Boolean, nullable=False, default=True))
    created_at: datetime = Field(default_factory=_utcnow, sa_column=Column(DateTime(timezone=True), nullable=False))


class TicketTable(SQLModel, table=True):
    """Support tickets moving through the approval and assignment workflow."""

    __tablename__ = "tickets"
    __table_args__ = (
        Index("idx_tickets_status_priority", "status", "priority"),
        Index("idx_tickets_assigned_status", "assigned_to", "status"),
        Index("idx_tickets_factory_status", "factory_id", "status"),
    )

    id: str = Field(default_factory=_uuid_str, primary_key=True, index=True)
    ticket_number: str = Field(sa_column=Column(String(32), nullable=False, unique=True))
    title: str = Field(sa_column=Column(String(255), nullable=False))
    description: str = Field(sa_column=Column(Text, nullable=False))
    priority: str = Field(sa_column=Column(String(20), nullable=False))
    status: str = Field(sa_column=Column(String(20), nullable=False))
    category: str | None = Field(default=None, sa_column=Column(String(100), nullable=True))
    urgency_level: int = Field(default=3, sa_column=Column(Integer, nullable=False, default=3))
    business_impact: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    factory_id: str = Field(sa_column=Column(String(36), ForeignKey("factories.id"), nullable=False))
    requester_id: str = Field(sa_column=Column(String(36), ForeignKey("users.id"), nullable=False))
    assigned_to: str | None = Field(
        default=None, sa_column=Column(String(36), ForeignKey("users.id"), nullable=True)
    )
    version: int = Field(default=1, sa_column=Column(Integer, nullable=False, default=1))
    sla_deadline: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True))
    approved_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True))
    assigned_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True))
    resolved_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True))
    closed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True))
    created_at: datetime = Field(default_factory=_utcnow, sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(default_factory=_utcnow, sa_column=Column(DateTime(timezone=True), nullable=False))


class TicketApprovalTable(SQLModel, table=True):
    """Single admin decision record per ticket."""

    __tablename__ = "ticket_approvals"

    id: str = Field(default_factory=_uuid_str, primary_key=True, index=True)
    ticket_id: str = Field(
        sa_column=Column(String(36), ForeignKey("tickets.id", ondelete="CASCADE"), nullable=False, unique=True)
    )
    admin_id: str | None = Field(
        default=None, sa_column=Column(String(36), ForeignKey("users.id"), nullable=True)
    )
    decision: str = Field(default="pending", sa_column=Column(String(20), nullable=False))
    reason: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    created_at: datetime = Field(default_factory=_utcnow, sa_column=Column(DateTime(timezone=True), nullable=False))
    decided_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True))


class TicketAssignmentTable(SQLModel, table=True):
    """Assignment history; at most one row per ticket is active."""

    __tablename__ = "ticket_assignments"
    __table_args__ = (
        Index(
            "uq_ticket_assignments_active",
            "ticket_id",
            unique=True,
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active"),
        ),
    )

    id: str = Field(default_factory=_uuid_str, primary_key=True, index=True)
    ticket_id: str = Field(
        sa_column=Column(String(36), ForeignKey("tickets.id", ondelete="CASCADE"), nullable=False, index=True)
    )
    assigned_to: str = Field(sa_column=Column(String(36), ForeignKey("users.id"), nullable=False, index=True))
    assigned_by: str = Field(sa_column=Column(String(36), ForeignKey("users.id"), nullable=False))
    reason: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    is_active: bool = Field(default=True, sa_column=Column(Boolean, nullable=False, default=True))
    created_at: datetime = Field(default_factory=_utcnow, sa_column=Column(DateTime(timezone=True), nullable=False))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True))


class TicketAuditLogTable(SQLModel, table=True):
    """Append-only trail describing discrete ticket actions."""

    __tablename__ = "ticket_audit_logs"

    # Insertion order; breaks ties between entries sharing created_at.
    seq: int | None = Field(
        default=None,
        sa_column=Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True),
    )
    id: str = Field(default_factory=_uuid_str, sa_column=Column(String(36), nullable=False, unique=True))
    ticket_id: str = Field(
        sa_column=Column(String(36), ForeignKey("tickets.id", ondelete="CASCADE"), nullable=False, index=True)
    )
    actor_id: str = Field(sa_column=Column(String(36), nullable=False))
    action: str = Field(sa_column=Column(String(32), nullable=False))
    field_name: str | None = Field(default=None, sa_column=Column(String(64), nullable=True))
    old_value: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    new_value: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    comment: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    metadata_: dict[str, Any] = Field(
        default_factory=dict, sa_column=Column("metadata", JSON, nullable=False)
    )
    created_at: datetime = Field(default_factory=_utcnow, sa_column=Column(DateTime(timezone=True), nullable=False))


class TicketCommentTable(SQLModel, table=True):
    """Comments left on a ticket by requesters and staff."""

    __tablename__ = "ticket_comments"

    id: str = Field(default_factory=_uuid_str, primary_key=True, index=True)
    ticket_id: str = Field(
        sa_column=Column(String(36), ForeignKey("tickets.id", ondelete="CASCADE"), nullable=False, index=True)
    )
    author_id: str = Field(sa_column=Column(String(36), ForeignKey("users.id"), nullable=False))
    content: str = Field(sa_column=Column(Text, nullable=False))
    is_internal: bool = Field(default=False, sa_column=Column(Boolean, nullable=False, default=False))
    created_at: datetime = Field(default_factory=_utcnow, sa_column=Column(DateTime(timezone=True), nullable=False))


class NotificationTable(SQLModel, table=True):
    """In-app notifications persisted for delivery by an external transport."""

    __tablename__ = "notifications"

    id: str = Field(default_factory=_uuid_str, primary_key=True, index=True)
    user_id: str = Field(sa_column=Column(String(36), nullable=False, index=True))
    type: str = Field(sa_column=Column(String(50), nullable=False))
    title: str = Field(sa_column=Column(String(255), nullable=False))
    message: str = Field(sa_column=Column(Text, nullable=False))
    ticket_id: str | None = Field(default=None, sa_column=Column(String(36), nullable=True))
    is_read: bool = Field(default=False, sa_column=Column(Boolean, nullable=False, default=False))
    created_at: datetime = Field(default_factory=_utcnow, sa_column=Column(DateTime(timezone=True), nullable=False))
