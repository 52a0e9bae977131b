from __future__ import annotations

from dataclasses import asdict
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from helpdesk.workflow import (
    ApprovalDecision,
    ApprovalRecord,
    AssignmentRecord,
    AuditAction,
    AuditEntry,
    Comment,
    Ticket,
    TicketPriority,
    TicketStatus,
)
from helpdesk.workflow.clock import utcnow
from helpdesk.workflow.sla import is_overdue, time_remaining


class TicketResponse(BaseModel):
    id: str
    ticket_number: str
    title: str
    description: str
    priority: TicketPriority
    status: TicketStatus
    category: str | None
    urgency_level: int
    business_impact: str | None
    factory_id: str
    requester_id: str
    assigned_to: str | None
    version: int
    sla_deadline: datetime | None
    approved_at: datetime | None
    assigned_at: datetime | None
    resolved_at: datetime | None
    closed_at: datetime | None
    created_at: datetime
    updated_at: datetime
    is_overdue: bool = False
    time_remaining_seconds: float | None = None

    @classmethod
    def from_ticket(cls, ticket: Ticket, *, now: datetime | None = None) -> "TicketResponse":
        now = now or utcnow()
        remaining = time_remaining(ticket, now)
        return cls(
            **asdict(ticket),
            is_overdue=is_overdue(ticket, now),
            time_remaining_seconds=None if remaining is None else remaining.total_seconds(),
        )


class AuditEntryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    ticket_id: str
    actor_id: str
    action: AuditAction
    field_name: str | None
    old_value: str | None
    new_value: str | None
    comment: str | None
    metadata: dict[str, Any]
    created_at: datetime


class AssignmentRecordResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    ticket_id: str
    assigned_to: str
    assigned_by: str
    reason: str | None
    is_active: bool
    created_at: datetime
    completed_at: datetime | None


class CommentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    ticket_id: str
    author_id: str
    content: str
    is_internal: bool
    created_at: datetime


class ApprovalResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    ticket_id: str
    decision: ApprovalDecision
    admin_id: str | None
    reason: str | None
    created_at: datetime
    decided_at: datetime | None


class TicketCreateRequest(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    description: str = Field(..., min_length=1)
    priority: TicketPriority = TicketPriority.MEDIUM
    factory_id: str = Field(..., min_length=1)
    category: str | None = Field(default=None, max_length=100)
    urgency_level: int = Field(default=3, ge=1, le=5)
    business_impact: str | None = None


class TicketUpdateRequest(BaseModel):
    title: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = Field(default=None, min_length=1)
    category: str | None = Field(default=None, max_length=100)
    urgency_level: int | None = Field(default=None, ge=1, le=5)
    business_impact: str | None = None


class TicketStatusChangeRequest(BaseModel):
    status: TicketStatus
    comment: str | None = Field(default=None, max_length=1000)


class DecisionRequest(BaseModel):
    decision: ApprovalDecision
    reason: str | None = Field(default=None, max_length=1000)


class AssignRequest(BaseModel):
    assignee_id: str = Field(..., min_length=1)
    reason: str | None = None


class CommentCreateRequest(BaseModel):
    content: str = Field(..., min_length=1)
    is_internal: bool = False


def audit_to_response(entry: AuditEntry) -> AuditEntryResponse:
    return AuditEntryResponse.model_validate(entry)


def assignment_to_response(record: AssignmentRecord) -> AssignmentRecordResponse:
    return AssignmentRecordResponse.model_validate(record)


def comment_to_response(comment: Comment) -> CommentResponse:
    return CommentResponse.model_validate(comment)


def approval_to_response(record: ApprovalRecord) -> ApprovalResponse:
    return ApprovalResponse.model_validate(record)
