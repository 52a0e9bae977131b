from __future__ import annotations

from fastapi import APIRouter, Query, status

from helpdesk.api.schemas import (
    ApprovalResponse,
    AssignmentRecordResponse,
    AssignRequest,
    AuditEntryResponse,
    CommentCreateRequest,
    CommentResponse,
    DecisionRequest,
    TicketCreateRequest,
    TicketResponse,
    TicketStatusChangeRequest,
    TicketUpdateRequest,
    approval_to_response,
    assignment_to_response,
    audit_to_response,
    comment_to_response,
)
from helpdesk.dependencies.actor import ActorId
from helpdesk.dependencies.workflow import WorkflowServiceDep
from helpdesk.workflow import ResourceNotFoundError, TicketPriority, TicketStatus

router = APIRouter(prefix="/tickets", tags=["tickets"])


@router.post("", response_model=TicketResponse, status_code=status.HTTP_201_CREATED)
async def create_ticket(
    payload: TicketCreateRequest,
    service: WorkflowServiceDep,
    actor_id: ActorId,
) -> TicketResponse:
    ticket = await service.create_ticket(
        title=payload.title,
        description=payload.description,
        priority=payload.priority,
        factory_id=payload.factory_id,
        requester_id=actor_id,
        category=payload.category,
        urgency_level=payload.urgency_level,
        business_impact=payload.business_impact,
    )
    return TicketResponse.from_ticket(ticket)


@router.get("", response_model=list[TicketResponse], summary="List tickets")
async def list_tickets(
    service: WorkflowServiceDep,
    status_filter: TicketStatus | None = Query(default=None, alias="status"),
    priority: TicketPriority | None = Query(default=None),
    factory_id: str | None = Query(default=None),
    assigned_to: str | None = Query(default=None),
) -> list[TicketResponse]:
    tickets = await service.list_tickets(
        status=status_filter,
        priority=priority,
        factory_id=factory_id,
        assigned_to=assigned_to,
    )
    return [TicketResponse.from_ticket(ticket) for ticket in tickets]


@router.get("/overdue", response_model=list[TicketResponse], summary="List tickets past their SLA deadline")
async def list_overdue_tickets(
    service: WorkflowServiceDep,
    factory_id: str | None = Query(default=None),
) -> list[TicketResponse]:
    tickets = await service.list_overdue(factory_id=factory_id)
    return [TicketResponse.from_ticket(ticket) for ticket in tickets]


@router.get("/{ticket_id}", response_model=TicketResponse)
async def get_ticket(ticket_id: str, service: WorkflowServiceDep) -> TicketResponse:
    ticket = await service.get_ticket(ticket_id)
    return TicketResponse.from_ticket(ticket)


@router.patch("/{ticket_id}", response_model=TicketResponse)
async def update_ticket(
    ticket_id: str,
    payload: TicketUpdateRequest,
    service: WorkflowServiceDep,
    actor_id: ActorId,
) -> TicketResponse:
    ticket = await service.update_details(
        ticket_id,
        actor_id=actor_id,
        title=payload.title,
        description=payload.description,
        category=payload.category,
        urgency_level=payload.urgency_level,
        business_impact=payload.business_impact,
    )
    return TicketResponse.from_ticket(ticket)


@router.post("/{ticket_id}/status", response_model=TicketResponse)
async def change_ticket_status(
    ticket_id: str,
    payload: TicketStatusChangeRequest,
    service: WorkflowServiceDep,
    actor_id: ActorId,
) -> TicketResponse:
    ticket = await service.transition_status(
        ticket_id,
        actor_id=actor_id,
        new_status=payload.status,
        comment=payload.comment,
    )
    return TicketResponse.from_ticket(ticket)


@router.post("/{ticket_id}/decision", response_model=TicketResponse)
async def decide_ticket(
    ticket_id: str,
    payload: DecisionRequest,
    service: WorkflowServiceDep,
    actor_id: ActorId,
) -> TicketResponse:
    ticket = await service.decide(
        ticket_id,
        admin_id=actor_id,
        decision=payload.decision,
        reason=payload.reason,
    )
    return TicketResponse.from_ticket(ticket)


@router.post("/{ticket_id}/assign", response_model=TicketResponse)
async def assign_ticket(
    ticket_id: str,
    payload: AssignRequest,
    service: WorkflowServiceDep,
    actor_id: ActorId,
) -> TicketResponse:
    ticket = await service.assign(
        ticket_id,
        assigner_id=actor_id,
        assignee_id=payload.assignee_id,
        reason=payload.reason,
    )
    return TicketResponse.from_ticket(ticket)


@router.post("/{ticket_id}/comments", response_model=CommentResponse, status_code=status.HTTP_201_CREATED)
async def add_comment(
    ticket_id: str,
    payload: CommentCreateRequest,
    service: WorkflowServiceDep,
    actor_id: ActorId,
) -> CommentResponse:
    comment = await service.add_comment(
        ticket_id,
        author_id=actor_id,
        content=payload.content,
        is_internal=payload.is_internal,
    )
    return comment_to_response(comment)


@router.get("/{ticket_id}/comments", response_model=list[CommentResponse])
async def list_comments(
    ticket_id: str,
    service: WorkflowServiceDep,
    include_internal: bool = Query(default=False),
) -> list[CommentResponse]:
    comments = await service.list_comments(ticket_id, include_internal=include_internal)
    return [comment_to_response(comment) for comment in comments]


@router.get("/{ticket_id}/audit", response_model=list[AuditEntryResponse])
async def get_ticket_audit(ticket_id: str, service: WorkflowServiceDep) -> list[AuditEntryResponse]:
    entries = await service.get_audit_trail(ticket_id)
    return [audit_to_response(entry) for entry in entries]


@router.get("/{ticket_id}/assignments", response_model=list[AssignmentRecordResponse])
async def get_ticket_assignments(ticket_id: str, service: WorkflowServiceDep) -> list[AssignmentRecordResponse]:
    records = await service.get_assignment_history(ticket_id)
    return [assignment_to_response(record) for record in records]


@router.get("/{ticket_id}/approval", response_model=ApprovalResponse)
async def get_ticket_approval(ticket_id: str, service: WorkflowServiceDep) -> ApprovalResponse:
    record = await service.get_approval(ticket_id)
    if record is None:
        raise ResourceNotFoundError(f"Ticket {ticket_id} has no approval record")
    return approval_to_response(record)
