from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Query
from pydantic import BaseModel, ConfigDict, Field

from helpdesk.api.schemas import ApprovalResponse, TicketResponse, approval_to_response
from helpdesk.dependencies.actor import ActorId
from helpdesk.dependencies.workflow import WorkflowServiceDep
from helpdesk.workflow import ApprovalDecision, DecidedApproval, TicketPriority, TicketStatus

router = APIRouter(prefix="/admin", tags=["admin"])


class BulkDecisionRequest(BaseModel):
    ticket_ids: list[str] = Field(..., min_length=1)
    decision: ApprovalDecision
    reason: str | None = Field(default=None, max_length=1000)


class DecisionFailureResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    ticket_id: str
    error_kind: str
    message: str


class BulkDecisionResponse(BaseModel):
    processed: list[TicketResponse]
    failed: list[DecisionFailureResponse]


class DecidedApprovalResponse(BaseModel):
    approval: ApprovalResponse
    ticket_number: str
    ticket_title: str
    ticket_status: TicketStatus
    ticket_priority: TicketPriority

    @classmethod
    def from_entry(cls, entry: DecidedApproval) -> "DecidedApprovalResponse":
        return cls(
            approval=approval_to_response(entry.approval),
            ticket_number=entry.ticket_number,
            ticket_title=entry.ticket_title,
            ticket_status=entry.ticket_status,
            ticket_priority=entry.ticket_priority,
        )


class PaginationResponse(BaseModel):
    page: int
    limit: int
    total: int
    pages: int


class ApprovalHistoryResponse(BaseModel):
    approvals: list[DecidedApprovalResponse]
    pagination: PaginationResponse


@router.post("/tickets/bulk-decision", response_model=BulkDecisionResponse)
async def bulk_decision(
    payload: BulkDecisionRequest,
    service: WorkflowServiceDep,
    actor_id: ActorId,
) -> BulkDecisionResponse:
    result = await service.bulk_decide(
        payload.ticket_ids,
        admin_id=actor_id,
        decision=payload.decision,
        reason=payload.reason,
    )
    return BulkDecisionResponse(
        processed=[TicketResponse.from_ticket(ticket) for ticket in result.processed],
        failed=[DecisionFailureResponse.model_validate(failure) for failure in result.failed],
    )


@router.get("/approvals/history", response_model=ApprovalHistoryResponse, summary="List decided approvals")
async def approval_history(
    service: WorkflowServiceDep,
    admin_id: str | None = Query(default=None),
    decision: ApprovalDecision | None = Query(default=None),
    date_from: datetime | None = Query(default=None),
    date_to: datetime | None = Query(default=None),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
) -> ApprovalHistoryResponse:
    history = await service.approval_history(
        admin_id=admin_id,
        decision=decision,
        decided_from=date_from,
        decided_to=date_to,
        page=page,
        limit=limit,
    )
    return ApprovalHistoryResponse(
        approvals=[DecidedApprovalResponse.from_entry(entry) for entry in history.items],
        pagination=PaginationResponse(
            page=history.page,
            limit=history.limit,
            total=history.total,
            pages=history.pages,
        ),
    )
