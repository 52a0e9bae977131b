from __future__ import annotations

from fastapi import APIRouter, Query
from pydantic import BaseModel, ConfigDict, Field

from helpdesk.api.schemas import TicketResponse
from helpdesk.dependencies.actor import ActorId
from helpdesk.dependencies.workflow import WorkflowServiceDep

router = APIRouter(prefix="/assignments", tags=["assignments"])


class SelfAssignRequest(BaseModel):
    notes: str | None = None


class ReassignRequest(BaseModel):
    new_assignee_id: str = Field(..., min_length=1)
    reason: str | None = None


class UnassignRequest(BaseModel):
    reason: str | None = None


class AutoAssignRequest(BaseModel):
    factory_id: str = Field(..., min_length=1)
    max_assignments: int | None = Field(default=None, ge=1)


class AssignmentOutcomeResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    ticket_id: str
    ticket_number: str
    assigned_to: str


class AssignmentFailureResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    ticket_id: str
    ticket_number: str
    attempted_assignee: str
    error_kind: str
    message: str


class AutoAssignResponse(BaseModel):
    assigned: list[AssignmentOutcomeResponse]
    failed: list[AssignmentFailureResponse]


class StaffWorkloadResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    user_id: str
    full_name: str
    factory_id: str | None
    total: int
    high_priority: int
    overdue: int
    in_progress: int


@router.post("/self-assign/{ticket_id}", response_model=TicketResponse)
async def self_assign(
    ticket_id: str,
    service: WorkflowServiceDep,
    actor_id: ActorId,
    payload: SelfAssignRequest | None = None,
) -> TicketResponse:
    ticket = await service.self_assign(
        ticket_id,
        user_id=actor_id,
        notes=payload.notes if payload else None,
    )
    return TicketResponse.from_ticket(ticket)


@router.post("/reassign/{ticket_id}", response_model=TicketResponse)
async def reassign(
    ticket_id: str,
    payload: ReassignRequest,
    service: WorkflowServiceDep,
    actor_id: ActorId,
) -> TicketResponse:
    ticket = await service.reassign(
        ticket_id,
        actor_id=actor_id,
        new_assignee_id=payload.new_assignee_id,
        reason=payload.reason,
    )
    return TicketResponse.from_ticket(ticket)


@router.post("/unassign/{ticket_id}", response_model=TicketResponse)
async def unassign(
    ticket_id: str,
    service: WorkflowServiceDep,
    actor_id: ActorId,
    payload: UnassignRequest | None = None,
) -> TicketResponse:
    ticket = await service.unassign(
        ticket_id,
        actor_id=actor_id,
        reason=payload.reason if payload else None,
    )
    return TicketResponse.from_ticket(ticket)


@router.post("/auto-assign", response_model=AutoAssignResponse)
async def auto_assign(
    payload: AutoAssignRequest,
    service: WorkflowServiceDep,
    actor_id: ActorId,
) -> AutoAssignResponse:
    result = await service.auto_assign(
        payload.factory_id,
        actor_id=actor_id,
        max_assignments=payload.max_assignments,
    )
    return AutoAssignResponse(
        assigned=[AssignmentOutcomeResponse.model_validate(item) for item in result.assigned],
        failed=[AssignmentFailureResponse.model_validate(item) for item in result.failed],
    )


@router.get("/team/workload", response_model=list[StaffWorkloadResponse])
async def team_workload(
    service: WorkflowServiceDep,
    factory_id: str | None = Query(default=None),
) -> list[StaffWorkloadResponse]:
    rows = await service.team_workload(factory_id=factory_id)
    return [StaffWorkloadResponse.model_validate(row) for row in rows]
