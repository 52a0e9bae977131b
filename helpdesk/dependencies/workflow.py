from __future__ import annotations

from typing import Annotated

from fastapi import Depends, HTTPException, Request

from helpdesk.workflow import TicketWorkflowService


async def get_workflow_service(request: Request) -> TicketWorkflowService:
    service = getattr(request.app.state, "workflow_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Ticket workflow service is not configured")
    return service


WorkflowServiceDep = Annotated[TicketWorkflowService, Depends(get_workflow_service)]
