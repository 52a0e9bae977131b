from __future__ import annotations

import logging

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from helpdesk.workflow.errors import WorkflowError

logger = logging.getLogger(__name__)

STATUS_BY_KIND: dict[str, int] = {
    "validation": status.HTTP_400_BAD_REQUEST,
    "not_found": status.HTTP_404_NOT_FOUND,
    "invalid_state": status.HTTP_409_CONFLICT,
    "invalid_transition": status.HTTP_409_CONFLICT,
    "capacity": status.HTTP_409_CONFLICT,
    "concurrency_conflict": status.HTTP_409_CONFLICT,
    "storage": status.HTTP_500_INTERNAL_SERVER_ERROR,
}


def error_response(*, status_code: int, kind: str, detail: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"kind": kind, "detail": detail})


async def workflow_error_handler(request: Request, exc: WorkflowError) -> JSONResponse:
    status_code = STATUS_BY_KIND.get(exc.kind, status.HTTP_500_INTERNAL_SERVER_ERROR)
    if status_code >= status.HTTP_500_INTERNAL_SERVER_ERROR:
        logger.error(
            "Request failed with %s",
            exc.kind,
            extra={"path": request.url.path, "method": request.method},
        )
        return error_response(status_code=status_code, kind=exc.kind, detail="Internal storage error")
    return error_response(status_code=status_code, kind=exc.kind, detail=str(exc))


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(WorkflowError, workflow_error_handler)
