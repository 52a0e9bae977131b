from fastapi import APIRouter, Request

router = APIRouter(prefix="/ping", tags=["health"])


@router.get("", summary="Public health probe")
async def ping(request: Request) -> dict[str, str]:
    ready = getattr(request.app.state, "workflow_service", None) is not None
    return {"status": "ok", "workflow": "ready" if ready else "unavailable"}
