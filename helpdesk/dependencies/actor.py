from __future__ import annotations

from typing import Annotated

from fastapi import Depends, Header, HTTPException, Request


async def get_actor_id(
    request: Request,
    x_user_id: Annotated[str | None, Header(alias="X-User-Id")] = None,
) -> str:
    """Return the acting user's id as forwarded by the upstream gateway.

    Identity is not verified here; the gateway in front of the API is
    responsible for authenticating the caller.
    """

    cached = getattr(request.state, "actor_id", None)
    if isinstance(cached, str):
        return cached

    actor_id = (x_user_id or "").strip()
    if not actor_id:
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    request.state.actor_id = actor_id
    return actor_id


ActorId = Annotated[str, Depends(get_actor_id)]
