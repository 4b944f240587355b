"""
rally.api.routes.notifications — Inbox and device-token endpoints
==================================================================
"""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from rally.api.deps import get_current_user, get_services
from rally.wiring import Services

router = APIRouter(tags=["notifications"])


class TokenRequest(BaseModel):
    token: str = Field(min_length=1, max_length=512)


# ---------------------------------------------------------------------------
# Inbox
# ---------------------------------------------------------------------------
@router.get("/notifications")
def list_notifications(
    services: Annotated[Services, Depends(get_services)],
    user: Annotated[dict, Depends(get_current_user)],
    page: int = Query(0, ge=0),
    size: int = Query(20, ge=1, le=100),
    unread_only: bool = False,
):
    return services.notifications.list_for_user(
        user["sub"], page=page, size=size, unread_only=unread_only
    )


@router.post("/notifications/read-all")
def mark_all_read(
    services: Annotated[Services, Depends(get_services)],
    user: Annotated[dict, Depends(get_current_user)],
):
    return {"updated_count": services.notifications.mark_all_as_read(user["sub"])}


@router.post("/notifications/{notification_id}/read")
def mark_read(
    notification_id: int,
    services: Annotated[Services, Depends(get_services)],
    user: Annotated[dict, Depends(get_current_user)],
):
    updated = services.notifications.mark_as_read(user["sub"], notification_id)
    if updated is None:
        raise HTTPException(404, "Notification not found")
    return {"id": notification_id, "updated": updated}


# ---------------------------------------------------------------------------
# Device tokens
# ---------------------------------------------------------------------------
@router.get("/devices/tokens")
def list_tokens(
    services: Annotated[Services, Depends(get_services)],
    user: Annotated[dict, Depends(get_current_user)],
):
    return {"tokens": services.delivery.list_tokens(user["sub"])}


@router.post("/devices/tokens")
def register_token(
    body: TokenRequest,
    services: Annotated[Services, Depends(get_services)],
    user: Annotated[dict, Depends(get_current_user)],
):
    try:
        saved = services.delivery.register_token(user["sub"], body.token)
    except ValueError as exc:
        raise HTTPException(400, str(exc))
    return JSONResponse(status_code=201 if saved["created"] else 200, content=saved)


@router.delete("/devices/tokens/{token}")
def delete_token(
    token: str,
    services: Annotated[Services, Depends(get_services)],
    user: Annotated[dict, Depends(get_current_user)],
):
    if not services.delivery.delete_token(user["sub"], token):
        raise HTTPException(404, "Token not found")
    return {"deleted": True}
