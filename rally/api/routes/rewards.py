"""
rally.api.routes.rewards — Reward endpoints for signed-in users
================================================================
"""

from __future__ import annotations

from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from rally.api.deps import get_current_user, get_optional_user, get_services
from rally.engine.policy import PostContext
from rally.engine.results import GrantOutcome, OutcomeReason
from rally.services.ledger import HISTORY_KINDS
from rally.wiring import Services

router = APIRouter(prefix="/rewards", tags=["rewards"])

_STATUS_BY_REASON: dict[OutcomeReason | None, int] = {
    None: 200,
    OutcomeReason.PENDING: 202,
    OutcomeReason.DAILY_LIMIT: 409,
    OutcomeReason.ERROR: 400,
    OutcomeReason.NO_AUTH: 401,
}


# Keys only the server may set; dropped from client metadata.
_SERVER_KEYS = frozenset({"occurred_at"})


class ActionRewardRequest(BaseModel):
    action_key: str
    metadata: dict[str, Any] = Field(default_factory=dict)

    def client_metadata(self) -> dict[str, Any]:
        return {k: v for k, v in self.metadata.items() if k not in _SERVER_KEYS}


class PostRewardRequest(BaseModel):
    post_id: str
    post_type: str
    content: str | None = None
    media: list[str] = Field(default_factory=list)
    community_id: str | None = None


def _respond(outcome: GrantOutcome) -> JSONResponse:
    return JSONResponse(
        status_code=_STATUS_BY_REASON.get(outcome.reason, 200),
        content=outcome.to_dict(),
    )


@router.post("/actions")
def grant_action_reward(
    body: ActionRewardRequest,
    services: Annotated[Services, Depends(get_services)],
    user: Annotated[dict | None, Depends(get_optional_user)],
):
    user_id = user.get("sub") if user else None
    outcome = services.rewards.grant_reward(user_id, body.action_key, body.client_metadata())
    return _respond(outcome)


@router.post("/posts")
def grant_post_reward(
    body: PostRewardRequest,
    services: Annotated[Services, Depends(get_services)],
    user: Annotated[dict | None, Depends(get_optional_user)],
):
    user_id = user.get("sub") if user else None
    post = PostContext(
        post_id=body.post_id,
        post_type=body.post_type,
        content=body.content,
        media=tuple(body.media),
        community_id=body.community_id,
    )
    return _respond(services.rewards.grant_post_reward(user_id, post))


@router.get("/balance")
def get_balance(
    services: Annotated[Services, Depends(get_services)],
    user: Annotated[dict, Depends(get_current_user)],
):
    user_id = user["sub"]
    return {"user_id": user_id, "balance": services.ledger.active_balance(user_id)}


@router.get("/history")
def get_history(
    services: Annotated[Services, Depends(get_services)],
    user: Annotated[dict, Depends(get_current_user)],
    page: int = Query(0, ge=0),
    size: int = Query(20, ge=1, le=100),
    kind: str = Query("all"),
):
    if kind not in HISTORY_KINDS:
        raise HTTPException(400, f"kind must be one of {', '.join(HISTORY_KINDS)}")
    result = services.ledger.history(user["sub"], page=page, size=size, kind=kind)
    return {
        "entries": result.entries,
        "total": result.total,
        "page": result.page,
        "size": result.size,
        "has_more": result.has_more,
        "available": result.available,
        "expiring_this_month": result.expiring_this_month,
    }
