"""
rally.api.routes.broadcasts — Broadcast authoring & dispatch (admin)
=====================================================================
"""

from __future__ import annotations

from datetime import datetime
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy import Engine

from rally.api.deps import get_current_admin, get_engine, get_services
from rally.database.engine import get_session
from rally.database.models import Broadcast, BroadcastStatus, as_utc
from rally.wiring import Services

router = APIRouter(prefix="/broadcasts", tags=["broadcasts"])


class BroadcastCreate(BaseModel):
    title: str
    body: str = ""
    message_type: str = "notice"
    recipient_ids: list[str] = Field(min_length=1)
    reward_amount: int = 0
    reward_expires_at: datetime | None = None
    requires_marketing_consent: bool = True


def _broadcast_to_dict(row: Broadcast) -> dict:
    return {
        "id": row.id,
        "title": row.title,
        "body": row.body,
        "message_type": row.message_type,
        "reward_amount": row.reward_amount,
        "recipient_count": len(row.recipient_ids or []),
        "status": row.status,
        "success_count": row.success_count,
        "failure_count": row.failure_count,
        "failed_ids": row.failed_ids,
        "sent_at": as_utc(row.sent_at).isoformat() if row.sent_at else None,
    }


@router.post("", status_code=201)
def create_broadcast(
    body: BroadcastCreate,
    engine: Annotated[Engine, Depends(get_engine)],
    admin: Annotated[dict, Depends(get_current_admin)],
):
    with get_session(engine) as session:
        row = Broadcast(
            title=body.title,
            body=body.body,
            message_type=body.message_type,
            recipient_ids=list(dict.fromkeys(body.recipient_ids)),
            reward_amount=body.reward_amount,
            reward_expires_at=body.reward_expires_at,
            requires_marketing_consent=body.requires_marketing_consent,
            status=BroadcastStatus.PENDING.value,
            created_by=admin.get("sub"),
        )
        session.add(row)
        session.flush()
        return _broadcast_to_dict(row)


@router.get("/{broadcast_id}")
def get_broadcast(
    broadcast_id: int,
    engine: Annotated[Engine, Depends(get_engine)],
    admin: Annotated[dict, Depends(get_current_admin)],
):
    with get_session(engine) as session:
        row = session.get(Broadcast, broadcast_id)
        if row is None:
            raise HTTPException(404, "Broadcast not found")
        return _broadcast_to_dict(row)


@router.post("/{broadcast_id}/send")
async def send_broadcast(
    broadcast_id: int,
    services: Annotated[Services, Depends(get_services)],
    admin: Annotated[dict, Depends(get_current_admin)],
):
    report = await services.fanout.run_broadcast_record(broadcast_id)
    if report is None:
        raise HTTPException(409, "Broadcast is finished or already sending")
    return report.to_dict()
