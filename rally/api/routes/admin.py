"""
rally.api.routes.admin — Operator endpoints (JWT-protected)
============================================================

Pending-reward queue, manual ledger corrections, expiry sweep and the
audit trail.
"""

from __future__ import annotations

import uuid
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy import Engine

from rally.api.deps import get_current_admin, get_engine, get_services
from rally.constants import SOURCE_ADMIN
from rally.database.models import AdminActionType, PendingStatus
from rally.services import pending_service
from rally.services.audit_service import recent_actions, record_admin_action
from rally.wiring import Services

router = APIRouter(prefix="/admin", tags=["admin"])


class RevokeRequest(BaseModel):
    user_id: str
    action_key: str
    context_id: str


class DeductRequest(BaseModel):
    user_id: str
    amount: int = Field(gt=0)
    reason: str
    entry_id: str | None = None


# ---------------------------------------------------------------------------
# Pending rewards
# ---------------------------------------------------------------------------
@router.get("/pending-rewards")
def list_pending_rewards(
    services: Annotated[Services, Depends(get_services)],
    admin: Annotated[dict, Depends(get_current_admin)],
    status: PendingStatus | None = PendingStatus.OPEN,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    min_retries: int = Query(0, ge=0),
):
    return services.pending.list_pending(status, limit, offset, min_retries)


@router.get("/pending-rewards/stats")
def pending_reward_stats(
    services: Annotated[Services, Depends(get_services)],
    admin: Annotated[dict, Depends(get_current_admin)],
):
    return services.pending.stats()


@router.post("/pending-rewards/reconcile")
def reconcile_pending_rewards(
    services: Annotated[Services, Depends(get_services)],
    admin: Annotated[dict, Depends(get_current_admin)],
    limit: int = Query(50, ge=1, le=500),
):
    return pending_service.reconcile_pending(services.pending, services.engine, limit)


@router.post("/pending-rewards/{record_id}/retry")
def retry_pending_reward(
    record_id: int,
    services: Annotated[Services, Depends(get_services)],
    engine: Annotated[Engine, Depends(get_engine)],
    admin: Annotated[dict, Depends(get_current_admin)],
):
    if services.pending.get(record_id) is None:
        raise HTTPException(404, "Pending reward not found")
    result = pending_service.execute_manual_retry(services.pending, services.engine, record_id)
    record_admin_action(
        engine,
        actor_id=admin.get("sub"),
        action_type=AdminActionType.MANUAL_RETRY.value,
        target_table="pending_rewards",
        target_id=record_id,
        details={"resolved": result["resolved"]},
    )
    return result


# ---------------------------------------------------------------------------
# Ledger corrections
# ---------------------------------------------------------------------------
@router.post("/rewards/revoke")
def revoke_reward(
    body: RevokeRequest,
    services: Annotated[Services, Depends(get_services)],
    admin: Annotated[dict, Depends(get_current_admin)],
):
    result = services.engine.revoke_for_context(body.user_id, body.action_key, body.context_id)
    return {"entry_id": result.entry_id, "deducted": result.deducted, "duplicate": result.duplicate}


@router.post("/rewards/deduct")
def deduct_reward(
    body: DeductRequest,
    services: Annotated[Services, Depends(get_services)],
    admin: Annotated[dict, Depends(get_current_admin)],
):
    entry_id = body.entry_id or f"admin:{uuid.uuid4().hex}"
    result = services.engine.deduct(
        body.user_id, body.amount, body.reason, entry_id,
        source=SOURCE_ADMIN, metadata={"actor_id": admin.get("sub")},
    )
    return {"entry_id": result.entry_id, "deducted": result.deducted, "duplicate": result.duplicate}


@router.post("/ledger/expire")
def run_expiry_sweep(
    services: Annotated[Services, Depends(get_services)],
    admin: Annotated[dict, Depends(get_current_admin)],
    user_id: str | None = None,
):
    report = services.ledger.expire_grants(user_id=user_id)
    return {
        "grants_expired": report.grants_expired,
        "points_expired": report.points_expired,
        "user_ids": report.user_ids,
    }


# ---------------------------------------------------------------------------
# Audit
# ---------------------------------------------------------------------------
@router.get("/audit")
def audit_log(
    engine: Annotated[Engine, Depends(get_engine)],
    admin: Annotated[dict, Depends(get_current_admin)],
    limit: int = Query(50, ge=1, le=500),
):
    return recent_actions(engine, limit)
