"""
rally.api.routes.programs — Program applications & membership review
=====================================================================
"""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from rally.api.deps import get_current_admin, get_current_user, get_services
from rally.database.models import MembershipStatus
from rally.engine.results import AdmissionError, AdmissionResult
from rally.wiring import Services

router = APIRouter(prefix="/programs", tags=["programs"])

_STATUS_BY_ERROR: dict[AdmissionError, int] = {
    AdmissionError.PROGRAM_NOT_FOUND: 404,
    AdmissionError.MEMBERSHIP_NOT_FOUND: 404,
    AdmissionError.NICKNAME_INVALID: 400,
    AdmissionError.RECRUITMENT_CLOSED: 409,
    AdmissionError.DUPLICATE_APPLICATION: 409,
    AdmissionError.NICKNAME_DUPLICATE: 409,
    AdmissionError.FIRST_COME_DEADLINE_REACHED: 409,
    AdmissionError.CAPACITY_REACHED: 409,
}


class ApplicationRequest(BaseModel):
    nickname: str


def _raise_for(result: AdmissionResult) -> None:
    if result.success:
        return
    raise HTTPException(
        _STATUS_BY_ERROR.get(result.error, 400),
        {"error": result.error.value if result.error else None, "message": result.message},
    )


@router.post("/{program_id}/applications", status_code=201)
def apply_to_program(
    program_id: int,
    body: ApplicationRequest,
    services: Annotated[Services, Depends(get_services)],
    user: Annotated[dict, Depends(get_current_user)],
):
    result = services.admission.apply(program_id, user["sub"], body.nickname)
    _raise_for(result)
    return {
        "membership_id": result.membership_id,
        "status": MembershipStatus.PENDING.value,
        "join_reward": result.join_reward.to_dict() if result.join_reward else None,
    }


@router.get("/{program_id}/members")
def list_members(
    program_id: int,
    services: Annotated[Services, Depends(get_services)],
    admin: Annotated[dict, Depends(get_current_admin)],
    status: MembershipStatus | None = None,
):
    return services.admission.list_members(program_id, status)


@router.post("/{program_id}/members/{user_id}/{decision}")
def decide_membership(
    program_id: int,
    user_id: str,
    decision: str,
    services: Annotated[Services, Depends(get_services)],
    admin: Annotated[dict, Depends(get_current_admin)],
):
    transitions = {
        "approve": services.admission.approve,
        "reject": services.admission.reject,
        "reset": services.admission.reset_to_pending,
    }
    transition = transitions.get(decision)
    if transition is None:
        raise HTTPException(404, f"Unknown decision {decision!r}")
    result = transition(program_id, user_id, actor_id=admin.get("sub"))
    _raise_for(result)
    return {"membership_id": result.membership_id, "decision": decision}
