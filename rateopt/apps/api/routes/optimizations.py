from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from rateopt.apps.api.deps import get_db
from rateopt.apps.api.response import success_response
from rateopt.core.errors import SessionNotFoundError
from rateopt.services.optimization.lifecycle import close_session
from rateopt.services.optimization.planner import start_optimization
from rateopt.services.optimization.results import describe_instance, winning_assignments
from rateopt.services.session_gate import running_state


router = APIRouter(prefix="/v1", tags=["optimizations"])


class StartOptimizationRequest(BaseModel):
    tenant_id: str = Field(min_length=1)
    billing_period_id: int
    portal_type: str = "m2m"
    charge_type: str | None = None
    uses_proration: bool = False
    skip_lower_cost_check: bool = False
    device_count_expected: int | None = Field(default=None, ge=0)


class StartOptimizationResponse(BaseModel):
    session_id: int
    session_guid: str
    instance_id: int
    gate_reason: str


class RunningStateResponse(BaseModel):
    tenant_id: str
    running_session_id: int | None
    instance_status: str | None
    queue_status: str | None
    is_error_terminal: bool


class CloseSessionRequest(BaseModel):
    status: str = "completed"


@router.post("/optimizations", status_code=status.HTTP_202_ACCEPTED)
async def create_optimization(request: Request, body: StartOptimizationRequest) -> dict[str, Any]:
    # Gate rejections surface as 409 OPTIMIZATION_RUNNING via the optimizer error handler.
    started = await start_optimization(
        tenant_id=body.tenant_id,
        billing_period_id=body.billing_period_id,
        portal_type=body.portal_type,
        charge_type=body.charge_type,
        uses_proration=body.uses_proration,
        skip_lower_cost_check=body.skip_lower_cost_check,
        device_count_expected=body.device_count_expected,
    )
    data = StartOptimizationResponse(
        session_id=started.session_id,
        session_guid=started.session_guid,
        instance_id=started.instance_id,
        gate_reason=started.gate_reason,
    )
    return success_response(request=request, data=data)


@router.get("/instances/{instance_id}")
async def get_instance(
    request: Request, instance_id: int, db: AsyncSession = Depends(get_db)
) -> dict[str, Any]:
    return success_response(request=request, data=await describe_instance(db, instance_id))


@router.get("/instances/{instance_id}/assignments")
async def get_instance_assignments(
    request: Request, instance_id: int, db: AsyncSession = Depends(get_db)
) -> dict[str, Any]:
    return success_response(request=request, data={"items": await winning_assignments(db, instance_id)})


@router.get("/tenants/{tenant_id}/running")
async def get_running_state(
    request: Request, tenant_id: str, db: AsyncSession = Depends(get_db)
) -> dict[str, Any]:
    state = await running_state(db, tenant_id)
    data = RunningStateResponse(
        tenant_id=tenant_id,
        running_session_id=state.session_id,
        instance_status=state.instance_status,
        queue_status=state.queue_status,
        is_error_terminal=state.is_error_terminal if state.session_id is not None else False,
    )
    return success_response(request=request, data=data)


@router.post("/sessions/{session_id}/close")
async def close_optimization_session(
    request: Request, session_id: int, body: CloseSessionRequest | None = None
) -> dict[str, Any]:
    closed = await close_session(session_id, status=(body.status if body else "completed"))
    if not closed:
        raise SessionNotFoundError(f"Active session {session_id} not found")
    return success_response(request=request, data={"session_id": session_id, "closed": True})
