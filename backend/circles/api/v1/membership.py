# backend/circles/api/v1/membership.py
from __future__ import annotations

import uuid
from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from circles.api.deps.auth import get_current_user
from circles.api.errors import raise_for_result
from circles.core import membership as lifecycle
from circles.core.membership import ActionResult
from circles.db.session import get_db
from circles.models.user import User
from circles.schemas.membership import (
    MemberRolesUpdate,
    MembershipRequestIn,
    MembershipRequestList,
    MembershipRequestOut,
    MembershipResultOut,
)

router = APIRouter(prefix="/circles/{circle_id}", tags=["membership"])


def _result_out(result: ActionResult) -> MembershipResultOut:
    raise_for_result(result)
    return MembershipResultOut(
        success=result.success,
        state=result.state.value if result.state else None,
        reason=result.reason,
        roles=sorted(result.membership.roles) if result.membership else None,
    )


# ---------------------------------------------------------
# Caller's own membership
# ---------------------------------------------------------
@router.post("/membership/request", response_model=MembershipResultOut)
async def request_membership(
    circle_id: uuid.UUID,
    payload: Optional[MembershipRequestIn] = None,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
):
    answers = payload.answers if payload else None
    return _result_out(await lifecycle.request_membership(db, user.id, circle_id, answers))


@router.post("/membership/cancel", response_model=MembershipResultOut)
async def cancel_request(
    circle_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return _result_out(await lifecycle.cancel_request(db, user.id, circle_id))


@router.post("/membership/leave", response_model=MembershipResultOut)
async def leave(
    circle_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return _result_out(await lifecycle.leave_circle(db, user.id, circle_id))


# ---------------------------------------------------------
# Reviewing requests
# ---------------------------------------------------------
@router.get("/membership/requests", response_model=MembershipRequestList)
async def list_requests(
    circle_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
):
    pending, rejected = await lifecycle.list_requests(db, user.id, circle_id)
    return MembershipRequestList(
        pending=[MembershipRequestOut.model_validate(r) for r in pending],
        rejected=[MembershipRequestOut.model_validate(r) for r in rejected],
    )


@router.post("/membership/requests/{user_id}/approve", response_model=MembershipResultOut)
async def approve(
    circle_id: uuid.UUID,
    user_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return _result_out(await lifecycle.approve(db, user.id, user_id, circle_id))


@router.post("/membership/requests/{user_id}/reject", response_model=MembershipResultOut)
async def reject(
    circle_id: uuid.UUID,
    user_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return _result_out(await lifecycle.reject(db, user.id, user_id, circle_id))


# ---------------------------------------------------------
# Managing members
# ---------------------------------------------------------
@router.delete("/members/{user_id}", response_model=MembershipResultOut)
async def remove_member(
    circle_id: uuid.UUID,
    user_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return _result_out(await lifecycle.remove_member(db, user.id, user_id, circle_id))


@router.put("/members/{user_id}/roles", response_model=MembershipResultOut)
async def update_member_roles(
    circle_id: uuid.UUID,
    user_id: uuid.UUID,
    payload: MemberRolesUpdate,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return _result_out(await lifecycle.update_member_roles(db, user.id, user_id, circle_id, payload.roles))
