# backend/circles/api/v1/circles.py
from __future__ import annotations

from typing import List, Optional, Sequence

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from circles.api.deps.auth import get_current_user, get_optional_user
from circles.api.deps.circle import get_circle, require_feature
from circles.api.errors import http_error
from circles.core.access import CircleAccess, Membership, resolve_access_level
from circles.core.authorization import get_effective_access_level, is_authorized_in
from circles.core.errors import NOT_FOUND
from circles.core.features import FeatureKey
from circles.core.membership import MembershipState, membership_state
from circles.crud.circle import create_circle, find_circle_by_handle
from circles.crud.circle_member import find_member, list_members
from circles.db.session import get_db
from circles.models.user import User
from circles.schemas.circle import (
    AccessLevelOut,
    AuthorizationOut,
    CircleCreate,
    CircleOut,
    MemberOut,
    RoleOut,
)

router = APIRouter(prefix="/circles", tags=["circles"])


# ---------------------------------------------------------
# Helpers
# ---------------------------------------------------------
def circle_out(
    circle: CircleAccess,
    state: Optional[str] = None,
    my_roles: Sequence[str] = (),
) -> CircleOut:
    return CircleOut(
        id=circle.id,
        handle=circle.handle,
        name=circle.name,
        circle_type=circle.circle_type,
        is_public=circle.is_public,
        owner_user_id=circle.owner_user_id,
        roles=[RoleOut.model_validate(r) for r in circle.roles],
        enabled_modules=sorted(circle.enabled_modules),
        access_rules={m: {f: list(r) for f, r in rules.items()} for m, rules in circle.access_rules.items()},
        membership_state=state,
        my_roles=sorted(my_roles),
    )


def member_out(member: Membership, circle: CircleAccess) -> MemberOut:
    return MemberOut(
        user_id=member.user_id,
        roles=sorted(member.roles),
        access_level=resolve_access_level(member, circle),
        joined_at=member.joined_at,
    )


# ---------------------------------------------------------
# Circles
# ---------------------------------------------------------
@router.post("", response_model=CircleOut, status_code=status.HTTP_201_CREATED)
async def create(
    payload: CircleCreate,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
):
    circle = await create_circle(
        db,
        name=payload.name,
        handle=payload.handle,
        creator_id=user.id,
        circle_type=payload.circle_type,
        is_public=payload.is_public,
        enabled_modules=payload.enabled_modules,
    )
    await db.commit()
    return circle_out(circle, MembershipState.APPROVED.value, circle.role_handles)


async def _caller_view(db: AsyncSession, circle: CircleAccess, user: Optional[User]) -> CircleOut:
    if user is None:
        return circle_out(circle)

    state = await membership_state(db, user.id, circle.id)
    member = await find_member(db, circle.id, user.id)
    return circle_out(circle, state.value, member.roles if member else ())


@router.get("/by-handle/{handle}", response_model=CircleOut)
async def get_by_handle(
    handle: str,
    db: AsyncSession = Depends(get_db),
    user: Optional[User] = Depends(get_optional_user),
):
    circle = await find_circle_by_handle(db, handle)
    if circle is None:
        raise http_error(NOT_FOUND, "Circle not found")
    return await _caller_view(db, circle, user)


@router.get("/{circle_id}", response_model=CircleOut)
async def get_one(
    circle: CircleAccess = Depends(get_circle),
    db: AsyncSession = Depends(get_db),
    user: Optional[User] = Depends(get_optional_user),
):
    return await _caller_view(db, circle, user)


@router.get("/{circle_id}/authorize/{feature_key}", response_model=AuthorizationOut)
async def authorize(
    feature_key: str,
    circle: CircleAccess = Depends(get_circle),
    db: AsyncSession = Depends(get_db),
    user: Optional[User] = Depends(get_optional_user),
):
    """Anonymous callers are allowed; they are simply authorized less often."""
    allowed = await is_authorized_in(db, circle, user.id if user else None, feature_key)
    return AuthorizationOut(circle_id=circle.id, feature=feature_key, authorized=allowed)


@router.get("/{circle_id}/access-level", response_model=AccessLevelOut)
async def access_level(
    circle: CircleAccess = Depends(get_circle),
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
):
    level = await get_effective_access_level(db, user.id, circle.id)
    return AccessLevelOut(circle_id=circle.id, user_id=user.id, access_level=level)


@router.get("/{circle_id}/members", response_model=List[MemberOut])
async def members(
    circle: CircleAccess = Depends(get_circle),
    db: AsyncSession = Depends(get_db),
    _: Optional[Membership] = Depends(require_feature(FeatureKey.MEMBERS_VIEW)),
):
    return [member_out(m, circle) for m in await list_members(db, circle.id)]
