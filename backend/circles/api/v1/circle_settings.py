# backend/circles/api/v1/circle_settings.py
from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from circles.api.deps.auth import get_current_user
from circles.api.v1.circles import circle_out
from circles.core import circle_settings
from circles.db.session import get_db
from circles.models.user import User
from circles.schemas.circle import CircleOut
from circles.schemas.settings import AccessRulesUpdate, ModulesUpdate, RoleCatalogUpdate

router = APIRouter(prefix="/circles/{circle_id}/settings", tags=["settings"])


@router.put("/user-groups", response_model=CircleOut)
async def save_user_groups(
    circle_id: uuid.UUID,
    payload: RoleCatalogUpdate,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
):
    roles = [r.to_definition() for r in payload.roles]
    return circle_out(await circle_settings.save_role_catalog(db, user.id, circle_id, roles))


@router.put("/access-rules", response_model=CircleOut)
async def save_access_rules(
    circle_id: uuid.UUID,
    payload: AccessRulesUpdate,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return circle_out(await circle_settings.save_access_rules(db, user.id, circle_id, payload.rules))


@router.put("/modules", response_model=CircleOut)
async def save_modules(
    circle_id: uuid.UUID,
    payload: ModulesUpdate,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return circle_out(await circle_settings.save_enabled_modules(db, user.id, circle_id, payload.modules))
