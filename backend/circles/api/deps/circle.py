# backend/circles/api/deps/circle.py
from __future__ import annotations

import uuid
from typing import Optional

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from circles.api.deps.auth import get_optional_user
from circles.api.errors import http_error
from circles.core.access import CircleAccess, Membership, is_authorized_for, is_module_enabled
from circles.core.errors import DENIED, NOT_FOUND
from circles.core.features import split_feature_key
from circles.crud.circle import find_circle_by_id
from circles.crud.circle_member import find_member
from circles.db.session import get_db
from circles.models.user import User


async def get_circle(circle_id: uuid.UUID, db: AsyncSession = Depends(get_db)) -> CircleAccess:
    circle = await find_circle_by_id(db, circle_id)
    if circle is None:
        raise http_error(NOT_FOUND, "Circle not found")
    return circle


def require_feature(feature_key: str):
    """
    Dependency factory guarding a route with one feature.

    Unknown circle or disabled module -> 404; otherwise unauthorized -> 403.
    Returns the caller's membership (None for anonymous callers or
    non-members when the feature is open to everyone).
    """
    module, _ = split_feature_key(feature_key)

    async def _checker(
        circle: CircleAccess = Depends(get_circle),
        db: AsyncSession = Depends(get_db),
        user: Optional[User] = Depends(get_optional_user),
    ) -> Optional[Membership]:
        if not is_module_enabled(circle, module):
            raise http_error(NOT_FOUND, "Not found")

        caller_id = user.id if user else None
        member = await find_member(db, circle.id, caller_id) if caller_id else None
        if not is_authorized_for(circle, feature_key, caller_id, member):
            raise http_error(DENIED, f"Not authorized for {feature_key}")
        return member

    return _checker
