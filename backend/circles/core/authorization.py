# backend/circles/core/authorization.py
"""
Async entry points for authorization checks.

Each call fetches the circle and the caller's membership once and hands them
to the pure procedures in core.access.
"""

from __future__ import annotations

import logging
import uuid

from sqlalchemy.ext.asyncio import AsyncSession

from circles.core.access import (
    CircleAccess,
    Membership,
    is_authorized_for,
    members_authorized_for,
    resolve_access_level,
)
from circles.core.features import FEATURES, FeatureRegistry
from circles.crud.circle import find_circle_by_id
from circles.crud.circle_member import find_member, list_members

logger = logging.getLogger(__name__)


async def is_authorized(
    db: AsyncSession,
    caller_id: uuid.UUID | None,
    circle_id: uuid.UUID,
    feature_key: str,
    registry: FeatureRegistry = FEATURES,
) -> bool:
    """
    True iff the caller may use ``feature_key`` in the circle.

    Anonymous callers (``caller_id=None``) and unknown circles are ordinary
    inputs and simply yield False.
    """
    circle = await find_circle_by_id(db, circle_id)
    if circle is None:
        return False
    return await is_authorized_in(db, circle, caller_id, feature_key, registry)


async def is_authorized_in(
    db: AsyncSession,
    circle: CircleAccess,
    caller_id: uuid.UUID | None,
    feature_key: str,
    registry: FeatureRegistry = FEATURES,
) -> bool:
    member = await find_member(db, circle.id, caller_id) if caller_id is not None else None
    allowed = is_authorized_for(circle, feature_key, caller_id, member, registry)
    if not allowed:
        logger.debug("Denied %s for caller=%s in circle=%s", feature_key, caller_id, circle.id)
    return allowed


async def get_effective_access_level(
    db: AsyncSession,
    user_id: uuid.UUID,
    circle_id: uuid.UUID,
) -> int | None:
    circle = await find_circle_by_id(db, circle_id)
    if circle is None:
        return None
    return resolve_access_level(await find_member(db, circle_id, user_id), circle)


async def get_authorized_members(
    db: AsyncSession,
    circle_id: uuid.UUID,
    feature_key: str,
    registry: FeatureRegistry = FEATURES,
) -> list[Membership]:
    """Members of the circle who may use ``feature_key``."""
    circle = await find_circle_by_id(db, circle_id)
    if circle is None:
        return []
    return members_authorized_for(circle, feature_key, await list_members(db, circle_id), registry)
