# backend/circles/core/circle_settings.py
"""
Settings writes for a circle: role catalog, access-rule table, enabled modules.

Each function authorizes the actor, validates the submission against the
stored circle, writes, and commits. Failures raise CircleAccessError
subclasses after rolling back.
"""

from __future__ import annotations

import logging
import uuid
from typing import Iterable, Mapping, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from circles.core.access import CircleAccess, is_authorized_for, merge_access_rules
from circles.core.errors import CircleAccessError, DeniedError, InvalidStateError, NotFoundError
from circles.core.features import ALWAYS_ENABLED_MODULES, MODULES, FeatureKey
from circles.core.roles import RoleDefinition, merge_role_catalog
from circles.crud import circle as circle_crud
from circles.crud.circle_member import find_member

logger = logging.getLogger(__name__)


async def _authorized_circle(
    db: AsyncSession,
    actor_id: uuid.UUID,
    circle_id: uuid.UUID,
    feature_key: str,
) -> CircleAccess:
    circle = await circle_crud.find_circle_by_id(db, circle_id)
    if circle is None:
        raise NotFoundError("Circle not found")
    if not is_authorized_for(circle, feature_key, actor_id, await find_member(db, circle_id, actor_id)):
        raise DeniedError(f"Not authorized for {feature_key}")
    return circle


async def save_role_catalog(
    db: AsyncSession,
    actor_id: uuid.UUID,
    circle_id: uuid.UUID,
    roles: Sequence[RoleDefinition],
) -> CircleAccess:
    """
    Replace the circle's user groups. Read-only groups cannot be dropped or
    re-leveled. Stored access rules are rewritten without references to
    groups that no longer exist; the resulting top group must still be able
    to edit settings.
    """
    try:
        circle = await _authorized_circle(db, actor_id, circle_id, FeatureKey.SETTINGS_EDIT_USER_GROUPS)
        catalog = merge_role_catalog(circle.roles, roles)

        candidate = CircleAccess(id=circle.id, roles=catalog, access_rules=circle.access_rules)
        rules = merge_access_rules(candidate, {})

        await circle_crud.update_circle_roles(db, circle_id, catalog)
        updated = await circle_crud.update_circle_access_rules(db, circle_id, rules)
        await db.commit()
    except CircleAccessError:
        await db.rollback()
        raise

    logger.info("Actor %s saved %d user groups for circle %s", actor_id, len(catalog), circle_id)
    return updated


async def save_access_rules(
    db: AsyncSession,
    actor_id: uuid.UUID,
    circle_id: uuid.UUID,
    rules: Mapping[str, Mapping[str, Sequence[str]]],
) -> CircleAccess:
    try:
        circle = await _authorized_circle(db, actor_id, circle_id, FeatureKey.SETTINGS_EDIT_ACCESS_RULES)
        merged = merge_access_rules(circle, rules)
        updated = await circle_crud.update_circle_access_rules(db, circle_id, merged)
        await db.commit()
    except CircleAccessError:
        await db.rollback()
        raise

    logger.info("Actor %s saved access rules for circle %s", actor_id, circle_id)
    return updated


async def save_enabled_modules(
    db: AsyncSession,
    actor_id: uuid.UUID,
    circle_id: uuid.UUID,
    modules: Iterable[str],
) -> CircleAccess:
    """Set enabled modules; settings, members and membership are always kept."""
    requested = {m.strip().lower() for m in modules}
    unknown = sorted(requested - set(MODULES))

    try:
        if unknown:
            raise InvalidStateError(f"Unknown modules: {unknown}")
        await _authorized_circle(db, actor_id, circle_id, FeatureKey.SETTINGS_EDIT)
        enabled = [m for m in MODULES if m in requested or m in ALWAYS_ENABLED_MODULES]
        updated = await circle_crud.update_circle_enabled_modules(db, circle_id, enabled)
        await db.commit()
    except CircleAccessError:
        await db.rollback()
        raise

    logger.info("Actor %s enabled modules %s for circle %s", actor_id, enabled, circle_id)
    return updated
