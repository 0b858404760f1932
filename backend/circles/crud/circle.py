# circles/crud/circle.py
from __future__ import annotations

import uuid
from typing import Mapping, Sequence

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from circles.core.access import CircleAccess
from circles.core.errors import ConflictError, NotFoundError
from circles.core.features import MODULES
from circles.core.roles import RoleDefinition, default_roles_for, validate_role_catalog
from circles.models.circle import Circle
from circles.models.circle_member import CircleMember, CircleMemberRole
from circles.models.circle_role import CircleRole


def to_role_definition(role: CircleRole) -> RoleDefinition:
    return RoleDefinition(
        handle=role.handle,
        display_name=role.display_name,
        access_level=role.access_level,
        read_only=role.read_only,
        description=role.description,
    )


def to_circle_access(circle: Circle) -> CircleAccess:
    return CircleAccess(
        id=circle.id,
        roles=tuple(to_role_definition(r) for r in circle.roles),
        access_rules=dict(circle.access_rules or {}),
        enabled_modules=frozenset(circle.enabled_modules or []),
        is_public=bool(circle.is_public),
        circle_type=circle.circle_type,
        owner_user_id=circle.owner_user_id,
        handle=circle.handle,
        name=circle.name,
    )


async def _load_circle(db: AsyncSession, circle_id: uuid.UUID) -> Circle | None:
    # populate_existing: a retry in the same session must see fresh rows
    return await db.get(Circle, circle_id, populate_existing=True)


async def find_circle_by_id(db: AsyncSession, circle_id: uuid.UUID) -> CircleAccess | None:
    circle = await _load_circle(db, circle_id)
    return to_circle_access(circle) if circle is not None else None


async def find_circle_by_handle(db: AsyncSession, handle: str) -> CircleAccess | None:
    stmt = select(Circle).where(Circle.handle == handle.strip().lower())
    circle = (await db.execute(stmt)).scalar_one_or_none()
    return to_circle_access(circle) if circle is not None else None


async def lock_circle(db: AsyncSession, circle_id: uuid.UUID) -> None:
    """
    Row-lock the circle (SELECT ... FOR UPDATE) for the rest of the transaction.

    Every guarded member mutation takes this lock first, so "count holders of
    the top role, then write" cannot interleave with another writer.
    SQLite ignores FOR UPDATE, so there a no-op UPDATE takes the database
    write lock instead.
    """
    if db.get_bind().dialect.name == "sqlite":
        stmt = (
            update(Circle)
            .where(Circle.id == circle_id)
            .values(handle=Circle.handle)
            .execution_options(synchronize_session=False)
        )
        if not (await db.execute(stmt)).rowcount:
            raise NotFoundError("Circle not found")
        return

    stmt = select(Circle.id).where(Circle.id == circle_id).with_for_update()
    if (await db.execute(stmt)).scalar_one_or_none() is None:
        raise NotFoundError("Circle not found")


def _role_rows(roles: Sequence[RoleDefinition]) -> list[CircleRole]:
    return [
        CircleRole(
            handle=r.handle,
            display_name=r.display_name,
            description=r.description,
            access_level=r.access_level,
            read_only=r.read_only,
            position=i,
        )
        for i, r in enumerate(roles)
    ]


async def create_circle(
    db: AsyncSession,
    *,
    name: str,
    handle: str,
    creator_id: uuid.UUID,
    circle_type: str = "circle",
    is_public: bool = False,
    enabled_modules: Sequence[str] | None = None,
) -> CircleAccess:
    """
    Create a circle with the default role catalog; the creator joins holding
    every default role. User profile circles record the creator as owner.
    """
    roles = validate_role_catalog(default_roles_for(circle_type))
    modules = list(enabled_modules) if enabled_modules is not None else list(MODULES)

    circle = Circle(
        name=name.strip(),
        handle=handle.strip().lower(),
        circle_type=circle_type,
        is_public=is_public,
        owner_user_id=creator_id if circle_type == "user" else None,
        enabled_modules=modules,
        access_rules={},
        roles=_role_rows(roles),
    )
    db.add(circle)
    try:
        await db.flush()
    except IntegrityError:
        await db.rollback()
        raise ConflictError("Circle handle already in use")

    member = CircleMember(
        circle_id=circle.id,
        user_id=creator_id,
        roles=[CircleMemberRole(circle_id=circle.id, role_handle=r.handle) for r in roles],
    )
    db.add(member)
    await db.flush()
    return to_circle_access(circle)


async def update_circle_roles(
    db: AsyncSession,
    circle_id: uuid.UUID,
    roles: Sequence[RoleDefinition],
) -> CircleAccess:
    """Replace the role catalog in place (rows updated by handle, not recreated)."""
    await lock_circle(db, circle_id)
    circle = await _load_circle(db, circle_id)
    if circle is None:
        raise NotFoundError("Circle not found")

    roles = validate_role_catalog(roles)
    stored = {r.handle: r for r in circle.roles}
    keep: list[CircleRole] = []
    for position, role in enumerate(roles):
        row = stored.get(role.handle)
        if row is None:
            row = CircleRole(handle=role.handle)
        row.display_name = role.display_name
        row.description = role.description
        row.access_level = role.access_level
        row.read_only = role.read_only
        row.position = position
        keep.append(row)

    circle.roles = keep
    await db.flush()
    return to_circle_access(circle)


async def update_circle_access_rules(
    db: AsyncSession,
    circle_id: uuid.UUID,
    access_rules: Mapping[str, Mapping[str, Sequence[str]]],
) -> CircleAccess:
    await lock_circle(db, circle_id)
    circle = await _load_circle(db, circle_id)
    if circle is None:
        raise NotFoundError("Circle not found")

    circle.access_rules = {m: {f: list(r) for f, r in rules.items()} for m, rules in access_rules.items()}
    await db.flush()
    return to_circle_access(circle)


async def update_circle_enabled_modules(
    db: AsyncSession,
    circle_id: uuid.UUID,
    modules: Sequence[str],
) -> CircleAccess:
    await lock_circle(db, circle_id)
    circle = await _load_circle(db, circle_id)
    if circle is None:
        raise NotFoundError("Circle not found")

    circle.enabled_modules = list(modules)
    await db.flush()
    return to_circle_access(circle)
