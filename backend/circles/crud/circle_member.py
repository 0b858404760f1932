# circles/crud/circle_member.py
from __future__ import annotations

import uuid
from typing import Iterable, Mapping

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from circles.core.access import Membership
from circles.core.errors import ConflictError, NotFoundError
from circles.core.guard import check_last_admin
from circles.crud.circle import lock_circle
from circles.models.circle_member import CircleMember, CircleMemberRole


def to_membership(member: CircleMember) -> Membership:
    return Membership(
        user_id=member.user_id,
        circle_id=member.circle_id,
        roles=member.role_handles,
        joined_at=member.joined_at,
    )


async def _load_member(
    db: AsyncSession,
    circle_id: uuid.UUID,
    user_id: uuid.UUID,
    *,
    for_update: bool = False,
) -> CircleMember | None:
    stmt = (
        select(CircleMember)
        .where(CircleMember.circle_id == circle_id)
        .where(CircleMember.user_id == user_id)
        .execution_options(populate_existing=True)
    )
    if for_update:
        stmt = stmt.with_for_update()
    return (await db.execute(stmt)).scalar_one_or_none()


async def find_member(db: AsyncSession, circle_id: uuid.UUID, user_id: uuid.UUID) -> Membership | None:
    member = await _load_member(db, circle_id, user_id)
    return to_membership(member) if member is not None else None


async def list_members(db: AsyncSession, circle_id: uuid.UUID) -> list[Membership]:
    stmt = (
        select(CircleMember)
        .where(CircleMember.circle_id == circle_id)
        .order_by(CircleMember.joined_at.asc())
    )
    return [to_membership(m) for m in (await db.execute(stmt)).scalars().all()]


async def count_members(db: AsyncSession, circle_id: uuid.UUID) -> int:
    stmt = select(func.count(CircleMember.id)).where(CircleMember.circle_id == circle_id)
    return int((await db.execute(stmt)).scalar() or 0)


async def count_members_with_role(db: AsyncSession, circle_id: uuid.UUID, role_handle: str) -> int:
    stmt = (
        select(func.count(CircleMemberRole.member_id))
        .where(CircleMemberRole.circle_id == circle_id)
        .where(CircleMemberRole.role_handle == role_handle)
    )
    return int((await db.execute(stmt)).scalar() or 0)


async def add_member(
    db: AsyncSession,
    circle_id: uuid.UUID,
    user_id: uuid.UUID,
    roles: Iterable[str],
    answers: Mapping[str, str] | None = None,
) -> Membership:
    """
    Insert a member row. The (circle, user) unique constraint is the arbiter:
    losing that race rolls the transaction back and raises ConflictError.
    """
    member = CircleMember(
        circle_id=circle_id,
        user_id=user_id,
        questionnaire_answers=dict(answers) if answers else None,
        roles=[CircleMemberRole(circle_id=circle_id, role_handle=h) for h in sorted(set(roles))],
    )
    db.add(member)
    try:
        await db.flush()
    except IntegrityError:
        await db.rollback()
        raise ConflictError("User is already a member of this circle")
    return to_membership(member)


async def upsert_member_roles(
    db: AsyncSession,
    circle_id: uuid.UUID,
    user_id: uuid.UUID,
    roles: Iterable[str],
    expected_prior_roles: Iterable[str] | None,
    protected_role: str | None = None,
) -> Membership:
    """
    Conditional write of a member's role set.

    Under the circle lock: the stored roles must still equal
    ``expected_prior_roles`` (else ConflictError), and the write must not take
    ``protected_role`` away from its only holder (else LastAdminError).
    With ``expected_prior_roles=None`` a missing member is created.
    """
    await lock_circle(db, circle_id)
    member = await _load_member(db, circle_id, user_id, for_update=True)
    roles = frozenset(roles)

    if member is None:
        if expected_prior_roles is not None:
            raise ConflictError("Member was removed concurrently")
        return await add_member(db, circle_id, user_id, roles)

    current = member.role_handles
    if expected_prior_roles is not None and current != frozenset(expected_prior_roles):
        raise ConflictError("Member roles changed concurrently")

    if protected_role is not None and protected_role in current and protected_role not in roles:
        holders = await count_members_with_role(db, circle_id, protected_role)
        check_last_admin(protected_role, current, roles, holders)

    for row in list(member.roles):
        if row.role_handle not in roles:
            member.roles.remove(row)
    for handle in sorted(roles - current):
        member.roles.append(CircleMemberRole(circle_id=circle_id, role_handle=handle))

    await db.flush()
    return to_membership(member)


async def delete_member(
    db: AsyncSession,
    circle_id: uuid.UUID,
    user_id: uuid.UUID,
    expected_roles: Iterable[str] | None,
    protected_role: str | None = None,
) -> None:
    """Conditional delete with the same lock / compare / last-holder rules as upsert_member_roles."""
    await lock_circle(db, circle_id)
    member = await _load_member(db, circle_id, user_id, for_update=True)
    if member is None:
        raise NotFoundError("User is not a member of this circle")

    current = member.role_handles
    if expected_roles is not None and current != frozenset(expected_roles):
        raise ConflictError("Member roles changed concurrently")

    if protected_role is not None and protected_role in current:
        holders = await count_members_with_role(db, circle_id, protected_role)
        check_last_admin(protected_role, current, frozenset(), holders)

    await db.delete(member)
    await db.flush()
