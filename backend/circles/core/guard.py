# backend/circles/core/guard.py
"""
Privilege guard.

Nobody may grant, revoke or remove authority equal to or above their own
(unless the same-level feature allows peers), and the last holder of a
circle's top role can never lose it.
"""

from __future__ import annotations

from typing import AbstractSet, FrozenSet, Iterable

from circles.core.access import CircleAccess, level_rank
from circles.core.errors import ForbiddenError, InvalidStateError, LastAdminError
from circles.core.roles import EVERYONE


def has_higher_access(actor_level: int | None, target_level: int | None, allow_same_level: bool) -> bool:
    """
    True if the actor outranks the target (lower number = more privileged).
    An actor with no level outranks nobody; a target with no level ranks last.
    """
    if actor_level is None:
        return False
    target = level_rank(target_level)
    if actor_level < target:
        return True
    return allow_same_level and actor_level == target


def can_manage_level(actor_level: int | None, role_level: int, allow_same_level: bool) -> bool:
    if actor_level is None:
        return False
    if allow_same_level:
        return role_level >= actor_level
    return role_level > actor_level


def guard_role_reassignment(
    existing_roles: Iterable[str],
    requested_roles: Iterable[str],
    circle: CircleAccess,
    actor_level: int | None,
    allow_same_level: bool,
) -> FrozenSet[str]:
    """
    Validate moving a member from ``existing_roles`` to ``requested_roles``.

    Only the difference is checked: every added and every removed role must be
    strictly less privileged than the actor (or equal when ``allow_same_level``).
    One violation rejects the whole request. Returns the approved role set.

    Raises:
      ForbiddenError: a changed role is at or above the actor's level.
      InvalidStateError: an added role is not defined by the circle, or is ``everyone``.
    """
    existing = set(existing_roles)
    requested = set(requested_roles)

    if EVERYONE in requested:
        raise InvalidStateError(f"'{EVERYONE}' cannot be assigned to a member")

    additions = requested - existing
    removals = existing - requested

    for handle in sorted(additions):
        if circle.role(handle) is None:
            raise InvalidStateError(f"Role {handle!r} is not defined in this circle")

    for handle in sorted(additions | removals):
        role = circle.role(handle)
        if role is None:
            # removing a stale handle the circle no longer defines
            continue
        if not can_manage_level(actor_level, role.access_level, allow_same_level):
            verb = "grant" if handle in additions else "revoke"
            raise ForbiddenError(f"You cannot {verb} the role {handle!r}: it is at or above your access level")

    return frozenset(requested)


def check_last_admin(
    protected_role: str | None,
    roles_before: AbstractSet[str],
    roles_after: AbstractSet[str],
    holder_count: int,
) -> None:
    """
    Raise LastAdminError if the change strips ``protected_role`` from its only holder.
    ``roles_after`` is empty for a removal.
    """
    if protected_role is None:
        return
    if protected_role in roles_before and protected_role not in roles_after and holder_count <= 1:
        raise LastAdminError()
