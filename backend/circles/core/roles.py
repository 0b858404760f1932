# backend/circles/core/roles.py
"""
Role catalog: the ordered user groups a circle defines.

Lower access level = more privileged. ``everyone`` is synthetic: it can appear
in access rules but is never a stored role and can never be held by a member.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Sequence

from circles.core.errors import InvalidStateError

EVERYONE = "everyone"

ROLE_ADMINS = "admins"
ROLE_MODERATORS = "moderators"
ROLE_MEMBERS = "members"

# Ranking value for callers with no matching role (non-members, anonymous).
MAX_ACCESS_LEVEL = 9999999


@dataclass(frozen=True)
class RoleDefinition:
    handle: str
    display_name: str
    access_level: int
    read_only: bool = False
    description: str | None = None


# Catalog every community / project circle starts with.
DEFAULT_ROLES: tuple[RoleDefinition, ...] = (
    RoleDefinition(ROLE_ADMINS, "Admins", 100, True, "Administrators of the circle"),
    RoleDefinition(ROLE_MODERATORS, "Moderators", 200, True, "Moderators of the circle"),
    RoleDefinition(ROLE_MEMBERS, "Members", 300, True, "Members of the circle"),
)

# User profile circles: same tiers, members are shown as friends.
DEFAULT_USER_ROLES: tuple[RoleDefinition, ...] = (
    RoleDefinition(ROLE_ADMINS, "Admins", 100, True, "Administrators"),
    RoleDefinition(ROLE_MODERATORS, "Moderators", 200, True, "Moderators"),
    RoleDefinition(ROLE_MEMBERS, "Friends", 300, True, "Friends"),
)


def normalize_handle(handle: str | None) -> str:
    return (handle or "").strip().lower()


def default_roles_for(circle_type: str | None) -> tuple[RoleDefinition, ...]:
    if (circle_type or "").strip().lower() == "user":
        return DEFAULT_USER_ROLES
    return DEFAULT_ROLES


def validate_role_catalog(roles: Sequence[RoleDefinition]) -> tuple[RoleDefinition, ...]:
    """
    Checks a catalog before it is written. Returns it as a tuple.

    Raises InvalidStateError for: empty catalog, blank or duplicate handles,
    the reserved ``everyone`` handle, negative or non-integer access levels.
    """
    if not roles:
        raise InvalidStateError("A circle must define at least one role")

    seen: set[str] = set()
    for role in roles:
        handle = role.handle
        if not handle or handle != normalize_handle(handle):
            raise InvalidStateError(f"Invalid role handle: {handle!r}")
        if handle == EVERYONE:
            raise InvalidStateError(f"'{EVERYONE}' is reserved and cannot be defined as a role")
        if handle in seen:
            raise InvalidStateError(f"Duplicate role handle: {handle!r}")
        seen.add(handle)

        level = role.access_level
        if isinstance(level, bool) or not isinstance(level, int) or level < 0:
            raise InvalidStateError(f"Role {handle!r} must have a non-negative integer access level")

    return tuple(roles)


def top_role(roles: Sequence[RoleDefinition]) -> RoleDefinition | None:
    """Most privileged role; ties go to the one listed first."""
    best: RoleDefinition | None = None
    for role in roles:
        if best is None or role.access_level < best.access_level:
            best = role
    return best


def default_member_role(roles: Sequence[RoleDefinition]) -> RoleDefinition | None:
    """Least privileged role, given to members joining without an explicit role."""
    worst: RoleDefinition | None = None
    for role in roles:
        if worst is None or role.access_level > worst.access_level:
            worst = role
    return worst


def merge_role_catalog(
    existing: Sequence[RoleDefinition],
    submitted: Sequence[RoleDefinition],
) -> tuple[RoleDefinition, ...]:
    """
    Apply a submitted catalog on top of the stored one.

    Read-only roles survive even when left out of the submission, and keep
    their stored access level and read-only flag; only their display fields
    may change. Submitted order wins; re-added read-only roles go first.
    """
    if not submitted:
        return tuple(existing)

    stored = {r.handle: r for r in existing}
    merged: list[RoleDefinition] = []
    handles: set[str] = set()

    for role in submitted:
        current = stored.get(role.handle)
        if current is not None and current.read_only:
            role = replace(role, access_level=current.access_level, read_only=True)
        merged.append(role)
        handles.add(role.handle)

    missing_read_only = [r for r in existing if r.read_only and r.handle not in handles]
    return validate_role_catalog(missing_read_only + merged)
