# backend/circles/core/access.py
"""
Access Level Resolver, Feature Rule Resolver and the authorization decision.

Everything here is a pure function of the values passed in: callers fetch the
circle once (crud.circle.find_circle_by_id) and thread the same CircleAccess
through every check of a request.
"""

from __future__ import annotations

import logging
import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import FrozenSet, Iterable, Mapping, Sequence

from circles.core.errors import InvalidStateError
from circles.core.features import (
    ALWAYS_ENABLED_MODULES,
    FEATURES,
    MODULES,
    FeatureKey,
    FeatureRegistry,
    split_feature_key,
)
from circles.core.roles import EVERYONE, RoleDefinition, top_role

logger = logging.getLogger(__name__)

RuleTable = Mapping[str, Mapping[str, Sequence[str]]]


@dataclass(frozen=True)
class CircleAccess:
    """The slice of a circle the engine needs to make decisions."""

    id: uuid.UUID
    roles: tuple[RoleDefinition, ...]
    access_rules: RuleTable = field(default_factory=dict)
    enabled_modules: FrozenSet[str] = frozenset()
    is_public: bool = False
    circle_type: str = "circle"
    owner_user_id: uuid.UUID | None = None
    handle: str | None = None
    name: str | None = None

    def role(self, handle: str) -> RoleDefinition | None:
        for r in self.roles:
            if r.handle == handle:
                return r
        return None

    @property
    def role_handles(self) -> FrozenSet[str]:
        return frozenset(r.handle for r in self.roles)

    @property
    def top_role(self) -> RoleDefinition | None:
        return top_role(self.roles)


@dataclass(frozen=True)
class Membership:
    user_id: uuid.UUID
    circle_id: uuid.UUID
    roles: FrozenSet[str]
    joined_at: datetime | None = None


# ---------------------------------------------------------
# Access Level Resolver
# ---------------------------------------------------------
def access_level_of(roles: Iterable[str], circle: CircleAccess) -> int | None:
    """
    Lowest access level among ``roles`` that the circle defines.
    Handles the circle no longer defines (role deleted after assignment) are skipped.
    """
    roles = tuple(roles)
    levels = {r.handle: r.access_level for r in circle.roles}
    matched = [levels[h] for h in roles if h in levels]
    stale = [h for h in roles if h not in levels]
    if stale:
        logger.debug("Ignoring stale role handles %s in circle %s", sorted(stale), circle.id)
    return min(matched) if matched else None


def resolve_access_level(member: Membership | None, circle: CircleAccess) -> int | None:
    if member is None:
        return None
    return access_level_of(member.roles, circle)


def level_rank(level: int | None) -> float:
    """Comparable rank; no level ranks below every real level."""
    return math.inf if level is None else level


# ---------------------------------------------------------
# Feature Rule Resolver
# ---------------------------------------------------------
def is_module_enabled(circle: CircleAccess, module: str) -> bool:
    return module in ALWAYS_ENABLED_MODULES or module in circle.enabled_modules


def explicit_rule(circle: CircleAccess, feature_key: str) -> Sequence[str] | None:
    module, handle = split_feature_key(feature_key)
    module_rules = (circle.access_rules or {}).get(module)
    if not isinstance(module_rules, Mapping):
        return None
    entry = module_rules.get(handle)
    if entry is None:
        return None
    return list(entry)


def resolve_allowed_roles(
    circle: CircleAccess,
    feature_key: str,
    registry: FeatureRegistry = FEATURES,
) -> FrozenSet[str]:
    """
    Roles permitted to use ``feature_key`` in ``circle``.

    Lookup order: the circle's explicit rule, then the feature's compiled-in
    default, then nothing (deny). Role handles the circle does not define are
    dropped; ``everyone`` is always kept.
    """
    try:
        entry = explicit_rule(circle, feature_key)
    except ValueError:
        logger.warning("Malformed feature key %r; denying", feature_key)
        return frozenset()

    from_rule_table = entry is not None
    if entry is None:
        feature = registry.get(feature_key)
        if feature is None:
            return frozenset()
        entry = list(feature.default_roles)

    defined = circle.role_handles
    allowed = frozenset(h for h in entry if h == EVERYONE or h in defined)
    if from_rule_table and len(allowed) != len(set(entry)):
        logger.warning(
            "Access rule %s in circle %s references undefined roles %s",
            feature_key,
            circle.id,
            sorted(set(entry) - allowed),
        )
    return allowed


# ---------------------------------------------------------
# Authorization Decision Procedure
# ---------------------------------------------------------
def is_authorized_for(
    circle: CircleAccess,
    feature_key: str,
    caller_id: uuid.UUID | None,
    member: Membership | None,
    registry: FeatureRegistry = FEATURES,
) -> bool:
    """
    Decide whether ``caller_id`` may use ``feature_key`` in ``circle``.

    ``member`` is the caller's membership row in this circle (or None).
    Denials are plain ``False``: disabled module, empty rule, anonymous caller
    and non-member all look the same to the caller.
    """
    try:
        module, _ = split_feature_key(feature_key)
    except ValueError:
        return False

    if not is_module_enabled(circle, module):
        return False

    allowed = resolve_allowed_roles(circle, feature_key, registry)
    if EVERYONE in allowed:
        return True

    if caller_id is None:
        return False

    if member is None or member.user_id != caller_id or member.circle_id != circle.id:
        return False

    return bool(member.roles & allowed)


def members_authorized_for(
    circle: CircleAccess,
    feature_key: str,
    members: Iterable[Membership],
    registry: FeatureRegistry = FEATURES,
) -> list[Membership]:
    members = list(members)
    try:
        module, _ = split_feature_key(feature_key)
    except ValueError:
        return []
    if not is_module_enabled(circle, module):
        return []

    allowed = resolve_allowed_roles(circle, feature_key, registry)
    if EVERYONE in allowed:
        return members
    return [m for m in members if m.roles & allowed]


# ---------------------------------------------------------
# Access-rule table validation (settings writes)
# ---------------------------------------------------------
def validate_access_rules(
    rules: RuleTable,
    roles: Sequence[RoleDefinition],
    registry: FeatureRegistry = FEATURES,
) -> dict[str, dict[str, list[str]]]:
    """
    Normalize a nested rule table and reject entries for unknown modules,
    unregistered features or roles the circle does not define.
    """
    defined = {r.handle for r in roles}
    normalized: dict[str, dict[str, list[str]]] = {}

    for module, module_rules in (rules or {}).items():
        if module not in MODULES:
            raise InvalidStateError(f"Unknown module in access rules: {module!r}")
        if not isinstance(module_rules, Mapping):
            raise InvalidStateError(f"Access rules for module {module!r} must be a mapping")

        for handle, allowed in module_rules.items():
            key = f"{module}.{handle}"
            if key not in registry:
                raise InvalidStateError(f"Unknown feature in access rules: {key!r}")
            if isinstance(allowed, str) or not isinstance(allowed, Iterable):
                raise InvalidStateError(f"Access rule {key!r} must be a list of role handles")
            allowed = list(allowed)
            unknown = sorted({h for h in allowed if h != EVERYONE and h not in defined})
            if unknown:
                raise InvalidStateError(f"Access rule {key!r} references undefined roles: {unknown}")
            normalized.setdefault(module, {})[handle] = sorted(set(allowed))

    return normalized


def merge_access_rules(
    circle: CircleAccess,
    submitted: RuleTable,
    registry: FeatureRegistry = FEATURES,
) -> dict[str, dict[str, list[str]]]:
    """
    Overlay submitted rules on the circle's stored table. Rules can be changed
    but not dropped, and the top role must keep ``settings.edit``.
    """
    defined = circle.role_handles
    merged: dict[str, dict[str, list[str]]] = {}
    # stored entries for retired features / deleted roles are dropped, not fatal
    for module, module_rules in (circle.access_rules or {}).items():
        if not isinstance(module_rules, Mapping):
            continue
        for handle, allowed in module_rules.items():
            if f"{module}.{handle}" not in registry:
                continue
            merged.setdefault(module, {})[handle] = [h for h in allowed if h == EVERYONE or h in defined]

    for module, module_rules in validate_access_rules(submitted, circle.roles, registry).items():
        merged.setdefault(module, {}).update(module_rules)

    merged = validate_access_rules(merged, circle.roles, registry)

    top = circle.top_role
    if top is not None:
        candidate = CircleAccess(id=circle.id, roles=circle.roles, access_rules=merged)
        if top.handle not in resolve_allowed_roles(candidate, FeatureKey.SETTINGS_EDIT, registry):
            raise InvalidStateError(f"'{top.handle}' must keep access to edit settings")

    return merged
