# backend/circles/core/features.py
"""
Static feature catalog.

Each gate-checked action is a ``Feature`` keyed ``"<module>.<handle>"`` with a
compiled-in default set of allowed roles. Circles override those defaults per
feature through their access-rule table (see core/access.py).
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import FrozenSet, Iterable, Iterator, Mapping

from circles.core.roles import EVERYONE, ROLE_ADMINS, ROLE_MEMBERS, ROLE_MODERATORS

_KEY_RE = re.compile(r"^[a-z][a-z0-9_]*\.[a-z][a-z0-9_]*$")

MODULE_FEED = "feed"
MODULE_EVENTS = "events"
MODULE_GOALS = "goals"
MODULE_TASKS = "tasks"
MODULE_CHAT = "chat"
MODULE_SETTINGS = "settings"
MODULE_MEMBERS = "members"
MODULE_MEMBERSHIP = "membership"

MODULES: tuple[str, ...] = (
    MODULE_FEED,
    MODULE_EVENTS,
    MODULE_GOALS,
    MODULE_TASKS,
    MODULE_CHAT,
    MODULE_SETTINGS,
    MODULE_MEMBERS,
    MODULE_MEMBERSHIP,
)

# Administrative modules cannot be switched off, otherwise a circle could lock
# its own admins out of settings.
ALWAYS_ENABLED_MODULES: FrozenSet[str] = frozenset({MODULE_SETTINGS, MODULE_MEMBERS, MODULE_MEMBERSHIP})

_ALL = (ROLE_ADMINS, ROLE_MODERATORS, ROLE_MEMBERS, EVERYONE)
_MEMBERS_UP = (ROLE_ADMINS, ROLE_MODERATORS, ROLE_MEMBERS)
_STAFF = (ROLE_ADMINS, ROLE_MODERATORS)
_ADMINS = (ROLE_ADMINS,)


@dataclass(frozen=True)
class Feature:
    module: str
    handle: str
    name: str
    description: str = ""
    default_roles: FrozenSet[str] = frozenset()

    @property
    def key(self) -> str:
        return f"{self.module}.{self.handle}"


def split_feature_key(key: str) -> tuple[str, str]:
    """``"events.create"`` -> ``("events", "create")``; raises ValueError if malformed."""
    if not isinstance(key, str) or not _KEY_RE.match(key):
        raise ValueError(f"Malformed feature key: {key!r}")
    module, handle = key.split(".", 1)
    return module, handle


class FeatureRegistry:
    """
    Registration table for features, validated as entries are added so that a
    bad catalog fails at import time rather than on a request.
    """

    def __init__(self, features: Iterable[Feature] = ()) -> None:
        self._features: dict[str, Feature] = {}
        for feature in features:
            self.register(feature)

    def register(self, feature: Feature) -> Feature:
        module, _ = split_feature_key(feature.key)
        if module not in MODULES:
            raise ValueError(f"Feature {feature.key!r} belongs to unknown module {module!r}")
        if feature.key in self._features:
            raise ValueError(f"Feature {feature.key!r} is already registered")
        for role in feature.default_roles:
            if not isinstance(role, str) or not role.strip():
                raise ValueError(f"Feature {feature.key!r} has a blank default role")
        self._features[feature.key] = feature
        return feature

    def get(self, key: str) -> Feature | None:
        return self._features.get(key)

    def __contains__(self, key: object) -> bool:
        return key in self._features

    def __iter__(self) -> Iterator[Feature]:
        return iter(self._features.values())

    def __len__(self) -> int:
        return len(self._features)

    def keys(self) -> list[str]:
        return list(self._features)

    def for_module(self, module: str) -> list[Feature]:
        return [f for f in self._features.values() if f.module == module]


def _feature(module: str, handle: str, name: str, description: str, roles: Iterable[str]) -> Feature:
    return Feature(module=module, handle=handle, name=name, description=description, default_roles=frozenset(roles))


FEATURES = FeatureRegistry(
    [
        # settings.*
        _feature(MODULE_SETTINGS, "edit", "Edit Settings", "Edit circle settings", _ADMINS),
        _feature(MODULE_SETTINGS, "edit_about", "Edit About", "Edit the circle's about page", _ADMINS),
        _feature(MODULE_SETTINGS, "edit_user_groups", "Edit User Groups", "Edit the circle's role catalog", _ADMINS),
        _feature(MODULE_SETTINGS, "edit_access_rules", "Edit Access Rules", "Edit the circle's access rules", _ADMINS),
        # members.*
        _feature(MODULE_MEMBERS, "view", "View Members", "See the member list", _ALL),
        _feature(
            MODULE_MEMBERS,
            "edit_same_level_user_groups",
            "Edit Same Level User Groups",
            "Edit user groups of members at the same level",
            _ADMINS,
        ),
        _feature(
            MODULE_MEMBERS,
            "edit_lower_user_groups",
            "Edit Lower Member User Groups",
            "Edit user groups of lower members",
            _STAFF,
        ),
        _feature(
            MODULE_MEMBERS,
            "remove_same_level_members",
            "Remove Same Level Members",
            "Remove same level members from the circle",
            _ADMINS,
        ),
        _feature(
            MODULE_MEMBERS,
            "remove_lower_members",
            "Remove Lower Members",
            "Remove lower members from the circle",
            _STAFF,
        ),
        # membership.*
        _feature(
            MODULE_MEMBERSHIP,
            "approve",
            "Manage Membership Requests",
            "Approve or reject requests to join the circle",
            _STAFF,
        ),
        # feed.*
        _feature(MODULE_FEED, "view", "View", "View the feed", _ALL),
        _feature(MODULE_FEED, "post", "Post", "Create a post in the feed", _MEMBERS_UP),
        _feature(MODULE_FEED, "comment", "Comment", "Comment on posts in the feed", _MEMBERS_UP),
        _feature(MODULE_FEED, "moderate", "Moderate", "Moderate posts in the feed", _STAFF),
        # events.*
        _feature(MODULE_EVENTS, "view", "View Events", "View the circle's events", _ALL),
        _feature(MODULE_EVENTS, "create", "Create Event", "Create an event", _STAFF),
        _feature(MODULE_EVENTS, "moderate", "Moderate Events", "Edit or delete any event", _ADMINS),
        # goals.*
        _feature(MODULE_GOALS, "view", "View Goals", "View the circle's goals", _ALL),
        _feature(MODULE_GOALS, "create", "Create Goal", "Create a goal", _STAFF),
        # tasks.*
        _feature(MODULE_TASKS, "view", "View Tasks", "View the circle's tasks", _MEMBERS_UP),
        _feature(MODULE_TASKS, "create", "Create Task", "Create a task", _MEMBERS_UP),
        # chat.*
        _feature(MODULE_CHAT, "view", "View Chat", "Read the circle's chat rooms", _MEMBERS_UP),
        _feature(MODULE_CHAT, "post", "Post in Chat", "Send messages to the circle's chat rooms", _MEMBERS_UP),
    ]
)


class FeatureKey:
    """Named handles for the keys the engine itself checks."""

    SETTINGS_EDIT = "settings.edit"
    SETTINGS_EDIT_ABOUT = "settings.edit_about"
    SETTINGS_EDIT_USER_GROUPS = "settings.edit_user_groups"
    SETTINGS_EDIT_ACCESS_RULES = "settings.edit_access_rules"
    MEMBERS_VIEW = "members.view"
    MEMBERS_EDIT_SAME_LEVEL = "members.edit_same_level_user_groups"
    MEMBERS_EDIT_LOWER = "members.edit_lower_user_groups"
    MEMBERS_REMOVE_SAME_LEVEL = "members.remove_same_level_members"
    MEMBERS_REMOVE_LOWER = "members.remove_lower_members"
    MEMBERSHIP_APPROVE = "membership.approve"


def default_access_rules(registry: FeatureRegistry = FEATURES) -> Mapping[str, Mapping[str, list[str]]]:
    """Nested ``{module: {feature: [roles]}}`` table seeded from compiled-in defaults."""
    rules: dict[str, dict[str, list[str]]] = {}
    for feature in registry:
        rules.setdefault(feature.module, {})[feature.handle] = sorted(feature.default_roles)
    return rules


# Registry sanity: every key the engine gates on must exist.
for _key in (v for k, v in vars(FeatureKey).items() if k.isupper()):
    if _key not in FEATURES:
        raise RuntimeError(f"Feature catalog is missing {_key!r}")
