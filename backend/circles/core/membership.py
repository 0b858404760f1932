# backend/circles/core/membership.py
"""
Membership lifecycle.

    NONE -> PENDING -> APPROVED (member row) | REJECTED
    PENDING -> NONE    (cancel; the request row is kept as cancelled)
    REJECTED -> PENDING (a new request)
    APPROVED -> NONE   (leave / guarded removal)

Every operation is one unit of work: it commits on success and rolls back on
failure. Expected failures come back as ``ActionResult(success=False)``;
nothing here raises for a denial. A guarded write that loses a race
(ConflictError, including the last-admin check) is rolled back and retried
``settings.MEMBERSHIP_CONFLICT_RETRIES`` times against fresh data.
"""

from __future__ import annotations

import enum
import logging
import uuid
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterable, Mapping

from sqlalchemy.ext.asyncio import AsyncSession

from circles.core.access import (
    CircleAccess,
    Membership,
    is_authorized_for,
    resolve_access_level,
)
from circles.core.config import settings
from circles.core.errors import (
    CircleAccessError,
    ConflictError,
    DeniedError,
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
)
from circles.core.features import FeatureKey
from circles.core.guard import guard_role_reassignment, has_higher_access
from circles.core.roles import default_member_role
from circles.crud import circle as circle_crud
from circles.crud import circle_member as member_crud
from circles.crud import membership_request as request_crud
from circles.models.membership_request import (
    STATUS_APPROVED,
    STATUS_PENDING,
    STATUS_REJECTED,
    MembershipRequest,
)

logger = logging.getLogger(__name__)


class MembershipState(str, enum.Enum):
    NONE = "none"
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


@dataclass(frozen=True)
class ActionResult:
    success: bool
    state: MembershipState | None = None
    reason: str | None = None
    code: str | None = None
    membership: Membership | None = None

    @classmethod
    def ok(
        cls,
        state: MembershipState,
        reason: str | None = None,
        membership: Membership | None = None,
    ) -> "ActionResult":
        return cls(success=True, state=state, reason=reason, membership=membership)

    @classmethod
    def failed(cls, exc: CircleAccessError) -> "ActionResult":
        return cls(success=False, reason=exc.message, code=exc.code)


Action = Callable[[], Awaitable[ActionResult]]


async def _run(db: AsyncSession, name: str, action: Action, retries: int | None = None) -> ActionResult:
    attempts = 1 + (settings.MEMBERSHIP_CONFLICT_RETRIES if retries is None else retries)

    for attempt in range(1, attempts + 1):
        try:
            result = await action()
            await db.commit()
            return result
        except ConflictError as exc:
            await db.rollback()
            if attempt < attempts:
                logger.info("%s: %s; retrying (attempt %d of %d)", name, exc.message, attempt + 1, attempts)
                continue
            logger.warning("%s failed after %d attempt(s): %s", name, attempts, exc.message)
            return ActionResult.failed(exc)
        except DeniedError as exc:
            await db.rollback()
            logger.debug("%s denied: %s", name, exc.message)
            return ActionResult.failed(exc)
        except CircleAccessError as exc:
            await db.rollback()
            logger.info("%s rejected: %s", name, exc.message)
            return ActionResult.failed(exc)

    raise AssertionError("unreachable")


async def _load_circle(db: AsyncSession, circle_id: uuid.UUID) -> CircleAccess:
    circle = await circle_crud.find_circle_by_id(db, circle_id)
    if circle is None:
        raise NotFoundError("Circle not found")
    return circle


def _is_owner(circle: CircleAccess, user_id: uuid.UUID) -> bool:
    return circle.circle_type == "user" and circle.owner_user_id == user_id


def _protected_role(circle: CircleAccess) -> str | None:
    top = circle.top_role
    return top.handle if top is not None else None


def _join_roles(circle: CircleAccess, member_count: int) -> frozenset[str]:
    # whoever joins a memberless circle takes it over
    if member_count == 0:
        return circle.role_handles
    role = default_member_role(circle.roles)
    if role is None:
        raise InvalidStateError("Circle defines no roles")
    return frozenset({role.handle})


async def _actor_membership(db: AsyncSession, circle: CircleAccess, actor_id: uuid.UUID | None) -> Membership | None:
    if actor_id is None:
        return None
    return await member_crud.find_member(db, circle.id, actor_id)


def _require(circle: CircleAccess, feature_key: str, actor_id: uuid.UUID | None, actor: Membership | None) -> None:
    if not is_authorized_for(circle, feature_key, actor_id, actor):
        raise DeniedError(f"Not authorized for {feature_key}")


# ---------------------------------------------------------
# Queries
# ---------------------------------------------------------
async def membership_state(db: AsyncSession, user_id: uuid.UUID, circle_id: uuid.UUID) -> MembershipState:
    if await member_crud.find_member(db, circle_id, user_id) is not None:
        return MembershipState.APPROVED
    latest = await request_crud.find_latest_request(db, circle_id, user_id)
    if latest is None:
        return MembershipState.NONE
    if latest.status == STATUS_PENDING:
        return MembershipState.PENDING
    if latest.status == STATUS_REJECTED:
        return MembershipState.REJECTED
    # cancelled, or approved and the member row has since been removed
    return MembershipState.NONE


async def list_requests(
    db: AsyncSession,
    actor_id: uuid.UUID,
    circle_id: uuid.UUID,
) -> tuple[list[MembershipRequest], list[MembershipRequest]]:
    """
    (pending, rejected) requests for reviewers holding ``membership.approve``.

    Raises:
      NotFoundError: unknown circle.
      DeniedError: caller may not review requests.
    """
    circle = await _load_circle(db, circle_id)
    _require(circle, FeatureKey.MEMBERSHIP_APPROVE, actor_id, await _actor_membership(db, circle, actor_id))
    return await request_crud.list_membership_requests(db, circle_id)


# ---------------------------------------------------------
# Transitions
# ---------------------------------------------------------
async def request_membership(
    db: AsyncSession,
    user_id: uuid.UUID,
    circle_id: uuid.UUID,
    answers: Mapping[str, str] | None = None,
) -> ActionResult:
    """
    Public circles admit immediately with the least privileged role. Private
    circles get one pending request; asking again returns the same request.
    """

    async def action() -> ActionResult:
        circle = await _load_circle(db, circle_id)

        if await member_crud.find_member(db, circle_id, user_id) is not None:
            return ActionResult.ok(MembershipState.APPROVED, reason="Already a member")

        await circle_crud.lock_circle(db, circle_id)
        count = await member_crud.count_members(db, circle_id)

        # a memberless circle is taken over by whoever asks first, private or not
        if circle.is_public or count == 0:
            membership = await member_crud.add_member(db, circle_id, user_id, _join_roles(circle, count), answers)
            logger.info("User %s joined circle %s", user_id, circle_id)
            return ActionResult.ok(MembershipState.APPROVED, membership=membership)

        _, created = await request_crud.find_or_create_pending_request(db, circle_id, user_id, answers)
        if created:
            logger.info("User %s requested to join circle %s", user_id, circle_id)
            return ActionResult.ok(MembershipState.PENDING)
        return ActionResult.ok(MembershipState.PENDING, reason="Request already pending")

    return await _run(db, "request_membership", action)


async def cancel_request(db: AsyncSession, user_id: uuid.UUID, circle_id: uuid.UUID) -> ActionResult:
    async def action() -> ActionResult:
        await _load_circle(db, circle_id)
        if await request_crud.cancel_pending_request(db, circle_id, user_id):
            return ActionResult.ok(MembershipState.NONE)
        return ActionResult.ok(MembershipState.NONE, reason="No pending request")

    return await _run(db, "cancel_request", action)


async def approve(
    db: AsyncSession,
    actor_id: uuid.UUID,
    user_id: uuid.UUID,
    circle_id: uuid.UUID,
) -> ActionResult:
    async def action() -> ActionResult:
        circle = await _load_circle(db, circle_id)
        _require(circle, FeatureKey.MEMBERSHIP_APPROVE, actor_id, await _actor_membership(db, circle, actor_id))

        pending = await request_crud.find_pending_request(db, circle_id, user_id)
        if await member_crud.find_member(db, circle_id, user_id) is not None:
            if pending is not None:
                await request_crud.resolve_request(db, circle_id, user_id, STATUS_APPROVED, actor_id)
            return ActionResult.ok(MembershipState.APPROVED, reason="Already a member")

        if pending is None:
            raise NotFoundError("No pending membership request for this user")
        answers = pending.questionnaire_answers

        await request_crud.resolve_request(db, circle_id, user_id, STATUS_APPROVED, actor_id)
        await circle_crud.lock_circle(db, circle_id)
        count = await member_crud.count_members(db, circle_id)
        membership = await member_crud.add_member(db, circle_id, user_id, _join_roles(circle, count), answers)
        logger.info("Actor %s approved user %s into circle %s", actor_id, user_id, circle_id)
        return ActionResult.ok(MembershipState.APPROVED, membership=membership)

    return await _run(db, "approve", action)


async def reject(
    db: AsyncSession,
    actor_id: uuid.UUID,
    user_id: uuid.UUID,
    circle_id: uuid.UUID,
) -> ActionResult:
    async def action() -> ActionResult:
        circle = await _load_circle(db, circle_id)
        _require(circle, FeatureKey.MEMBERSHIP_APPROVE, actor_id, await _actor_membership(db, circle, actor_id))
        await request_crud.resolve_request(db, circle_id, user_id, STATUS_REJECTED, actor_id)
        logger.info("Actor %s rejected user %s for circle %s", actor_id, user_id, circle_id)
        return ActionResult.ok(MembershipState.REJECTED)

    return await _run(db, "reject", action)


async def _leave(db: AsyncSession, circle: CircleAccess, user_id: uuid.UUID) -> ActionResult:
    member = await member_crud.find_member(db, circle.id, user_id)
    if member is None:
        raise NotFoundError("User is not a member of this circle")
    if _is_owner(circle, user_id):
        raise ForbiddenError("The owner cannot leave their own circle")

    await member_crud.delete_member(db, circle.id, user_id, member.roles, _protected_role(circle))
    logger.info("User %s left circle %s", user_id, circle.id)
    return ActionResult.ok(MembershipState.NONE)


async def leave_circle(db: AsyncSession, user_id: uuid.UUID, circle_id: uuid.UUID) -> ActionResult:
    async def action() -> ActionResult:
        return await _leave(db, await _load_circle(db, circle_id), user_id)

    return await _run(db, "leave_circle", action)


async def remove_member(
    db: AsyncSession,
    actor_id: uuid.UUID,
    user_id: uuid.UUID,
    circle_id: uuid.UUID,
) -> ActionResult:
    """
    Remove ``user_id`` from the circle. Removing yourself is leaving; anyone
    else needs a remove feature and strictly higher access than the target
    (or equal access with ``members.remove_same_level_members``). The owner
    of a user circle is never removed.
    """

    async def action() -> ActionResult:
        circle = await _load_circle(db, circle_id)
        if actor_id == user_id:
            return await _leave(db, circle, user_id)

        actor = await _actor_membership(db, circle, actor_id)
        same_level = is_authorized_for(circle, FeatureKey.MEMBERS_REMOVE_SAME_LEVEL, actor_id, actor)
        lower = is_authorized_for(circle, FeatureKey.MEMBERS_REMOVE_LOWER, actor_id, actor)
        if not (same_level or lower):
            raise DeniedError("Not authorized to remove members")

        target = await member_crud.find_member(db, circle_id, user_id)
        if target is None:
            raise NotFoundError("User is not a member of this circle")

        if _is_owner(circle, user_id):
            raise ForbiddenError("The owner cannot be removed from their own circle")

        actor_level = resolve_access_level(actor, circle)
        if not has_higher_access(actor_level, resolve_access_level(target, circle), same_level):
            raise ForbiddenError("You cannot remove a member with access equal to or above your own")

        await member_crud.delete_member(db, circle_id, user_id, target.roles, _protected_role(circle))
        logger.info("Actor %s removed user %s from circle %s", actor_id, user_id, circle_id)
        return ActionResult.ok(MembershipState.NONE)

    return await _run(db, "remove_member", action)


async def update_member_roles(
    db: AsyncSession,
    actor_id: uuid.UUID,
    user_id: uuid.UUID,
    circle_id: uuid.UUID,
    roles: Iterable[str],
) -> ActionResult:
    """Guarded reassignment of a member's role set."""
    requested = frozenset(roles)

    async def action() -> ActionResult:
        circle = await _load_circle(db, circle_id)
        actor = await _actor_membership(db, circle, actor_id)
        same_level = is_authorized_for(circle, FeatureKey.MEMBERS_EDIT_SAME_LEVEL, actor_id, actor)
        lower = is_authorized_for(circle, FeatureKey.MEMBERS_EDIT_LOWER, actor_id, actor)
        if not (same_level or lower):
            raise DeniedError("Not authorized to edit member roles")

        target = await member_crud.find_member(db, circle_id, user_id)
        if target is None:
            raise NotFoundError("User is not a member of this circle")

        actor_level = resolve_access_level(actor, circle)
        if actor_id != user_id and not has_higher_access(
            actor_level, resolve_access_level(target, circle), same_level
        ):
            raise ForbiddenError("You cannot edit a member with access equal to or above your own")

        approved = guard_role_reassignment(target.roles, requested, circle, actor_level, same_level)
        if not approved:
            raise InvalidStateError("A member must hold at least one role")
        if actor_id != user_id and _is_owner(circle, user_id) and target.roles - approved:
            raise ForbiddenError("The owner's roles can only be removed by the owner")

        membership = await member_crud.upsert_member_roles(
            db,
            circle_id,
            user_id,
            approved,
            expected_prior_roles=target.roles,
            protected_role=_protected_role(circle),
        )
        logger.info("Actor %s set roles of user %s in circle %s to %s", actor_id, user_id, circle_id, sorted(approved))
        return ActionResult.ok(MembershipState.APPROVED, membership=membership)

    return await _run(db, "update_member_roles", action)
