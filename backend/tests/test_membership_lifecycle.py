# tests/test_membership_lifecycle.py
from __future__ import annotations

import asyncio
import uuid

import pytest
from sqlalchemy import delete

from circles.core import membership as lifecycle
from circles.core.config import settings
from circles.core.errors import ConflictError, DeniedError
from circles.core.membership import MembershipState
from circles.crud import circle_member as member_crud
from circles.crud.circle import create_circle
from circles.crud.circle_member import add_member, count_members_with_role, find_member
from circles.crud.membership_request import find_pending_request, list_membership_requests
from circles.models.circle_member import CircleMember, CircleMemberRole


async def new_circle(db, owner_id, *, is_public=False, circle_type="circle"):
    circle = await create_circle(
        db,
        name="Makers",
        handle=f"makers-{uuid.uuid4().hex[:8]}",
        creator_id=owner_id,
        circle_type=circle_type,
        is_public=is_public,
    )
    await db.commit()
    return circle


async def join(db, circle, user_id, *roles):
    await add_member(db, circle.id, user_id, set(roles))
    await db.commit()


# ---------------------------------------------------------
# Requesting
# ---------------------------------------------------------
@pytest.mark.asyncio
async def test_public_circle_admits_immediately(db, make_user):
    owner, user = await make_user(), await make_user()
    circle = await new_circle(db, owner, is_public=True)

    result = await lifecycle.request_membership(db, user, circle.id)

    assert result.success is True
    assert result.state == MembershipState.APPROVED
    assert (await find_member(db, circle.id, user)).roles == {"members"}
    assert await find_pending_request(db, circle.id, user) is None


@pytest.mark.asyncio
async def test_private_circle_request_is_idempotent(db, make_user):
    owner, user = await make_user(), await make_user()
    circle = await new_circle(db, owner)

    first = await lifecycle.request_membership(db, user, circle.id, {"why": "woodworking"})
    second = await lifecycle.request_membership(db, user, circle.id)

    assert first.success and first.state == MembershipState.PENDING
    assert second.success and second.state == MembershipState.PENDING
    assert second.reason == "Request already pending"

    pending, _ = await list_membership_requests(db, circle.id)
    assert len(pending) == 1
    assert pending[0].questionnaire_answers == {"why": "woodworking"}
    assert await find_member(db, circle.id, user) is None
    assert await lifecycle.membership_state(db, user, circle.id) == MembershipState.PENDING


@pytest.mark.asyncio
async def test_request_by_existing_member_is_a_no_op(db, make_user):
    owner = await make_user()
    circle = await new_circle(db, owner)

    result = await lifecycle.request_membership(db, owner, circle.id)
    assert result.success and result.state == MembershipState.APPROVED
    assert result.reason == "Already a member"


@pytest.mark.asyncio
async def test_first_member_of_memberless_circle_gets_every_role(db, make_user):
    owner, user = await make_user(), await make_user()
    circle = await new_circle(db, owner)
    await db.execute(delete(CircleMemberRole))
    await db.execute(delete(CircleMember))
    await db.commit()

    result = await lifecycle.request_membership(db, user, circle.id)

    assert result.success and result.state == MembershipState.APPROVED
    assert result.membership.roles == {"admins", "moderators", "members"}


@pytest.mark.asyncio
async def test_request_for_unknown_circle(db, make_user):
    user = await make_user()
    result = await lifecycle.request_membership(db, user, uuid.uuid4())
    assert result.success is False
    assert result.code == "NOT_FOUND"


@pytest.mark.asyncio
async def test_cancel_request(db, make_user):
    owner, user = await make_user(), await make_user()
    circle = await new_circle(db, owner)
    await lifecycle.request_membership(db, user, circle.id)

    result = await lifecycle.cancel_request(db, user, circle.id)
    assert result.success and result.state == MembershipState.NONE
    assert await find_pending_request(db, circle.id, user) is None

    again = await lifecycle.cancel_request(db, user, circle.id)
    assert again.success is True
    assert again.reason == "No pending request"


# ---------------------------------------------------------
# Reviewing
# ---------------------------------------------------------
@pytest.mark.asyncio
async def test_approve_creates_member_with_default_role(db, make_user):
    owner, user = await make_user(), await make_user()
    circle = await new_circle(db, owner)
    await lifecycle.request_membership(db, user, circle.id)

    result = await lifecycle.approve(db, owner, user, circle.id)

    assert result.success and result.state == MembershipState.APPROVED
    assert (await find_member(db, circle.id, user)).roles == {"members"}
    assert await lifecycle.membership_state(db, user, circle.id) == MembershipState.APPROVED
    pending, rejected = await list_membership_requests(db, circle.id)
    assert pending == [] and rejected == []


@pytest.mark.asyncio
async def test_approve_requires_permission(db, make_user):
    owner, member, user = await make_user(), await make_user(), await make_user()
    circle = await new_circle(db, owner)
    await join(db, circle, member, "members")
    await lifecycle.request_membership(db, user, circle.id)

    result = await lifecycle.approve(db, member, user, circle.id)

    assert result.success is False
    assert result.code == "DENIED"
    assert await find_member(db, circle.id, user) is None
    assert await find_pending_request(db, circle.id, user) is not None


@pytest.mark.asyncio
async def test_approve_without_pending_request(db, make_user):
    owner, user = await make_user(), await make_user()
    circle = await new_circle(db, owner)

    result = await lifecycle.approve(db, owner, user, circle.id)
    assert result.success is False
    assert result.code == "NOT_FOUND"


@pytest.mark.asyncio
async def test_reject_then_request_again(db, make_user):
    owner, moderator, user = await make_user(), await make_user(), await make_user()
    circle = await new_circle(db, owner)
    await join(db, circle, moderator, "moderators")
    await lifecycle.request_membership(db, user, circle.id)

    rejected = await lifecycle.reject(db, moderator, user, circle.id)
    assert rejected.success and rejected.state == MembershipState.REJECTED
    assert await lifecycle.membership_state(db, user, circle.id) == MembershipState.REJECTED

    again = await lifecycle.request_membership(db, user, circle.id)
    assert again.success and again.state == MembershipState.PENDING


@pytest.mark.asyncio
async def test_cancel_after_rejection_leaves_no_membership(db, make_user):
    owner, user = await make_user(), await make_user()
    circle = await new_circle(db, owner)
    await lifecycle.request_membership(db, user, circle.id)
    await lifecycle.reject(db, owner, user, circle.id)
    await lifecycle.request_membership(db, user, circle.id)

    cancelled = await lifecycle.cancel_request(db, user, circle.id)

    assert cancelled.success and cancelled.state == MembershipState.NONE
    assert await lifecycle.membership_state(db, user, circle.id) == MembershipState.NONE
    pending, rejected = await list_membership_requests(db, circle.id)
    assert pending == []
    assert [r.user_id for r in rejected] == [user]


@pytest.mark.asyncio
async def test_list_requests_requires_permission(db, make_user):
    owner, member, user = await make_user(), await make_user(), await make_user()
    circle = await new_circle(db, owner)
    await join(db, circle, member, "members")
    await lifecycle.request_membership(db, user, circle.id)

    pending, rejected = await lifecycle.list_requests(db, owner, circle.id)
    assert [r.user_id for r in pending] == [user]
    assert rejected == []

    with pytest.raises(DeniedError):
        await lifecycle.list_requests(db, member, circle.id)


# ---------------------------------------------------------
# Removal and the last admin
# ---------------------------------------------------------
@pytest.mark.asyncio
async def test_sole_admin_cannot_remove_themselves(db, make_user):
    owner = await make_user()
    circle = await new_circle(db, owner)

    result = await lifecycle.remove_member(db, owner, owner, circle.id)

    assert result.success is False
    assert result.code == "LAST_ADMIN"
    assert result.reason == "last admin"
    assert await find_member(db, circle.id, owner) is not None


@pytest.mark.asyncio
async def test_admin_can_leave_once_another_admin_exists(db, make_user):
    owner, second = await make_user(), await make_user()
    circle = await new_circle(db, owner)
    await join(db, circle, second, "admins")

    result = await lifecycle.leave_circle(db, owner, circle.id)

    assert result.success and result.state == MembershipState.NONE
    assert await find_member(db, circle.id, owner) is None
    assert await count_members_with_role(db, circle.id, "admins") == 1


@pytest.mark.asyncio
async def test_user_circle_owner_cannot_leave(db, make_user):
    owner, friend = await make_user(), await make_user()
    circle = await new_circle(db, owner, circle_type="user")
    await join(db, circle, friend, "admins")

    result = await lifecycle.leave_circle(db, owner, circle.id)
    assert result.success is False
    assert result.code == "FORBIDDEN"


@pytest.mark.asyncio
async def test_user_circle_owner_cannot_be_removed_by_a_peer(db, make_user):
    owner, peer = await make_user(), await make_user()
    circle = await new_circle(db, owner, circle_type="user")
    await join(db, circle, peer, "admins")

    result = await lifecycle.remove_member(db, peer, owner, circle.id)

    assert result.success is False
    assert result.code == "FORBIDDEN"
    assert await find_member(db, circle.id, owner) is not None

    # the owner can still remove the peer
    assert (await lifecycle.remove_member(db, owner, peer, circle.id)).success is True


@pytest.mark.asyncio
async def test_user_circle_owner_roles_cannot_be_stripped_by_a_peer(db, make_user):
    owner, peer = await make_user(), await make_user()
    circle = await new_circle(db, owner, circle_type="user")
    await join(db, circle, peer, "admins")

    result = await lifecycle.update_member_roles(db, peer, owner, circle.id, {"members"})

    assert result.success is False
    assert result.code == "FORBIDDEN"
    assert (await find_member(db, circle.id, owner)).roles == {"admins", "moderators", "members"}


@pytest.mark.asyncio
async def test_moderator_removal_rules(db, make_user):
    owner, mod, other_mod, member = [await make_user() for _ in range(4)]
    circle = await new_circle(db, owner)
    await join(db, circle, mod, "moderators")
    await join(db, circle, other_mod, "moderators")
    await join(db, circle, member, "members")

    assert (await lifecycle.remove_member(db, mod, other_mod, circle.id)).code == "FORBIDDEN"
    assert (await lifecycle.remove_member(db, mod, owner, circle.id)).code == "FORBIDDEN"
    assert (await lifecycle.remove_member(db, member, mod, circle.id)).code == "DENIED"

    removed = await lifecycle.remove_member(db, mod, member, circle.id)
    assert removed.success is True
    assert await find_member(db, circle.id, member) is None

    missing = await lifecycle.remove_member(db, mod, member, circle.id)
    assert missing.code == "NOT_FOUND"


@pytest.mark.asyncio
async def test_admin_can_remove_same_level_peer(db, make_user):
    owner, peer = await make_user(), await make_user()
    circle = await new_circle(db, owner)
    await join(db, circle, peer, "admins")

    result = await lifecycle.remove_member(db, owner, peer, circle.id)
    assert result.success is True


@pytest.mark.asyncio
async def test_concurrent_leaves_keep_one_admin(sessionmaker, db, make_user):
    first, second = await make_user(), await make_user()
    circle = await new_circle(db, first)
    await join(db, circle, second, "admins")

    async def leave(user_id):
        async with sessionmaker() as session:
            return await lifecycle.leave_circle(session, user_id, circle.id)

    results = await asyncio.gather(leave(first), leave(second))

    assert sorted(r.success for r in results) == [False, True]
    assert [r.code for r in results if not r.success] == ["LAST_ADMIN"]
    assert await count_members_with_role(db, circle.id, "admins") == 1


# ---------------------------------------------------------
# Role reassignment
# ---------------------------------------------------------
@pytest.mark.asyncio
async def test_admin_promotes_member(db, make_user):
    owner, member = await make_user(), await make_user()
    circle = await new_circle(db, owner)
    await join(db, circle, member, "members")

    result = await lifecycle.update_member_roles(db, owner, member, circle.id, ["admins", "members"])

    assert result.success is True
    assert result.membership.roles == {"admins", "members"}


@pytest.mark.asyncio
async def test_moderator_cannot_grant_own_level_or_above(db, make_user):
    owner, mod, member = await make_user(), await make_user(), await make_user()
    circle = await new_circle(db, owner)
    await join(db, circle, mod, "moderators")
    await join(db, circle, member, "members")

    for roles in (["moderators", "members"], ["admins", "members"]):
        result = await lifecycle.update_member_roles(db, mod, member, circle.id, roles)
        assert result.success is False
        assert result.code == "FORBIDDEN"

    assert (await find_member(db, circle.id, member)).roles == {"members"}


@pytest.mark.asyncio
async def test_role_update_rejects_undefined_and_empty_sets(db, make_user):
    owner, member = await make_user(), await make_user()
    circle = await new_circle(db, owner)
    await join(db, circle, member, "members")

    assert (await lifecycle.update_member_roles(db, owner, member, circle.id, ["ghosts"])).code == "INVALID_STATE"
    assert (await lifecycle.update_member_roles(db, owner, member, circle.id, [])).code == "INVALID_STATE"


@pytest.mark.asyncio
async def test_sole_admin_cannot_demote_themselves(db, make_user):
    owner = await make_user()
    circle = await new_circle(db, owner)

    result = await lifecycle.update_member_roles(db, owner, owner, circle.id, ["members"])

    assert result.success is False
    assert result.code == "LAST_ADMIN"
    assert "admins" in (await find_member(db, circle.id, owner)).roles


# ---------------------------------------------------------
# Retry on conflict
# ---------------------------------------------------------
@pytest.mark.asyncio
async def test_conflict_is_retried_once(db, make_user, monkeypatch):
    owner, member = await make_user(), await make_user()
    circle = await new_circle(db, owner)
    await join(db, circle, member, "members")

    real_delete = member_crud.delete_member
    calls = []

    async def flaky_delete(*args, **kwargs):
        calls.append(args)
        if len(calls) == 1:
            raise ConflictError("Member roles changed concurrently")
        return await real_delete(*args, **kwargs)

    monkeypatch.setattr(member_crud, "delete_member", flaky_delete)

    result = await lifecycle.remove_member(db, owner, member, circle.id)

    assert result.success is True
    assert len(calls) == 2
    assert await find_member(db, circle.id, member) is None


@pytest.mark.asyncio
async def test_conflict_surfaces_when_retries_are_exhausted(db, make_user, monkeypatch):
    owner, member = await make_user(), await make_user()
    circle = await new_circle(db, owner)
    await join(db, circle, member, "members")

    calls = []

    async def always_conflicting(*args, **kwargs):
        calls.append(args)
        raise ConflictError("Member roles changed concurrently")

    monkeypatch.setattr(member_crud, "delete_member", always_conflicting)
    monkeypatch.setattr(settings, "MEMBERSHIP_CONFLICT_RETRIES", 0)

    result = await lifecycle.remove_member(db, owner, member, circle.id)

    assert result.success is False
    assert result.code == "CONFLICT"
    assert len(calls) == 1
    assert await find_member(db, circle.id, member) is not None
