# tests/test_crud_conditional_writes.py
from __future__ import annotations

import pytest
from sqlalchemy.exc import IntegrityError

from circles.core.errors import ConflictError, LastAdminError, NotFoundError
from circles.crud.circle import create_circle, find_circle_by_id
from circles.crud.circle_member import (
    add_member,
    count_members_with_role,
    delete_member,
    find_member,
    list_members,
    upsert_member_roles,
)
from circles.crud.membership_request import (
    cancel_pending_request,
    find_latest_request,
    find_or_create_pending_request,
    find_pending_request,
    list_membership_requests,
    resolve_request,
)
from circles.models.membership_request import (
    STATUS_APPROVED,
    STATUS_CANCELLED,
    STATUS_PENDING,
    STATUS_REJECTED,
    MembershipRequest,
)


async def new_circle(db, creator_id, handle="garden", **kwargs):
    circle = await create_circle(db, name="Garden Club", handle=handle, creator_id=creator_id, **kwargs)
    await db.commit()
    return circle


@pytest.mark.asyncio
async def test_create_circle_makes_creator_hold_every_default_role(db, make_user):
    owner = await make_user()
    circle = await new_circle(db, owner)

    loaded = await find_circle_by_id(db, circle.id)
    assert [r.handle for r in loaded.roles] == ["admins", "moderators", "members"]
    assert loaded.top_role.handle == "admins"
    assert loaded.owner_user_id is None

    member = await find_member(db, circle.id, owner)
    assert member.roles == {"admins", "moderators", "members"}
    assert await count_members_with_role(db, circle.id, "admins") == 1


@pytest.mark.asyncio
async def test_user_circle_records_owner(db, make_user):
    owner = await make_user()
    circle = await new_circle(db, owner, handle="alice", circle_type="user")
    assert circle.owner_user_id == owner
    assert circle.role("members").display_name == "Friends"


@pytest.mark.asyncio
async def test_duplicate_handle_is_a_conflict(db, make_user):
    owner = await make_user()
    await new_circle(db, owner)
    with pytest.raises(ConflictError):
        await create_circle(db, name="Other", handle="garden", creator_id=owner)


@pytest.mark.asyncio
async def test_add_member_twice_is_a_conflict(db, make_user):
    owner, user = await make_user(), await make_user()
    circle = await new_circle(db, owner)

    await add_member(db, circle.id, user, {"members"})
    await db.commit()

    with pytest.raises(ConflictError):
        await add_member(db, circle.id, user, {"members"})
    assert len(await list_members(db, circle.id)) == 2


@pytest.mark.asyncio
async def test_upsert_rejects_stale_expected_roles(sessionmaker, make_user):
    async with sessionmaker() as setup:
        owner, user = await make_user(), await make_user()
        circle = await new_circle(setup, owner)
        await add_member(setup, circle.id, user, {"members"})
        await setup.commit()

    async with sessionmaker() as first, sessionmaker() as second:
        seen_by_first = (await find_member(first, circle.id, user)).roles
        seen_by_second = (await find_member(second, circle.id, user)).roles

        await upsert_member_roles(second, circle.id, user, {"moderators"}, seen_by_second)
        await second.commit()

        with pytest.raises(ConflictError):
            await upsert_member_roles(first, circle.id, user, {"admins"}, seen_by_first)
        await first.rollback()

        assert (await find_member(first, circle.id, user)).roles == {"moderators"}


@pytest.mark.asyncio
async def test_upsert_protects_last_holder_of_top_role(db, make_user):
    owner = await make_user()
    circle = await new_circle(db, owner)
    roles = (await find_member(db, circle.id, owner)).roles

    with pytest.raises(LastAdminError):
        await upsert_member_roles(db, circle.id, owner, {"members"}, roles, protected_role="admins")
    await db.rollback()

    assert (await find_member(db, circle.id, owner)).roles == roles


@pytest.mark.asyncio
async def test_upsert_replaces_role_rows(db, make_user):
    owner, user = await make_user(), await make_user()
    circle = await new_circle(db, owner)
    await add_member(db, circle.id, user, {"members"})
    await db.commit()

    updated = await upsert_member_roles(db, circle.id, user, {"admins", "members"}, {"members"}, "admins")
    await db.commit()
    assert updated.roles == {"admins", "members"}
    assert await count_members_with_role(db, circle.id, "admins") == 2

    # with a second admin, the owner may give the role up
    await upsert_member_roles(db, circle.id, owner, {"members"}, {"admins", "moderators", "members"}, "admins")
    await db.commit()
    assert (await find_member(db, circle.id, owner)).roles == {"members"}


@pytest.mark.asyncio
async def test_upsert_without_expectation_creates_member(db, make_user):
    owner, user = await make_user(), await make_user()
    circle = await new_circle(db, owner)

    created = await upsert_member_roles(db, circle.id, user, {"members"}, None)
    await db.commit()
    assert created.roles == {"members"}

    with pytest.raises(ConflictError):
        await upsert_member_roles(db, circle.id, await make_user(), {"members"}, {"members"})


@pytest.mark.asyncio
async def test_delete_member_guards(db, make_user):
    owner, user = await make_user(), await make_user()
    circle = await new_circle(db, owner)
    await add_member(db, circle.id, user, {"members"})
    await db.commit()

    with pytest.raises(LastAdminError):
        await delete_member(db, circle.id, owner, {"admins", "moderators", "members"}, "admins")
    await db.rollback()

    with pytest.raises(ConflictError):
        await delete_member(db, circle.id, user, {"moderators"}, "admins")
    await db.rollback()

    await delete_member(db, circle.id, user, {"members"}, "admins")
    await db.commit()
    assert await find_member(db, circle.id, user) is None

    with pytest.raises(NotFoundError):
        await delete_member(db, circle.id, user, None)


@pytest.mark.asyncio
async def test_one_pending_request_per_user(db, make_user):
    owner, user = await make_user(), await make_user()
    circle = await new_circle(db, owner)

    first, created = await find_or_create_pending_request(db, circle.id, user, {"why": "I like plants"})
    await db.commit()
    second, created_again = await find_or_create_pending_request(db, circle.id, user)
    await db.commit()

    assert created is True
    assert created_again is False
    assert second.id == first.id
    pending, rejected = await list_membership_requests(db, circle.id)
    assert [r.id for r in pending] == [first.id]
    assert rejected == []


@pytest.mark.asyncio
async def test_pending_request_race_returns_winner(sessionmaker, make_user):
    async with sessionmaker() as setup:
        owner, user = await make_user(), await make_user()
        circle = await new_circle(setup, owner)

    async with sessionmaker() as winner_session, sessionmaker() as loser_session:
        # loser checked before the winner inserted
        assert await find_pending_request(loser_session, circle.id, user) is None

        winner, created = await find_or_create_pending_request(winner_session, circle.id, user)
        await winner_session.commit()
        assert created is True

        # loser's insert hits the partial unique index and re-reads
        loser_session.add(MembershipRequest(circle_id=circle.id, user_id=user, status=STATUS_PENDING))
        with pytest.raises(IntegrityError):
            await loser_session.flush()
        await loser_session.rollback()

        again, created = await find_or_create_pending_request(loser_session, circle.id, user)
        assert created is False
        assert again.id == winner.id


@pytest.mark.asyncio
async def test_resolve_request_is_conditional(db, make_user):
    owner, user = await make_user(), await make_user()
    circle = await new_circle(db, owner)
    await find_or_create_pending_request(db, circle.id, user)
    await db.commit()

    await resolve_request(db, circle.id, user, STATUS_REJECTED, owner)
    await db.commit()

    with pytest.raises(NotFoundError):
        await resolve_request(db, circle.id, user, STATUS_APPROVED, owner)

    pending, rejected = await list_membership_requests(db, circle.id)
    assert pending == []
    assert [r.user_id for r in rejected] == [user]

    # rejection is not permanent
    _, created = await find_or_create_pending_request(db, circle.id, user)
    assert created is True


@pytest.mark.asyncio
async def test_cancel_pending_request(db, make_user):
    owner, user = await make_user(), await make_user()
    circle = await new_circle(db, owner)
    await find_or_create_pending_request(db, circle.id, user)
    await db.commit()

    assert await cancel_pending_request(db, circle.id, user) is True
    await db.commit()
    assert await cancel_pending_request(db, circle.id, user) is False
    assert await find_pending_request(db, circle.id, user) is None

    cancelled = await find_latest_request(db, circle.id, user)
    assert cancelled.status == STATUS_CANCELLED
    assert cancelled.resolved_at is not None
