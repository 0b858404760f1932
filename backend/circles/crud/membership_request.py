# circles/crud/membership_request.py
from __future__ import annotations

import uuid
from typing import Mapping

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from circles.core.errors import NotFoundError
from circles.db.base import utcnow
from circles.models.membership_request import (
    STATUS_APPROVED,
    STATUS_CANCELLED,
    STATUS_PENDING,
    STATUS_REJECTED,
    MembershipRequest,
)


async def find_pending_request(
    db: AsyncSession,
    circle_id: uuid.UUID,
    user_id: uuid.UUID,
) -> MembershipRequest | None:
    stmt = (
        select(MembershipRequest)
        .where(MembershipRequest.circle_id == circle_id)
        .where(MembershipRequest.user_id == user_id)
        .where(MembershipRequest.status == STATUS_PENDING)
        .execution_options(populate_existing=True)
    )
    return (await db.execute(stmt)).scalar_one_or_none()


async def find_latest_request(
    db: AsyncSession,
    circle_id: uuid.UUID,
    user_id: uuid.UUID,
) -> MembershipRequest | None:
    stmt = (
        select(MembershipRequest)
        .where(MembershipRequest.circle_id == circle_id)
        .where(MembershipRequest.user_id == user_id)
        .order_by(MembershipRequest.requested_at.desc())
        .limit(1)
        .execution_options(populate_existing=True)
    )
    return (await db.execute(stmt)).scalar_one_or_none()


async def find_or_create_pending_request(
    db: AsyncSession,
    circle_id: uuid.UUID,
    user_id: uuid.UUID,
    answers: Mapping[str, str] | None = None,
) -> tuple[MembershipRequest, bool]:
    """
    Return (request, created). A second caller never creates a duplicate:
    the partial unique index on pending rows rejects it and the winner's row
    is returned instead.
    """
    existing = await find_pending_request(db, circle_id, user_id)
    if existing is not None:
        return existing, False

    req = MembershipRequest(
        circle_id=circle_id,
        user_id=user_id,
        status=STATUS_PENDING,
        questionnaire_answers=dict(answers) if answers else None,
    )
    db.add(req)
    try:
        await db.flush()
    except IntegrityError:
        await db.rollback()
        winner = await find_pending_request(db, circle_id, user_id)
        if winner is None:
            raise
        return winner, False
    return req, True


async def cancel_pending_request(db: AsyncSession, circle_id: uuid.UUID, user_id: uuid.UUID) -> bool:
    """Mark the pending request cancelled; the row stays as history."""
    stmt = (
        update(MembershipRequest)
        .where(MembershipRequest.circle_id == circle_id)
        .where(MembershipRequest.user_id == user_id)
        .where(MembershipRequest.status == STATUS_PENDING)
        .values(status=STATUS_CANCELLED, resolved_at=utcnow(), resolved_by_user_id=user_id)
        .execution_options(synchronize_session=False)
    )
    res = await db.execute(stmt)
    return (res.rowcount or 0) > 0


async def resolve_request(
    db: AsyncSession,
    circle_id: uuid.UUID,
    user_id: uuid.UUID,
    status: str,
    actor_id: uuid.UUID | None = None,
) -> None:
    """
    Conditional transition pending -> approved|rejected. Only a row that is
    still pending is touched; if none is, NotFoundError.
    """
    if status not in {STATUS_APPROVED, STATUS_REJECTED}:
        raise ValueError(f"Cannot resolve a request to {status!r}")

    stmt = (
        update(MembershipRequest)
        .where(MembershipRequest.circle_id == circle_id)
        .where(MembershipRequest.user_id == user_id)
        .where(MembershipRequest.status == STATUS_PENDING)
        .values(status=status, resolved_at=utcnow(), resolved_by_user_id=actor_id)
        .execution_options(synchronize_session=False)
    )
    res = await db.execute(stmt)
    if not res.rowcount:
        raise NotFoundError("No pending membership request for this user")


async def list_membership_requests(
    db: AsyncSession,
    circle_id: uuid.UUID,
) -> tuple[list[MembershipRequest], list[MembershipRequest]]:
    """(pending, rejected), most recent first."""
    stmt = (
        select(MembershipRequest)
        .where(MembershipRequest.circle_id == circle_id)
        .where(MembershipRequest.status.in_([STATUS_PENDING, STATUS_REJECTED]))
        .order_by(MembershipRequest.requested_at.desc())
    )
    requests = (await db.execute(stmt)).scalars().all()
    pending = [r for r in requests if r.status == STATUS_PENDING]
    rejected = [r for r in requests if r.status == STATUS_REJECTED]
    return pending, rejected
