# backend/circles/models/circle_member.py

import uuid
from datetime import datetime
from typing import List, Optional

from sqlalchemy import JSON, DateTime, ForeignKey, Index, String, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.sql import func

from circles.db.base import Base, utcnow


class CircleMemberRole(Base):
    """A role handle held by a member. One row per (member, role)."""

    __tablename__ = "circle_member_roles"
    __table_args__ = (
        # "how many members hold role X in circle Y" must stay a single indexed count
        Index("ix_circle_member_roles_circle_role", "circle_id", "role_handle"),
    )

    member_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("circle_members.id", ondelete="CASCADE"),
        primary_key=True,
    )
    role_handle: Mapped[str] = mapped_column(String(50), primary_key=True)

    circle_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("circles.id", ondelete="CASCADE"),
        nullable=False,
    )


class CircleMember(Base):
    __tablename__ = "circle_members"
    __table_args__ = (
        UniqueConstraint("circle_id", "user_id", name="uq_circle_members_circle_user"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    circle_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("circles.id", ondelete="CASCADE"),
        nullable=False,
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )

    questionnaire_answers: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    joined_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)

    roles: Mapped[List[CircleMemberRole]] = relationship(
        cascade="all, delete-orphan",
        lazy="selectin",
        passive_deletes=True,
    )

    @property
    def role_handles(self) -> frozenset[str]:
        return frozenset(r.role_handle for r in self.roles)
