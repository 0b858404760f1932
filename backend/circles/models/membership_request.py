# backend/circles/models/membership_request.py

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, DateTime, ForeignKey, Index, String, Uuid, text
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from circles.db.base import Base, utcnow

STATUS_PENDING = "pending"
STATUS_APPROVED = "approved"
STATUS_REJECTED = "rejected"
STATUS_CANCELLED = "cancelled"


class MembershipRequest(Base):
    __tablename__ = "membership_requests"
    __table_args__ = (
        # At most one pending request per (circle, user); resolved rows are history.
        Index(
            "uq_membership_requests_pending_circle_user",
            "circle_id",
            "user_id",
            unique=True,
            postgresql_where=text("status = 'pending'"),
            sqlite_where=text("status = 'pending'"),
        ),
        Index("ix_membership_requests_circle_requested_at", "circle_id", "requested_at"),
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

    # pending | approved | rejected | cancelled
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=STATUS_PENDING)

    questionnaire_answers: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    requested_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    resolved_by_user_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid,
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
    )
