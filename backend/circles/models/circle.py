# backend/circles/models/circle.py

import uuid
from datetime import datetime
from typing import List, Optional

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.sql import func

from circles.db.base import Base, utcnow
from circles.models.circle_role import CircleRole


class Circle(Base):
    __tablename__ = "circles"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    handle: Mapped[str] = mapped_column(String(100), unique=True, index=True, nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)

    # circle | project | user
    circle_type: Mapped[str] = mapped_column(String(20), nullable=False, default="circle")

    # Public circles admit join requests immediately.
    is_public: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Set for user profile circles: the profile owner can never leave.
    owner_user_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid,
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
    )

    enabled_modules: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)

    # {module: {feature: [role_handle, ...]}}; missing entries fall back to feature defaults
    access_rules: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow, nullable=False
    )

    roles: Mapped[List[CircleRole]] = relationship(
        order_by=CircleRole.position,
        cascade="all, delete-orphan",
        lazy="selectin",
    )
