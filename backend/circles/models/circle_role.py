# backend/circles/models/circle_role.py

import uuid
from typing import Optional

from sqlalchemy import Boolean, ForeignKey, Integer, String, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from circles.db.base import Base


class CircleRole(Base):
    """One user group of a circle's role catalog."""

    __tablename__ = "circle_roles"
    __table_args__ = (
        UniqueConstraint("circle_id", "handle", name="uq_circle_roles_circle_handle"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    circle_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("circles.id", ondelete="CASCADE"),
        nullable=False,
    )

    handle: Mapped[str] = mapped_column(String(50), nullable=False)
    display_name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    # lower = more privileged
    access_level: Mapped[int] = mapped_column(Integer, nullable=False)
    read_only: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # catalog order as shown in settings
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
