"""create circles access-control schema

Revision ID: 3f1c2a9d7b10
Revises:
Create Date: 2026-10-19
"""

import sqlalchemy as sa
from alembic import op
from sqlalchemy import text

# revision identifiers, used by Alembic.
revision = "3f1c2a9d7b10"
down_revision = None
branch_labels = None
depends_on = None

PENDING_INDEX_NAME = "uq_membership_requests_pending_circle_user"


def _timestamp(name: str, nullable: bool = False) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=nullable)


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("email", sa.String(length=320), nullable=False),
        sa.Column("full_name", sa.String(length=200), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        _timestamp("created_at"),
        _timestamp("updated_at"),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    op.create_table(
        "circles",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("handle", sa.String(length=100), nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("circle_type", sa.String(length=20), nullable=False, server_default="circle"),
        sa.Column("is_public", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("owner_user_id", sa.Uuid(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("enabled_modules", sa.JSON(), nullable=False),
        sa.Column("access_rules", sa.JSON(), nullable=False),
        _timestamp("created_at"),
        _timestamp("updated_at"),
    )
    op.create_index("ix_circles_handle", "circles", ["handle"], unique=True)

    op.create_table(
        "circle_roles",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("circle_id", sa.Uuid(), sa.ForeignKey("circles.id", ondelete="CASCADE"), nullable=False),
        sa.Column("handle", sa.String(length=50), nullable=False),
        sa.Column("display_name", sa.String(length=100), nullable=False),
        sa.Column("description", sa.String(length=500), nullable=True),
        sa.Column("access_level", sa.Integer(), nullable=False),
        sa.Column("read_only", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
        sa.UniqueConstraint("circle_id", "handle", name="uq_circle_roles_circle_handle"),
    )

    op.create_table(
        "circle_members",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("circle_id", sa.Uuid(), sa.ForeignKey("circles.id", ondelete="CASCADE"), nullable=False),
        sa.Column("user_id", sa.Uuid(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("questionnaire_answers", sa.JSON(), nullable=True),
        _timestamp("joined_at"),
        sa.UniqueConstraint("circle_id", "user_id", name="uq_circle_members_circle_user"),
    )

    op.create_table(
        "circle_member_roles",
        sa.Column(
            "member_id",
            sa.Uuid(),
            sa.ForeignKey("circle_members.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column("role_handle", sa.String(length=50), primary_key=True),
        sa.Column("circle_id", sa.Uuid(), sa.ForeignKey("circles.id", ondelete="CASCADE"), nullable=False),
    )
    op.create_index(
        "ix_circle_member_roles_circle_role",
        "circle_member_roles",
        ["circle_id", "role_handle"],
    )

    op.create_table(
        "membership_requests",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("circle_id", sa.Uuid(), sa.ForeignKey("circles.id", ondelete="CASCADE"), nullable=False),
        sa.Column("user_id", sa.Uuid(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
        sa.Column("questionnaire_answers", sa.JSON(), nullable=True),
        _timestamp("requested_at"),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "resolved_by_user_id",
            sa.Uuid(),
            sa.ForeignKey("users.id", ondelete="SET NULL"),
            nullable=True,
        ),
    )
    op.create_index(
        "ix_membership_requests_circle_requested_at",
        "membership_requests",
        ["circle_id", "requested_at"],
    )
    op.create_index(
        PENDING_INDEX_NAME,
        "membership_requests",
        ["circle_id", "user_id"],
        unique=True,
        postgresql_where=text("status = 'pending'"),
        sqlite_where=text("status = 'pending'"),
    )


def downgrade() -> None:
    op.drop_index(PENDING_INDEX_NAME, table_name="membership_requests")
    op.drop_index("ix_membership_requests_circle_requested_at", table_name="membership_requests")
    op.drop_table("membership_requests")
    op.drop_index("ix_circle_member_roles_circle_role", table_name="circle_member_roles")
    op.drop_table("circle_member_roles")
    op.drop_table("circle_members")
    op.drop_table("circle_roles")
    op.drop_index("ix_circles_handle", table_name="circles")
    op.drop_table("circles")
    op.drop_index("ix_users_email", table_name="users")
    op.drop_table("users")
