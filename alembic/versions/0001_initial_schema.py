"""initial schema

Revision ID: 0001_initial_schema
Revises:
Create Date: 2026-10-18 12:00:00
"""

from typing import Sequence

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "0001_initial_schema"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "appeals",
        sa.Column("id", sa.String(length=32), nullable=False),
        sa.Column("username", sa.String(length=255), nullable=False),
        sa.Column("reason", sa.Text(), nullable=False),
        sa.Column("explanation", sa.Text(), nullable=False),
        sa.Column("user_email", sa.String(length=320), nullable=False),
        sa.Column("uid", sa.String(length=128), nullable=False),
        sa.Column("auth_type", sa.String(length=16), nullable=False),
        sa.Column("timestamp", sa.BigInteger(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("admin_note", sa.Text(), nullable=True),
        sa.Column("decided_by", sa.String(length=320), nullable=True),
        sa.Column("decided_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("ai_flag", sa.String(length=16), nullable=True),
        sa.Column("ai_verified", sa.Boolean(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.CheckConstraint(
            "status IN ('pending', 'approved', 'denied')",
            name=op.f("ck_appeals_appeals_status_values"),
        ),
        sa.CheckConstraint(
            "auth_type IN ('guest', 'google')",
            name=op.f("ck_appeals_appeals_auth_type_values"),
        ),
        sa.CheckConstraint(
            "ai_flag IS NULL OR ai_flag IN ('spam', 'clean')",
            name=op.f("ck_appeals_appeals_ai_flag_values"),
        ),
        sa.CheckConstraint(
            "((status = 'pending' AND admin_note IS NULL AND decided_by IS NULL) "
            "OR (status IN ('approved', 'denied') AND admin_note IS NOT NULL AND decided_by IS NOT NULL))",
            name=op.f("ck_appeals_appeals_decision_consistency"),
        ),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_appeals")),
    )
    op.create_index(op.f("ix_appeals_timestamp"), "appeals", ["timestamp"], unique=False)
    op.create_index(op.f("ix_appeals_user_email"), "appeals", ["user_email"], unique=False)
    op.create_index("ix_appeals_uid_timestamp", "appeals", ["uid", "timestamp"], unique=False)
    op.create_index("ix_appeals_status_timestamp", "appeals", ["status", "timestamp"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_appeals_status_timestamp", table_name="appeals")
    op.drop_index("ix_appeals_uid_timestamp", table_name="appeals")
    op.drop_index(op.f("ix_appeals_user_email"), table_name="appeals")
    op.drop_index(op.f("ix_appeals_timestamp"), table_name="appeals")
    op.drop_table("appeals")
