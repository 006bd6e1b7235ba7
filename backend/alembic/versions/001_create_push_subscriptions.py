"""create push subscriptions

Revision ID: 001_create_push_subscriptions
Revises:
Create Date: 2026-10-17
"""

import sqlalchemy as sa

from alembic import op

revision = "001_create_push_subscriptions"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "push_subscriptions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("endpoint", sa.String(1000), nullable=False, unique=True),
        sa.Column("p256dh", sa.String(255), nullable=False),
        sa.Column("auth", sa.String(255), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
    )
    op.create_index("ix_push_subscriptions_id", "push_subscriptions", ["id"])


def downgrade() -> None:
    op.drop_index("ix_push_subscriptions_id", "push_subscriptions")
    op.drop_table("push_subscriptions")
