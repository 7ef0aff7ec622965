"""Initial schema: orders and brackets.

Revision ID: 001
Revises: None
Create Date: 2026-03-02
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "orders",
        sa.Column("id", sa.Text, primary_key=True),
        sa.Column("user_id", sa.Text, nullable=False),
        sa.Column("status", sa.Text, nullable=False, server_default="created"),
        sa.Column("progress", sa.Integer, nullable=False, server_default="0"),
        sa.Column("metadata_json", sa.Text, nullable=False, server_default="{}"),
        sa.Column("error_message", sa.Text),
        sa.Column("created_at", sa.Float, nullable=False),
        sa.Column("updated_at", sa.Float, nullable=False),
        sa.CheckConstraint("progress BETWEEN 0 AND 100", name="ck_orders_progress"),
    )

    op.create_table(
        "brackets",
        sa.Column("id", sa.Text, primary_key=True),
        sa.Column("order_id", sa.Text, sa.ForeignKey("orders.id", ondelete="CASCADE"), nullable=False),
        sa.Column("bracket_id", sa.Text, nullable=False),
        sa.Column("image_id", sa.Text),
        sa.Column("filename", sa.Text, nullable=False),
        sa.Column("upload_url", sa.Text),
        sa.Column("is_uploaded", sa.Integer, nullable=False, server_default="0"),
        sa.Column("metadata_json", sa.Text, nullable=False, server_default="{}"),
        sa.Column("created_at", sa.Float, nullable=False),
        sa.UniqueConstraint("order_id", "bracket_id", name="uq_brackets_order_bracket"),
    )

    op.create_index("idx_orders_user", "orders", ["user_id"])
    op.create_index("idx_orders_status", "orders", ["status"])
    op.create_index("idx_brackets_order", "brackets", ["order_id"])


def downgrade() -> None:
    op.drop_index("idx_brackets_order", "brackets")
    op.drop_index("idx_orders_status", "orders")
    op.drop_index("idx_orders_user", "orders")
    op.drop_table("brackets")
    op.drop_table("orders")
