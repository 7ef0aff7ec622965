"""Add stored_files table for enhanced artifacts.

Revision ID: 002
Revises: 001
Create Date: 2026-03-09
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "002"
down_revision: Union[str, None] = "001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "stored_files",
        sa.Column("id", sa.Text, primary_key=True),
        sa.Column("order_id", sa.Text, sa.ForeignKey("orders.id", ondelete="CASCADE"), nullable=False),
        sa.Column("user_id", sa.Text, nullable=False),
        sa.Column("filename", sa.Text, nullable=False),
        sa.Column("provider_image_id", sa.Text),
        sa.Column("storage_path", sa.Text, nullable=False),
        sa.Column("storage_url", sa.Text, nullable=False),
        sa.Column("file_size", sa.Integer, nullable=False, server_default="0"),
        sa.Column("mime_type", sa.Text, nullable=False, server_default="image/jpeg"),
        sa.Column("is_final", sa.Integer, nullable=False, server_default="0"),
        sa.Column("created_at", sa.Float, nullable=False),
        sa.UniqueConstraint("user_id", "order_id", "storage_path", name="uq_files_path"),
    )
    op.create_index("idx_files_order", "stored_files", ["order_id"])
    op.create_index("idx_files_image", "stored_files", ["provider_image_id"])


def downgrade() -> None:
    op.drop_index("idx_files_image", "stored_files")
    op.drop_index("idx_files_order", "stored_files")
    op.drop_table("stored_files")
