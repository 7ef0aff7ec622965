"""Cache provider-side order fields on orders.

Revision ID: 003
Revises: 002
Create Date: 2026-03-16
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "003"
down_revision: Union[str, None] = "002"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    with op.batch_alter_table("orders") as batch_op:
        batch_op.add_column(sa.Column("name", sa.Text, nullable=True))
        batch_op.add_column(sa.Column("provider_status", sa.Text, nullable=True))
        batch_op.add_column(sa.Column("is_processing", sa.Integer, nullable=False, server_default="0"))
        batch_op.add_column(sa.Column("is_merging", sa.Integer, nullable=False, server_default="0"))
        batch_op.add_column(sa.Column("is_deleted", sa.Integer, nullable=False, server_default="0"))
        batch_op.add_column(sa.Column("total_images", sa.Integer, nullable=False, server_default="0"))
        batch_op.add_column(sa.Column("provider_last_updated_at", sa.Text, nullable=True))


def downgrade() -> None:
    with op.batch_alter_table("orders") as batch_op:
        batch_op.drop_column("provider_last_updated_at")
        batch_op.drop_column("total_images")
        batch_op.drop_column("is_deleted")
        batch_op.drop_column("is_merging")
        batch_op.drop_column("is_processing")
        batch_op.drop_column("provider_status")
        batch_op.drop_column("name")
