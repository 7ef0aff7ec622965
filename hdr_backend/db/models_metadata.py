#  HDR Backend - SQLAlchemy Table Metadata
#
#  Declarative Table definitions for Alembic autogenerate.
#  These mirror the SQLite schema but are NOT used at runtime;
#  the app issues raw SQL via aiosqlite.
#
#  Depends on: (none)
#  Used by:    migrations/env.py (Alembic autogenerate)

from sqlalchemy import (
    CheckConstraint,
    Column,
    Float,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    Table,
    Text,
    UniqueConstraint,
)

metadata = MetaData()

orders = Table(
    "orders",
    metadata,
    Column("id", Text, primary_key=True),
    Column("user_id", Text, nullable=False),
    Column("status", Text, nullable=False, server_default="created"),
    Column("progress", Integer, nullable=False, server_default="0"),
    Column("metadata_json", Text, nullable=False, server_default="{}"),
    Column("name", Text),
    Column("provider_status", Text),
    Column("is_processing", Integer, nullable=False, server_default="0"),
    Column("is_merging", Integer, nullable=False, server_default="0"),
    Column("is_deleted", Integer, nullable=False, server_default="0"),
    Column("total_images", Integer, nullable=False, server_default="0"),
    Column("provider_last_updated_at", Text),
    Column("error_message", Text),
    Column("created_at", Float, nullable=False),
    Column("updated_at", Float, nullable=False),
    CheckConstraint("progress BETWEEN 0 AND 100", name="ck_orders_progress"),
)

brackets = Table(
    "brackets",
    metadata,
    Column("id", Text, primary_key=True),
    Column("order_id", Text, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False),
    Column("bracket_id", Text, nullable=False),
    Column("image_id", Text),
    Column("filename", Text, nullable=False),
    Column("upload_url", Text),
    Column("is_uploaded", Integer, nullable=False, server_default="0"),
    Column("metadata_json", Text, nullable=False, server_default="{}"),
    Column("created_at", Float, nullable=False),
    UniqueConstraint("order_id", "bracket_id", name="uq_brackets_order_bracket"),
)

stored_files = Table(
    "stored_files",
    metadata,
    Column("id", Text, primary_key=True),
    Column("order_id", Text, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False),
    Column("user_id", Text, nullable=False),
    Column("filename", Text, nullable=False),
    Column("provider_image_id", Text),
    Column("storage_path", Text, nullable=False),
    Column("storage_url", Text, nullable=False),
    Column("file_size", Integer, nullable=False, server_default="0"),
    Column("mime_type", Text, nullable=False, server_default="image/jpeg"),
    Column("is_final", Integer, nullable=False, server_default="0"),
    Column("created_at", Float, nullable=False),
    UniqueConstraint("user_id", "order_id", "storage_path", name="uq_files_path"),
)

# Indexes
Index("idx_orders_user", orders.c.user_id)
Index("idx_orders_status", orders.c.status)
Index("idx_brackets_order", brackets.c.order_id)
Index("idx_files_order", stored_files.c.order_id)
Index("idx_files_image", stored_files.c.provider_image_id)
