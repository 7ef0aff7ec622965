#  HDR Backend - Persistence Store
#
#  Order, bracket and stored-file records on top of the async Database.
#  User-facing reads are scoped by user_id; the webhook path uses the
#  unscoped lookup because provider callbacks carry no caller identity.
#
#  Depends on: db/connection.py, models/enums.py, services/provider.py
#  Used by:    container.py, services/*, routes/*

import json
import logging
import sqlite3
import time
import uuid
from contextlib import contextmanager

from hdr_backend.exceptions import PersistenceError
from hdr_backend.models.enums import TERMINAL_STATUSES, OrderStatus
from hdr_backend.services.provider import ProviderOrder

logger = logging.getLogger("hdr.store")

_DONE_STATUSES = (OrderStatus.PREVIEWS_READY.value, OrderStatus.COMPLETED.value)
_TERMINAL = tuple(s.value for s in TERMINAL_STATUSES)


@contextmanager
def _db_errors(action: str):
    try:
        yield
    except sqlite3.Error as e:
        raise PersistenceError(f"failed to {action}: {e}") from e


def _loads(raw: str | None) -> dict:
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        return {}
    return value if isinstance(value, dict) else {}


def _order_dict(row) -> dict:
    d = dict(row)
    d["metadata"] = _loads(d.pop("metadata_json", None))
    for key in ("is_processing", "is_merging", "is_deleted"):
        d[key] = bool(d[key])
    return d


def _bracket_dict(row) -> dict:
    d = dict(row)
    d["metadata"] = _loads(d.pop("metadata_json", None))
    d["is_uploaded"] = bool(d["is_uploaded"])
    return d


def _file_dict(row) -> dict:
    d = dict(row)
    d["is_final"] = bool(d["is_final"])
    return d


def normalize_progress(status: str, progress: int) -> int:
    """Keep progress in [0, 100] with 100 reserved for finished orders."""
    if status in _DONE_STATUSES:
        return 100
    return max(0, min(int(progress), 99))


class OrderStore:
    """Transactional record of orders, their brackets and stored files."""

    def __init__(self, db):
        self._db = db

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    async def create_order(
        self,
        order_id: str,
        user_id: str,
        metadata: dict | None = None,
        name: str | None = None,
    ) -> dict:
        now = time.time()
        with _db_errors("create order"):
            async with self._db.transaction():
                await self._db.execute_write(
                    "INSERT INTO orders (id, user_id, status, progress, metadata_json, name, "
                    "created_at, updated_at) VALUES (?, ?, ?, 0, ?, ?, ?, ?)",
                    (order_id, user_id, OrderStatus.CREATED.value, json.dumps(metadata or {}),
                     name, now, now),
                )
                row = await self._db.fetchone("SELECT * FROM orders WHERE id = ?", (order_id,))
        return _order_dict(row)

    async def get_order(self, order_id: str, user_id: str) -> dict | None:
        with _db_errors("get order"):
            row = await self._db.fetchone(
                "SELECT * FROM orders WHERE id = ? AND user_id = ?", (order_id, user_id),
            )
        return _order_dict(row) if row else None

    async def get_order_by_id_no_user(self, order_id: str) -> dict | None:
        with _db_errors("get order"):
            row = await self._db.fetchone("SELECT * FROM orders WHERE id = ?", (order_id,))
        return _order_dict(row) if row else None

    async def list_orders(self, user_id: str) -> list[dict]:
        with _db_errors("list orders"):
            rows = await self._db.fetchall(
                "SELECT * FROM orders WHERE user_id = ? ORDER BY created_at DESC", (user_id,),
            )
        return [_order_dict(r) for r in rows]

    async def update_order_status(self, order_id: str, status: OrderStatus | str, progress: int = 0) -> bool:
        """Move an order to a new status.

        Terminal orders are left untouched unless the new status equals the
        current one. Returns True if the row changed.
        """
        status = status.value if isinstance(status, OrderStatus) else status
        placeholders = ", ".join("?" for _ in _TERMINAL)
        with _db_errors("update order status"):
            cursor = await self._db.execute_write(
                "UPDATE orders SET status = ?, progress = ?, updated_at = ? "
                f"WHERE id = ? AND (status NOT IN ({placeholders}) OR status = ?)",
                (status, normalize_progress(status, progress), time.time(), order_id,
                 *_TERMINAL, status),
            )
        if cursor.rowcount == 0:
            logger.info("Status update to %s skipped for order %s (missing or terminal)", status, order_id)
        return cursor.rowcount > 0

    async def update_order_error(self, order_id: str, message: str, *, mark_failed: bool = True) -> bool:
        """Record an error message; non-terminal orders move to 'failed' unless told otherwise.

        The message is stored even on terminal orders. Returns True only if
        the order moved to 'failed' in this call.
        """
        placeholders = ", ".join("?" for _ in _TERMINAL)
        now = time.time()
        with _db_errors("update order error"):
            if not mark_failed:
                await self._db.execute_write(
                    "UPDATE orders SET error_message = ?, updated_at = ? WHERE id = ?",
                    (message, now, order_id),
                )
                return False
            async with self._db.transaction():
                cursor = await self._db.execute_write(
                    "UPDATE orders SET status = ?, progress = 0, error_message = ?, updated_at = ? "
                    f"WHERE id = ? AND status NOT IN ({placeholders})",
                    (OrderStatus.FAILED.value, message, now, order_id, *_TERMINAL),
                )
                moved = cursor.rowcount > 0
                if not moved:
                    await self._db.execute_write(
                        "UPDATE orders SET error_message = ?, updated_at = ? WHERE id = ?",
                        (message, now, order_id),
                    )
        if not moved:
            logger.info("Order %s already terminal; error recorded without status change", order_id)
        return moved

    async def update_order_progress(self, order_id: str, progress: int) -> int | None:
        """Set progress on a processing order. Returns the stored value, None if not processing."""
        progress = normalize_progress(OrderStatus.PROCESSING.value, progress)
        with _db_errors("update order progress"):
            cursor = await self._db.execute_write(
                "UPDATE orders SET progress = ?, updated_at = ? WHERE id = ? AND status = ?",
                (progress, time.time(), order_id, OrderStatus.PROCESSING.value),
            )
        return progress if cursor.rowcount > 0 else None

    async def sync_provider_fields(self, order_id: str, provider_order: ProviderOrder) -> None:
        """Mirror the provider's view of an order into the cached columns."""
        last_updated = provider_order.last_updated_at.isoformat() if provider_order.last_updated_at else None
        with _db_errors("sync provider fields"):
            await self._db.execute_write(
                "UPDATE orders SET name = COALESCE(NULLIF(?, ''), name), provider_status = ?, "
                "is_processing = ?, is_merging = ?, is_deleted = ?, total_images = ?, "
                "provider_last_updated_at = ?, updated_at = ? WHERE id = ?",
                (
                    provider_order.name,
                    provider_order.status,
                    int(provider_order.is_processing),
                    int(provider_order.is_merging),
                    int(provider_order.is_deleted),
                    provider_order.total_images,
                    last_updated,
                    time.time(),
                    order_id,
                ),
            )

    async def delete_order(self, order_id: str, user_id: str) -> bool:
        """Delete an order; brackets and stored files go with it (FK cascade)."""
        with _db_errors("delete order"):
            cursor = await self._db.execute_write(
                "DELETE FROM orders WHERE id = ? AND user_id = ?", (order_id, user_id),
            )
        return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # Brackets
    # ------------------------------------------------------------------

    async def create_bracket(
        self,
        order_id: str,
        bracket_id: str,
        filename: str,
        *,
        image_id: str | None = None,
        upload_url: str | None = None,
        is_uploaded: bool = False,
        metadata: dict | None = None,
    ) -> dict:
        local_id = str(uuid.uuid4())
        with _db_errors("create bracket"):
            async with self._db.transaction():
                await self._db.execute_write(
                    "INSERT INTO brackets (id, order_id, bracket_id, image_id, filename, upload_url, "
                    "is_uploaded, metadata_json, created_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (local_id, order_id, bracket_id, image_id, filename, upload_url,
                     int(is_uploaded), json.dumps(metadata or {}), time.time()),
                )
                row = await self._db.fetchone("SELECT * FROM brackets WHERE id = ?", (local_id,))
        return _bracket_dict(row)

    async def get_brackets_by_order(self, order_id: str) -> list[dict]:
        """Brackets in insertion order."""
        with _db_errors("get brackets"):
            rows = await self._db.fetchall(
                "SELECT * FROM brackets WHERE order_id = ? ORDER BY created_at, rowid", (order_id,),
            )
        return [_bracket_dict(r) for r in rows]

    async def get_bracket(self, order_id: str, bracket_id: str) -> dict | None:
        """Look up a bracket by its provider id or local id within one order."""
        with _db_errors("get bracket"):
            row = await self._db.fetchone(
                "SELECT * FROM brackets WHERE order_id = ? AND (bracket_id = ? OR id = ?)",
                (order_id, bracket_id, bracket_id),
            )
        return _bracket_dict(row) if row else None

    async def delete_bracket(self, bracket_row_id: str) -> bool:
        with _db_errors("delete bracket"):
            cursor = await self._db.execute_write(
                "DELETE FROM brackets WHERE id = ?", (bracket_row_id,),
            )
        return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # Stored files
    # ------------------------------------------------------------------

    async def create_stored_file(
        self,
        order_id: str,
        user_id: str,
        filename: str,
        storage_path: str,
        storage_url: str,
        file_size: int,
        *,
        provider_image_id: str | None = None,
        mime_type: str = "image/jpeg",
        is_final: bool = False,
    ) -> dict:
        """Record a stored blob. Rewriting the same path refreshes the existing row."""
        file_id = str(uuid.uuid4())
        with _db_errors("create stored file"):
            async with self._db.transaction():
                await self._db.execute_write(
                    "INSERT INTO stored_files (id, order_id, user_id, filename, provider_image_id, "
                    "storage_path, storage_url, file_size, mime_type, is_final, created_at) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?) "
                    "ON CONFLICT (user_id, order_id, storage_path) DO UPDATE SET "
                    "storage_url = excluded.storage_url, file_size = excluded.file_size, "
                    "mime_type = excluded.mime_type, is_final = excluded.is_final, "
                    "provider_image_id = excluded.provider_image_id, created_at = excluded.created_at",
                    (file_id, order_id, user_id, filename, provider_image_id, storage_path,
                     storage_url, file_size, mime_type, int(is_final), time.time()),
                )
                row = await self._db.fetchone(
                    "SELECT * FROM stored_files WHERE user_id = ? AND order_id = ? AND storage_path = ?",
                    (user_id, order_id, storage_path),
                )
        return _file_dict(row)

    async def get_stored_files(self, order_id: str, user_id: str) -> list[dict]:
        with _db_errors("get stored files"):
            rows = await self._db.fetchall(
                "SELECT * FROM stored_files WHERE order_id = ? AND user_id = ? "
                "ORDER BY created_at, rowid",
                (order_id, user_id),
            )
        return [_file_dict(r) for r in rows]

    async def delete_stored_files(self, file_ids: list[str]) -> None:
        """Delete several stored-file rows atomically."""
        with _db_errors("delete stored files"):
            await self._db.execute_many_write(
                [("DELETE FROM stored_files WHERE id = ?", (file_id,)) for file_id in file_ids]
            )
