#  HDR Backend - Order Store Tests
#
#  Tests for OrderStore: ownership scoping, status guards, progress
#  normalization, provider sync, brackets and stored files.
#
#  Depends on: hdr_backend/services/store.py
#  Used by:    pytest

import uuid
from unittest.mock import AsyncMock

import pytest

from hdr_backend.exceptions import PersistenceError
from hdr_backend.models.enums import OrderStatus
from hdr_backend.services.provider import ProviderOrder
from hdr_backend.services.store import OrderStore, normalize_progress
from tests.conftest import create_test_order
from tests.fakes import OTHER_USER_ID, USER_ID


class TestNormalizeProgress:
    def test_finished_statuses_are_100(self):
        assert normalize_progress("completed", 0) == 100
        assert normalize_progress("previews_ready", 42) == 100

    def test_others_capped_below_100(self):
        assert normalize_progress("processing", 100) == 99
        assert normalize_progress("processing", 250) == 99
        assert normalize_progress("uploading", -5) == 0
        assert normalize_progress("uploaded", 40) == 40


class TestOrders:
    async def test_create_and_get(self, store):
        order_id = str(uuid.uuid4())
        created = await store.create_order(order_id, USER_ID, {"k": "v"}, name="Kitchen")
        assert created["status"] == "created"
        assert created["progress"] == 0
        assert created["metadata"] == {"k": "v"}
        assert created["name"] == "Kitchen"
        assert created["is_processing"] is False

        fetched = await store.get_order(order_id, USER_ID)
        assert fetched["id"] == order_id

    async def test_get_is_scoped_to_owner(self, store):
        order = await create_test_order(store)
        assert await store.get_order(order["id"], OTHER_USER_ID) is None
        assert (await store.get_order_by_id_no_user(order["id"]))["user_id"] == USER_ID

    async def test_duplicate_id_rejected(self, store):
        order = await create_test_order(store)
        with pytest.raises(PersistenceError, match="failed to create order"):
            await store.create_order(order["id"], USER_ID)

    async def test_list_newest_first(self, store):
        first = await create_test_order(store)
        second = await create_test_order(store)
        await store._db.execute_write("UPDATE orders SET created_at = 1 WHERE id = ?", (first["id"],))
        listed = await store.list_orders(USER_ID)
        assert [o["id"] for o in listed] == [second["id"], first["id"]]
        assert await store.list_orders(OTHER_USER_ID) == []

    async def test_delete_scoped_to_owner(self, store):
        order = await create_test_order(store)
        assert await store.delete_order(order["id"], OTHER_USER_ID) is False
        assert await store.delete_order(order["id"], USER_ID) is True
        assert await store.get_order(order["id"], USER_ID) is None


class TestStatusTransitions:
    async def test_update_sets_status_and_progress(self, store):
        order = await create_test_order(store)
        assert await store.update_order_status(order["id"], OrderStatus.PROCESSING, 40) is True
        row = await store.get_order(order["id"], USER_ID)
        assert row["status"] == "processing"
        assert row["progress"] == 40

    async def test_completed_forces_progress_100(self, store):
        order = await create_test_order(store)
        await store.update_order_status(order["id"], OrderStatus.COMPLETED, 0)
        assert (await store.get_order(order["id"], USER_ID))["progress"] == 100

    @pytest.mark.parametrize("terminal", ["completed", "failed"])
    async def test_terminal_status_is_sticky(self, store, terminal):
        order = await create_test_order(store, status=terminal)
        assert await store.update_order_status(order["id"], OrderStatus.PROCESSING, 10) is False
        assert (await store.get_order(order["id"], USER_ID))["status"] == terminal

    async def test_same_terminal_status_can_be_reapplied(self, store):
        order = await create_test_order(store, status="completed")
        assert await store.update_order_status(order["id"], OrderStatus.COMPLETED, 100) is True

    async def test_error_marks_failed(self, store):
        order = await create_test_order(store, status="processing")
        await store.update_order_error(order["id"], "boom")
        row = await store.get_order(order["id"], USER_ID)
        assert row["status"] == "failed"
        assert row["progress"] == 0
        assert row["error_message"] == "boom"

    async def test_error_does_not_reopen_completed(self, store):
        order = await create_test_order(store, status="completed")
        await store.update_order_error(order["id"], "late failure")
        row = await store.get_order(order["id"], USER_ID)
        assert row["status"] == "completed"
        assert row["progress"] == 100
        assert row["error_message"] == "late failure"

    async def test_error_without_status_change(self, store):
        order = await create_test_order(store, status="uploaded")
        await store.update_order_error(order["id"], "Some files had issues", mark_failed=False)
        row = await store.get_order(order["id"], USER_ID)
        assert row["status"] == "uploaded"
        assert row["error_message"] == "Some files had issues"

    @pytest.mark.parametrize("status,moved", [("processing", True), ("completed", False), ("failed", False)])
    async def test_error_reports_whether_order_failed(self, store, status, moved):
        order = await create_test_order(store, status=status)
        assert await store.update_order_error(order["id"], "boom") is moved

    async def test_progress_only_on_processing_orders(self, store):
        processing = await create_test_order(store, status="processing")
        uploaded = await create_test_order(store, status="uploaded")

        assert await store.update_order_progress(processing["id"], 100) == 99
        assert await store.update_order_progress(uploaded["id"], 50) is None
        assert (await store.get_order(uploaded["id"], USER_ID))["progress"] == 0


class TestProviderSync:
    async def test_sync_copies_provider_fields(self, store):
        order = await create_test_order(store, name="Local")
        snapshot = ProviderOrder.model_validate({
            "order_id": order["id"],
            "name": "Remote",
            "status": "processing",
            "is_processing": True,
            "total_images": 3.0,
            "last_updated_at": "2024-05-01T10:00:00.123456789Z",
        })
        await store.sync_provider_fields(order["id"], snapshot)
        row = await store.get_order(order["id"], USER_ID)
        assert row["name"] == "Remote"
        assert row["provider_status"] == "processing"
        assert row["is_processing"] is True
        assert row["total_images"] == 3
        assert row["provider_last_updated_at"].startswith("2024-05-01T10:00:00.123456")

    async def test_blank_remote_name_keeps_local(self, store):
        order = await create_test_order(store, name="Local")
        await store.sync_provider_fields(order["id"], ProviderOrder(order_id=order["id"]))
        assert (await store.get_order(order["id"], USER_ID))["name"] == "Local"


class TestBrackets:
    async def test_insertion_order_and_lookup(self, store):
        order = await create_test_order(store)
        for n in range(3):
            await store.create_bracket(order["id"], f"b{n}", f"{n}.jpg", is_uploaded=True,
                                       metadata={"group_id": "g"})
        brackets = await store.get_brackets_by_order(order["id"])
        assert [b["bracket_id"] for b in brackets] == ["b0", "b1", "b2"]
        assert brackets[0]["metadata"] == {"group_id": "g"}
        assert brackets[0]["is_uploaded"] is True

        by_provider_id = await store.get_bracket(order["id"], "b1")
        by_local_id = await store.get_bracket(order["id"], by_provider_id["id"])
        assert by_local_id["bracket_id"] == "b1"
        assert await store.get_bracket(order["id"], "missing") is None

    async def test_duplicate_bracket_id_rejected(self, store):
        order = await create_test_order(store)
        await store.create_bracket(order["id"], "dup", "a.jpg")
        with pytest.raises(PersistenceError):
            await store.create_bracket(order["id"], "dup", "b.jpg")

    async def test_delete_bracket(self, store):
        order = await create_test_order(store)
        row = await store.create_bracket(order["id"], "gone", "a.jpg")
        assert await store.delete_bracket(row["id"]) is True
        assert await store.get_brackets_by_order(order["id"]) == []


class TestStoredFiles:
    async def test_same_path_upserts(self, store):
        order = await create_test_order(store)
        first = await store.create_stored_file(order["id"], USER_ID, "x.jpg", "p/x.jpg", "u1", 10,
                                               provider_image_id="img", is_final=True)
        second = await store.create_stored_file(order["id"], USER_ID, "x.jpg", "p/x.jpg", "u2", 20,
                                                provider_image_id="img", is_final=True)
        assert first["id"] == second["id"]
        files = await store.get_stored_files(order["id"], USER_ID)
        assert len(files) == 1
        assert files[0]["storage_url"] == "u2"
        assert files[0]["file_size"] == 20
        assert files[0]["is_final"] is True

    async def test_files_scoped_to_owner(self, store):
        order = await create_test_order(store)
        await store.create_stored_file(order["id"], USER_ID, "x.jpg", "p/x.jpg", "u", 1)
        assert await store.get_stored_files(order["id"], OTHER_USER_ID) == []

    async def test_delete_several(self, store):
        order = await create_test_order(store)
        a = await store.create_stored_file(order["id"], USER_ID, "a.jpg", "p/a.jpg", "u", 1)
        b = await store.create_stored_file(order["id"], USER_ID, "b.jpg", "p/b.jpg", "u", 1)
        await store.create_stored_file(order["id"], USER_ID, "c.jpg", "p/c.jpg", "u", 1)

        await store.delete_stored_files([a["id"], b["id"]])

        assert [f["filename"] for f in await store.get_stored_files(order["id"], USER_ID)] == ["c.jpg"]


class TestErrorMapping:
    async def test_sqlite_errors_become_persistence_errors(self, tmp_db):
        import sqlite3

        broken = OrderStore(db=tmp_db)
        tmp_db.fetchone = AsyncMock(side_effect=sqlite3.OperationalError("disk I/O error"))
        with pytest.raises(PersistenceError, match="failed to get order: disk I/O error"):
            await broken.get_order("x", USER_ID)

    async def test_duplicate_order_rolls_back_cleanly(self, store):
        order = await create_test_order(store)
        with pytest.raises(PersistenceError, match="failed to create order"):
            await store.create_order(order["id"], USER_ID)
        assert await store.create_order(str(uuid.uuid4()), USER_ID)
