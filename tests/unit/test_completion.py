#  HDR Backend - Webhook & Completion Tests
#
#  Tests for webhook event routing and the completion and failure paths.
#
#  Depends on: hdr_backend/services/completion.py
#  Used by:    pytest

import re
from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest

from hdr_backend.exceptions import PersistenceError, ValidationError
from hdr_backend.models.schemas import WebhookEvent
from hdr_backend.services.completion import IMAGE_FAILED_MESSAGE, enhanced_filename
from tests.conftest import create_test_order


async def _processed_order(store, fake_provider, images=2):
    provider_order = fake_provider.add_order()
    order = await create_test_order(store, order_id=provider_order["order_id"], status="processing")
    for _ in range(images):
        fake_provider.add_image(order["id"])
    fake_provider.finish(order["id"])
    return order


class TestEnhancedFilename:
    def test_format(self):
        now = datetime(2024, 5, 1, 9, 8, 7, tzinfo=timezone.utc)
        assert enhanced_filename("abcdef123456", now) == "enhanced_abcdef12_20240501_090807.jpg"

    def test_default_clock(self):
        assert re.fullmatch(r"enhanced_abcdefgh_\d{8}_\d{6}\.jpg", enhanced_filename("abcdefghij"))


class TestHandleEvent:
    def test_webhook_updated(self, services):
        result = services.completion.handle_event(WebhookEvent(event="webhook_updated"))
        assert result == {"status": "ok", "message": "webhook updated"}

    def test_unknown_event_ignored(self, services, runner):
        result = services.completion.handle_event(WebhookEvent(event="order_created"))
        assert result["status"] == "ok"
        assert runner.pending == 0

    def test_image_processed_requires_order(self, services):
        with pytest.raises(ValidationError):
            services.completion.handle_event(WebhookEvent(event="image_processed"))

    async def test_still_processing_reports_progress(self, services, store, fake_provider, fake_supabase, runner):
        provider_order = fake_provider.add_order()
        order = await create_test_order(store, order_id=provider_order["order_id"], status="processing")
        fake_provider.add_image(order["id"], status="completed")
        fake_provider.add_image(order["id"])

        result = services.completion.handle_event(WebhookEvent(
            event="image_processed", order_id=order["id"], image_id="i", order_is_processing=True,
        ))
        await runner.drain(timeout=5)

        assert result["action"] == "none"
        topic = f"order:{order['id']}"
        assert sorted(fake_supabase.events(topic)) == ["processing_progress", "webhook_image_processed"]
        assert fake_supabase.payloads("processing_progress", topic)[0]["progress"] == 50
        row = await store.get_order(order["id"], order["user_id"])
        assert row["status"] == "processing"
        assert row["progress"] == 50

    async def test_progress_skipped_once_completed(self, services, store, fake_provider, fake_supabase):
        provider_order = fake_provider.add_order()
        order = await create_test_order(store, order_id=provider_order["order_id"], status="completed")
        fake_provider.add_image(order["id"])

        assert await services.completion.report_progress(order["id"]) is None
        assert (await store.get_order(order["id"], order["user_id"]))["progress"] == 100
        assert fake_supabase.events() == []

    async def test_error_schedules_failure(self, services, store, fake_provider, runner):
        order = await _processed_order(store, fake_provider)
        result = services.completion.handle_event(WebhookEvent(
            event="image_processed", order_id=order["id"], error=True,
        ))
        await runner.drain(timeout=5)

        assert result["action"] == "failure"
        row = await store.get_order(order["id"], order["user_id"])
        assert row["status"] == "failed"
        assert row["error_message"] == IMAGE_FAILED_MESSAGE

    async def test_final_event_schedules_completion(self, services, store, fake_provider, runner):
        order = await _processed_order(store, fake_provider)
        result = services.completion.handle_event(WebhookEvent(
            event="image_processed", order_id=order["id"], order_is_processing=False,
        ))
        assert result["action"] == "completion"
        await runner.drain(timeout=5)
        assert (await store.get_order(order["id"], order["user_id"]))["status"] == "completed"


class TestCompleteOrder:
    async def test_stores_every_finished_image(self, services, store, fake_provider, fake_supabase):
        order = await _processed_order(store, fake_provider, images=2)

        urls = await services.completion.complete_order(order["id"])

        assert len(urls) == 2
        for url in urls:
            assert fake_supabase.fetch(url).startswith(b"enhanced:")
        files = await store.get_stored_files(order["id"], order["user_id"])
        assert len(files) == 2
        assert all(f["is_final"] and f["filename"].startswith("enhanced_") for f in files)

        row = await store.get_order(order["id"], order["user_id"])
        assert row["status"] == "completed"
        assert row["progress"] == 100

        topic = f"order:{order['id']}"
        assert fake_supabase.events(topic) == ["download_ready", "processing_completed"]
        assert fake_supabase.payloads("download_ready", topic)[0]["storage_urls"] == urls

    async def test_repeat_run_is_harmless(self, services, store, fake_provider):
        order = await _processed_order(store, fake_provider, images=1)
        await services.completion.complete_order(order["id"])
        again = await services.completion.complete_order(order["id"])
        assert len(again) == 1
        assert (await store.get_order(order["id"], order["user_id"]))["status"] == "completed"

    async def test_unfinished_images_skipped(self, services, store, fake_provider):
        provider_order = fake_provider.add_order()
        order = await create_test_order(store, order_id=provider_order["order_id"], status="processing")
        fake_provider.add_image(order["id"], status="processing")

        assert await services.completion.complete_order(order["id"]) == []
        assert (await store.get_order(order["id"], order["user_id"]))["status"] == "processing"

    async def test_unknown_order_dropped(self, services):
        assert await services.completion.complete_order("no-such-order") == []

    async def test_provider_outage_records_error(self, services, store, fake_provider):
        order = await _processed_order(store, fake_provider)
        fake_provider.fail("get_order", 503, 503, 503)

        assert await services.completion.complete_order(order["id"]) == []
        row = await store.get_order(order["id"], order["user_id"])
        assert row["status"] == "processing"
        assert row["error_message"].startswith("failed to fetch processed images")

    async def test_storage_failure_records_error(self, services, store, fake_provider, fake_supabase):
        order = await _processed_order(store, fake_provider, images=1)
        fake_supabase.storage_status = 500

        assert await services.completion.complete_order(order["id"]) == []
        row = await store.get_order(order["id"], order["user_id"])
        assert row["error_message"].startswith("failed to store image")

    async def test_failed_order_is_not_completed(self, services, store, fake_provider, fake_supabase):
        order = await _processed_order(store, fake_provider, images=1)
        await store.update_order_error(order["id"], "image processing failed")

        assert await services.completion.complete_order(order["id"]) == []

        row = await store.get_order(order["id"], order["user_id"])
        assert row["status"] == "failed"
        assert row["progress"] == 0
        assert await store.get_stored_files(order["id"], order["user_id"]) == []
        assert fake_supabase.events(f"order:{order['id']}") == []

    async def test_failure_during_storage_is_not_announced(
        self, services, store, fake_provider, fake_supabase, provider_client, monkeypatch,
    ):
        order = await _processed_order(store, fake_provider, images=1)
        download = provider_client.download_enhanced

        async def fail_then_download(image_id, **kwargs):
            await store.update_order_error(order["id"], "image processing failed")
            return await download(image_id, **kwargs)

        monkeypatch.setattr(provider_client, "download_enhanced", fail_then_download)

        urls = await services.completion.complete_order(order["id"])

        assert len(urls) == 1
        assert (await store.get_order(order["id"], order["user_id"]))["status"] == "failed"
        events = fake_supabase.events(f"order:{order['id']}")
        assert "download_ready" not in events
        assert "processing_completed" not in events

    async def test_unrecorded_files_do_not_complete_order(
        self, services, store, fake_provider, fake_supabase, monkeypatch,
    ):
        order = await _processed_order(store, fake_provider, images=1)
        monkeypatch.setattr(store, "create_stored_file", AsyncMock(side_effect=PersistenceError("disk full")))

        urls = await services.completion.complete_order(order["id"])

        assert len(urls) == 1
        assert (await store.get_order(order["id"], order["user_id"]))["status"] == "processing"
        assert fake_supabase.events(f"order:{order['id']}") == []

    async def test_brackets_cleaned_up(self, services, store, fake_provider, provider_client, monkeypatch):
        monkeypatch.setattr("hdr_backend.services.completion.CLEANUP_BRACKETS", True)
        order = await _processed_order(store, fake_provider, images=1)
        bracket = await provider_client.create_bracket(order["id"], "a.jpg")

        await services.completion.complete_order(order["id"])

        assert bracket.bracket_id not in fake_provider.brackets

    async def test_cleanup_disabled(self, services, store, fake_provider, provider_client, monkeypatch):
        monkeypatch.setattr("hdr_backend.services.completion.CLEANUP_BRACKETS", False)
        order = await _processed_order(store, fake_provider, images=1)
        bracket = await provider_client.create_bracket(order["id"], "a.jpg")

        await services.completion.complete_order(order["id"])

        assert bracket.bracket_id in fake_provider.brackets


class TestFailOrder:
    async def test_marks_failed_and_broadcasts(self, services, store, fake_supabase):
        order = await create_test_order(store, status="processing")
        await services.completion.fail_order(order["id"], "boom")

        row = await store.get_order(order["id"], order["user_id"])
        assert row["status"] == "failed"
        payload = fake_supabase.payloads("processing_failed", f"order:{order['id']}")[0]
        assert payload["error"] == "boom"

    async def test_completed_order_stays_completed(self, services, store, fake_supabase):
        order = await create_test_order(store, status="completed")
        await services.completion.fail_order(order["id"], "late")
        row = await store.get_order(order["id"], order["user_id"])
        assert row["status"] == "completed"
        assert row["error_message"] == "late"
        assert fake_supabase.events() == []
