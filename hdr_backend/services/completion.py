#  HDR Backend - Webhook & Completion Pipeline
#
#  Handles provider callbacks. Terminal "image_processed" events trigger
#  the completion path (download enhanced previews, store them, record
#  files, announce download_ready) or the failure path, both in the
#  background so the provider gets its 200 immediately. Intermediate
#  events refresh the order's progress.
#
#  Depends on: services/provider.py, services/storage.py, services/store.py,
#              services/broadcast.py, services/tasks.py
#  Used by:    container.py, routes/webhooks.py

import logging
from datetime import datetime, timezone

import httpx

from hdr_backend.config import CLEANUP_BRACKETS
from hdr_backend.exceptions import (
    ObjectStoreError,
    PersistenceError,
    ProviderError,
    ValidationError,
)
from hdr_backend.models.enums import OrderStatus
from hdr_backend.models.schemas import WebhookEvent
from hdr_backend.services.provider import ProviderImage, retry

logger = logging.getLogger("hdr.completion")

IMAGE_FAILED_MESSAGE = "image processing failed"


def enhanced_filename(image_id: str, now: datetime | None = None) -> str:
    """enhanced_<first 8 chars of image id>_<yyyymmdd_hhmmss>.jpg"""
    now = now or datetime.now(timezone.utc)
    return f"enhanced_{image_id[:8]}_{now.strftime('%Y%m%d_%H%M%S')}.jpg"


def _is_ready(image: ProviderImage) -> bool:
    return (image.status or "").lower() == "completed" and not image.status_reason


class CompletionService:
    """Webhook dispatch plus the completion and failure paths."""

    def __init__(self, store, provider, object_store, broadcaster, runner):
        self._store = store
        self._provider = provider
        self._object_store = object_store
        self._broadcaster = broadcaster
        self._runner = runner

    # ------------------------------------------------------------------
    # Webhook dispatch
    # ------------------------------------------------------------------

    def handle_event(self, event: WebhookEvent) -> dict:
        """Route one provider event. Side effects are scheduled, not awaited."""
        if event.event == "webhook_updated":
            return {"status": "ok", "message": "webhook updated"}

        if event.event != "image_processed":
            logger.info("Ignoring provider event %s", event.event)
            return {"status": "ok", "message": f"event {event.event} ignored"}

        if not event.order_id:
            raise ValidationError("image_processed event requires order_id")

        order_id = event.order_id
        logger.info(
            "image_processed: order=%s image=%s error=%s order_is_processing=%s",
            order_id, event.image_id, event.error, event.order_is_processing,
        )

        self._runner.spawn(
            self._broadcaster.webhook_image_processed(
                order_id, event.image_id, event.error, event.order_is_processing,
            ),
            name=f"webhook-broadcast-{order_id}",
            order_id=order_id,
        )

        if event.error:
            self._runner.spawn(
                self.fail_order(order_id, IMAGE_FAILED_MESSAGE),
                name=f"fail-{order_id}",
                order_id=order_id,
            )
            action = "failure"
        elif not event.order_is_processing:
            self._runner.spawn(
                self.complete_order(order_id, event.image_id),
                name=f"complete-{order_id}",
                order_id=order_id,
            )
            action = "completion"
        else:
            self._runner.spawn(
                self.report_progress(order_id),
                name=f"progress-{order_id}",
                order_id=order_id,
            )
            action = "none"

        return {"status": "ok", "message": "webhook received", "action": action}

    # ------------------------------------------------------------------
    # Completion path
    # ------------------------------------------------------------------

    async def complete_order(self, order_id: str, image_hint: str | None = None) -> list[str]:
        """Download every finished image, store it and announce the URLs.

        Safe to run repeatedly: each run writes fresh timestamped files and
        republishes download_ready. Orders that already failed are left alone.
        Returns the stored URLs.
        """
        order = await self._store.get_order_by_id_no_user(order_id)
        if not order:
            logger.warning("Completion for unknown order %s dropped", order_id)
            return []
        if order["status"] == OrderStatus.FAILED.value:
            logger.info("Completion for failed order %s dropped", order_id)
            return []
        user_id = order["user_id"]

        try:
            provider_order = await retry(lambda: self._provider.get_order(order_id))
        except (ProviderError, httpx.HTTPError) as e:
            logger.error("Completion for order %s could not load provider order: %s", order_id, e)
            await self._store.update_order_error(
                order_id, f"failed to fetch processed images: {e}", mark_failed=False,
            )
            return []

        try:
            await self._store.sync_provider_fields(order_id, provider_order)
        except PersistenceError as e:
            logger.warning("Provider field sync failed for %s: %s", order_id, e)

        images = list(provider_order.images)
        if image_hint and all(img.image_id != image_hint for img in images):
            try:
                images.append(await self._provider.get_image(image_hint))
            except (ProviderError, httpx.HTTPError) as e:
                logger.warning("Hinted image %s unavailable: %s", image_hint, e)

        urls: list[str] = []
        recorded = 0
        for image in images:
            if not _is_ready(image):
                continue
            url, indexed = await self._store_enhanced(order_id, user_id, image.image_id)
            if url:
                urls.append(url)
                recorded += indexed

        if not urls:
            logger.info("Order %s: no finished images to store yet", order_id)
            return []
        if not recorded:
            logger.error("Order %s: %d image(s) stored but none recorded; status unchanged", order_id, len(urls))
            return urls

        if not await self._store.update_order_status(order_id, OrderStatus.COMPLETED, 100):
            # Failed while the images were being stored
            logger.warning("Order %s is no longer completable; %d stored image(s) not announced",
                           order_id, len(urls))
            return urls

        await self._broadcaster.download_ready(order_id, urls, user_id)
        await self._broadcaster.processing_completed(order_id, len(urls), user_id)
        logger.info("Order %s: stored %d enhanced image(s)", order_id, len(urls))

        if CLEANUP_BRACKETS:
            await self._cleanup_brackets(order_id)
        return urls

    async def _store_enhanced(self, order_id: str, user_id: str, image_id: str) -> tuple[str | None, bool]:
        """Returns (public URL or None, whether the stored-file row was written)."""
        try:
            data = await retry(
                lambda: self._provider.download_enhanced(image_id, format="jpeg"),
            )
        except (ProviderError, httpx.HTTPError) as e:
            logger.error("Download of image %s failed: %s", image_id, e)
            return None, False

        filename = enhanced_filename(image_id)
        try:
            path, url = await self._object_store.upload(user_id, order_id, filename, data)
        except ObjectStoreError as e:
            logger.error("Storing image %s failed: %s", image_id, e)
            await self._store.update_order_error(
                order_id, f"failed to store image {image_id}: {e}", mark_failed=False,
            )
            return None, False

        try:
            await self._store.create_stored_file(
                order_id,
                user_id,
                filename,
                path,
                url,
                len(data),
                provider_image_id=image_id,
                mime_type="image/jpeg",
                is_final=True,
            )
        except PersistenceError as e:
            # The blob is stored and reachable by URL; only the index row is missing
            logger.error("Recording stored file %s failed: %s", path, e)
            return url, False
        return url, True

    async def _cleanup_brackets(self, order_id: str) -> None:
        """Best-effort removal of provider-side brackets once previews are stored."""
        try:
            brackets = await self._provider.get_order_brackets(order_id)
        except (ProviderError, httpx.HTTPError) as e:
            logger.info("Bracket cleanup skipped for %s: %s", order_id, e)
            return
        removed = 0
        for bracket in brackets:
            try:
                await self._provider.delete_bracket(bracket.bracket_id)
                removed += 1
            except (ProviderError, httpx.HTTPError) as e:
                logger.info("Bracket %s cleanup failed: %s", bracket.bracket_id, e)
        logger.info("Order %s: cleaned up %d/%d provider bracket(s)", order_id, removed, len(brackets))

    # ------------------------------------------------------------------
    # Failure path
    # ------------------------------------------------------------------

    async def fail_order(self, order_id: str, message: str) -> None:
        order = await self._store.get_order_by_id_no_user(order_id)
        if not order:
            logger.warning("Failure for unknown order %s dropped", order_id)
            return
        if not await self._store.update_order_error(order_id, message):
            logger.info("Order %s already %s; failure not announced: %s", order_id, order["status"], message)
            return
        await self._broadcaster.processing_failed(order_id, message, order["user_id"])
        logger.info("Order %s marked failed: %s", order_id, message)

    # ------------------------------------------------------------------
    # Progress
    # ------------------------------------------------------------------

    async def report_progress(self, order_id: str) -> int | None:
        """Share of finished images on an in-flight order, stored and broadcast.

        Returns the stored progress, or None when the order is not processing
        or the provider could not be reached.
        """
        order = await self._store.get_order_by_id_no_user(order_id)
        if not order or order["status"] != OrderStatus.PROCESSING.value:
            return None
        try:
            provider_order = await self._provider.get_order(order_id)
        except (ProviderError, httpx.HTTPError) as e:
            logger.info("Progress for order %s unavailable: %s", order_id, e)
            return None

        total = provider_order.total_images or len(provider_order.images)
        if not total:
            return None
        done = sum(1 for image in provider_order.images if _is_ready(image))
        progress = await self._store.update_order_progress(order_id, done * 100 // total)
        if progress is None:
            return None
        await self._broadcaster.processing_progress(order_id, progress, order["user_id"])
        return progress
