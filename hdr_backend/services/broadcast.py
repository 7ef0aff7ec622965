#  HDR Backend - Realtime Broadcast
#
#  Publishes typed lifecycle events to per-order (and per-user) topics
#  through the Supabase Realtime broadcast endpoint.
#  Best-effort: failures are logged, never raised to callers.
#
#  Depends on: models/enums.py, exceptions.py
#  Used by:    container.py, services/uploads.py, services/processing.py,
#              services/completion.py

import logging
from datetime import datetime, timezone

import httpx

from hdr_backend.exceptions import BroadcastError
from hdr_backend.models.enums import BroadcastEvent, OrderStatus

logger = logging.getLogger("hdr.broadcast")

_OK_STATUSES = (200, 201, 202)


def order_topic(order_id: str) -> str:
    return f"order:{order_id}"


def user_topic(user_id: str) -> str:
    return f"user:{user_id}"


def _rfc3339_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class Broadcaster:
    """Single-shot HTTP publisher for realtime events.

    Without a service credential every publish is a logged no-op, which is
    how local development runs.
    """

    def __init__(self, http_client: httpx.AsyncClient, base_url: str, api_key: str):
        self._http = http_client
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key

    @property
    def enabled(self) -> bool:
        return bool(self._base_url and self._api_key)

    async def _send(self, topic: str, event: str, payload: dict) -> None:
        body = {"messages": [{"topic": topic, "event": event, "payload": payload}]}
        try:
            resp = await self._http.post(
                f"{self._base_url}/realtime/v1/api/broadcast",
                json=body,
                headers={"apikey": self._api_key},
            )
        except httpx.HTTPError as e:
            raise BroadcastError(f"broadcast request failed: {e}") from e
        if resp.status_code not in _OK_STATUSES:
            raise BroadcastError(f"broadcast failed: status {resp.status_code}, body: {resp.text}")

    async def publish(
        self,
        order_id: str,
        event: BroadcastEvent | str,
        payload: dict,
        user_id: str | None = None,
    ) -> bool:
        """Publish an event to order:<id>, mirrored to user:<id> when known.

        Returns True when every topic accepted the message.
        """
        event_name = event.value if isinstance(event, BroadcastEvent) else event
        if not self.enabled:
            logger.debug("Broadcast disabled, skipping %s for order %s", event_name, order_id)
            return False

        payload = {**payload, "timestamp": _rfc3339_now()}
        topics = [order_topic(order_id)]
        if user_id:
            topics.append(user_topic(user_id))

        delivered = True
        for topic in topics:
            try:
                await self._send(topic, event_name, payload)
            except BroadcastError as e:
                delivered = False
                logger.warning("Broadcast of %s to %s failed: %s", event_name, topic, e)
        return delivered

    # --- typed events ---

    async def upload_started(self, order_id: str, file_count: int, user_id: str | None = None) -> bool:
        return await self.publish(order_id, BroadcastEvent.UPLOAD_STARTED, {
            "order_id": order_id,
            "status": OrderStatus.UPLOADING.value,
            "file_count": file_count,
        }, user_id)

    async def upload_completed(self, order_id: str, file_count: int, user_id: str | None = None) -> bool:
        return await self.publish(order_id, BroadcastEvent.UPLOAD_COMPLETED, {
            "order_id": order_id,
            "status": OrderStatus.UPLOADED.value,
            "file_count": file_count,
        }, user_id)

    async def processing_started(self, order_id: str, user_id: str | None = None) -> bool:
        return await self.publish(order_id, BroadcastEvent.PROCESSING_STARTED, {
            "order_id": order_id,
            "status": OrderStatus.PROCESSING.value,
        }, user_id)

    async def processing_progress(self, order_id: str, progress: int, user_id: str | None = None) -> bool:
        return await self.publish(order_id, BroadcastEvent.PROCESSING_PROGRESS, {
            "order_id": order_id,
            "progress": progress,
        }, user_id)

    async def webhook_image_processed(
        self,
        order_id: str,
        image_id: str | None,
        error: bool,
        order_is_processing: bool,
    ) -> bool:
        return await self.publish(order_id, BroadcastEvent.WEBHOOK_IMAGE_PROCESSED, {
            "order_id": order_id,
            "image_id": image_id,
            "error": error,
            "order_is_processing": order_is_processing,
        })

    async def download_ready(self, order_id: str, storage_urls: list[str], user_id: str | None = None) -> bool:
        return await self.publish(order_id, BroadcastEvent.DOWNLOAD_READY, {
            "order_id": order_id,
            "status": OrderStatus.PREVIEWS_READY.value,
            "storage_urls": storage_urls,
        }, user_id)

    async def processing_completed(self, order_id: str, file_count: int, user_id: str | None = None) -> bool:
        return await self.publish(order_id, BroadcastEvent.PROCESSING_COMPLETED, {
            "order_id": order_id,
            "status": OrderStatus.COMPLETED.value,
            "progress": 100,
            "file_count": file_count,
        }, user_id)

    async def processing_failed(self, order_id: str, error: str, user_id: str | None = None) -> bool:
        return await self.publish(order_id, BroadcastEvent.PROCESSING_FAILED, {
            "order_id": order_id,
            "status": OrderStatus.FAILED.value,
            "error": error,
        }, user_id)
