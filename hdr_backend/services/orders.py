#  HDR Backend - Order Service
#
#  Order creation, listing with opportunistic reconciliation against the
#  provider, verification snapshots, bracket bookkeeping and cascade delete.
#
#  Depends on: services/provider.py, services/storage.py, services/store.py,
#              services/tasks.py
#  Used by:    container.py, routes/orders.py

import logging
import uuid

import httpx

from hdr_backend.exceptions import (
    NotFoundError,
    ObjectStoreError,
    PersistenceError,
    ProviderError,
)
from hdr_backend.services.provider import ProviderOrder, retry

logger = logging.getLogger("hdr.orders")

DEFAULT_ORDER_NAME = "Order"


def _bracket_view(bracket) -> dict:
    return bracket.model_dump(exclude={"upload_url"})


class OrderService:
    """Order lifecycle operations that are not part of upload/process/webhook."""

    def __init__(self, store, provider, object_store, runner):
        self._store = store
        self._provider = provider
        self._object_store = object_store
        self._runner = runner

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    async def create_order(self, user_id: str, name: str | None = None, metadata: dict | None = None) -> dict:
        """Create the order at the provider, then mirror it locally under the same id."""
        name = name or DEFAULT_ORDER_NAME
        provider_order = await retry(lambda: self._provider.create_order(name))

        try:
            uuid.UUID(provider_order.order_id)
        except ValueError as e:
            raise ProviderError(
                f"provider returned a non-UUID order id: {provider_order.order_id!r}"
            ) from e

        order_id = provider_order.order_id
        await self._store.create_order(order_id, user_id, metadata, name=provider_order.name or name)
        try:
            await self._store.sync_provider_fields(order_id, provider_order)
        except PersistenceError as e:
            logger.warning("Initial provider sync for %s failed: %s", order_id, e)

        logger.info("Created order %s for user %s", order_id, user_id)
        return await self._store.get_order(order_id, user_id)

    # ------------------------------------------------------------------
    # Reads with opportunistic refresh
    # ------------------------------------------------------------------

    async def _persist_snapshot(self, order_id: str, provider_order: ProviderOrder) -> None:
        await self._store.sync_provider_fields(order_id, provider_order)

    def _schedule_sync(self, order_id: str, provider_order: ProviderOrder) -> None:
        self._runner.spawn(
            self._persist_snapshot(order_id, provider_order),
            name=f"sync-{order_id}",
            order_id=order_id,
        )

    async def list_orders(self, user_id: str) -> list[dict]:
        """Local orders; rows without a cached name get one from the provider."""
        orders = await self._store.list_orders(user_id)
        for order in orders:
            if order.get("name"):
                continue
            try:
                provider_order = await self._provider.get_order(order["id"])
            except (ProviderError, httpx.HTTPError) as e:
                logger.debug("Name lookup for %s failed: %s", order["id"], e)
                continue
            if provider_order.name:
                order["name"] = provider_order.name
            self._schedule_sync(order["id"], provider_order)
        return orders

    async def get_order(self, order: dict) -> dict:
        """The cached row enriched with live provider images and bracket counts."""
        result = dict(order)
        order_id = order["id"]
        try:
            provider_order = await self._provider.get_order(order_id)
            brackets = await self._provider.get_order_brackets(order_id)
        except (ProviderError, httpx.HTTPError) as e:
            logger.warning("Order %s served from cache: %s", order_id, e)
            return result

        result.update({
            "name": provider_order.name or order.get("name"),
            "provider_status": provider_order.status,
            "is_processing": provider_order.is_processing,
            "is_merging": provider_order.is_merging,
            "is_deleted": provider_order.is_deleted,
            "total_images": provider_order.total_images,
            "images": [img.model_dump() for img in provider_order.images],
            "total_brackets": len(brackets),
            "uploaded_brackets": sum(1 for b in brackets if b.is_uploaded),
        })
        self._schedule_sync(order_id, provider_order)
        return result

    async def verify_order(self, order: dict) -> dict:
        """Force a reconciliation snapshot. Provider errors propagate."""
        order_id = order["id"]
        provider_order = await retry(lambda: self._provider.get_order(order_id))
        brackets = await retry(lambda: self._provider.get_order_brackets(order_id))
        await self._store.sync_provider_fields(order_id, provider_order)

        uploaded = sum(1 for b in brackets if b.is_uploaded)
        return {
            "order_id": order_id,
            "order_status": order["status"],
            "provider_status": provider_order.status,
            "total_brackets": len(brackets),
            "uploaded_brackets": uploaded,
            "total_images": provider_order.total_images,
            "has_uploaded_images": uploaded > 0,
            "brackets": [_bracket_view(b) for b in brackets],
            "images": [img.model_dump() for img in provider_order.images],
        }

    def status(self, order: dict) -> dict:
        return {
            "order_id": order["id"],
            "status": order["status"],
            "progress": order["progress"],
            "error_message": order.get("error_message"),
            "name": order.get("name"),
            "provider_status": order.get("provider_status"),
            "is_processing": order.get("is_processing", False),
            "is_merging": order.get("is_merging", False),
            "is_deleted": order.get("is_deleted", False),
            "total_images": order.get("total_images", 0),
            "updated_at": order["updated_at"],
        }

    # ------------------------------------------------------------------
    # Delete
    # ------------------------------------------------------------------

    async def delete_order(self, order: dict) -> None:
        """Provider delete, then blob prefix delete, then the local cascade.

        Remote failures are logged and do not block the local delete.
        """
        order_id = order["id"]
        user_id = order["user_id"]
        try:
            await retry(lambda: self._provider.delete_order(order_id))
        except (ProviderError, httpx.HTTPError) as e:
            logger.warning("Provider delete of order %s failed, continuing: %s", order_id, e)

        try:
            await self._object_store.delete_order_prefix(user_id, order_id)
        except ObjectStoreError as e:
            logger.warning("Blob cleanup for order %s failed, continuing: %s", order_id, e)

        await self._store.delete_order(order_id, user_id)
        logger.info("Deleted order %s", order_id)

    # ------------------------------------------------------------------
    # Files and brackets
    # ------------------------------------------------------------------

    async def list_files(self, order: dict) -> list[dict]:
        return await self._store.get_stored_files(order["id"], order["user_id"])

    async def list_brackets(self, order: dict) -> list[dict]:
        """Local brackets with the provider's live view attached; local metadata wins."""
        local = await self._store.get_brackets_by_order(order["id"])
        try:
            remote = {b.bracket_id: b for b in await self._provider.get_order_brackets(order["id"])}
        except (ProviderError, httpx.HTTPError) as e:
            logger.warning("Bracket list for %s served from cache: %s", order["id"], e)
            remote = {}

        result = []
        for b in local:
            entry = {k: v for k, v in b.items() if k != "upload_url"}
            live = remote.get(b["bracket_id"])
            if live is not None:
                entry["metadata"] = {**live.metadata, **b["metadata"]}
                entry["image_id"] = b["image_id"] or live.image_id
                entry["provider"] = _bracket_view(live)
            result.append(entry)
        return result

    async def delete_bracket(self, order: dict, bracket_id: str) -> None:
        bracket = await self._store.get_bracket(order["id"], bracket_id)
        if not bracket:
            raise NotFoundError("bracket not found")
        try:
            await retry(lambda: self._provider.delete_bracket(bracket["bracket_id"]))
        except ProviderError as e:
            if e.status_code != 404:
                raise
            logger.info("Bracket %s already gone at provider", bracket["bracket_id"])
        await self._store.delete_bracket(bracket["id"])
