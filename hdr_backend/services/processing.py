#  HDR Backend - Process Dispatch
#
#  Groups an order's brackets into HDR image requests, applies the
#  real-estate defaults and dispatches processing to the provider.
#
#  Depends on: services/grouping.py, services/provider.py, services/store.py,
#              services/broadcast.py
#  Used by:    container.py, routes/uploads.py

import logging

from hdr_backend.config import DEFAULT_BRACKETS_PER_IMAGE
from hdr_backend.exceptions import ProviderError, ValidationError
from hdr_backend.models.enums import OrderStatus
from hdr_backend.models.schemas import ProcessRequest
from hdr_backend.services.grouping import describe_grouping, group_brackets
from hdr_backend.services.provider import retry

logger = logging.getLogger("hdr.processing")

# Defaults suited to real-estate photography
DEFAULT_PROCESS_PARAMS = {
    "enhance_type": "property",
    "sky_replacement": True,
    "vertical_correction": True,
    "lens_correction": True,
    "window_pull_type": "WINDOWS_WITH_SKIES",
}

# Sent only when the caller set them
_PASS_THROUGH = ("upscale", "privacy", "cloud_type", "ai_version")


def build_process_params(request: ProcessRequest, groups: list[list[str]]) -> dict:
    params = dict(DEFAULT_PROCESS_PARAMS)
    for key in DEFAULT_PROCESS_PARAMS:
        value = getattr(request, key)
        if value is not None and value != "":
            params[key] = value
    for key in _PASS_THROUGH:
        value = getattr(request, key)
        if value is not None and value != "":
            params[key] = value
    params["images"] = [{"bracket_ids": g} for g in groups]
    return params


class ProcessingService:
    """Dispatches HDR processing for an order."""

    def __init__(self, store, provider, broadcaster):
        self._store = store
        self._provider = provider
        self._broadcaster = broadcaster

    async def process_order(self, order: dict, request: ProcessRequest | None = None) -> dict:
        request = request or ProcessRequest()
        order_id = order["id"]
        user_id = order["user_id"]

        brackets = await self._store.get_brackets_by_order(order_id)
        if not brackets:
            raise ValidationError("no brackets found for order")

        per_image = request.brackets_per_image or DEFAULT_BRACKETS_PER_IMAGE
        groups = group_brackets(brackets, request.bracket_grouping, per_image)
        params = build_process_params(request, groups)

        try:
            await retry(lambda: self._provider.process_order(order_id, params))
        except ProviderError as e:
            message = f"failed to process order: {e}"
            await self._store.update_order_error(order_id, message)
            await self._broadcaster.processing_failed(order_id, message, user_id)
            raise

        await self._store.update_order_status(order_id, OrderStatus.PROCESSING, 0)
        await self._broadcaster.processing_started(order_id, user_id)

        logger.info(
            "Order %s: dispatched %d image(s) from %d bracket(s)",
            order_id, len(groups), len(brackets),
        )

        summary = {k: v for k, v in params.items() if k != "images"}
        summary.update({
            "total_brackets": len(brackets),
            "total_images": len(groups),
            "bracket_grouping": describe_grouping(request.bracket_grouping),
        })
        if request.brackets_per_image:
            summary["brackets_per_image"] = request.brackets_per_image

        return {
            "order_id": order_id,
            "status": OrderStatus.PROCESSING.value,
            "message": (
                "Order processing started successfully - "
                f"Creating {len(groups)} HDR image(s) from {len(brackets)} bracket(s)"
            ),
            "processing_params": summary,
        }
