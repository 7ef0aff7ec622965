#  HDR Backend - Enhanced Image Downloads
#
#  Client-driven downloads at a named quality, the per-order image list
#  with download state, and removal of stored images.
#
#  Depends on: services/provider.py, services/storage.py, services/store.py
#  Used by:    container.py, routes/images.py

import logging

import httpx

from hdr_backend.exceptions import NotFoundError, ProviderError
from hdr_backend.models.enums import DownloadQuality, ImageFormat
from hdr_backend.models.schemas import DownloadRequest
from hdr_backend.services.provider import ProviderImage, retry

logger = logging.getLogger("hdr.downloads")

QUALITY_MAX_WIDTH = {
    DownloadQuality.THUMBNAIL: 400,
    DownloadQuality.PREVIEW: 800,
    DownloadQuality.MEDIUM: 1920,
    DownloadQuality.HIGH: None,
}

_EXTENSION = {
    ImageFormat.JPEG: ("jpg", "image/jpeg"),
    ImageFormat.PNG: ("png", "image/png"),
    ImageFormat.WEBP: ("webp", "image/webp"),
}

_SETTINGS_FIELDS = (
    "enhance_type", "sky_replacement", "vertical_correction", "lens_correction",
    "window_pull_type", "upscale", "privacy", "cloud_type", "ai_version",
)


def download_filename(image_id: str, quality: DownloadQuality, fmt: ImageFormat = ImageFormat.JPEG) -> str:
    ext, _ = _EXTENSION[fmt]
    return f"{image_id}_{quality.value}.{ext}"


def resolution_label(request: DownloadRequest) -> str:
    if request.quality == DownloadQuality.CUSTOM:
        if request.max_width:
            return f"{request.max_width}px"
        return f"{request.scale}x"
    width = QUALITY_MAX_WIDTH[request.quality]
    return f"{width}px" if width else "full"


def _is_preview_file(filename: str, image_id: str) -> bool:
    return (filename.startswith(f"{image_id}_preview.")
            or filename.startswith(f"enhanced_{image_id[:8]}_"))


def _is_high_res_file(filename: str, image_id: str) -> bool:
    return filename.startswith(f"{image_id}_high.")


class DownloadService:
    """On-demand downloads and stored-image bookkeeping."""

    def __init__(self, store, provider, object_store):
        self._store = store
        self._provider = provider
        self._object_store = object_store

    async def download(self, order: dict, image_id: str, request: DownloadRequest | None = None) -> dict:
        request = request or DownloadRequest()
        order_id = order["id"]
        user_id = order["user_id"]

        try:
            image = await self._provider.get_image(image_id)
        except ProviderError as e:
            if e.status_code == 404:
                raise NotFoundError("image not found") from e
            raise
        if image.order_id and image.order_id != order_id:
            raise NotFoundError("image not found")

        if request.quality == DownloadQuality.CUSTOM:
            max_width, scale = request.max_width, request.scale
        else:
            max_width, scale = QUALITY_MAX_WIDTH[request.quality], None

        data = await retry(lambda: self._provider.download_enhanced(
            image_id,
            format=request.format.value,
            watermark=request.watermark,
            finetune=request.finetune,
            max_width=max_width,
            scale=scale,
        ))

        filename = download_filename(image_id, request.quality, request.format)
        _, mime_type = _EXTENSION[request.format]
        path, url = await self._object_store.upload(user_id, order_id, filename, data, mime_type)
        await self._store.create_stored_file(
            order_id,
            user_id,
            filename,
            path,
            url,
            len(data),
            provider_image_id=image_id,
            mime_type=mime_type,
            is_final=True,
        )

        resolution = resolution_label(request)
        if request.watermark:
            message = (
                "Image downloaded successfully (FREE with watermark) - "
                f"Quality: {request.quality.value}, Resolution: {resolution}"
            )
        else:
            message = (
                "Image downloaded successfully (1 CREDIT USED - unwatermarked) - "
                f"Quality: {request.quality.value}, Resolution: {resolution}"
            )
        logger.info("Order %s: downloaded %s at %s", order_id, image_id, request.quality.value)

        return {
            "image_id": image_id,
            "quality": request.quality,
            "url": url,
            "file_size": len(data),
            "watermark": request.watermark,
            "resolution": resolution,
            "format": request.format,
            "credit_used": not request.watermark,
            "message": message,
        }

    async def list_images(self, order: dict) -> list[dict]:
        """Provider images merged with what has been stored for each.

        Falls back to stored files alone when the provider is unreachable.
        """
        files = await self._store.get_stored_files(order["id"], order["user_id"])
        try:
            provider_order = await self._provider.get_order(order["id"])
            images: list[ProviderImage] = provider_order.images
        except (ProviderError, httpx.HTTPError) as e:
            logger.warning("Image list for %s served from cache: %s", order["id"], e)
            seen: dict[str, ProviderImage] = {}
            for f in files:
                if f["provider_image_id"] and f["provider_image_id"] not in seen:
                    seen[f["provider_image_id"]] = ProviderImage(image_id=f["provider_image_id"])
            images = list(seen.values())

        result = []
        for image in images:
            entry = {
                "image_id": image.image_id,
                "image_name": image.image_name,
                "status": image.status,
                "status_reason": image.status_reason,
                "preview_downloaded": False,
                "preview_url": None,
                "high_res_downloaded": False,
                "high_res_url": None,
                "processing_settings": {
                    k: getattr(image, k) for k in _SETTINGS_FIELDS if getattr(image, k) is not None
                },
            }
            for f in files:
                if f["provider_image_id"] not in (None, image.image_id):
                    continue
                if _is_high_res_file(f["filename"], image.image_id):
                    entry["high_res_downloaded"] = True
                    entry["high_res_url"] = f["storage_url"]
                elif _is_preview_file(f["filename"], image.image_id):
                    entry["preview_downloaded"] = True
                    entry["preview_url"] = f["storage_url"]
            result.append(entry)
        return result

    async def delete_image(self, order: dict, image_id: str) -> int:
        """Remove every stored file for image_id in this order. Returns the count."""
        files = [
            f for f in await self._store.get_stored_files(order["id"], order["user_id"])
            if f["provider_image_id"] == image_id
        ]
        if not files:
            raise NotFoundError("image not found")
        for f in files:
            await self._object_store.delete(f["storage_path"])
        await self._store.delete_stored_files([f["id"] for f in files])
        logger.info("Order %s: deleted %d stored file(s) for image %s", order["id"], len(files), image_id)
        return len(files)
