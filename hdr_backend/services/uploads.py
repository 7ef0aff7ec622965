#  HDR Backend - Upload Pipeline
#
#  Per-file bracket upload: create provider bracket, PUT bytes to the
#  pre-signed URL, poll for acknowledgement, record locally.
#  One bad file never sinks the others; errors are collected per stage.
#
#  Depends on: services/provider.py, services/store.py, services/broadcast.py
#  Used by:    container.py, routes/uploads.py

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx

from hdr_backend.config import VERIFY_ATTEMPTS, VERIFY_INTERVAL
from hdr_backend.exceptions import (
    PersistenceError,
    ProviderError,
    UploadFailedError,
    ValidationError,
)
from hdr_backend.models.enums import OrderStatus, UploadStage
from hdr_backend.services.provider import retry

logger = logging.getLogger("hdr.uploads")

# Statuses that may still receive brackets
_UPLOADABLE = (OrderStatus.CREATED.value, OrderStatus.UPLOADING.value, OrderStatus.UPLOADED.value)

# Suffix -> MIME; anything else is treated as JPEG
_MIME_BY_SUFFIX = {
    ".png": "image/png",
    ".heic": "image/heic",
    ".cr2": "image/x-canon-cr2",
}


def infer_mime(filename: str) -> str:
    """MIME type from the last four characters of the filename."""
    return _MIME_BY_SUFFIX.get(filename[-4:].lower(), "image/jpeg")


def parse_groups(groups: str | None, file_count: int) -> list[str]:
    """Resolve the group id for each file.

    No groups field: one fresh group shared by the whole upload.
    Otherwise a comma-separated list with exactly one entry per file.
    """
    if groups is None or not groups.strip():
        shared = str(uuid.uuid4())
        return [shared] * file_count
    items = [g.strip() for g in groups.split(",")]
    if len(items) != file_count:
        raise ValidationError(
            f"groups count ({len(items)}) must match number of files ({file_count})"
        )
    if any(not g for g in items):
        raise ValidationError("groups entries must not be empty")
    return items


class UploadSource(Protocol):
    """What the pipeline needs from an uploaded file (starlette's UploadFile fits)."""

    filename: str | None

    async def read(self, size: int = -1) -> bytes: ...


@dataclass
class UploadResult:
    uploaded: list[dict] = field(default_factory=list)
    errors: list[dict] = field(default_factory=list)

    def fail(self, filename: str, stage: UploadStage, error: Any):
        logger.warning("Upload of %s failed at %s: %s", filename, stage.value, error)
        self.errors.append({"filename": filename, "error": str(error), "stage": stage.value})


class UploadService:
    """Runs the bracket upload pipeline for one multipart request."""

    def __init__(self, store, provider, broadcaster):
        self._store = store
        self._provider = provider
        self._broadcaster = broadcaster

    async def upload_files(
        self,
        order: dict,
        files: list[UploadSource],
        groups: str | None = None,
    ) -> dict:
        if not files:
            raise ValidationError("no files provided")
        group_ids = parse_groups(groups, len(files))

        order_id = order["id"]
        user_id = order["user_id"]
        if order["status"] not in _UPLOADABLE:
            raise ValidationError(f"cannot upload to an order in status {order['status']}")

        await self._broadcaster.upload_started(order_id, len(files), user_id)
        await self._store.update_order_status(order_id, OrderStatus.UPLOADING, 0)

        result = UploadResult()
        for index, (source, group_id) in enumerate(zip(files, group_ids)):
            filename = source.filename or f"file_{index + 1}.jpg"
            await self._upload_one(order_id, source, filename, group_id, result)

        if not result.uploaded:
            reasons = "; ".join(f"{e['filename']}: {e['error']}" for e in result.errors)
            message = f"failed to upload any files: {reasons}"
            await self._store.update_order_error(order_id, message)
            await self._broadcaster.processing_failed(order_id, message, user_id)
            raise UploadFailedError(message, result.errors)

        await self._store.update_order_status(order_id, OrderStatus.UPLOADED, 0)
        if result.errors:
            reasons = "; ".join(f"{e['filename']}: {e['error']}" for e in result.errors)
            await self._store.update_order_error(
                order_id, f"Some files had issues: {reasons}", mark_failed=False,
            )
        await self._broadcaster.upload_completed(order_id, len(result.uploaded), user_id)

        logger.info(
            "Order %s: uploaded %d/%d file(s)", order_id, len(result.uploaded), len(files),
        )
        return {
            "order_id": order_id,
            "files": result.uploaded,
            "status": OrderStatus.UPLOADED.value,
            "errors": result.errors,
        }

    async def _upload_one(
        self,
        order_id: str,
        source: UploadSource,
        filename: str,
        group_id: str,
        result: UploadResult,
    ) -> None:
        try:
            data = await source.read()
        except (OSError, ValueError, RuntimeError) as e:
            result.fail(filename, UploadStage.FILE_READ, e)
            return
        if not data:
            result.fail(filename, UploadStage.FILE_READ, "file is empty")
            return
        mime_type = infer_mime(filename)

        try:
            bracket = await retry(lambda: self._provider.create_bracket(order_id, filename))
        except (ProviderError, httpx.HTTPError) as e:
            result.fail(filename, UploadStage.CREATE_BRACKET, e)
            return
        if not bracket.upload_url:
            result.fail(filename, UploadStage.CREATE_BRACKET, "provider returned no upload URL")
            return

        try:
            await retry(lambda: self._provider.upload_blob(bracket.upload_url, data))
        except (ProviderError, httpx.HTTPError) as e:
            result.fail(filename, UploadStage.UPLOAD, e)
            return

        image_id = bracket.image_id
        metadata = dict(bracket.metadata)
        verified = False
        for attempt in range(VERIFY_ATTEMPTS):
            if attempt:
                await asyncio.sleep(VERIFY_INTERVAL)
            try:
                current = await self._provider.get_bracket(bracket.bracket_id)
            except (ProviderError, httpx.HTTPError) as e:
                logger.debug("Verify poll %d for %s failed: %s", attempt + 1, bracket.bracket_id, e)
                continue
            if current.is_uploaded:
                verified = True
                image_id = current.image_id or image_id
                metadata.update(current.metadata)
                break
        if not verified:
            # The PUT succeeded; the provider acknowledges asynchronously
            result.fail(
                filename, UploadStage.VERIFY,
                f"upload not yet confirmed by provider after {VERIFY_ATTEMPTS} checks",
            )

        metadata.update({"group_id": group_id, "mime_type": mime_type, "size": len(data)})
        try:
            await self._store.create_bracket(
                order_id,
                bracket.bracket_id,
                filename,
                image_id=image_id,
                is_uploaded=True,
                metadata=metadata,
            )
        except PersistenceError as e:
            result.fail(filename, UploadStage.DATABASE, e)

        result.uploaded.append({
            "filename": filename,
            "size": len(data),
            "bracket_id": bracket.bracket_id,
            "image_id": image_id,
            "group_id": group_id,
            "verified": verified,
        })
