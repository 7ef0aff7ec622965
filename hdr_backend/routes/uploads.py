#  HDR Backend - Upload & Process Routes
#
#  Multipart bracket upload and HDR process dispatch for one order.
#
#  Depends on: container.py, services/uploads.py, services/processing.py,
#              routes/orders.py, middleware/auth.py, rate_limit.py
#  Used by:    app.py

import logging

from dependency_injector.wiring import inject, Provide
from fastapi import APIRouter, Depends, HTTPException, Request
from starlette.datastructures import UploadFile

from hdr_backend.config import MAX_UPLOAD_BYTES
from hdr_backend.container import Container
from hdr_backend.middleware.auth import get_current_user
from hdr_backend.models.schemas import ProcessOut, ProcessRequest, UploadOut
from hdr_backend.rate_limit import limiter
from hdr_backend.routes.orders import _get_owned_order
from hdr_backend.services.processing import ProcessingService
from hdr_backend.services.store import OrderStore
from hdr_backend.services.uploads import UploadService

logger = logging.getLogger("hdr.routes.uploads")

router = APIRouter(prefix="/orders", tags=["uploads"])

# Field names clients have been seen to use; first non-empty one wins
FILE_FIELDS = ("images", "image", "files", "file", "photos", "photo")


def _pick_files(form) -> list[UploadFile]:
    for name in FILE_FIELDS:
        files = [f for f in form.getlist(name) if isinstance(f, UploadFile)]
        if files:
            return files
    return []


@router.post("/{order_id}/upload")
@limiter.limit("30/minute")
@inject
async def upload_files(
    request: Request,
    order_id: str,
    current_user: dict = Depends(get_current_user),
    store: OrderStore = Depends(Provide[Container.store]),
    uploads: UploadService = Depends(Provide[Container.uploads]),
) -> UploadOut:
    """Upload bracket images. `groups` is an optional comma-separated list, one per file."""
    order = await _get_owned_order(store, order_id, current_user)

    declared = request.headers.get("content-length")
    if declared and declared.isdigit() and int(declared) > MAX_UPLOAD_BYTES:
        raise HTTPException(400, f"upload exceeds {MAX_UPLOAD_BYTES} bytes")

    if not request.headers.get("content-type", "").startswith("multipart/form-data"):
        raise HTTPException(400, "failed to parse multipart form")

    async with request.form() as form:
        files = _pick_files(form)
        if not files:
            raise HTTPException(400, "no files provided")
        total = sum(f.size or 0 for f in files)
        if total > MAX_UPLOAD_BYTES:
            raise HTTPException(400, f"upload exceeds {MAX_UPLOAD_BYTES} bytes")
        groups = form.get("groups")
        groups = groups if isinstance(groups, str) else None

        logger.info("Order %s: received %d file(s)", order_id, len(files))
        result = await uploads.upload_files(order, files, groups)
    return UploadOut(**result)


@router.post("/{order_id}/process")
@inject
async def process_order(
    order_id: str,
    body: ProcessRequest | None = None,
    current_user: dict = Depends(get_current_user),
    store: OrderStore = Depends(Provide[Container.store]),
    processing: ProcessingService = Depends(Provide[Container.processing]),
) -> ProcessOut:
    order = await _get_owned_order(store, order_id, current_user)
    return ProcessOut(**await processing.process_order(order, body))
