#  HDR Backend - Image Routes
#
#  Enhanced-image listing with download state, on-demand quality
#  downloads into object storage, and stored-image deletion.
#
#  Depends on: container.py, services/downloads.py, routes/orders.py,
#              middleware/auth.py, rate_limit.py
#  Used by:    app.py

from dependency_injector.wiring import inject, Provide
from fastapi import APIRouter, Depends, Request

from hdr_backend.container import Container
from hdr_backend.middleware.auth import get_current_user
from hdr_backend.models.schemas import DownloadOut, DownloadRequest, ImageOut
from hdr_backend.rate_limit import limiter
from hdr_backend.routes.orders import _get_owned_order
from hdr_backend.services.downloads import DownloadService
from hdr_backend.services.store import OrderStore

router = APIRouter(prefix="/orders", tags=["images"])


@router.get("/{order_id}/images")
@inject
async def list_images(
    order_id: str,
    current_user: dict = Depends(get_current_user),
    store: OrderStore = Depends(Provide[Container.store]),
    downloads: DownloadService = Depends(Provide[Container.downloads]),
) -> list[ImageOut]:
    order = await _get_owned_order(store, order_id, current_user)
    return [ImageOut(**i) for i in await downloads.list_images(order)]


@router.post("/{order_id}/images/{image_id}/download")
@limiter.limit("30/minute")
@inject
async def download_image(
    request: Request,
    order_id: str,
    image_id: str,
    body: DownloadRequest | None = None,
    current_user: dict = Depends(get_current_user),
    store: OrderStore = Depends(Provide[Container.store]),
    downloads: DownloadService = Depends(Provide[Container.downloads]),
) -> DownloadOut:
    """Fetch an enhanced image at the requested quality and store it.

    Watermarked downloads are free; unwatermarked ones consume a provider credit.
    """
    order = await _get_owned_order(store, order_id, current_user)
    return DownloadOut(**await downloads.download(order, image_id, body))


@router.delete("/{order_id}/images/{image_id}")
@inject
async def delete_image(
    order_id: str,
    image_id: str,
    current_user: dict = Depends(get_current_user),
    store: OrderStore = Depends(Provide[Container.store]),
    downloads: DownloadService = Depends(Provide[Container.downloads]),
):
    order = await _get_owned_order(store, order_id, current_user)
    removed = await downloads.delete_image(order, image_id)
    return {"message": "image deleted successfully", "deleted_files": removed}
