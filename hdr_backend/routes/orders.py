#  HDR Backend - Order Routes
#
#  Order CRUD, reconciliation snapshot, cached status, stored files and
#  bracket bookkeeping. Every endpoint is scoped to the caller's orders.
#
#  Depends on: container.py, models/schemas.py, services/orders.py,
#              services/store.py, middleware/auth.py
#  Used by:    app.py, routes/uploads.py, routes/images.py

import uuid

from dependency_injector.wiring import inject, Provide
from fastapi import APIRouter, Depends, HTTPException

from hdr_backend.container import Container
from hdr_backend.middleware.auth import get_current_user
from hdr_backend.models.schemas import (
    BracketOut,
    MessageOut,
    OrderCreate,
    OrderOut,
    OrderStatusOut,
    StoredFileOut,
    VerifyOut,
)
from hdr_backend.services.orders import OrderService
from hdr_backend.services.store import OrderStore

router = APIRouter(prefix="/orders", tags=["orders"])


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

async def _get_owned_order(store: OrderStore, order_id: str, user: dict) -> dict:
    """Fetch an order owned by the caller. Raises 400 on a malformed id, 404 otherwise."""
    try:
        uuid.UUID(order_id)
    except ValueError:
        raise HTTPException(400, "invalid order ID")
    order = await store.get_order(order_id, user["id"])
    if not order:
        raise HTTPException(404, "order not found")
    return order


# ---------------------------------------------------------------------------
# CRUD
# ---------------------------------------------------------------------------

@router.post("", status_code=201)
@inject
async def create_order(
    body: OrderCreate | None = None,
    current_user: dict = Depends(get_current_user),
    orders: OrderService = Depends(Provide[Container.orders]),
) -> OrderOut:
    body = body or OrderCreate()
    order = await orders.create_order(current_user["id"], body.name, body.metadata)
    return OrderOut(**order)


@router.get("")
@inject
async def list_orders(
    current_user: dict = Depends(get_current_user),
    orders: OrderService = Depends(Provide[Container.orders]),
) -> list[OrderOut]:
    return [OrderOut(**o) for o in await orders.list_orders(current_user["id"])]


@router.get("/{order_id}")
@inject
async def get_order(
    order_id: str,
    current_user: dict = Depends(get_current_user),
    store: OrderStore = Depends(Provide[Container.store]),
    orders: OrderService = Depends(Provide[Container.orders]),
) -> OrderOut:
    order = await _get_owned_order(store, order_id, current_user)
    return OrderOut(**await orders.get_order(order))


@router.get("/{order_id}/verify")
@inject
async def verify_order(
    order_id: str,
    current_user: dict = Depends(get_current_user),
    store: OrderStore = Depends(Provide[Container.store]),
    orders: OrderService = Depends(Provide[Container.orders]),
) -> VerifyOut:
    order = await _get_owned_order(store, order_id, current_user)
    return VerifyOut(**await orders.verify_order(order))


@router.delete("/{order_id}")
@inject
async def delete_order(
    order_id: str,
    current_user: dict = Depends(get_current_user),
    store: OrderStore = Depends(Provide[Container.store]),
    orders: OrderService = Depends(Provide[Container.orders]),
) -> MessageOut:
    order = await _get_owned_order(store, order_id, current_user)
    await orders.delete_order(order)
    return MessageOut(message="order deleted successfully")


# ---------------------------------------------------------------------------
# Cached state, files, brackets
# ---------------------------------------------------------------------------

@router.get("/{order_id}/status")
@inject
async def get_order_status(
    order_id: str,
    current_user: dict = Depends(get_current_user),
    store: OrderStore = Depends(Provide[Container.store]),
    orders: OrderService = Depends(Provide[Container.orders]),
) -> OrderStatusOut:
    order = await _get_owned_order(store, order_id, current_user)
    return OrderStatusOut(**orders.status(order))


@router.get("/{order_id}/files")
@inject
async def list_files(
    order_id: str,
    current_user: dict = Depends(get_current_user),
    store: OrderStore = Depends(Provide[Container.store]),
    orders: OrderService = Depends(Provide[Container.orders]),
) -> list[StoredFileOut]:
    order = await _get_owned_order(store, order_id, current_user)
    return [StoredFileOut(**f) for f in await orders.list_files(order)]


@router.get("/{order_id}/brackets")
@inject
async def list_brackets(
    order_id: str,
    current_user: dict = Depends(get_current_user),
    store: OrderStore = Depends(Provide[Container.store]),
    orders: OrderService = Depends(Provide[Container.orders]),
) -> list[BracketOut]:
    order = await _get_owned_order(store, order_id, current_user)
    return [BracketOut(**b) for b in await orders.list_brackets(order)]


@router.delete("/{order_id}/brackets/{bracket_id}")
@inject
async def delete_bracket(
    order_id: str,
    bracket_id: str,
    current_user: dict = Depends(get_current_user),
    store: OrderStore = Depends(Provide[Container.store]),
    orders: OrderService = Depends(Provide[Container.orders]),
) -> MessageOut:
    order = await _get_owned_order(store, order_id, current_user)
    await orders.delete_bracket(order, bracket_id)
    return MessageOut(message="bracket deleted successfully")
