from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from .. import orders
from ..db import get_db
from ..deps import get_actor, get_processor
from ..idempotency import CommandProcessor, ResourceType
from ..models import Staff
from ..utils.schemas import (
    CancelIn, CommandIn, KitchenStatusIn, OrderCreateIn, OrderItemIn, OrderItemUpdateIn,
)

router = APIRouter(prefix="/api/v1/orders", tags=["orders"])


@router.post("", status_code=201)
def create_order(body: OrderCreateIn, actor: Staff = Depends(get_actor),
                 cp: CommandProcessor = Depends(get_processor)):
    resource = ResourceType.ORDER_CREATE_DINE_IN if body.order_type == "dine_in" else ResourceType.ORDER_CREATE_TAKEAWAY
    return cp.execute(
        resource,
        lambda db: orders.create_order(db, actor.id, body.order_type, body.table_id, body.terminal_id),
        body.client_request_id,
    )


@router.post("/cancel-empty-pending")
def cancel_empty_pending(body: CommandIn = None, actor: Staff = Depends(get_actor),
                         cp: CommandProcessor = Depends(get_processor)):
    body = body or CommandIn()
    return cp.execute(
        ResourceType.CANCEL_EMPTY_PENDING,
        lambda db: orders.cancel_empty_pending(db, actor.id),
        body.client_request_id,
    )


@router.get("/{order_id}")
def get_order(order_id: int, _actor: Staff = Depends(get_actor), db: Session = Depends(get_db)):
    return orders.get_order(db, order_id)


@router.post("/{order_id}/items")
def add_item(order_id: int, body: OrderItemIn, actor: Staff = Depends(get_actor),
             cp: CommandProcessor = Depends(get_processor)):
    return cp.execute(
        ResourceType.ADD_ITEM,
        lambda db: orders.add_item(db, actor.id, order_id, body.product_id, body.quantity,
                                   size=body.size, modifier=body.modifier, notes=body.notes,
                                   sort_order=body.sort_order),
        body.client_request_id,
    )


@router.patch("/{order_id}/items/{item_id}")
def update_item(order_id: int, item_id: int, body: OrderItemUpdateIn, actor: Staff = Depends(get_actor),
                cp: CommandProcessor = Depends(get_processor)):
    return cp.execute(
        ResourceType.UPDATE_ITEM,
        lambda db: orders.update_item_quantity(db, actor.id, order_id, item_id, body.quantity),
        body.client_request_id,
    )


@router.delete("/{order_id}/items/{item_id}")
def remove_item(order_id: int, item_id: int, client_request_id: Optional[str] = None,
                actor: Staff = Depends(get_actor), cp: CommandProcessor = Depends(get_processor)):
    return cp.execute(
        ResourceType.REMOVE_ITEM,
        lambda db: orders.remove_item(db, actor.id, order_id, item_id),
        client_request_id,
    )


@router.post("/{order_id}/submit")
def submit(order_id: int, body: CommandIn = None, actor: Staff = Depends(get_actor),
           cp: CommandProcessor = Depends(get_processor)):
    body = body or CommandIn()
    return cp.execute(
        ResourceType.SUBMIT_ORDER,
        lambda db: orders.submit_to_kitchen(db, actor.id, order_id),
        body.client_request_id,
    )


@router.post("/{order_id}/status")
def kitchen_status(order_id: int, body: KitchenStatusIn, actor: Staff = Depends(get_actor),
                   cp: CommandProcessor = Depends(get_processor)):
    return cp.execute(
        ResourceType.KITCHEN_STATUS,
        lambda db: orders.update_kitchen_status(db, actor.id, order_id, body.status),
        body.client_request_id,
    )


@router.post("/{order_id}/checkout")
def checkout(order_id: int, body: CommandIn = None, actor: Staff = Depends(get_actor),
             cp: CommandProcessor = Depends(get_processor)):
    body = body or CommandIn()
    return cp.execute(
        ResourceType.CHECKOUT,
        lambda db: orders.checkout(db, actor.id, order_id),
        body.client_request_id,
    )


@router.post("/{order_id}/cancel")
def cancel(order_id: int, body: CancelIn = None, actor: Staff = Depends(get_actor),
           cp: CommandProcessor = Depends(get_processor)):
    body = body or CancelIn()
    return cp.execute(
        ResourceType.CANCEL_ORDER,
        lambda db: orders.cancel_order(db, actor.id, order_id, body.reason),
        body.client_request_id,
    )


@router.post("/{order_id}/void")
def void(order_id: int, body: CancelIn = None, actor: Staff = Depends(get_actor),
         cp: CommandProcessor = Depends(get_processor)):
    body = body or CancelIn()
    return cp.execute(
        ResourceType.VOID_ORDER,
        lambda db: orders.void_order(db, actor.id, order_id, body.reason),
        body.client_request_id,
    )
