"""Order state machine. Status writes are compare-and-swap on the current status."""
import logging
from decimal import Decimal
from typing import List, Optional, Union

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from . import errors, events, ledger, table_lock
from .audit import AuditAction, append_audit
from .models import (
    Order, OrderItem, OrderStatus, OrderType, Payment, PaymentStatus, Product, RestaurantTable, Terminal,
    TERMINAL_STATUSES, utcnow,
)
from .roles import ALL_ROLES, ELEVATED, FRONT_OF_HOUSE, HANDOFF, KITCHEN, assert_role

log = logging.getLogger("posledger.orders")

TRANSITIONS = {
    OrderStatus.PENDING: frozenset({OrderStatus.PREPARING, OrderStatus.CANCELLED}),
    OrderStatus.PREPARING: frozenset({OrderStatus.READY}),
    OrderStatus.READY: frozenset({OrderStatus.AWAITING_PAYMENT}),
    OrderStatus.AWAITING_PAYMENT: frozenset({OrderStatus.SERVED}),
    OrderStatus.SERVED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}
VOIDABLE = frozenset({OrderStatus.PREPARING, OrderStatus.READY, OrderStatus.AWAITING_PAYMENT})
KITCHEN_TARGETS = {OrderStatus.READY: KITCHEN, OrderStatus.AWAITING_PAYMENT: HANDOFF}


def can_transition(current: OrderStatus, new: OrderStatus, void: bool = False) -> bool:
    if void:
        return current in VOIDABLE and new == OrderStatus.CANCELLED
    return new in TRANSITIONS.get(current, ())


# ------------------------------
# snapshots / reads
# ------------------------------
def _iso(dt):
    return dt.isoformat() if dt else None


def item_snapshot(i: OrderItem) -> dict:
    return {
        "id": i.id,
        "product_id": i.product_id,
        "quantity": i.quantity,
        "unit_price": float(i.unit_price),
        "line_total": float(i.line_total),
        "size": i.size,
        "modifier": i.modifier,
        "notes": i.notes or "",
        "sort_order": i.sort_order,
    }


def order_snapshot(o: Order) -> dict:
    return {
        "id": o.id,
        "display_number": o.display_number,
        "order_type": o.order_type.value,
        "table_id": o.table_id,
        "shift_id": o.shift_id,
        "terminal_id": o.terminal_id,
        "status": o.status.value,
        "total": float(o.total) if o.total is not None else 0.0,
        "items": [item_snapshot(i) for i in o.items],
        "cancel_reason": o.cancel_reason,
        "created_at": _iso(o.created_at),
        "updated_at": _iso(o.updated_at),
        "served_at": _iso(o.served_at),
        "cancelled_at": _iso(o.cancelled_at),
    }


def load_order(db: Session, order_id: int, for_update: bool = False) -> Order:
    stmt = select(Order).where(Order.id == order_id).execution_options(populate_existing=True)
    if for_update:
        stmt = stmt.with_for_update()
    order = db.execute(stmt).scalar_one_or_none()
    if order is None:
        raise errors.not_found("order", order_id)
    return order


def get_order(db: Session, order_id: int) -> dict:
    return order_snapshot(load_order(db, order_id))


def paid_total(db: Session, order_id: int, statuses=(PaymentStatus.COMPLETED,)) -> Decimal:
    total = db.scalar(
        select(func.coalesce(func.sum(Payment.amount), 0))
        .where(Payment.order_id == order_id, Payment.status.in_(statuses))
    )
    return Decimal(str(total or 0))


# ------------------------------
# transition core
# ------------------------------
def _transition(db: Session, order: Order, new_status: OrderStatus, actor_id: int,
                void: bool = False, **extra) -> List[int]:
    """CAS the status; returns the table ids freed when the order became terminal."""
    current = order.status
    if not can_transition(current, new_status, void=void):
        raise errors.invalid_transition(order.id, current, new_status)

    res = db.execute(
        update(Order)
        .where(Order.id == order.id, Order.status == current)
        .values(status=new_status, updated_by_staff_id=actor_id, updated_at=utcnow(), **extra)
        .execution_options(synchronize_session=False)
    )
    if res.rowcount != 1:
        db.refresh(order)
        raise errors.invalid_transition(order.id, order.status, new_status)
    db.refresh(order)
    log.info(f"order {order.id}: {current.value} -> {new_status.value}")

    if new_status in TERMINAL_STATUSES:
        return table_lock.release_for_order(db, order)
    return []


def _status_event(db: Session, order: Order, previous: OrderStatus, event_type=events.EventType.ORDER_STATUS_CHANGED):
    payload = {
        "order_id": order.id,
        "shift_id": order.shift_id,
        "table_id": order.table_id,
        "display_number": order.display_number,
        "previous_status": previous.value,
        "new_status": order.status.value,
        "updated_at": _iso(order.updated_at),
    }
    events.emit(db, event_type, events.shift_scope(order.shift_id), payload)
    if order.table_id is not None:
        events.emit(db, event_type, events.table_scope(order.table_id), payload)


def _coerce_status(value: Union[str, OrderStatus]) -> OrderStatus:
    try:
        return OrderStatus(value)
    except ValueError:
        raise errors.validation("INVALID_STATUS", f"Unknown order status: {value}", status=value)


# ------------------------------
# creation
# ------------------------------
def create_order(db: Session, actor_id: int, order_type: Union[str, OrderType],
                 table_id: Optional[int] = None, terminal_id: Optional[int] = None) -> dict:
    staff = assert_role(db, actor_id, FRONT_OF_HOUSE)
    try:
        order_type = OrderType(order_type)
    except ValueError:
        raise errors.validation("INVALID_ORDER_TYPE", f"Unknown order type: {order_type}", order_type=order_type)

    if order_type == OrderType.DINE_IN and table_id is None:
        raise errors.validation("TABLE_REQUIRED_FOR_DINE_IN", "Dine-in orders require a table_id")
    if order_type == OrderType.TAKEAWAY and table_id is not None:
        raise errors.validation("TABLE_NOT_ALLOWED_FOR_TAKEAWAY", "Takeaway orders must not have a table_id")

    if table_id is not None and db.get(RestaurantTable, table_id) is None:
        raise errors.not_found("table", table_id)

    shift = ledger.active_shift(db, staff.id, for_update=True)
    terminal_id = terminal_id if terminal_id is not None else shift.terminal_id
    if db.get(Terminal, terminal_id) is None:
        raise errors.not_found("terminal", terminal_id)

    shift.last_display_number = (shift.last_display_number or 0) + 1
    order = Order(
        display_number=shift.last_display_number,
        order_type=order_type,
        table_id=table_id,
        shift_id=shift.id,
        terminal_id=terminal_id,
        created_by_staff_id=staff.id,
        status=OrderStatus.PENDING,
        total=Decimal("0"),
    )
    db.add(order)
    db.flush()

    if order_type == OrderType.DINE_IN:
        table_lock.acquire(db, table_id, order.id, terminal_id, staff.id)

    snap = order_snapshot(order)
    append_audit(db, AuditAction.ORDER_CREATE, "order", order.id, new_state=snap,
                 staff_id=staff.id, terminal_id=terminal_id)
    events.emit(db, events.EventType.ORDER_CREATED, events.shift_scope(shift.id),
                {"order_id": order.id, "shift_id": shift.id, "table_id": table_id,
                 "display_number": order.display_number, "status": order.status.value,
                 "created_at": snap["created_at"]})
    if table_id is not None:
        events.emit(db, events.EventType.TABLE_OCCUPIED, events.table_scope(table_id),
                    {"table_id": table_id, "order_id": order.id, "at": snap["created_at"]})
    log.info(f"order {order.id} created ({order_type.value}, shift {shift.id}, table {table_id})")
    return snap


# ------------------------------
# items (pending only)
# ------------------------------
def _editable_order(db: Session, order_id: int) -> Order:
    order = load_order(db, order_id, for_update=True)
    if order.status != OrderStatus.PENDING:
        raise errors.order_immutable(order.id, order.status)
    return order


def _recalculate_total(db: Session, order: Order) -> None:
    db.flush()
    total = db.scalar(
        select(func.coalesce(func.sum(OrderItem.line_total), 0)).where(OrderItem.order_id == order.id)
    )
    order.total = Decimal(str(total or 0))
    order.updated_at = utcnow()
    db.flush()
    db.refresh(order)


def _touch(db: Session, order: Order) -> None:
    events.emit(db, events.EventType.ORDER_UPDATED, events.shift_scope(order.shift_id),
                {"order_id": order.id, "shift_id": order.shift_id, "table_id": order.table_id,
                 "status": order.status.value, "total": float(order.total),
                 "updated_at": _iso(order.updated_at)})


def add_item(db: Session, actor_id: int, order_id: int, product_id: int, quantity: int,
             size: Optional[str] = None, modifier: Optional[str] = None, notes: Optional[str] = None,
             sort_order: Optional[int] = None) -> dict:
    assert_role(db, actor_id, FRONT_OF_HOUSE)
    if quantity is None or quantity < 1:
        raise errors.invalid_quantity(quantity)
    order = _editable_order(db, order_id)
    product = db.get(Product, product_id)
    if product is None:
        raise errors.not_found("product", product_id)
    if not product.is_active:
        raise errors.inactive("product", product_id)

    if sort_order is None:
        sort_order = len(order.items)
    unit_price = Decimal(str(product.price))
    db.add(OrderItem(
        order_id=order.id, product_id=product.id, quantity=quantity,
        unit_price=unit_price, line_total=unit_price * quantity,
        size=size, modifier=modifier, notes=notes, sort_order=sort_order,
    ))
    _recalculate_total(db, order)
    _touch(db, order)
    return order_snapshot(order)


def _order_item(db: Session, order: Order, item_id: int) -> OrderItem:
    item = db.get(OrderItem, item_id)
    if item is None or item.order_id != order.id:
        raise errors.not_found("order_item", item_id)
    return item


def update_item_quantity(db: Session, actor_id: int, order_id: int, item_id: int, quantity: int) -> dict:
    assert_role(db, actor_id, FRONT_OF_HOUSE)
    if quantity is None or quantity < 1:
        raise errors.invalid_quantity(quantity)
    order = _editable_order(db, order_id)
    item = _order_item(db, order, item_id)
    item.quantity = quantity
    item.line_total = Decimal(str(item.unit_price)) * quantity
    _recalculate_total(db, order)
    _touch(db, order)
    return order_snapshot(order)


def remove_item(db: Session, actor_id: int, order_id: int, item_id: int) -> dict:
    assert_role(db, actor_id, FRONT_OF_HOUSE)
    order = _editable_order(db, order_id)
    item = _order_item(db, order, item_id)
    db.delete(item)
    _recalculate_total(db, order)
    _touch(db, order)
    return order_snapshot(order)


# ------------------------------
# status transitions
# ------------------------------
def submit_to_kitchen(db: Session, actor_id: int, order_id: int) -> dict:
    staff = assert_role(db, actor_id, FRONT_OF_HOUSE)
    order = load_order(db, order_id, for_update=True)
    if order.status == OrderStatus.PENDING and not order.items:
        raise errors.order_empty(order.id)
    previous = order.status
    _transition(db, order, OrderStatus.PREPARING, staff.id)
    append_audit(db, AuditAction.ORDER_SUBMIT, "order", order.id,
                 previous_state={"status": previous.value},
                 new_state={"status": order.status.value, "items": len(order.items), "total": float(order.total)},
                 staff_id=staff.id, terminal_id=order.terminal_id)
    _status_event(db, order, previous, events.EventType.ORDER_SENT_TO_KITCHEN)
    return order_snapshot(order)


def update_kitchen_status(db: Session, actor_id: int, order_id: int, new_status: Union[str, OrderStatus]) -> dict:
    new_status = _coerce_status(new_status)
    order = load_order(db, order_id, for_update=True)
    if new_status not in KITCHEN_TARGETS:
        raise errors.invalid_transition(order.id, order.status, new_status)
    staff = assert_role(db, actor_id, KITCHEN_TARGETS[new_status])
    previous = order.status
    _transition(db, order, new_status, staff.id)
    append_audit(db, AuditAction.ORDER_STATUS, "order", order.id,
                 previous_state={"status": previous.value}, new_state={"status": order.status.value},
                 staff_id=staff.id, terminal_id=order.terminal_id)
    _status_event(db, order, previous)
    return order_snapshot(order)


def checkout(db: Session, actor_id: int, order_id: int) -> dict:
    """Close a fully paid order: ready/awaiting_payment -> served."""
    staff = assert_role(db, actor_id, FRONT_OF_HOUSE)
    order = load_order(db, order_id, for_update=True)
    if order.status not in (OrderStatus.READY, OrderStatus.AWAITING_PAYMENT):
        raise errors.invalid_transition(order.id, order.status, OrderStatus.SERVED)

    paid = paid_total(db, order.id)
    total = Decimal(str(order.total))
    if paid < total:
        raise errors.order_not_fully_paid(order.id, total, paid)

    previous = order.status
    if order.status == OrderStatus.READY:
        _transition(db, order, OrderStatus.AWAITING_PAYMENT, staff.id)
    freed = _transition(db, order, OrderStatus.SERVED, staff.id, served_at=utcnow())
    ledger.record_served(db, order)

    append_audit(db, AuditAction.CHECKOUT, "order", order.id,
                 previous_state={"status": previous.value},
                 new_state={"status": order.status.value, "total": float(total), "paid": float(paid),
                            "table_id": order.table_id, "released_tables": freed},
                 staff_id=staff.id, terminal_id=order.terminal_id)
    _status_event(db, order, previous)
    return order_snapshot(order)


def cancel_order(db: Session, actor_id: int, order_id: int, reason: Optional[str] = None) -> dict:
    """Cancel a pending order (any staff). Orders already sent on need ``void_order``."""
    staff = assert_role(db, actor_id, ALL_ROLES)
    order = load_order(db, order_id, for_update=True)
    previous = order.status
    freed = _transition(db, order, OrderStatus.CANCELLED, staff.id, cancelled_at=utcnow(), cancel_reason=reason)
    append_audit(db, AuditAction.ORDER_CANCEL, "order", order.id,
                 previous_state={"status": previous.value},
                 new_state={"status": order.status.value, "reason": reason, "table_id": order.table_id, "released_tables": freed},
                 staff_id=staff.id, terminal_id=order.terminal_id)
    _status_event(db, order, previous, events.EventType.ORDER_CANCELLED)
    return order_snapshot(order)


def cancel_empty_pending(db: Session, actor_id: int) -> dict:
    """Cancel abandoned pending orders without items in the actor's active shift."""
    staff = assert_role(db, actor_id, ALL_ROLES)
    shift = ledger.active_shift(db, staff.id)
    has_items = select(OrderItem.id).where(OrderItem.order_id == Order.id).exists()
    candidates = db.execute(
        select(Order.id)
        .where(Order.shift_id == shift.id, Order.status == OrderStatus.PENDING, ~has_items)
        .order_by(Order.id)
    ).scalars().all()

    cancelled = []
    for order_id in candidates:
        order = load_order(db, order_id, for_update=True)
        # an item may have landed since the scan
        item_count = db.execute(select(func.count(OrderItem.id)).where(OrderItem.order_id == order.id)).scalar_one()
        if order.status != OrderStatus.PENDING or item_count:
            continue
        cancel_order(db, staff.id, order.id, reason="empty order")
        cancelled.append(order.id)
    if cancelled:
        log.info(f"cancelled {len(cancelled)} empty pending order(s) in shift {shift.id}")
    return {"cancelled": len(cancelled), "order_ids": cancelled}


def void_order(db: Session, actor_id: int, order_id: int, reason: Optional[str] = None) -> dict:
    """Manager cancel of an order already sent to the kitchen."""
    staff = assert_role(db, actor_id, ELEVATED)
    order = load_order(db, order_id, for_update=True)
    if not can_transition(order.status, OrderStatus.CANCELLED, void=True):
        raise errors.invalid_transition(order.id, order.status, OrderStatus.CANCELLED)
    paid = paid_total(db, order.id)
    if paid > 0:
        raise errors.order_has_payments(order.id, paid)
    previous = order.status
    freed = _transition(db, order, OrderStatus.CANCELLED, staff.id, void=True,
                cancelled_at=utcnow(), cancel_reason=reason)
    append_audit(db, AuditAction.ORDER_VOID, "order", order.id,
                 previous_state={"status": previous.value, "total": float(order.total)},
                 new_state={"status": order.status.value, "reason": reason, "table_id": order.table_id, "released_tables": freed},
                 staff_id=staff.id, terminal_id=order.terminal_id)
    _status_event(db, order, previous, events.EventType.ORDER_CANCELLED)
    return order_snapshot(order)
