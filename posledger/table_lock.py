"""Exclusive table occupancy for open dine-in orders."""
import logging
from typing import List, Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import errors, events
from .audit import AuditAction, append_audit
from .models import Order, RestaurantTable, TableOccupancy, TERMINAL_STATUSES, utcnow

log = logging.getLogger("posledger.table_lock")


def current_holder(db: Session, table_id: int) -> Optional[TableOccupancy]:
    return db.execute(select(TableOccupancy).where(TableOccupancy.table_id == table_id)).scalar_one_or_none()


def acquire(db: Session, table_id: int, order_id: int, terminal_id: int, staff_id: int) -> TableOccupancy:
    if db.get(RestaurantTable, table_id) is None:
        raise errors.not_found("table", table_id)

    occ = TableOccupancy(table_id=table_id, order_id=order_id, terminal_id=terminal_id, staff_id=staff_id)
    try:
        with db.begin_nested():
            db.add(occ)
        return occ
    except IntegrityError:
        pass

    existing = current_holder(db, table_id)
    if existing is None:
        # holder released between our insert and this read; caller may retry
        raise errors.PosError(errors.ErrorKind.CONFLICT, "TABLE_LOCK_CONTENDED",
                              f"Table {table_id} lock is contended, retry", table_id=table_id)
    if existing.order_id != order_id:
        raise errors.table_occupied(table_id, existing.order_id, existing.terminal_id)
    # same order: refresh only
    existing.locked_at = utcnow()
    existing.terminal_id = terminal_id
    existing.staff_id = staff_id
    return existing


def release(db: Session, order_id: int) -> List[int]:
    """Drop every occupancy held by ``order_id``; returns the freed table ids."""
    table_ids = db.execute(
        select(TableOccupancy.table_id).where(TableOccupancy.order_id == order_id)
    ).scalars().all()
    if table_ids:
        db.execute(delete(TableOccupancy).where(TableOccupancy.order_id == order_id))
    return list(table_ids)


def release_for_order(db: Session, order: Order) -> List[int]:
    freed = release(db, order.id)
    now = utcnow().isoformat()
    for table_id in freed:
        log.info(f"table {table_id} released by order {order.id}")
        events.emit(db, events.EventType.TABLE_RELEASED, events.table_scope(table_id),
                    {"table_id": table_id, "order_id": order.id, "released_at": now})
    return freed


def sweep_orphaned_locks(db: Session, actor_id: Optional[int] = None) -> List[int]:
    """Release occupancies whose order is already terminal (or gone).

    Corrective only: covers a crash between the terminal status write and the
    release. Returns the freed table ids.
    """
    rows = db.execute(
        select(TableOccupancy, Order.status)
        .join(Order, Order.id == TableOccupancy.order_id, isouter=True)
    ).all()
    freed = []
    for occ, status in rows:
        if status is not None and status not in TERMINAL_STATUSES:
            continue
        db.delete(occ)
        freed.append(occ.table_id)
        append_audit(db, AuditAction.TABLE_RELEASE, "table", occ.table_id,
                     previous_state={"order_id": occ.order_id, "order_status": status.value if status else None},
                     new_state={"order_id": None, "reason": "sweep"}, staff_id=actor_id,
                     terminal_id=occ.terminal_id)
        events.emit(db, events.EventType.TABLE_RELEASED, events.table_scope(occ.table_id),
                    {"table_id": occ.table_id, "order_id": occ.order_id, "released_at": utcnow().isoformat()})
    if freed:
        log.warning(f"sweep released {len(freed)} orphaned table lock(s): {freed}")
    return freed
