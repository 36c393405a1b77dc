"""Scoped event fan-out through a transactional outbox."""
import logging
import threading
from collections import defaultdict
from typing import Any, Callable, Dict, Iterable, List, Optional

from sqlalchemy import select
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from .models import OutboxEvent, utcnow
from .utils.config import OUTBOX_MAX_ATTEMPTS

log = logging.getLogger("posledger.events")

PENDING_KEY = "posledger.outbox_pending"


class EventType:
    ORDER_CREATED = "ORDER_CREATED"
    ORDER_UPDATED = "ORDER_UPDATED"
    ORDER_SENT_TO_KITCHEN = "ORDER_SENT_TO_KITCHEN"
    ORDER_STATUS_CHANGED = "ORDER_STATUS_CHANGED"
    ORDER_CANCELLED = "ORDER_CANCELLED"
    PAYMENT_COMPLETED = "PAYMENT_COMPLETED"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    TABLE_OCCUPIED = "TABLE_OCCUPIED"
    TABLE_RELEASED = "TABLE_RELEASED"
    SHIFT_STARTED = "SHIFT_STARTED"
    SHIFT_CLOSED = "SHIFT_CLOSED"
    LEDGER_UPDATED = "LEDGER_UPDATED"


def shift_scope(shift_id) -> str:
    return f"shift:{shift_id}"


def table_scope(table_id) -> str:
    return f"table:{table_id}"


class RealtimeBus:
    """Fire-and-forget broadcast to subscribers of a scope."""

    def __init__(self):
        self._subscribers: Dict[str, List[Callable[[dict], Any]]] = defaultdict(list)
        self._lock = threading.Lock()

    def subscribe(self, scope: str, callback: Callable[[dict], Any]) -> Callable[[], None]:
        with self._lock:
            self._subscribers[scope].append(callback)

        def _unsubscribe():
            with self._lock:
                if callback in self._subscribers.get(scope, []):
                    self._subscribers[scope].remove(callback)
        return _unsubscribe

    def publish(self, event: dict, scope: str) -> int:
        with self._lock:
            targets = list(self._subscribers.get(scope, ()))
        sent = 0
        for cb in targets:
            try:
                cb(event)
                sent += 1
            except Exception as e:  # noqa: BLE001
                log.warning(f"subscriber on {scope} failed: {e!r}")
        return sent

    def clear(self) -> None:
        with self._lock:
            self._subscribers.clear()


bus = RealtimeBus()


# ------------------------------
# write side (inside the command transaction)
# ------------------------------
def emit(db: Session, event_type: str, scope: str, payload: Dict[str, Any]) -> Optional[OutboxEvent]:
    row = OutboxEvent(event_type=event_type, scope=scope, payload=payload)
    try:
        with db.begin_nested():
            db.add(row)
    except Exception:
        log.exception(f"outbox write failed: {event_type} -> {scope}")
        return None
    db.info.setdefault(PENDING_KEY, []).append(row.id)
    return row


def take_pending(db: Session) -> List[int]:
    return db.info.pop(PENDING_KEY, [])


def discard_pending(db: Session) -> None:
    db.info.pop(PENDING_KEY, None)


# ------------------------------
# delivery side (after commit)
# ------------------------------
def _publish_rows(db: Session, rows: Iterable[OutboxEvent], target: RealtimeBus) -> int:
    delivered = 0
    for row in rows:
        try:
            target.publish({"id": row.id, "type": row.event_type, "scope": row.scope, "payload": row.payload}, row.scope)
            row.delivered_at = utcnow()
            delivered += 1
        except Exception as e:  # noqa: BLE001
            row.attempts = (row.attempts or 0) + 1
            row.last_error = repr(e)[:500]
            if row.attempts >= OUTBOX_MAX_ATTEMPTS:
                row.dead_at = utcnow()
                log.error(f"outbox event {row.id} dead-lettered after {row.attempts} attempts: {e!r}")
            else:
                log.warning(f"outbox event {row.id} delivery failed ({row.attempts}): {e!r}")
    return delivered


def deliver(bind: Engine, event_ids: List[int], target: Optional[RealtimeBus] = None) -> int:
    """Publish the given outbox rows in their own short transaction."""
    if not event_ids:
        return 0
    target = target or bus
    factory = sessionmaker(bind=bind, expire_on_commit=False, future=True)
    try:
        with factory() as db:
            rows = db.execute(
                select(OutboxEvent)
                .where(OutboxEvent.id.in_(event_ids), OutboxEvent.delivered_at.is_(None))
                .order_by(OutboxEvent.id)
            ).scalars().all()
            n = _publish_rows(db, rows, target)
            db.commit()
            return n
    except Exception:
        log.exception(f"outbox delivery pass failed for {len(event_ids)} event(s)")
        return 0


def redeliver_pending(db: Session, target: Optional[RealtimeBus] = None, limit: int = 200) -> int:
    """Retry undelivered, not dead-lettered rows (run from a timer or at startup)."""
    rows = db.execute(
        select(OutboxEvent)
        .where(OutboxEvent.delivered_at.is_(None), OutboxEvent.dead_at.is_(None))
        .order_by(OutboxEvent.id)
        .limit(limit)
    ).scalars().all()
    n = _publish_rows(db, rows, target or bus)
    db.commit()
    return n
