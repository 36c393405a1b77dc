"""Runs mutating commands at most once per (resource type, client request id)."""
import json
import logging
from typing import Any, Callable, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from . import errors, events
from .models import IdempotencyRecord
from .utils.config import IDEMPOTENCY_KEY_MAX_LENGTH

log = logging.getLogger("posledger.idempotency")


class ResourceType:
    ORDER_CREATE_DINE_IN = "order_create_dine_in"
    ORDER_CREATE_TAKEAWAY = "order_create_takeaway"
    ADD_ITEM = "add_item"
    UPDATE_ITEM = "update_item"
    REMOVE_ITEM = "remove_item"
    SUBMIT_ORDER = "submit_order"
    KITCHEN_STATUS = "kitchen_status"
    PAYMENT = "payment"
    GATEWAY_BEGIN = "gateway_begin"
    GATEWAY_SETTLE = "gateway_settle"
    CHECKOUT = "checkout"
    CANCEL_ORDER = "cancel_order"
    CANCEL_EMPTY_PENDING = "cancel_empty_pending"
    VOID_ORDER = "void_order"
    SHIFT_START = "shift_start"
    SHIFT_CLOSE = "shift_close"
    CASH_DROP = "cash_drop"
    CASH_ADJUSTMENT = "cash_adjustment"
    TERMINAL_REGISTER = "terminal_register"
    TABLE_SWEEP = "table_sweep"
    STAFF_UNLOCK = "staff_unlock"


def _dumps(result: Any) -> str:
    return json.dumps(result, default=str, sort_keys=True)


def normalize_key(client_request_id: Optional[str]) -> Optional[str]:
    if client_request_id is None:
        return None
    key = str(client_request_id).strip()
    if not key:
        return None
    if len(key) > IDEMPOTENCY_KEY_MAX_LENGTH:
        raise errors.validation(
            "IDEMPOTENCY_KEY_TOO_LONG",
            f"client_request_id must be at most {IDEMPOTENCY_KEY_MAX_LENGTH} characters",
            length=len(key),
        )
    return key


def find_record(db: Session, resource_type: str, key: str) -> Optional[IdempotencyRecord]:
    return db.execute(
        select(IdempotencyRecord).where(
            IdempotencyRecord.resource_type == resource_type,
            IdempotencyRecord.client_request_id == key,
        )
    ).scalar_one_or_none()


class CommandProcessor:
    """Runs one command per transaction; ``defer`` schedules post-commit delivery."""

    def __init__(self, db: Session, defer: Optional[Callable[..., Any]] = None):
        self.db = db
        self.defer = defer

    def execute(self, resource_type: str, operation: Callable[[Session], Any],
                client_request_id: Optional[str] = None) -> Any:
        db = self.db
        key = normalize_key(client_request_id)

        if key is not None:
            # on a miss the read transaction stays open and the operation runs
            # inside it; on SQLite that holds the writer lock throughout
            existing = self._stored(resource_type, key)
            if existing is not None:
                log.info(f"replay {resource_type}:{key}")
                return existing

        try:
            result = json.loads(_dumps(operation(db)))
            if key is not None:
                with db.begin_nested():
                    db.add(IdempotencyRecord(client_request_id=key, resource_type=resource_type,
                                             response_json=_dumps(result)))
            db.commit()
        except Exception:
            db.rollback()
            events.discard_pending(db)
            if key is None:
                raise
            # a same-key winner committed after our pre-check: the failure is
            # either its record insert or the state it already changed
            winner = self._stored(resource_type, key)
            if winner is None:
                db.rollback()
                raise
            log.info(f"idempotency race lost for {resource_type}:{key}; returning stored result")
            return winner

        self._dispatch(events.take_pending(db))
        return result

    def _stored(self, resource_type: str, key: str) -> Any:
        rec = find_record(self.db, resource_type, key)
        if rec is None:
            return None
        result = json.loads(rec.response_json)
        # end the read transaction so it does not hold the writer lock
        self.db.commit()
        return result

    def _dispatch(self, event_ids) -> None:
        if not event_ids:
            return
        bind = self.db.get_bind()
        if self.defer is not None:
            self.defer(events.deliver, bind, event_ids)
        else:
            events.deliver(bind, event_ids)
