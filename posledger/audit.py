"""Append-only audit trail. Failed writes are logged and dropped."""
import logging
from typing import Any, Dict, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from .models import AuditLog

log = logging.getLogger("posledger.audit")


class AuditAction:
    ORDER_CREATE = "ORDER_CREATE"
    ORDER_SUBMIT = "ORDER_SUBMIT"
    ORDER_STATUS = "ORDER_STATUS"
    ORDER_CANCEL = "ORDER_CANCEL"
    ORDER_VOID = "ORDER_VOID"
    CHECKOUT = "CHECKOUT"
    PAYMENT = "PAYMENT"
    PAYMENT_EXTERNAL = "PAYMENT_EXTERNAL"
    TABLE_RELEASE = "TABLE_RELEASE"
    SHIFT_START = "SHIFT_START"
    SHIFT_CLOSE = "SHIFT_CLOSE"
    CASH_DROP = "CASH_DROP"
    CASH_ADJUSTMENT = "CASH_ADJUSTMENT"
    TERMINAL_REGISTER = "TERMINAL_REGISTER"
    AUTH_LOGIN = "AUTH_LOGIN"
    STAFF_UNLOCK = "STAFF_UNLOCK"


def append_audit(
    db: Session,
    action_type: str,
    entity_type: str,
    entity_id: Any = None,
    previous_state: Optional[Dict[str, Any]] = None,
    new_state: Optional[Dict[str, Any]] = None,
    staff_id: Optional[int] = None,
    terminal_id: Optional[int] = None,
) -> Optional[AuditLog]:
    entry = AuditLog(
        action_type=action_type,
        entity_type=entity_type,
        entity_id=str(entity_id) if entity_id is not None else None,
        previous_state=previous_state,
        new_state=new_state,
        staff_id=staff_id,
        terminal_id=terminal_id,
    )
    try:
        with db.begin_nested():
            db.add(entry)
    except Exception:
        log.exception(f"audit write failed: {action_type} {entity_type}:{entity_id}")
        return None
    return entry


def entries_for(db: Session, entity_type: str, entity_id: Any):
    stmt = (
        select(AuditLog)
        .where(AuditLog.entity_type == entity_type, AuditLog.entity_id == str(entity_id))
        .order_by(AuditLog.id)
    )
    return db.execute(stmt).scalars().all()
