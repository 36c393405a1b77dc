"""Payments against open orders. Only completed payments reach the ledger."""
import logging
from decimal import Decimal
from typing import Optional, Union

from sqlalchemy import select
from sqlalchemy.orm import Session

from . import errors, events, ledger
from .audit import AuditAction, append_audit
from .models import Payment, PaymentMethod, PaymentStatus, TERMINAL_STATUSES, Terminal, utcnow
from .orders import load_order, paid_total
from .roles import FRONT_OF_HOUSE, assert_role

log = logging.getLogger("posledger.payments")


def payment_snapshot(p: Payment) -> dict:
    return {
        "id": p.id,
        "order_id": p.order_id,
        "amount": float(p.amount),
        "method": p.method.value,
        "status": p.status.value,
        "reference": p.reference,
        "terminal_id": p.terminal_id,
        "created_by_staff_id": p.created_by_staff_id,
        "created_at": p.created_at.isoformat() if p.created_at else None,
        "settled_at": p.settled_at.isoformat() if p.settled_at else None,
    }


def _method(value: Union[str, PaymentMethod]) -> PaymentMethod:
    try:
        return PaymentMethod(value)
    except ValueError:
        raise errors.validation("INVALID_PAYMENT_METHOD", f"Unknown payment method: {value}", method=value)


def _new_payment(db: Session, actor_id: int, order_id: int, amount, method, status: PaymentStatus,
                 terminal_id: Optional[int], reference: Optional[str]) -> Payment:
    staff = assert_role(db, actor_id, FRONT_OF_HOUSE)
    method = _method(method)
    amount = ledger.to_money(amount)
    if amount <= 0:
        raise errors.invalid_amount(amount)

    order = load_order(db, order_id, for_update=True)
    if order.status in TERMINAL_STATUSES:
        raise errors.order_not_payable(order.id, order.status)

    committed = paid_total(db, order.id, statuses=(PaymentStatus.PENDING, PaymentStatus.COMPLETED))
    total = Decimal(str(order.total))
    if committed + amount > total:
        raise errors.payment_exceeds_total(order.id, total, committed, amount)

    terminal_id = terminal_id if terminal_id is not None else order.terminal_id
    if db.get(Terminal, terminal_id) is None:
        raise errors.not_found("terminal", terminal_id)

    payment = Payment(order_id=order.id, amount=amount, method=method, status=status,
                      reference=reference, terminal_id=terminal_id, created_by_staff_id=staff.id)
    if status == PaymentStatus.COMPLETED:
        payment.settled_at = utcnow()
    db.add(payment)
    db.flush()
    return payment


def _completed(db: Session, payment: Payment, action: str, staff_id: Optional[int]) -> dict:
    ledger.apply_payment(db, payment)
    order = load_order(db, payment.order_id)
    snap = payment_snapshot(payment)
    paid = paid_total(db, order.id)
    append_audit(db, action, "payment", payment.id,
                 new_state={**snap, "order_total": float(order.total), "total_paid": float(paid)},
                 staff_id=staff_id, terminal_id=payment.terminal_id)
    events.emit(db, events.EventType.PAYMENT_COMPLETED, events.shift_scope(order.shift_id),
                {"payment_id": payment.id, "order_id": order.id, "amount": snap["amount"],
                 "method": snap["method"], "total_paid": float(paid), "order_total": float(order.total)})
    log.info(f"payment {payment.id} completed: {snap['amount']} {snap['method']} on order {order.id}")
    return {**snap, "total_paid": float(paid), "order_total": float(order.total),
            "fully_paid": paid >= Decimal(str(order.total))}


def record_payment(db: Session, actor_id: int, order_id: int, amount,
                   method: Union[str, PaymentMethod] = PaymentMethod.CASH,
                   terminal_id: Optional[int] = None, reference: Optional[str] = None) -> dict:
    payment = _new_payment(db, actor_id, order_id, amount, method, PaymentStatus.COMPLETED,
                           terminal_id, reference)
    return _completed(db, payment, AuditAction.PAYMENT, actor_id)


# ------------------------------
# gateway adapter
# ------------------------------
def begin_gateway_payment(db: Session, actor_id: int, order_id: int, amount,
                          method: Union[str, PaymentMethod] = PaymentMethod.MOBILE_MONEY,
                          terminal_id: Optional[int] = None) -> dict:
    payment = _new_payment(db, actor_id, order_id, amount, method, PaymentStatus.PENDING, terminal_id, None)
    log.info(f"gateway payment {payment.id} started for order {order_id}")
    return payment_snapshot(payment)


def settle_gateway_payment(db: Session, payment_id: int, succeeded: bool,
                           reference: Optional[str] = None) -> dict:
    """Gateway callback: pending -> completed | failed, exactly once."""
    payment = db.execute(
        select(Payment).where(Payment.id == payment_id).with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if payment is None:
        raise errors.not_found("payment", payment_id)
    if payment.status != PaymentStatus.PENDING:
        raise errors.payment_already_settled(payment.id, payment.status)

    payment.reference = reference or payment.reference
    payment.settled_at = utcnow()
    if succeeded:
        order = load_order(db, payment.order_id, for_update=True)
        if order.status in TERMINAL_STATUSES:
            raise errors.order_not_payable(order.id, order.status)
        payment.status = PaymentStatus.COMPLETED
        db.flush()
        return _completed(db, payment, AuditAction.PAYMENT_EXTERNAL, None)

    payment.status = PaymentStatus.FAILED
    db.flush()
    order = load_order(db, payment.order_id)
    snap = payment_snapshot(payment)
    append_audit(db, AuditAction.PAYMENT_EXTERNAL, "payment", payment.id,
                 previous_state={"status": PaymentStatus.PENDING.value}, new_state=snap,
                 terminal_id=payment.terminal_id)
    events.emit(db, events.EventType.PAYMENT_FAILED, events.shift_scope(order.shift_id),
                {"payment_id": payment.id, "order_id": order.id, "reference": payment.reference})
    log.warning(f"gateway payment {payment.id} failed (reference {payment.reference})")
    return snap
