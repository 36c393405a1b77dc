"""Shift ledger: running per-terminal totals and cash variance at close."""
import logging
from decimal import Decimal, InvalidOperation
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import errors, events
from .audit import AuditAction, append_audit
from .models import (
    CashMovement, CashMovementKind, Order, Payment, PaymentMethod, Shift, Terminal,
    TerminalCashSummary, ACTIVE_STATUSES, utcnow,
)
from .roles import ALL_ROLES, ELEVATED, assert_role, get_staff, is_elevated
from .utils.config import CASH_VARIANCE_THRESHOLD

log = logging.getLogger("posledger.ledger")

SALES_COLUMN = {
    PaymentMethod.CASH: "cash_sales",
    PaymentMethod.CARD: "card_sales",
    PaymentMethod.MOBILE_MONEY: "mobile_sales",
}


def to_money(value) -> Decimal:
    try:
        return Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        raise errors.validation("INVALID_AMOUNT", f"Not a valid amount: {value}", amount=value)


def _f(value) -> float:
    return float(value) if value is not None else 0.0


def shift_snapshot(s: Shift) -> dict:
    return {
        "id": s.id,
        "staff_id": s.staff_id,
        "terminal_id": s.terminal_id,
        "start_time": s.start_time.isoformat() if s.start_time else None,
        "end_time": s.end_time.isoformat() if s.end_time else None,
        "is_active": s.end_time is None,
        "expected_cash": _f(s.expected_cash) if s.expected_cash is not None else None,
        "counted_cash": _f(s.counted_cash) if s.counted_cash is not None else None,
        "variance": _f(s.variance) if s.variance is not None else None,
        "closed_by_staff_id": s.closed_by_staff_id,
        "approved_by_staff_id": s.approved_by_staff_id,
    }


def summary_snapshot(row: TerminalCashSummary) -> dict:
    return {
        "terminal_id": row.terminal_id,
        "cash_sales": _f(row.cash_sales),
        "card_sales": _f(row.card_sales),
        "mobile_sales": _f(row.mobile_sales),
        "drops": _f(row.drops),
        "adjustments": _f(row.adjustments),
        "expected_balance": _f(row.expected_balance),
        "orders_served": row.orders_served or 0,
    }


# ------------------------------
# lookups
# ------------------------------
def load_shift(db: Session, shift_id: int, for_update: bool = False) -> Shift:
    stmt = select(Shift).where(Shift.id == shift_id).execution_options(populate_existing=True)
    if for_update:
        stmt = stmt.with_for_update()
    shift = db.execute(stmt).scalar_one_or_none()
    if shift is None:
        raise errors.not_found("shift", shift_id)
    return shift


def active_shift(db: Session, staff_id: int, for_update: bool = False) -> Shift:
    stmt = (
        select(Shift)
        .where(Shift.staff_id == staff_id, Shift.end_time.is_(None))
        .execution_options(populate_existing=True)
    )
    if for_update:
        stmt = stmt.with_for_update()
    shift = db.execute(stmt).scalar_one_or_none()
    if shift is None:
        raise errors.no_active_shift(staff_id)
    return shift


def _open_shift(db: Session, shift_id: int) -> Shift:
    shift = load_shift(db, shift_id, for_update=True)
    if shift.end_time is not None:
        raise errors.shift_closed(shift.id)
    return shift


def summary_row(db: Session, shift_id: int, terminal_id: int) -> TerminalCashSummary:
    """Get-or-create the ledger row; a lost insert race reads the winner."""
    stmt = select(TerminalCashSummary).where(
        TerminalCashSummary.shift_id == shift_id, TerminalCashSummary.terminal_id == terminal_id
    )
    row = db.execute(stmt.with_for_update()).scalar_one_or_none()
    if row is not None:
        return row
    row = TerminalCashSummary(shift_id=shift_id, terminal_id=terminal_id)
    try:
        with db.begin_nested():
            db.add(row)
        return row
    except IntegrityError:
        return db.execute(stmt.with_for_update()).scalar_one()


def _bump(db: Session, row: TerminalCashSummary, **deltas) -> TerminalCashSummary:
    values = {name: getattr(TerminalCashSummary, name) + delta for name, delta in deltas.items()}
    values["updated_at"] = utcnow()
    db.execute(
        update(TerminalCashSummary)
        .where(TerminalCashSummary.id == row.id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    db.refresh(row)
    return row


def _ledger_event(db: Session, shift: Shift, row: TerminalCashSummary, reason: str) -> None:
    events.emit(db, events.EventType.LEDGER_UPDATED, events.shift_scope(shift.id),
                {"shift_id": shift.id, "reason": reason, **summary_snapshot(row)})


# ------------------------------
# shift lifecycle
# ------------------------------
def start_shift(db: Session, actor_id: int, terminal_code: str) -> dict:
    staff = assert_role(db, actor_id, ALL_ROLES)
    terminal = db.execute(select(Terminal).where(Terminal.code == terminal_code)).scalar_one_or_none()
    if terminal is None:
        raise errors.not_found("terminal", terminal_code)
    if not terminal.is_active:
        raise errors.inactive("terminal", terminal_code)

    existing = db.execute(
        select(Shift.id).where(Shift.staff_id == staff.id, Shift.end_time.is_(None))
    ).scalar_one_or_none()
    if existing is not None:
        raise errors.staff_has_active_shift(staff.id, existing)

    shift = Shift(staff_id=staff.id, terminal_id=terminal.id, start_time=utcnow(), last_display_number=0)
    try:
        with db.begin_nested():
            db.add(shift)
    except IntegrityError:
        # partial unique index on active shifts
        raise errors.staff_has_active_shift(staff.id)
    summary_row(db, shift.id, terminal.id)

    snap = shift_snapshot(shift)
    append_audit(db, AuditAction.SHIFT_START, "shift", shift.id, new_state=snap,
                 staff_id=staff.id, terminal_id=terminal.id)
    events.emit(db, events.EventType.SHIFT_STARTED, events.shift_scope(shift.id), snap)
    log.info(f"shift {shift.id} started by staff {staff.id} on terminal {terminal.code}")
    return snap


def apply_payment(db: Session, payment: Payment) -> TerminalCashSummary:
    """Add a completed payment to its shift's running totals."""
    order = db.get(Order, payment.order_id)
    shift = _open_shift(db, order.shift_id)
    row = summary_row(db, shift.id, payment.terminal_id)
    amount = to_money(payment.amount)
    deltas = {SALES_COLUMN[payment.method]: amount}
    if payment.method == PaymentMethod.CASH:
        deltas["expected_balance"] = amount
    _bump(db, row, **deltas)
    _ledger_event(db, shift, row, "payment")
    return row


def record_served(db: Session, order: Order) -> TerminalCashSummary:
    shift = load_shift(db, order.shift_id, for_update=True)
    row = summary_row(db, shift.id, order.terminal_id)
    _bump(db, row, orders_served=1)
    return row


def _movement(db: Session, shift: Shift, terminal_id: Optional[int], kind: CashMovementKind,
              amount: Decimal, reason: Optional[str], staff_id: int) -> TerminalCashSummary:
    terminal_id = terminal_id if terminal_id is not None else shift.terminal_id
    if db.get(Terminal, terminal_id) is None:
        raise errors.not_found("terminal", terminal_id)
    row = summary_row(db, shift.id, terminal_id)
    db.add(CashMovement(shift_id=shift.id, terminal_id=terminal_id, kind=kind, amount=amount,
                        reason=reason, staff_id=staff_id))
    if kind == CashMovementKind.DROP:
        _bump(db, row, drops=amount, expected_balance=-amount)
    else:
        _bump(db, row, adjustments=amount, expected_balance=amount)
    return row


def record_cash_drop(db: Session, actor_id: int, shift_id: int, amount,
                     terminal_id: Optional[int] = None, reason: Optional[str] = None) -> dict:
    """Cash taken out of the drawer (safe drop). Shift owner or manager."""
    staff = assert_role(db, actor_id, ALL_ROLES)
    amount = to_money(amount)
    if amount <= 0:
        raise errors.invalid_amount(amount)
    shift = _open_shift(db, shift_id)
    if shift.staff_id != staff.id and not is_elevated(staff):
        raise errors.unauthorized_role(staff.id, staff.role, ELEVATED)

    row = _movement(db, shift, terminal_id, CashMovementKind.DROP, amount, reason, staff.id)
    snap = summary_snapshot(row)
    append_audit(db, AuditAction.CASH_DROP, "shift", shift.id,
                 new_state={"amount": float(amount), "reason": reason, **snap},
                 staff_id=staff.id, terminal_id=row.terminal_id)
    _ledger_event(db, shift, row, "drop")
    return {"shift_id": shift.id, **snap}


def record_cash_adjustment(db: Session, actor_id: int, shift_id: int, amount, reason: str,
                           terminal_id: Optional[int] = None) -> dict:
    """Signed manager correction to the drawer."""
    staff = assert_role(db, actor_id, ELEVATED)
    amount = to_money(amount)
    if amount == 0:
        raise errors.invalid_amount(amount)
    if not (reason or "").strip():
        raise errors.validation("REASON_REQUIRED", "Cash adjustments need a reason")
    shift = _open_shift(db, shift_id)

    row = _movement(db, shift, terminal_id, CashMovementKind.ADJUSTMENT, amount, reason, staff.id)
    snap = summary_snapshot(row)
    append_audit(db, AuditAction.CASH_ADJUSTMENT, "shift", shift.id,
                 new_state={"amount": float(amount), "reason": reason, **snap},
                 staff_id=staff.id, terminal_id=row.terminal_id)
    _ledger_event(db, shift, row, "adjustment")
    return {"shift_id": shift.id, **snap}


def _summaries(db: Session, shift_id: int, for_update: bool = False):
    stmt = (
        select(TerminalCashSummary)
        .where(TerminalCashSummary.shift_id == shift_id)
        .order_by(TerminalCashSummary.terminal_id)
        .execution_options(populate_existing=True)
    )
    if for_update:
        stmt = stmt.with_for_update()
    return db.execute(stmt).scalars().all()


def expected_cash(rows) -> Decimal:
    total = Decimal("0")
    for r in rows:
        total += to_money(r.cash_sales) - to_money(r.drops) + to_money(r.adjustments)
    return total


def close_shift(db: Session, actor_id: int, shift_id: int, counted_cash,
                approver_id: Optional[int] = None) -> dict:
    staff = assert_role(db, actor_id, ALL_ROLES)
    counted = to_money(counted_cash)
    if counted < 0:
        raise errors.invalid_amount(counted)

    shift = _open_shift(db, shift_id)
    if shift.staff_id != staff.id and not is_elevated(staff):
        raise errors.unauthorized_role(staff.id, staff.role, ELEVATED)

    open_orders = db.execute(
        select(Order.id).where(Order.shift_id == shift.id, Order.status.in_(ACTIVE_STATUSES)).order_by(Order.id)
    ).scalars().all()
    if open_orders:
        raise errors.shift_has_unfinished_orders(shift.id, open_orders)

    rows = _summaries(db, shift.id, for_update=True)
    expected = expected_cash(rows)
    variance = counted - expected

    approver = None
    if abs(variance) > CASH_VARIANCE_THRESHOLD:
        if approver_id is None:
            raise errors.validation(
                "APPROVER_REQUIRED",
                f"Variance {float(variance)} exceeds {float(CASH_VARIANCE_THRESHOLD)}; a manager must approve",
                variance=variance, threshold=CASH_VARIANCE_THRESHOLD,
            )
        approver = get_staff(db, approver_id)
        if not is_elevated(approver):
            raise errors.unauthorized("APPROVER_NOT_MANAGER",
                                      f"Approver {approver_id} is not a manager",
                                      approver_id=approver_id, role=approver.role)
    elif approver_id is not None:
        approver = get_staff(db, approver_id)

    previous = shift_snapshot(shift)
    res = db.execute(
        update(Shift)
        .where(Shift.id == shift.id, Shift.end_time.is_(None))
        .values(end_time=utcnow(), expected_cash=expected, counted_cash=counted, variance=variance,
                closed_by_staff_id=staff.id, approved_by_staff_id=approver.id if approver else None)
        .execution_options(synchronize_session=False)
    )
    if res.rowcount != 1:
        raise errors.shift_closed(shift.id)
    db.refresh(shift)

    snap = shift_snapshot(shift)
    append_audit(db, AuditAction.SHIFT_CLOSE, "shift", shift.id, previous_state=previous,
                 new_state={**snap, "terminals": [summary_snapshot(r) for r in rows]},
                 staff_id=staff.id, terminal_id=shift.terminal_id)
    events.emit(db, events.EventType.SHIFT_CLOSED, events.shift_scope(shift.id), snap)
    log.info(f"shift {shift.id} closed: expected {expected} counted {counted} variance {variance}")
    return snap


def shift_ledger(db: Session, shift_id: int) -> dict:
    shift = load_shift(db, shift_id)
    rows = _summaries(db, shift.id)
    return {
        **shift_snapshot(shift),
        "terminals": [summary_snapshot(r) for r in rows],
        "expected_cash": float(expected_cash(rows)),
        "threshold": float(CASH_VARIANCE_THRESHOLD),
    }
