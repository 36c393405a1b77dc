"""Domain error kinds and their HTTP status mapping."""
import enum
from decimal import Decimal
from typing import Any, Dict, Iterable


class ErrorKind(str, enum.Enum):
    NOT_FOUND = "not_found"
    INVALID_STATE = "invalid_state"
    VALIDATION = "validation"
    UNAUTHORIZED = "unauthorized"
    CONFLICT = "conflict"


STATUS_BY_KIND: Dict[ErrorKind, int] = {
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.INVALID_STATE: 409,
    ErrorKind.CONFLICT: 409,
    ErrorKind.VALIDATION: 400,
    ErrorKind.UNAUTHORIZED: 403,
}
assert set(STATUS_BY_KIND) == set(ErrorKind), "every ErrorKind needs a status code"


def _plain(v: Any) -> Any:
    if isinstance(v, Decimal):
        return float(v)
    if isinstance(v, enum.Enum):
        return v.value
    if isinstance(v, (list, tuple)):
        return [_plain(x) for x in v]
    return v


class PosError(Exception):
    def __init__(self, kind: ErrorKind, code: str, message: str, **details: Any):
        super().__init__(message)
        self.kind = kind
        self.code = code
        self.message = message
        self.details = {k: _plain(v) for k, v in details.items()}

    @property
    def status_code(self) -> int:
        return STATUS_BY_KIND[self.kind]

    def to_dict(self) -> dict:
        return {"error": self.message, "code": self.code, **self.details}

    def __repr__(self):
        return f"PosError({self.kind.value}, {self.code!r}, {self.message!r})"


# ------------------------------
# not found
# ------------------------------
def not_found(entity: str, entity_id: Any) -> PosError:
    return PosError(ErrorKind.NOT_FOUND, f"{entity.upper()}_NOT_FOUND",
                    f"{entity.replace('_', ' ').capitalize()} not found: {entity_id}",
                    entity=entity, entity_id=entity_id)


# ------------------------------
# invalid state
# ------------------------------
def invalid_transition(order_id: int, current, attempted) -> PosError:
    return PosError(ErrorKind.INVALID_STATE, "INVALID_ORDER_STATUS_TRANSITION",
                    f"Invalid order status transition: {_plain(current)} -> {_plain(attempted)} (order: {order_id})",
                    order_id=order_id, current_status=current, attempted_status=attempted)


def order_immutable(order_id: int, status) -> PosError:
    return PosError(ErrorKind.INVALID_STATE, "ORDER_IMMUTABLE",
                    f"Order is {_plain(status)}; items cannot be modified: {order_id}",
                    order_id=order_id, status=status)


def order_empty(order_id: int) -> PosError:
    return PosError(ErrorKind.INVALID_STATE, "ORDER_EMPTY",
                    f"Order has no items and cannot be sent to the kitchen: {order_id}", order_id=order_id)


def order_not_fully_paid(order_id: int, total, paid) -> PosError:
    return PosError(ErrorKind.INVALID_STATE, "ORDER_NOT_FULLY_PAID",
                    f"Order not fully paid: {order_id} total {_plain(total)}, paid {_plain(paid)}",
                    order_id=order_id, order_total=total, total_paid=paid)


def order_has_payments(order_id: int, paid) -> PosError:
    return PosError(ErrorKind.INVALID_STATE, "ORDER_HAS_PAYMENTS",
                    f"Order {order_id} has completed payments ({_plain(paid)}) and cannot be voided",
                    order_id=order_id, total_paid=paid)


def order_not_payable(order_id: int, status) -> PosError:
    return PosError(ErrorKind.INVALID_STATE, "ORDER_NOT_PAYABLE",
                    f"Order is {_plain(status)} and cannot take payments: {order_id}",
                    order_id=order_id, status=status)


def payment_already_settled(payment_id: int, status) -> PosError:
    return PosError(ErrorKind.INVALID_STATE, "PAYMENT_ALREADY_SETTLED",
                    f"Payment {payment_id} is already {_plain(status)}", payment_id=payment_id, status=status)


def no_active_shift(staff_id: int) -> PosError:
    return PosError(ErrorKind.INVALID_STATE, "NO_ACTIVE_SHIFT",
                    f"Staff has no active shift: {staff_id}", staff_id=staff_id)


def staff_has_active_shift(staff_id: int, shift_id=None) -> PosError:
    return PosError(ErrorKind.INVALID_STATE, "STAFF_ALREADY_HAS_ACTIVE_SHIFT",
                    f"Staff already has an active shift: {staff_id}", staff_id=staff_id, shift_id=shift_id)


def shift_closed(shift_id: int) -> PosError:
    return PosError(ErrorKind.INVALID_STATE, "SHIFT_ALREADY_CLOSED",
                    f"Shift already closed: {shift_id}", shift_id=shift_id)


def shift_has_unfinished_orders(shift_id: int, order_ids: Iterable[int]) -> PosError:
    order_ids = list(order_ids)
    return PosError(ErrorKind.INVALID_STATE, "SHIFT_HAS_UNFINISHED_ORDERS",
                    f"Cannot close shift {shift_id}: {len(order_ids)} order(s) still open. Complete or cancel them first.",
                    shift_id=shift_id, order_ids=order_ids)


def inactive(entity: str, entity_id: Any) -> PosError:
    return PosError(ErrorKind.INVALID_STATE, f"{entity.upper()}_INACTIVE",
                    f"{entity.capitalize()} is inactive: {entity_id}", entity=entity, entity_id=entity_id)


# ------------------------------
# validation
# ------------------------------
def validation(code: str, message: str, **details) -> PosError:
    return PosError(ErrorKind.VALIDATION, code, message, **details)


def invalid_quantity(quantity) -> PosError:
    return validation("INVALID_QUANTITY", f"Quantity must be >= 1, got: {quantity}", quantity=quantity)


def invalid_amount(amount) -> PosError:
    return validation("INVALID_AMOUNT", f"Amount must be > 0, got: {_plain(amount)}", amount=amount)


def payment_exceeds_total(order_id: int, total, paid, attempted) -> PosError:
    return validation("PAYMENT_EXCEEDS_ORDER_TOTAL",
                      f"Payment would exceed order total: order {order_id} total {_plain(total)}, "
                      f"current payments {_plain(paid)}, attempted {_plain(attempted)}",
                      order_id=order_id, order_total=total, current_payments=paid, attempted=attempted)


# ------------------------------
# unauthorized / conflict
# ------------------------------
def unauthorized_role(staff_id: int, role, allowed) -> PosError:
    allowed = sorted(_plain(r) for r in allowed)
    return PosError(ErrorKind.UNAUTHORIZED, "UNAUTHORIZED_ROLE",
                    f"Staff {staff_id} with role {_plain(role)} is not authorized. Required: {', '.join(allowed)}",
                    staff_id=staff_id, role=role, required_roles=allowed)


def unauthorized(code: str, message: str, **details) -> PosError:
    return PosError(ErrorKind.UNAUTHORIZED, code, message, **details)


def table_occupied(table_id: int, order_id: int, terminal_id: int) -> PosError:
    return PosError(ErrorKind.CONFLICT, "TABLE_OCCUPIED",
                    f"Table {table_id} is already occupied by order {order_id} (terminal {terminal_id})",
                    table_id=table_id, existing_order_id=order_id, terminal_id=terminal_id)
