import enum
from datetime import datetime, timezone

from sqlalchemy import (
    Column, Integer, String, Boolean, DateTime, Numeric, Text, JSON, Enum as SAEnum,
    ForeignKey, UniqueConstraint, CheckConstraint, Index,
)
from sqlalchemy.orm import relationship

from .db import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _enum(e):
    return SAEnum(e, native_enum=False, length=24, values_callable=lambda members: [m.value for m in members])


class StaffRole(str, enum.Enum):
    CASHIER = "cashier"
    WAITER = "waiter"
    KITCHEN = "kitchen"
    BAR = "bar"
    MANAGER = "manager"
    ADMIN = "admin"


class OrderType(str, enum.Enum):
    DINE_IN = "dine_in"
    TAKEAWAY = "takeaway"


class OrderStatus(str, enum.Enum):
    PENDING = "pending"
    PREPARING = "preparing"
    READY = "ready"
    AWAITING_PAYMENT = "awaiting_payment"
    SERVED = "served"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = (OrderStatus.SERVED, OrderStatus.CANCELLED)
ACTIVE_STATUSES = (OrderStatus.PENDING, OrderStatus.PREPARING, OrderStatus.READY, OrderStatus.AWAITING_PAYMENT)


class PaymentMethod(str, enum.Enum):
    CASH = "cash"
    CARD = "card"
    MOBILE_MONEY = "mobile_money"


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class CashMovementKind(str, enum.Enum):
    DROP = "drop"
    ADJUSTMENT = "adjustment"


# ------------------------------
# Staff / terminals / catalogue
# ------------------------------
class Staff(Base):
    __tablename__ = "staff"
    id = Column(Integer, primary_key=True)
    username = Column(String(64), unique=True, index=True, nullable=False)
    display_name = Column(String(128))
    pin_hash = Column(String(255), nullable=False)
    role = Column(_enum(StaffRole), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)


class Terminal(Base):
    __tablename__ = "terminals"
    id = Column(Integer, primary_key=True)
    code = Column(String(32), unique=True, index=True, nullable=False)
    name = Column(String(128), nullable=False)
    type = Column(String(24), nullable=False, default="pos")
    is_active = Column(Boolean, nullable=False, default=True)
    registered_at = Column(DateTime, nullable=False, default=utcnow)
    last_seen_at = Column(DateTime)


class RestaurantTable(Base):
    __tablename__ = "restaurant_tables"
    id = Column(Integer, primary_key=True)
    code = Column(String(16), unique=True, index=True, nullable=False)
    seats = Column(Integer, nullable=False, default=4)


class Product(Base):
    __tablename__ = "products"
    id = Column(Integer, primary_key=True)
    name = Column(String(128), nullable=False)
    price = Column(Numeric(14, 2), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)


# ------------------------------
# Shifts and the cash ledger
# ------------------------------
class Shift(Base):
    __tablename__ = "shifts"
    id = Column(Integer, primary_key=True)
    staff_id = Column(Integer, ForeignKey("staff.id"), nullable=False, index=True)
    terminal_id = Column(Integer, ForeignKey("terminals.id"), nullable=False)
    start_time = Column(DateTime, nullable=False, default=utcnow)
    end_time = Column(DateTime)  # NULL = active
    expected_cash = Column(Numeric(14, 2))
    counted_cash = Column(Numeric(14, 2))
    variance = Column(Numeric(14, 2))
    closed_by_staff_id = Column(Integer, ForeignKey("staff.id"))
    approved_by_staff_id = Column(Integer, ForeignKey("staff.id"))
    last_display_number = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        # at most one active shift per staff member
        Index(
            "uq_shifts_active_staff", "staff_id", unique=True,
            sqlite_where=end_time.is_(None), postgresql_where=end_time.is_(None),
        ),
    )


class TerminalCashSummary(Base):
    __tablename__ = "terminal_cash_summaries"
    id = Column(Integer, primary_key=True)
    shift_id = Column(Integer, ForeignKey("shifts.id"), nullable=False)
    terminal_id = Column(Integer, ForeignKey("terminals.id"), nullable=False)
    cash_sales = Column(Numeric(14, 2), nullable=False, default=0)
    card_sales = Column(Numeric(14, 2), nullable=False, default=0)
    mobile_sales = Column(Numeric(14, 2), nullable=False, default=0)
    drops = Column(Numeric(14, 2), nullable=False, default=0)
    adjustments = Column(Numeric(14, 2), nullable=False, default=0)
    expected_balance = Column(Numeric(14, 2), nullable=False, default=0)
    orders_served = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (UniqueConstraint("shift_id", "terminal_id", name="uq_cash_summary_shift_terminal"),)


class CashMovement(Base):
    __tablename__ = "cash_movements"
    id = Column(Integer, primary_key=True)
    shift_id = Column(Integer, ForeignKey("shifts.id"), nullable=False, index=True)
    terminal_id = Column(Integer, ForeignKey("terminals.id"), nullable=False)
    kind = Column(_enum(CashMovementKind), nullable=False)
    amount = Column(Numeric(14, 2), nullable=False)
    reason = Column(Text)
    staff_id = Column(Integer, ForeignKey("staff.id"), nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)


# ------------------------------
# Orders
# ------------------------------
class Order(Base):
    __tablename__ = "orders"
    id = Column(Integer, primary_key=True)
    display_number = Column(Integer, nullable=False)
    order_type = Column(_enum(OrderType), nullable=False)
    table_id = Column(Integer, ForeignKey("restaurant_tables.id"))
    shift_id = Column(Integer, ForeignKey("shifts.id"), nullable=False, index=True)
    terminal_id = Column(Integer, ForeignKey("terminals.id"), nullable=False)
    created_by_staff_id = Column(Integer, ForeignKey("staff.id"), nullable=False)
    updated_by_staff_id = Column(Integer, ForeignKey("staff.id"))
    status = Column(_enum(OrderStatus), nullable=False, default=OrderStatus.PENDING, index=True)
    total = Column(Numeric(14, 2), nullable=False, default=0)
    cancel_reason = Column(Text)
    served_at = Column(DateTime)
    cancelled_at = Column(DateTime)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    items = relationship("OrderItem", back_populates="order", order_by="OrderItem.sort_order",
                         cascade="all, delete-orphan")

    __table_args__ = (UniqueConstraint("shift_id", "display_number", name="uq_orders_shift_number"),)


class OrderItem(Base):
    __tablename__ = "order_items"
    id = Column(Integer, primary_key=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Numeric(14, 2), nullable=False)
    line_total = Column(Numeric(14, 2), nullable=False)
    size = Column(String(32))
    modifier = Column(String(64))
    notes = Column(Text)
    sort_order = Column(Integer, nullable=False, default=0)

    order = relationship("Order", back_populates="items")

    __table_args__ = (CheckConstraint("quantity >= 1", name="ck_order_items_quantity"),)


class Payment(Base):
    __tablename__ = "payments"
    id = Column(Integer, primary_key=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    amount = Column(Numeric(14, 2), nullable=False)
    method = Column(_enum(PaymentMethod), nullable=False)
    status = Column(_enum(PaymentStatus), nullable=False)
    reference = Column(String(128))
    terminal_id = Column(Integer, ForeignKey("terminals.id"), nullable=False)
    created_by_staff_id = Column(Integer, ForeignKey("staff.id"), nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    settled_at = Column(DateTime)


class TableOccupancy(Base):
    __tablename__ = "table_occupancies"
    id = Column(Integer, primary_key=True)
    table_id = Column(Integer, ForeignKey("restaurant_tables.id"), unique=True, nullable=False)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    terminal_id = Column(Integer, ForeignKey("terminals.id"), nullable=False)
    staff_id = Column(Integer, ForeignKey("staff.id"), nullable=False)
    locked_at = Column(DateTime, nullable=False, default=utcnow)


# ------------------------------
# Idempotency / audit / outbox / login throttle
# ------------------------------
class IdempotencyRecord(Base):
    __tablename__ = "idempotency_records"
    id = Column(Integer, primary_key=True)
    client_request_id = Column(String(64), nullable=False)
    resource_type = Column(String(40), nullable=False)
    response_json = Column(Text, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (UniqueConstraint("resource_type", "client_request_id", name="uq_idempotency_scope_key"),)


class AuditLog(Base):
    __tablename__ = "audit_logs"
    id = Column(Integer, primary_key=True)
    action_type = Column(String(40), nullable=False, index=True)
    entity_type = Column(String(24), nullable=False)
    entity_id = Column(String(64))
    previous_state = Column(JSON)
    new_state = Column(JSON)
    staff_id = Column(Integer)
    terminal_id = Column(Integer)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (Index("ix_audit_entity", "entity_type", "entity_id"),)


class OutboxEvent(Base):
    __tablename__ = "outbox_events"
    id = Column(Integer, primary_key=True)
    event_type = Column(String(40), nullable=False)
    scope = Column(String(64), nullable=False)
    payload = Column(JSON, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text)
    delivered_at = Column(DateTime)
    dead_at = Column(DateTime)


class LoginAttempt(Base):
    __tablename__ = "login_attempts"
    username = Column(String(64), primary_key=True)
    count = Column(Integer, nullable=False, default=0)
    window_start = Column(DateTime, nullable=False, default=utcnow)
