from decimal import Decimal
from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator


class TokenOut(BaseModel):
    access_token: str
    token_type: str = "bearer"
    staff_id: int
    role: str


class StaffLoginIn(BaseModel):
    username: str = Field(..., min_length=1, max_length=64)
    pin: str = Field(..., min_length=1, max_length=64)


class CommandIn(BaseModel):
    # retried calls reuse the same id; blank means no idempotency
    client_request_id: Optional[str] = None


class TerminalRegisterIn(CommandIn):
    code: str = Field(..., min_length=1, max_length=32)
    name: Optional[str] = Field(default=None, max_length=128)
    type: Optional[str] = Field(default=None, max_length=24)


class ShiftStartIn(CommandIn):
    terminal_code: str = Field(..., min_length=1, max_length=32)


class ShiftCloseIn(CommandIn):
    counted_cash: Decimal
    approver_id: Optional[int] = None


class CashDropIn(CommandIn):
    amount: Decimal
    terminal_id: Optional[int] = None
    reason: Optional[str] = None


class CashAdjustmentIn(CommandIn):
    amount: Decimal
    reason: str
    terminal_id: Optional[int] = None


class OrderCreateIn(CommandIn):
    order_type: Literal["dine_in", "takeaway"]
    table_id: Optional[int] = None
    terminal_id: Optional[int] = None


class OrderItemIn(CommandIn):
    product_id: int
    quantity: int = 1
    size: Optional[str] = Field(default=None, max_length=32)
    modifier: Optional[str] = Field(default=None, max_length=64)
    notes: Optional[str] = None
    sort_order: Optional[int] = None


class OrderItemUpdateIn(CommandIn):
    quantity: int


class KitchenStatusIn(CommandIn):
    status: str

    @field_validator("status")
    @classmethod
    def _strip(cls, v: str) -> str:
        return v.strip().lower()


class PaymentIn(CommandIn):
    amount: Decimal
    method: Literal["cash", "card", "mobile_money"] = "cash"
    terminal_id: Optional[int] = None
    reference: Optional[str] = Field(default=None, max_length=128)


class GatewayBeginIn(CommandIn):
    order_id: int
    amount: Decimal
    method: Literal["cash", "card", "mobile_money"] = "mobile_money"
    terminal_id: Optional[int] = None


class GatewayResultIn(CommandIn):
    succeeded: bool
    reference: Optional[str] = Field(default=None, max_length=128)


class CancelIn(CommandIn):
    reason: Optional[str] = None
