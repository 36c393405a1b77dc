from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from .. import ledger
from ..db import get_db
from ..deps import get_actor, get_processor
from ..idempotency import CommandProcessor, ResourceType
from ..models import Staff
from ..utils.schemas import CashAdjustmentIn, CashDropIn, ShiftCloseIn, ShiftStartIn

router = APIRouter(prefix="/api/v1/shifts", tags=["shifts"])


@router.post("/start", status_code=201)
def start(body: ShiftStartIn, actor: Staff = Depends(get_actor), cp: CommandProcessor = Depends(get_processor)):
    return cp.execute(
        ResourceType.SHIFT_START,
        lambda db: ledger.start_shift(db, actor.id, body.terminal_code),
        body.client_request_id,
    )


@router.post("/{shift_id}/close")
def close(shift_id: int, body: ShiftCloseIn, actor: Staff = Depends(get_actor),
          cp: CommandProcessor = Depends(get_processor)):
    return cp.execute(
        ResourceType.SHIFT_CLOSE,
        lambda db: ledger.close_shift(db, actor.id, shift_id, body.counted_cash, body.approver_id),
        body.client_request_id,
    )


@router.post("/{shift_id}/drops")
def cash_drop(shift_id: int, body: CashDropIn, actor: Staff = Depends(get_actor),
              cp: CommandProcessor = Depends(get_processor)):
    return cp.execute(
        ResourceType.CASH_DROP,
        lambda db: ledger.record_cash_drop(db, actor.id, shift_id, body.amount,
                                           terminal_id=body.terminal_id, reason=body.reason),
        body.client_request_id,
    )


@router.post("/{shift_id}/adjustments")
def cash_adjustment(shift_id: int, body: CashAdjustmentIn, actor: Staff = Depends(get_actor),
                    cp: CommandProcessor = Depends(get_processor)):
    return cp.execute(
        ResourceType.CASH_ADJUSTMENT,
        lambda db: ledger.record_cash_adjustment(db, actor.id, shift_id, body.amount, body.reason,
                                                 terminal_id=body.terminal_id),
        body.client_request_id,
    )


@router.get("/{shift_id}/ledger")
def shift_ledger(shift_id: int, _actor: Staff = Depends(get_actor), db: Session = Depends(get_db)):
    return ledger.shift_ledger(db, shift_id)
