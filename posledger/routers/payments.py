import hmac
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, status

from .. import payments
from ..deps import get_actor, get_processor
from ..idempotency import CommandProcessor, ResourceType
from ..models import Staff
from ..utils.config import GATEWAY_SECRET
from ..utils.schemas import GatewayBeginIn, GatewayResultIn, PaymentIn

router = APIRouter(prefix="/api/v1", tags=["payments"])


def gateway_auth(x_gateway_secret: Optional[str] = Header(default=None)) -> bool:
    if not GATEWAY_SECRET or not x_gateway_secret or not hmac.compare_digest(x_gateway_secret, GATEWAY_SECRET):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid gateway credentials")
    return True


@router.post("/orders/{order_id}/payments", status_code=201)
def record_payment(order_id: int, body: PaymentIn, actor: Staff = Depends(get_actor),
                   cp: CommandProcessor = Depends(get_processor)):
    return cp.execute(
        ResourceType.PAYMENT,
        lambda db: payments.record_payment(db, actor.id, order_id, body.amount, body.method,
                                           terminal_id=body.terminal_id, reference=body.reference),
        body.client_request_id,
    )


@router.post("/payments/gateway", status_code=201)
def begin_gateway(body: GatewayBeginIn, actor: Staff = Depends(get_actor),
                  cp: CommandProcessor = Depends(get_processor)):
    return cp.execute(
        ResourceType.GATEWAY_BEGIN,
        lambda db: payments.begin_gateway_payment(db, actor.id, body.order_id, body.amount, body.method,
                                                  terminal_id=body.terminal_id),
        body.client_request_id,
    )


@router.post("/payments/{payment_id}/gateway-result")
def gateway_result(payment_id: int, body: GatewayResultIn, _=Depends(gateway_auth),
                   cp: CommandProcessor = Depends(get_processor)):
    return cp.execute(
        ResourceType.GATEWAY_SETTLE,
        lambda db: payments.settle_gateway_payment(db, payment_id, body.succeeded, body.reference),
        body.client_request_id,
    )
