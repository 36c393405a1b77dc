from fastapi import APIRouter, Depends

from .. import ratelimit
from ..deps import get_actor, get_processor
from ..idempotency import CommandProcessor, ResourceType
from ..models import Staff
from ..utils.schemas import CommandIn

router = APIRouter(prefix="/api/v1/staff", tags=["staff"])


@router.post("/{staff_id}/unlock")
def unlock(staff_id: int, body: CommandIn = None, actor: Staff = Depends(get_actor),
           cp: CommandProcessor = Depends(get_processor)):
    body = body or CommandIn()
    return cp.execute(
        ResourceType.STAFF_UNLOCK,
        lambda db: ratelimit.unlock_staff(db, actor.id, staff_id),
        body.client_request_id,
    )
