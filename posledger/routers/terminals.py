from fastapi import APIRouter, Depends

from .. import table_lock, terminals
from ..deps import get_actor, get_processor
from ..idempotency import CommandProcessor, ResourceType
from ..models import Staff
from ..roles import ELEVATED, assert_role
from ..utils.schemas import CommandIn, TerminalRegisterIn

router = APIRouter(prefix="/api/v1", tags=["terminals"])


@router.post("/terminals/register")
def register(body: TerminalRegisterIn, actor: Staff = Depends(get_actor),
             cp: CommandProcessor = Depends(get_processor)):
    return cp.execute(
        ResourceType.TERMINAL_REGISTER,
        lambda db: terminals.register_terminal(db, body.code, body.name, body.type, actor_id=actor.id),
        body.client_request_id,
    )


def _sweep(db, actor_id: int) -> dict:
    assert_role(db, actor_id, ELEVATED)
    return {"released_tables": table_lock.sweep_orphaned_locks(db, actor_id=actor_id)}


@router.post("/tables/sweep")
def sweep(body: CommandIn = None, actor: Staff = Depends(get_actor), cp: CommandProcessor = Depends(get_processor)):
    body = body or CommandIn()
    return cp.execute(ResourceType.TABLE_SWEEP, lambda db: _sweep(db, actor.id), body.client_request_id)
