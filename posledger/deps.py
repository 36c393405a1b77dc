from fastapi import BackgroundTasks, Depends, HTTPException, status
from sqlalchemy.orm import Session

from .db import get_db
from .idempotency import CommandProcessor
from .models import Staff
from .utils.security import get_current_token


def get_actor(tok: dict = Depends(get_current_token), db: Session = Depends(get_db)) -> Staff:
    try:
        staff_id = int(tok.get("sub"))
    except (TypeError, ValueError):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    staff = db.get(Staff, staff_id)
    if staff is None or not staff.is_active:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Staff not found or inactive")
    # end the read so the command starts its own write transaction
    db.commit()
    return staff


def get_processor(background_tasks: BackgroundTasks, db: Session = Depends(get_db)) -> CommandProcessor:
    return CommandProcessor(db, defer=background_tasks.add_task)
