import logging

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import select
from sqlalchemy.orm import Session

from . import ratelimit
from .audit import AuditAction, append_audit
from .db import get_db
from .models import Staff
from .utils.schemas import StaffLoginIn, TokenOut
from .utils.security import create_token, verify_pin

router = APIRouter(prefix="/api/v1/auth", tags=["auth"])
log = logging.getLogger("posledger.auth")


@router.post("/login", response_model=TokenOut)
def login(body: StaffLoginIn, db: Session = Depends(get_db)):
    username = body.username.strip()
    if ratelimit.is_locked(db, username):
        wait = ratelimit.retry_after_seconds(db, username)
        db.commit()
        log.warning(f"login locked for {username!r}")
        raise HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                            detail="Too many login attempts, try again later",
                            headers={"Retry-After": str(wait)})

    staff = db.execute(select(Staff).where(Staff.username == username)).scalar_one_or_none()
    if not staff or not staff.is_active or not verify_pin(body.pin, staff.pin_hash):
        count = ratelimit.record_failure(db, username)
        db.commit()
        log.info(f"failed login for {username!r} ({count})")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid username or PIN")

    ratelimit.clear(db, username)
    append_audit(db, AuditAction.AUTH_LOGIN, "staff", staff.id, new_state={"username": staff.username},
                 staff_id=staff.id)
    db.commit()
    token = create_token(str(staff.id), {"role": staff.role.value})
    return TokenOut(access_token=token, staff_id=staff.id, role=staff.role.value)
