"""Login throttling backed by the ``login_attempts`` table."""
import logging
from datetime import timedelta
from typing import Optional

from sqlalchemy import delete
from sqlalchemy.orm import Session

from . import errors
from .audit import AuditAction, append_audit
from .models import LoginAttempt, Staff, utcnow
from .roles import ADMIN_ONLY, assert_role
from .utils.config import LOGIN_MAX_ATTEMPTS, LOGIN_WINDOW_MINUTES

log = logging.getLogger("posledger.ratelimit")


def _key(username: str) -> str:
    return (username or "").strip().lower()


def _current(db: Session, username: str) -> Optional[LoginAttempt]:
    row = db.get(LoginAttempt, _key(username))
    if row is None:
        return None
    if utcnow() - row.window_start >= timedelta(minutes=LOGIN_WINDOW_MINUTES):
        db.delete(row)
        db.flush()
        return None
    return row


def is_locked(db: Session, username: str) -> bool:
    row = _current(db, username)
    return row is not None and row.count >= LOGIN_MAX_ATTEMPTS


def retry_after_seconds(db: Session, username: str) -> int:
    row = _current(db, username)
    if row is None:
        return 0
    left = row.window_start + timedelta(minutes=LOGIN_WINDOW_MINUTES) - utcnow()
    return max(int(left.total_seconds()), 0)


def record_failure(db: Session, username: str) -> int:
    row = _current(db, username)
    if row is None:
        row = LoginAttempt(username=_key(username), count=0, window_start=utcnow())
        db.add(row)
    row.count += 1
    db.flush()
    return row.count


def clear(db: Session, username: str) -> None:
    db.execute(delete(LoginAttempt).where(LoginAttempt.username == _key(username)))


def unlock_staff(db: Session, actor_id: int, staff_id: int) -> dict:
    """Admin override: lift a login lockout before its window runs out."""
    admin = assert_role(db, actor_id, ADMIN_ONLY)
    staff = db.get(Staff, staff_id)
    if staff is None:
        raise errors.not_found("staff", staff_id)
    was_locked = is_locked(db, staff.username)
    clear(db, staff.username)
    append_audit(db, AuditAction.STAFF_UNLOCK, "staff", staff.id,
                 previous_state={"locked": was_locked}, new_state={"locked": False},
                 staff_id=admin.id)
    log.info(f"staff {staff.id} unlocked by {admin.id} (was locked: {was_locked})")
    return {"staff_id": staff.id, "username": staff.username, "was_locked": was_locked}
