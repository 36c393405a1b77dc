import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .audit import AuditAction, append_audit
from .models import Terminal, utcnow

log = logging.getLogger("posledger.terminals")


def terminal_snapshot(t: Terminal) -> dict:
    return {
        "id": t.id,
        "code": t.code,
        "name": t.name,
        "type": t.type,
        "is_active": bool(t.is_active),
        "registered_at": t.registered_at.isoformat() if t.registered_at else None,
        "last_seen_at": t.last_seen_at.isoformat() if t.last_seen_at else None,
    }


def _by_code(db: Session, code: str) -> Optional[Terminal]:
    return db.execute(select(Terminal).where(Terminal.code == code)).scalar_one_or_none()


def register_terminal(db: Session, code: str, name: Optional[str] = None, type: Optional[str] = None,
                      actor_id: Optional[int] = None) -> dict:
    """Upsert by code. Re-registering only refreshes name/type and last_seen_at."""
    code = code.strip()
    terminal = _by_code(db, code)
    created = False
    if terminal is None:
        terminal = Terminal(code=code, name=name or code, type=type or "pos", registered_at=utcnow())
        try:
            with db.begin_nested():
                db.add(terminal)
            created = True
        except IntegrityError:
            terminal = _by_code(db, code)
    if not created:
        if name:
            terminal.name = name
        if type:
            terminal.type = type
    terminal.last_seen_at = utcnow()
    db.flush()

    snap = terminal_snapshot(terminal)
    if created:
        append_audit(db, AuditAction.TERMINAL_REGISTER, "terminal", terminal.id, new_state=snap,
                     staff_id=actor_id, terminal_id=terminal.id)
        log.info(f"terminal {code} registered (id {terminal.id})")
    return {**snap, "created": created}
