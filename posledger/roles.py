from typing import Iterable

from sqlalchemy.orm import Session

from . import errors
from .models import Staff, StaffRole

ALL_ROLES = frozenset(StaffRole)
FRONT_OF_HOUSE = frozenset({StaffRole.CASHIER, StaffRole.WAITER, StaffRole.MANAGER, StaffRole.ADMIN})
KITCHEN = frozenset({StaffRole.KITCHEN, StaffRole.BAR, StaffRole.MANAGER, StaffRole.ADMIN})
# kitchen staff hand a ready order over to payment; the till can too
HANDOFF = KITCHEN | FRONT_OF_HOUSE
ELEVATED = frozenset({StaffRole.MANAGER, StaffRole.ADMIN})
ADMIN_ONLY = frozenset({StaffRole.ADMIN})


def get_staff(db: Session, staff_id: int) -> Staff:
    staff = db.get(Staff, staff_id) if staff_id is not None else None
    if staff is None or not staff.is_active:
        raise errors.not_found("staff", staff_id)
    return staff


def assert_role(db: Session, actor_id: int, allowed_roles: Iterable[StaffRole]) -> Staff:
    allowed = frozenset(allowed_roles)
    staff = get_staff(db, actor_id)
    if staff.role not in allowed:
        raise errors.unauthorized_role(actor_id, staff.role, allowed)
    return staff


def is_elevated(staff: Staff) -> bool:
    return staff.role in ELEVATED
