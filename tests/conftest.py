from decimal import Decimal
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from posledger import events
from posledger.db import ensure_tables, get_db, make_engine, transaction
from posledger.ledger import start_shift
from posledger.main import app
from posledger.models import Product, RestaurantTable, Staff, StaffRole, Terminal
from posledger.utils.security import create_token, hash_pin

PIN = "1234"


@pytest.fixture
def engine(tmp_path):
    eng = make_engine(f"sqlite:///{tmp_path / 'pos.db'}")
    ensure_tables(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def Session(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False, future=True)


@pytest.fixture
def db(Session):
    s = Session()
    yield s
    s.close()


@pytest.fixture(autouse=True)
def _clean_bus():
    events.bus.clear()
    yield
    events.bus.clear()


@pytest.fixture
def seed(Session):
    pin_hash = hash_pin(PIN)
    with Session() as s:
        staff = {role.value: Staff(username=role.value, display_name=role.value.title(), pin_hash=pin_hash, role=role)
                 for role in StaffRole}
        staff["cashier2"] = Staff(username="cashier2", pin_hash=pin_hash, role=StaffRole.CASHIER)
        terminals = [Terminal(code="POS-1", name="Front till"), Terminal(code="POS-2", name="Bar till"),
                     Terminal(code="POS-OLD", name="Retired", is_active=False)]
        tables = [RestaurantTable(code=f"T{n}") for n in range(1, 7)]
        products = [Product(name="Burger", price=Decimal("15000")),
                    Product(name="Soda", price=Decimal("3000")),
                    Product(name="Old special", price=Decimal("9000"), is_active=False)]
        s.add_all(list(staff.values()) + terminals + tables + products)
        s.commit()
        return SimpleNamespace(
            staff={k: v.id for k, v in staff.items()},
            terminal=terminals[0].id,
            terminal2=terminals[1].id,
            tables={t.code: t.id for t in tables},
            burger=products[0].id,
            soda=products[1].id,
            retired=products[2].id,
        )


@pytest.fixture
def shifts(seed, Session):
    """Active shifts for the cashier (POS-1) and the waiter (POS-2)."""
    with Session() as s:
        with transaction(s):
            cashier = start_shift(s, seed.staff["cashier"], "POS-1")
        with transaction(s):
            waiter = start_shift(s, seed.staff["waiter"], "POS-2")
    return SimpleNamespace(cashier=cashier["id"], waiter=waiter["id"])


def run(db, fn, *args, **kwargs):
    """Run one service call in its own transaction."""
    with transaction(db):
        return fn(db, *args, **kwargs)


@pytest.fixture
def client(Session):
    def _get_db():
        s = Session()
        try:
            yield s
        finally:
            s.close()

    app.dependency_overrides[get_db] = _get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


def auth(staff_id: int, role: str = "cashier") -> dict:
    return {"Authorization": f"Bearer {create_token(str(staff_id), {'role': role})}"}
