import asyncio

import httpx

from posledger import events
from posledger.errors import STATUS_BY_KIND, ErrorKind
from posledger.main import app
from posledger.models import AuditLog, Order, OrderStatus, TableOccupancy
from posledger.sync import ConnectionMonitor, ConnectionStatus, HttpTransport, MutationType, OfflineQueue, SyncEngine

from conftest import PIN, auth


def _ok(resp, status=200):
    assert resp.status_code == status, resp.text
    return resp.json()


def _cash_sales(client, shift_id, headers):
    view = _ok(client.get(f"/api/v1/shifts/{shift_id}/ledger", headers=headers))
    return view["terminals"][0]["cash_sales"]


def test_healthz(client):
    assert _ok(client.get("/healthz"))["ok"] is True


def test_every_error_kind_has_a_status():
    assert set(STATUS_BY_KIND) == set(ErrorKind)
    assert STATUS_BY_KIND[ErrorKind.NOT_FOUND] == 404
    assert STATUS_BY_KIND[ErrorKind.INVALID_STATE] == 409
    assert STATUS_BY_KIND[ErrorKind.CONFLICT] == 409
    assert STATUS_BY_KIND[ErrorKind.VALIDATION] == 400
    assert STATUS_BY_KIND[ErrorKind.UNAUTHORIZED] == 403


def test_dine_in_scenario_on_table_t5(client, Session, seed, shifts):
    cashier, kitchen = auth(seed.staff["cashier"]), auth(seed.staff["kitchen"], "kitchen")
    t5 = seed.tables["T5"]
    table_events = []
    events.bus.subscribe(events.table_scope(t5), table_events.append)
    cash_before = _cash_sales(client, shifts.cashier, cashier)

    order = _ok(client.post("/api/v1/orders", json={"order_type": "dine_in", "table_id": t5}, headers=cashier), 201)
    oid = order["id"]
    with Session() as s:
        assert s.query(TableOccupancy).filter_by(table_id=t5).one().order_id == oid

    _ok(client.post(f"/api/v1/orders/{oid}/items", json={"product_id": seed.burger, "quantity": 1}, headers=cashier))
    snap = _ok(client.post(f"/api/v1/orders/{oid}/items", json={"product_id": seed.soda, "quantity": 2}, headers=cashier))
    assert snap["total"] == 21000.0

    assert _ok(client.post(f"/api/v1/orders/{oid}/submit", headers=cashier))["status"] == "preparing"
    assert _ok(client.post(f"/api/v1/orders/{oid}/status", json={"status": "ready"}, headers=kitchen))["status"] == "ready"
    pay = _ok(client.post(f"/api/v1/orders/{oid}/payments", json={"amount": "21000", "method": "cash"},
                          headers=cashier), 201)
    assert pay["fully_paid"]
    served = _ok(client.post(f"/api/v1/orders/{oid}/checkout", headers=cashier))
    assert served["status"] == "served"

    with Session() as s:
        assert s.query(TableOccupancy).filter_by(table_id=t5).count() == 0
        order_actions = [a.action_type for a in s.query(AuditLog).filter_by(entity_type="order", entity_id=str(oid))
                         .order_by(AuditLog.id)]
        payment_actions = [a.action_type for a in s.query(AuditLog).filter_by(entity_type="payment", entity_id=str(pay["id"]))]
    assert order_actions == ["ORDER_CREATE", "ORDER_SUBMIT", "ORDER_STATUS", "CHECKOUT"]
    assert payment_actions == ["PAYMENT"]

    assert _cash_sales(client, shifts.cashier, cashier) == cash_before + 21000.0
    assert [e["type"] for e in table_events if e["type"].startswith("TABLE_")] == ["TABLE_OCCUPIED", "TABLE_RELEASED"]


def test_table_conflict_names_the_winner(client, seed, shifts):
    body = {"order_type": "dine_in", "table_id": seed.tables["T5"]}
    first = _ok(client.post("/api/v1/orders", json=body, headers=auth(seed.staff["cashier"])), 201)
    resp = client.post("/api/v1/orders", json=body, headers=auth(seed.staff["waiter"], "waiter"))
    assert resp.status_code == 409
    err = resp.json()
    assert err["code"] == "TABLE_OCCUPIED"
    assert err["existing_order_id"] == first["id"]


def test_error_status_mapping(client, seed, shifts):
    cashier = auth(seed.staff["cashier"])
    resp = client.get("/api/v1/orders/9999", headers=cashier)
    assert resp.status_code == 404 and resp.json()["code"] == "ORDER_NOT_FOUND"

    resp = client.post("/api/v1/orders", json={"order_type": "delivery"}, headers=cashier)
    assert resp.status_code == 400

    resp = client.post("/api/v1/orders", json={"order_type": "takeaway"}, headers=auth(seed.staff["kitchen"], "kitchen"))
    assert resp.status_code == 403 and resp.json()["code"] == "UNAUTHORIZED_ROLE"

    order = _ok(client.post("/api/v1/orders", json={"order_type": "takeaway"}, headers=cashier), 201)
    resp = client.post(f"/api/v1/orders/{order['id']}/checkout", headers=cashier)
    assert resp.status_code == 409 and resp.json()["code"] == "INVALID_ORDER_STATUS_TRANSITION"

    resp = client.post(f"/api/v1/orders/{order['id']}/items", json={"product_id": seed.soda, "quantity": 0},
                       headers=cashier)
    assert resp.status_code == 400 and resp.json()["code"] == "INVALID_QUANTITY"


def test_bearer_token_is_required(client, seed, shifts):
    assert client.post("/api/v1/orders", json={"order_type": "takeaway"}).status_code == 401
    bad = {"Authorization": "Bearer not-a-token"}
    assert client.post("/api/v1/orders", json={"order_type": "takeaway"}, headers=bad).status_code == 401


def test_idempotent_http_replay(client, Session, seed, shifts):
    cashier = auth(seed.staff["cashier"])
    body = {"order_type": "takeaway", "client_request_id": "till-1-0001"}
    first = _ok(client.post("/api/v1/orders", json=body, headers=cashier), 201)
    again = _ok(client.post("/api/v1/orders", json=body, headers=cashier), 201)
    assert first == again
    with Session() as s:
        assert s.query(Order).count() == 1

    too_long = {"order_type": "takeaway", "client_request_id": "x" * 65}
    resp = client.post("/api/v1/orders", json=too_long, headers=cashier)
    assert resp.status_code == 400 and resp.json()["code"] == "IDEMPOTENCY_KEY_TOO_LONG"


def test_login_and_lockout(client, seed):
    token = _ok(client.post("/api/v1/auth/login", json={"username": "manager", "pin": PIN}))
    assert token["role"] == "manager" and token["staff_id"] == seed.staff["manager"]

    for _ in range(5):
        assert client.post("/api/v1/auth/login", json={"username": "cashier", "pin": "0000"}).status_code == 401
    resp = client.post("/api/v1/auth/login", json={"username": "cashier", "pin": PIN})
    assert resp.status_code == 429
    assert int(resp.headers["Retry-After"]) > 0

    # other users are unaffected
    assert client.post("/api/v1/auth/login", json={"username": "waiter", "pin": PIN}).status_code == 200


def test_successful_login_resets_failures(client, seed):
    for _ in range(4):
        client.post("/api/v1/auth/login", json={"username": "bar", "pin": "9999"})
    _ok(client.post("/api/v1/auth/login", json={"username": "bar", "pin": PIN}))
    for _ in range(4):
        client.post("/api/v1/auth/login", json={"username": "bar", "pin": "9999"})
    assert client.post("/api/v1/auth/login", json={"username": "bar", "pin": PIN}).status_code == 200


def test_shift_endpoints(client, seed):
    manager = auth(seed.staff["manager"], "manager")
    shift = _ok(client.post("/api/v1/shifts/start", json={"terminal_code": "POS-2"}, headers=manager), 201)
    _ok(client.post(f"/api/v1/shifts/{shift['id']}/adjustments", json={"amount": "2000", "reason": "float"},
                    headers=manager))
    _ok(client.post(f"/api/v1/shifts/{shift['id']}/drops", json={"amount": "500"}, headers=manager))
    view = _ok(client.get(f"/api/v1/shifts/{shift['id']}/ledger", headers=manager))
    assert view["expected_cash"] == 1500.0

    resp = client.post(f"/api/v1/shifts/{shift['id']}/close", json={"counted_cash": "9000"}, headers=manager)
    assert resp.status_code == 400 and resp.json()["code"] == "APPROVER_REQUIRED"
    closed = _ok(client.post(f"/api/v1/shifts/{shift['id']}/close",
                             json={"counted_cash": "9000", "approver_id": seed.staff["admin"]}, headers=manager))
    assert closed["variance"] == 7500.0


def test_terminal_register_is_an_upsert(client, seed):
    manager = auth(seed.staff["manager"], "manager")
    first = _ok(client.post("/api/v1/terminals/register", json={"code": "KDS-1", "name": "Kitchen screen",
                                                                 "type": "kds"}, headers=manager))
    again = _ok(client.post("/api/v1/terminals/register", json={"code": "KDS-1"}, headers=manager))
    assert first["created"] and not again["created"]
    assert again["id"] == first["id"] and again["name"] == "Kitchen screen"


def test_gateway_callback_needs_secret(client, seed, shifts, monkeypatch):
    monkeypatch.setattr("posledger.routers.payments.GATEWAY_SECRET", "s3cret")
    cashier = auth(seed.staff["cashier"])
    order = _ok(client.post("/api/v1/orders", json={"order_type": "takeaway"}, headers=cashier), 201)
    _ok(client.post(f"/api/v1/orders/{order['id']}/items", json={"product_id": seed.soda}, headers=cashier))
    pending = _ok(client.post("/api/v1/payments/gateway", json={"order_id": order["id"], "amount": "3000"},
                              headers=cashier), 201)

    url = f"/api/v1/payments/{pending['id']}/gateway-result"
    assert client.post(url, json={"succeeded": True}).status_code == 401
    assert client.post(url, json={"succeeded": True}, headers={"X-Gateway-Secret": "nope"}).status_code == 401
    done = _ok(client.post(url, json={"succeeded": True, "reference": "MM-1"}, headers={"X-Gateway-Secret": "s3cret"}))
    assert done["status"] == "completed"
    resp = client.post(url, json={"succeeded": True}, headers={"X-Gateway-Secret": "s3cret"})
    assert resp.status_code == 409 and resp.json()["code"] == "PAYMENT_ALREADY_SETTLED"


def test_sweep_endpoint_is_manager_only(client, Session, seed, shifts):
    cashier = auth(seed.staff["cashier"])
    order = _ok(client.post("/api/v1/orders", json={"order_type": "dine_in", "table_id": seed.tables["T6"]},
                            headers=cashier), 201)
    with Session() as s:
        s.get(Order, order["id"]).status = OrderStatus.CANCELLED
        s.commit()

    assert client.post("/api/v1/tables/sweep", headers=cashier).status_code == 403
    swept = _ok(client.post("/api/v1/tables/sweep", headers=auth(seed.staff["manager"], "manager")))
    assert swept["released_tables"] == [seed.tables["T6"]]


def test_offline_queue_replays_into_the_api(Session, client, seed, shifts, tmp_path):
    """Orders taken offline reach the server once, even if the same mutation is queued twice."""
    token = auth(seed.staff["cashier"])["Authorization"].split()[1]
    queue = OfflineQueue(f"sqlite:///{tmp_path / 'till.db'}")
    monitor = ConnectionMonitor(ConnectionStatus.OFFLINE)

    async def scenario():
        http = httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://testserver",
                                 headers={"Authorization": f"Bearer {token}"})
        engine = SyncEngine(queue, HttpTransport("http://testserver", client=http), monitor,
                            terminal={"code": "POS-1", "name": "Front till"})
        create = engine.enqueue(MutationType.CREATE_ORDER,
                                {"order_type": "dine_in", "table_id": seed.tables["T4"], "local_id": "L1"})
        engine.enqueue(MutationType.ADD_ITEM, {"order_local_id": "L1", "product_id": seed.burger, "quantity": 1})
        engine.enqueue(MutationType.SUBMIT_ORDER, {"order_local_id": "L1"})
        monitor.set_status(ConnectionStatus.ONLINE)
        first = await engine.start_drain()

        # the create is queued again with its original key, as after a crash before removal
        engine.enqueue(MutationType.CREATE_ORDER, dict(create.payload), client_request_id=create.client_request_id)
        second = await engine.drain()
        await http.aclose()
        return first, second

    first, second = asyncio.run(scenario())
    assert first.sent == 3 and first.rejected == 0
    assert second.sent == 1 and second.rejected == 0
    with Session() as s:
        [order] = s.query(Order).all()
        assert order.status.value == "preparing"
        assert order.id == queue.server_id_for("L1")


def test_admin_unlocks_locked_account(client, Session, seed):
    for _ in range(5):
        client.post("/api/v1/auth/login", json={"username": "waiter", "pin": "0000"})
    assert client.post("/api/v1/auth/login", json={"username": "waiter", "pin": PIN}).status_code == 429

    url = f"/api/v1/staff/{seed.staff['waiter']}/unlock"
    resp = client.post(url, headers=auth(seed.staff["manager"], "manager"))
    assert resp.status_code == 403 and resp.json()["code"] == "UNAUTHORIZED_ROLE"

    body = _ok(client.post(url, headers=auth(seed.staff["admin"], "admin")))
    assert body == {"staff_id": seed.staff["waiter"], "username": "waiter", "was_locked": True}
    _ok(client.post("/api/v1/auth/login", json={"username": "waiter", "pin": PIN}))

    with Session() as s:
        [entry] = s.query(AuditLog).filter_by(action_type="STAFF_UNLOCK").all()
        assert entry.staff_id == seed.staff["admin"] and entry.entity_id == str(seed.staff["waiter"])

    missing = client.post("/api/v1/staff/9999/unlock", headers=auth(seed.staff["admin"], "admin"))
    assert missing.status_code == 404


def test_cancel_empty_pending_endpoint(client, seed, shifts):
    headers = auth(seed.staff["waiter"], "waiter")
    order = _ok(client.post("/api/v1/orders", json={"order_type": "dine_in", "table_id": seed.tables["T6"]},
                            headers=headers), 201)
    body = _ok(client.post("/api/v1/orders/cancel-empty-pending", headers=headers))
    assert body == {"cancelled": 1, "order_ids": [order["id"]]}
    # the table is free again
    _ok(client.post("/api/v1/orders", json={"order_type": "dine_in", "table_id": seed.tables["T6"]},
                    headers=headers), 201)
