import asyncio
import itertools
import json

import httpx
import pytest

from posledger.sync import (
    ConnectionMonitor, ConnectionStatus, HttpTransport, MutationType, OfflineQueue, RejectedMutation,
    SyncEngine, TransientSyncError,
)
from posledger.sync.engine import backoff_seconds


class FakeServer:
    """Idempotent stand-in for the HTTP API: one result per client_request_id."""

    def __init__(self):
        self.ids = itertools.count(100)
        self.results = {}
        self.applied = []
        self.calls = []
        self.registrations = 0
        self.before = {}
        self.after = {}

    async def register_terminal(self, code, name=None, type="pos"):
        await asyncio.sleep(0)
        self.registrations += 1
        return {"code": code}

    async def submit(self, mutation_type, payload, client_request_id):
        self.calls.append(client_request_id)
        await asyncio.sleep(0)
        hook = self.before.pop(client_request_id, None)
        if hook is not None:
            await hook()
        if client_request_id not in self.results:
            self.results[client_request_id] = {"id": next(self.ids), "type": mutation_type, "payload": payload}
            self.applied.append(client_request_id)
        hook = self.after.pop(client_request_id, None)
        if hook is not None:
            await hook()
        return self.results[client_request_id]


def _raise(exc):
    async def hook():
        raise exc
    return hook


@pytest.fixture
def queue_url(tmp_path):
    return f"sqlite:///{tmp_path / 'offline.db'}"


def _setup(queue_url, status=ConnectionStatus.OFFLINE, terminal=None, backoff_base=0, max_retries=5):
    queue = OfflineQueue(queue_url)
    monitor = ConnectionMonitor(status)
    server = FakeServer()
    return queue, monitor, server, SyncEngine(queue, server, monitor, terminal=terminal,
                                              backoff_base=backoff_base, max_retries=max_retries)


def _takeaways(engine, n):
    return [engine.enqueue(MutationType.CREATE_ORDER, {"order_type": "takeaway"}).client_request_id
            for _ in range(n)]


def test_drain_is_fifo(queue_url):
    queue, monitor, server, engine = _setup(queue_url, ConnectionStatus.ONLINE)
    keys = _takeaways(engine, 5)
    result = asyncio.run(engine.drain())
    assert result.sent == 5 and result.remaining == 0 and not result.halted
    assert server.applied == keys
    assert len(queue) == 0


def test_nothing_is_sent_while_offline(queue_url):
    queue, monitor, server, engine = _setup(queue_url)
    _takeaways(engine, 2)
    result = asyncio.run(engine.drain())
    assert result.sent == 0 and result.remaining == 2
    assert server.calls == []


def test_rejected_item_becomes_conflict_and_drain_continues(queue_url):
    queue, monitor, server, engine = _setup(queue_url, ConnectionStatus.ONLINE)
    a, b, c = _takeaways(engine, 3)
    server.before[b] = _raise(RejectedMutation(409, "TABLE_OCCUPIED", "Table 5 is already occupied"))

    result = asyncio.run(engine.drain())
    assert (result.sent, result.rejected, result.remaining) == (2, 1, 0)
    assert server.applied == [a, c]
    [conflict] = queue.conflicts()
    assert conflict.client_request_id == b
    assert conflict.status_code == 409 and conflict.code == "TABLE_OCCUPIED"

    queue.resolve_conflict(conflict.id)
    assert queue.conflicts() == []


def test_transient_failure_halts_and_keeps_order(queue_url):
    queue, monitor, server, engine = _setup(queue_url, ConnectionStatus.ONLINE)
    a, b, c = _takeaways(engine, 3)
    server.before[b] = _raise(TransientSyncError("HTTP 503", status_code=503))

    result = asyncio.run(engine.drain())
    assert result.halted and result.sent == 1 and result.remaining == 2
    pending = queue.pending()
    assert [i.client_request_id for i in pending] == [b, c]
    assert pending[0].attempts == 1 and "503" in pending[0].last_error
    assert monitor.is_online

    result = asyncio.run(engine.drain())
    assert result.sent == 2
    assert server.applied == [a, b, c]


def test_network_failure_goes_offline(queue_url):
    queue, monitor, server, engine = _setup(queue_url, ConnectionStatus.ONLINE)
    a, b = _takeaways(engine, 2)
    server.before[a] = _raise(TransientSyncError("connect failed", network=True))
    result = asyncio.run(engine.drain())
    assert result.halted and result.remaining == 2
    assert monitor.status == ConnectionStatus.OFFLINE


def test_lost_ack_replays_without_duplicates(queue_url):
    queue, monitor, server, engine = _setup(queue_url, ConnectionStatus.ONLINE)
    a, b = _takeaways(engine, 2)
    # server applies ``a`` but the reply never arrives
    server.after[a] = _raise(TransientSyncError("read timeout", network=True))
    asyncio.run(engine.drain())
    assert server.applied == [a]
    assert len(queue) == 2

    # terminal restarts: fresh queue handle and engine over the same file
    queue2 = OfflineQueue(queue_url)
    monitor2 = ConnectionMonitor(ConnectionStatus.ONLINE)
    engine2 = SyncEngine(queue2, server, monitor2, backoff_base=0)
    result = asyncio.run(engine2.drain())
    assert result.sent == 2
    assert server.applied == [a, b]
    assert server.calls.count(a) == 2


def test_offline_flip_cancels_drain_without_reordering(queue_url):
    queue, monitor, server, engine = _setup(queue_url)
    a, b, c = _takeaways(engine, 3)

    async def scenario():
        entered, gate = asyncio.Event(), asyncio.Event()

        async def stall():
            entered.set()
            await gate.wait()

        server.before[b] = stall
        monitor.set_status(ConnectionStatus.ONLINE)
        task = engine.start_drain()
        await entered.wait()
        monitor.set_status(ConnectionStatus.OFFLINE)
        with pytest.raises(asyncio.CancelledError):
            await task
        assert not engine.running
        assert [i.client_request_id for i in queue.pending()] == [b, c]

        monitor.set_status(ConnectionStatus.ONLINE)
        return await engine.start_drain()

    result = asyncio.run(scenario())
    assert result.sent == 2 and result.remaining == 0
    assert server.applied == [a, b, c]


def test_only_one_drain_at_a_time(queue_url):
    queue, monitor, server, engine = _setup(queue_url, ConnectionStatus.ONLINE)
    _takeaways(engine, 3)

    async def scenario():
        return await asyncio.gather(engine.drain(), engine.drain())

    first, second = asyncio.run(scenario())
    assert first.sent == 3
    assert second.skipped and second.sent == 0
    assert len(server.applied) == 3


def test_terminal_registered_once_per_online_period(queue_url):
    queue, monitor, server, engine = _setup(queue_url, ConnectionStatus.ONLINE,
                                            terminal={"code": "POS-9", "name": "Patio"})
    _takeaways(engine, 2)
    asyncio.run(engine.drain())
    assert server.registrations == 1

    monitor.set_status(ConnectionStatus.OFFLINE)
    _takeaways(engine, 1)
    monitor.set_status(ConnectionStatus.ONLINE)
    asyncio.run(engine.drain())
    assert server.registrations == 2


def test_local_order_ids_are_resolved(queue_url):
    queue, monitor, server, engine = _setup(queue_url, ConnectionStatus.ONLINE)
    engine.enqueue(MutationType.CREATE_ORDER, {"order_type": "dine_in", "table_id": 4, "local_id": "L1"})
    add = engine.enqueue(MutationType.ADD_ITEM, {"order_local_id": "L1", "product_id": 2, "quantity": 1})
    orphan = engine.enqueue(MutationType.SUBMIT_ORDER, {"order_local_id": "L9"})

    result = asyncio.run(engine.drain())
    assert (result.sent, result.rejected) == (2, 1)
    server_id = queue.server_id_for("L1")
    assert server.results[add.client_request_id]["payload"] == {"order_id": server_id, "product_id": 2, "quantity": 1}
    [conflict] = queue.conflicts()
    assert conflict.client_request_id == orphan.client_request_id
    assert conflict.code == "UNRESOLVED_LOCAL_ID"


def test_unknown_mutation_type_is_refused(queue_url):
    queue = OfflineQueue(queue_url)
    with pytest.raises(ValueError):
        queue.enqueue("drop_tables", {})


# ------------------------------
# HTTP transport
# ------------------------------
def _transport(handler):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://pos")
    return HttpTransport("http://pos", client=client)


def test_transport_builds_requests():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"id": 7})

    async def scenario():
        t = _transport(handler)
        await t.submit(MutationType.ADD_ITEM, {"order_id": 7, "product_id": 1, "quantity": 2}, "k-1")
        await t.submit(MutationType.REMOVE_ITEM, {"order_id": 7, "item_id": 3}, "k-2")
        await t.aclose()

    asyncio.run(scenario())
    post, delete = seen
    assert post.method == "POST" and post.url.path == "/api/v1/orders/7/items"
    assert json.loads(post.content) == {"product_id": 1, "quantity": 2, "client_request_id": "k-1"}
    assert delete.method == "DELETE" and delete.url.path == "/api/v1/orders/7/items/3"
    assert delete.url.params["client_request_id"] == "k-2"


@pytest.mark.parametrize("status,transient", [(400, False), (404, False), (409, False),
                                              (408, True), (429, True), (500, True), (503, True)])
def test_transport_classifies_status(status, transient):
    def handler(request):
        return httpx.Response(status, json={"error": "nope", "code": "SOME_CODE"})

    async def scenario():
        t = _transport(handler)
        try:
            await t.submit(MutationType.CHECKOUT, {"order_id": 1}, "k")
        finally:
            await t.aclose()

    expected = TransientSyncError if transient else RejectedMutation
    with pytest.raises(expected) as ei:
        asyncio.run(scenario())
    assert ei.value.status_code == status
    if not transient:
        assert ei.value.code == "SOME_CODE"


def test_transport_network_error_is_transient():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    async def scenario():
        t = _transport(handler)
        try:
            await t.submit(MutationType.CHECKOUT, {"order_id": 1}, "k")
        finally:
            await t.aclose()

    with pytest.raises(TransientSyncError) as ei:
        asyncio.run(scenario())
    assert ei.value.network


def test_failed_head_item_backs_off_before_retry(queue_url):
    queue, monitor, server, engine = _setup(queue_url, ConnectionStatus.ONLINE, backoff_base=60)
    a, b = _takeaways(engine, 2)
    server.before[a] = _raise(TransientSyncError("HTTP 503", status_code=503))
    assert asyncio.run(engine.drain()).halted

    result = asyncio.run(engine.drain())
    assert result.halted and result.sent == 0
    assert 60 < result.retry_in <= 120
    assert server.calls == [a]
    assert [i.client_request_id for i in queue.pending()] == [a, b]


def test_backoff_grows_and_is_capped():
    assert [backoff_seconds(n, 1) for n in range(7)] == [1, 2, 4, 8, 16, 16, 16]


def test_server_failures_give_up_into_conflicts(queue_url):
    queue, monitor, server, engine = _setup(queue_url, ConnectionStatus.ONLINE, max_retries=2)
    a, b = _takeaways(engine, 2)
    server.before[a] = _raise(TransientSyncError("HTTP 500", status_code=500))
    assert asyncio.run(engine.drain()).halted

    server.before[a] = _raise(TransientSyncError("HTTP 500", status_code=500))
    result = asyncio.run(engine.drain())
    assert result.rejected == 1 and result.sent == 1 and result.remaining == 0
    [conflict] = queue.conflicts()
    assert conflict.client_request_id == a
    assert conflict.code == "RETRIES_EXHAUSTED" and conflict.status_code == 500
    assert server.applied == [b]


def test_network_failures_never_exhaust_an_item(queue_url):
    queue, monitor, server, engine = _setup(queue_url, ConnectionStatus.ONLINE, max_retries=1)
    [a] = _takeaways(engine, 1)
    server.before[a] = _raise(TransientSyncError("connect failed", network=True))
    asyncio.run(engine.drain())
    assert queue.conflicts() == []
    assert queue.pending()[0].attempts == 1

    monitor.set_status(ConnectionStatus.ONLINE)
    assert asyncio.run(engine.drain()).sent == 1
