"""Offline replay engine: drains the local queue in FIFO order."""
import asyncio
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, Optional

from ..models import utcnow
from ..utils.config import SYNC_BACKOFF_BASE_SECONDS, SYNC_MAX_RETRIES
from .connection import ConnectionMonitor, ConnectionStatus
from .queue import MutationType, OfflineQueue, QueuedMutation
from .transport import RejectedMutation, TransientSyncError

log = logging.getLogger("posledger.sync.engine")


@dataclass
class DrainResult:
    sent: int = 0
    rejected: int = 0
    halted: bool = False
    skipped: bool = False
    remaining: int = 0
    retry_in: float = 0.0


def backoff_seconds(attempts: int, base: float = SYNC_BACKOFF_BASE_SECONDS) -> float:
    return base * 2 ** min(attempts, 4)


def _current_task():
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None


class UnresolvedLocalId(Exception):
    def __init__(self, local_id):
        super().__init__(f"local order {local_id} has no server id")
        self.local_id = local_id


class SyncEngine:
    def __init__(self, queue: OfflineQueue, transport, monitor: ConnectionMonitor,
                 terminal: Optional[Dict[str, Any]] = None,
                 backoff_base: float = SYNC_BACKOFF_BASE_SECONDS, max_retries: int = SYNC_MAX_RETRIES):
        self.queue = queue
        self.transport = transport
        self.monitor = monitor
        self.terminal = terminal
        self.backoff_base = backoff_base
        self.max_retries = max_retries
        self._running = False
        self._registered = False
        self._task: Optional[asyncio.Task] = None
        monitor.add_listener(self._on_status)

    @property
    def running(self) -> bool:
        return self._running

    def enqueue(self, mutation_type: str, payload: Dict[str, Any],
                client_request_id: Optional[str] = None) -> QueuedMutation:
        item = self.queue.enqueue(mutation_type, payload, client_request_id)
        log.info(f"queued {mutation_type} #{item.seq} ({item.client_request_id})")
        return item

    # ------------------------------
    # connectivity
    # ------------------------------
    def _on_status(self, status: ConnectionStatus) -> None:
        if status == ConnectionStatus.OFFLINE:
            self._registered = False
            # a drain that reports the failure itself stops on its own
            if self._task is not None and not self._task.done() and self._task is not _current_task():
                log.info("connection lost; aborting drain")
                self._task.cancel()
            return
        try:
            self.start_drain()
        except RuntimeError:
            # reported from outside the event loop; the next timer tick drains
            log.debug("no running event loop for reconnect drain")

    def start_drain(self) -> asyncio.Task:
        """Schedule ``drain`` on the running loop; this is the task an OFFLINE flip cancels."""
        loop = asyncio.get_running_loop()
        if self._task is None or self._task.done():
            self._task = loop.create_task(self.drain())
        return self._task

    # ------------------------------
    # drain
    # ------------------------------
    def _resolve(self, item: QueuedMutation) -> Dict[str, Any]:
        payload = dict(item.payload)
        local_id = payload.pop("order_local_id", None)
        if local_id is not None:
            server_id = self.queue.server_id_for(local_id)
            if server_id is None:
                raise UnresolvedLocalId(local_id)
            payload["order_id"] = server_id
        payload.pop("local_id", None)
        return payload

    def _acknowledged(self, item: QueuedMutation, result: Any) -> None:
        local_id = item.payload.get("local_id")
        if item.mutation_type == MutationType.CREATE_ORDER and local_id is not None and isinstance(result, dict):
            self.queue.map_local_id(local_id, result["id"])
        self.queue.remove(item.seq)

    def _retry_wait(self, item: QueuedMutation) -> float:
        """Seconds until a previously failed item may be sent again."""
        if not item.attempts or item.last_attempt_at is None:
            return 0.0
        due = item.last_attempt_at + timedelta(seconds=backoff_seconds(item.attempts, self.backoff_base))
        return max(0.0, (due - utcnow()).total_seconds())

    async def _ensure_registered(self) -> None:
        if self._registered or not self.terminal:
            return
        await self.transport.register_terminal(**self.terminal)
        self._registered = True

    async def drain(self) -> DrainResult:
        result = DrainResult()
        if self._running:
            result.skipped = True
            result.remaining = len(self.queue)
            return result

        self._running = True
        try:
            while self.monitor.is_online:
                item = self.queue.peek()
                if item is None:
                    break
                wait = self._retry_wait(item)
                if wait > 0:
                    result.halted = True
                    result.retry_in = wait
                    log.debug(f"#{item.seq} backing off for {wait:.1f}s")
                    break
                try:
                    await self._ensure_registered()
                except (TransientSyncError, RejectedMutation) as e:
                    result.halted = True
                    log.warning(f"terminal registration failed, drain halted: {e}")
                    if getattr(e, "network", False):
                        self.monitor.report_failed_request()
                    break
                try:
                    payload = self._resolve(item)
                    ack = await self.transport.submit(item.mutation_type, payload, item.client_request_id)
                except UnresolvedLocalId as e:
                    self.queue.reject(item, None, "UNRESOLVED_LOCAL_ID", str(e))
                    result.rejected += 1
                    log.warning(f"#{item.seq} {item.mutation_type} dropped: {e}")
                    continue
                except RejectedMutation as e:
                    self.queue.reject(item, e.status_code, e.code, str(e))
                    result.rejected += 1
                    log.warning(f"#{item.seq} {item.mutation_type} rejected ({e.status_code} {e.code}): {e}")
                    continue
                except TransientSyncError as e:
                    # only server-side failures count towards giving up
                    if not e.network and (item.attempts or 0) + 1 >= self.max_retries:
                        self.queue.reject(item, e.status_code, "RETRIES_EXHAUSTED", str(e))
                        result.rejected += 1
                        log.warning(f"#{item.seq} {item.mutation_type} gave up after {self.max_retries} attempts: {e}")
                        continue
                    self.queue.record_attempt(item.seq, str(e))
                    result.halted = True
                    log.warning(f"#{item.seq} {item.mutation_type} failed, will retry: {e}")
                    if e.network:
                        self.monitor.report_failed_request()
                    break
                self._acknowledged(item, ack)
                result.sent += 1
        finally:
            self._running = False
        result.remaining = len(self.queue)
        if result.sent or result.rejected:
            log.info(f"drain finished: {result}")
        return result

    async def run_periodic(self, interval: float, stop: Optional[asyncio.Event] = None) -> None:
        """Timer tick: drain whenever online, until ``stop`` is set."""
        while stop is None or not stop.is_set():
            if self.monitor.is_online and not self._running:
                task = self.start_drain()
                await asyncio.wait({task})
            await asyncio.sleep(interval)
