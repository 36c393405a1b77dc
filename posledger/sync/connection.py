import enum
import logging
import threading
from typing import Callable, List

log = logging.getLogger("posledger.sync.connection")


class ConnectionStatus(str, enum.Enum):
    ONLINE = "online"
    OFFLINE = "offline"


class ConnectionMonitor:
    """Current connectivity plus change listeners.

    Listeners fire only on an actual change, in registration order, on the
    thread that reported the change.
    """

    def __init__(self, initial: ConnectionStatus = ConnectionStatus.ONLINE):
        self._status = ConnectionStatus(initial)
        self._listeners: List[Callable[[ConnectionStatus], None]] = []
        self._lock = threading.Lock()

    @property
    def status(self) -> ConnectionStatus:
        return self._status

    @property
    def is_online(self) -> bool:
        return self._status == ConnectionStatus.ONLINE

    def add_listener(self, callback: Callable[[ConnectionStatus], None]) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(callback)

        def _remove():
            with self._lock:
                if callback in self._listeners:
                    self._listeners.remove(callback)
        return _remove

    def set_status(self, status: ConnectionStatus) -> None:
        status = ConnectionStatus(status)
        with self._lock:
            if status == self._status:
                return
            self._status = status
            listeners = list(self._listeners)
        log.info(f"connection is now {status.value}")
        for cb in listeners:
            try:
                cb(status)
            except Exception as e:  # noqa: BLE001
                log.warning(f"connection listener failed: {e!r}")

    def report_failed_request(self) -> None:
        self.set_status(ConnectionStatus.OFFLINE)

    def report_success(self) -> None:
        self.set_status(ConnectionStatus.ONLINE)
