"""Client-resident offline queue and replay engine for POS terminals."""
from .connection import ConnectionMonitor, ConnectionStatus
from .engine import DrainResult, SyncEngine
from .queue import MutationType, OfflineQueue
from .transport import HttpTransport, RejectedMutation, SyncError, TransientSyncError

__all__ = [
    "ConnectionMonitor", "ConnectionStatus", "DrainResult", "SyncEngine", "MutationType",
    "OfflineQueue", "HttpTransport", "RejectedMutation", "SyncError", "TransientSyncError",
]
