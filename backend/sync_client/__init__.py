# Sync client
"""
Client side of real-time equipment sync.

- gateway: REST calls to the equipment API
- channel: Socket.IO subscription to one team scope
- cache / reconciler: local view with optimistic updates
- poller: refresh fallback, faster while the channel is down
- session: everything wired together for one signed-in user
"""

from .reconciler import Reconciler, RecordState
from .session import SyncSession

__all__ = ["Reconciler", "RecordState", "SyncSession"]
