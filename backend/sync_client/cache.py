from __future__ import annotations
from collections import deque
from typing import Callable, Deque, List, Optional
import logging

from common.errors import AppError
from common.events import ArchivedEquipmentRecord, EquipmentRecord, EquipmentStats, HistoryEntry

logger = logging.getLogger(__name__)

HEALTHY = "healthy"
DEGRADED = "degraded"


class LocalView:
    """
    What the user sees: records ordered by update recency (front = newest),
    plus stats, the recently deleted list and a short activity feed.

    ``revision`` only moves on visible changes, so listeners can tell a
    silent bookkeeping update from something worth re-rendering.
    """

    def __init__(self, activity_size: int = 20):
        self.records: List[EquipmentRecord] = []
        self.stats: Optional[EquipmentStats] = None
        self.deleted: List[ArchivedEquipmentRecord] = []
        self.activity: Deque[HistoryEntry] = deque(maxlen=activity_size)
        self.connectivity: str = DEGRADED
        self.last_error: Optional[AppError] = None
        self.revision = 0
        self._listeners: List[Callable[["LocalView"], None]] = []

    def subscribe(self, listener: Callable[["LocalView"], None]) -> None:
        self._listeners.append(listener)

    def _changed(self) -> None:
        self.revision += 1
        for listener in list(self._listeners):
            try:
                listener(self)
            except Exception as e:
                logger.warning(f"View listener failed: {e}")

    # ---- records ----
    def ids(self) -> List[str]:
        return [r.id for r in self.records]

    def index_of(self, record_id: str) -> Optional[int]:
        for i, r in enumerate(self.records):
            if r.id == record_id:
                return i
        return None

    def get(self, record_id: str) -> Optional[EquipmentRecord]:
        i = self.index_of(record_id)
        return None if i is None else self.records[i]

    def insert_front(self, record: EquipmentRecord) -> None:
        self.records.insert(0, record)
        self._changed()

    def insert_at(self, index: int, record: EquipmentRecord) -> None:
        """Put a record back where it was; the front when that slot no longer exists."""
        if index is None or index > len(self.records):
            index = 0
        self.records.insert(index, record)
        self._changed()

    def replace(self, record: EquipmentRecord, *, old_id: Optional[str] = None, notify: bool = True) -> bool:
        i = self.index_of(old_id or record.id)
        if i is None:
            return False
        self.records[i] = record
        if notify:
            self._changed()
        return True

    def remove(self, record_id: str) -> Optional[int]:
        i = self.index_of(record_id)
        if i is None:
            return None
        del self.records[i]
        self._changed()
        return i

    def replace_all(self, records: List[EquipmentRecord]) -> None:
        if [r.model_dump() for r in records] == [r.model_dump() for r in self.records]:
            return
        self.records = list(records)
        self._changed()

    # ---- archive ----
    def archived(self, archived_id: str) -> Optional[ArchivedEquipmentRecord]:
        return next((a for a in self.deleted if a.id == archived_id), None)

    def add_archived(self, entry: ArchivedEquipmentRecord, index: int = 0) -> None:
        if self.archived(entry.id) is not None:
            return
        self.deleted.insert(min(index, len(self.deleted)), entry)
        self._changed()

    def remove_archived(self, archived_id: str) -> Optional[int]:
        for i, a in enumerate(self.deleted):
            if a.id == archived_id:
                del self.deleted[i]
                self._changed()
                return i
        return None

    def set_deleted(self, entries: List[ArchivedEquipmentRecord]) -> None:
        self.deleted = list(entries)
        self._changed()

    # ---- stats / activity / connectivity ----
    def set_stats(self, stats: EquipmentStats) -> None:
        if self.stats is not None and stats.last_updated < self.stats.last_updated:
            return
        self.stats = stats
        self._changed()

    def push_activity(self, entry: HistoryEntry) -> None:
        if any(a.id == entry.id for a in self.activity):
            return
        self.activity.appendleft(entry)
        self._changed()

    def set_connectivity(self, state: str) -> bool:
        if state == self.connectivity:
            return False
        self.connectivity = state
        self._changed()
        return True

    def record_error(self, error: AppError) -> None:
        self.last_error = error
        self._changed()
