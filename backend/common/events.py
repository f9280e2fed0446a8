"""
Wire shapes shared by the API, the broadcaster and the sync client.

Everything crosses the wire in camelCase (``serialNumber``, ``teamId``); Python
code uses the snake_case field names.
"""
from __future__ import annotations
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

# Socket.IO event names
JOIN_TEAM = "join-team"
TEAM_JOINED = "team-joined"
EQUIPMENT_UPDATE = "equipment-update"
STATS_UPDATE = "stats-update"
ACTIVITY_UPDATE = "activity-update"

CATEGORIES = ("Camera", "Audio", "Lighting", "Switching", "Storage", "Cables", "Accessories")
STATUSES = ("pending", "checked", "issue")
CONDITIONS = ("excellent", "good", "fair", "needs_repair")
PRIORITIES = ("low", "medium", "high", "critical")
OPERATIONS = ("create", "update", "delete", "restore")

Category = Literal["Camera", "Audio", "Lighting", "Switching", "Storage", "Cables", "Accessories"]
Status = Literal["pending", "checked", "issue"]
Condition = Literal["excellent", "good", "fair", "needs_repair"]
Priority = Literal["low", "medium", "high", "critical"]
Operation = Literal["create", "update", "delete", "restore"]
ActionType = Literal["created", "updated", "status_changed", "deleted", "restored"]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class EquipmentFields(WireModel):
    """Descriptive fields shared by active and archived records."""
    name: str
    category: Category
    status: Status = "pending"
    condition: Condition = "good"
    location: str
    notes: Optional[str] = None
    serial_number: Optional[str] = None
    purchase_date: Optional[date] = None
    warranty_expiry: Optional[date] = None
    purchase_price: Optional[float] = None
    vendor: Optional[str] = None
    model: Optional[str] = None
    barcode: Optional[str] = None
    priority: Priority = "medium"
    maintenance_date: Optional[datetime] = None
    is_reserved: bool = False
    reserved_by: Optional[str] = None
    reserved_until: Optional[datetime] = None
    last_checked: Optional[datetime] = None
    checked_by: Optional[str] = None
    checked_by_name: Optional[str] = None
    team_id: str = "global"


class EquipmentRecord(EquipmentFields):
    id: str
    is_active: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    version: int = 1


class ArchivedEquipmentRecord(EquipmentFields):
    id: str
    original_equipment_id: str
    deleted_at: datetime
    deleted_by: str
    deleted_by_name: str
    deletion_reason: Optional[str] = None
    original_created_at: Optional[datetime] = None
    original_updated_at: Optional[datetime] = None


class HistoryEntry(WireModel):
    id: str
    equipment_id: str
    action_type: ActionType
    old_values: Optional[Dict[str, Any]] = None
    new_values: Optional[Dict[str, Any]] = None
    user_id: str
    user_name: str
    team_id: str
    notes: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime


class StatsOverview(WireModel):
    total: int = 0
    checked: int = 0
    pending: int = 0
    issues: int = 0
    reserved: int = 0
    critical: int = 0
    warranty_expiring: int = 0


class CategoryCount(WireModel):
    category: str
    count: int


class ConditionCount(WireModel):
    condition: str
    count: int


class EquipmentStats(WireModel):
    overview: StatsOverview
    categories: List[CategoryCount] = []
    conditions: List[ConditionCount] = []
    recent_activity: int = 0
    last_updated: datetime


class EquipmentUpdateEvent(WireModel):
    """
    One committed mutation, as broadcast to a team scope.

    ``equipment`` is the post-commit snapshot (for delete: the last active
    snapshot); ``archived`` is the archive row written by a delete or purged
    by a restore. ``mutation_id`` echoes the id the originating client sent,
    so it can tell its own echo from a foreign edit.
    """
    model_config = ConfigDict(frozen=True)

    operation: Operation
    equipment: EquipmentRecord
    archived: Optional[ArchivedEquipmentRecord] = None
    timestamp: datetime
    team_id: str
    actor_id: Optional[str] = None
    actor_name: Optional[str] = None
    mutation_id: Optional[str] = None

    @classmethod
    def build(
        cls,
        operation: str,
        record: EquipmentRecord,
        *,
        archived: Optional[ArchivedEquipmentRecord] = None,
        actor: Optional[Dict[str, Any]] = None,
        mutation_id: Optional[str] = None,
    ) -> "EquipmentUpdateEvent":
        actor = actor or {}
        return cls(
            operation=operation,
            equipment=record,
            archived=archived,
            timestamp=utcnow(),
            team_id=record.team_id,
            actor_id=actor.get("id"),
            actor_name=actor.get("name"),
            mutation_id=mutation_id,
        )


class StatsUpdateEvent(WireModel):
    stats: EquipmentStats
    timestamp: datetime
    team_id: str


class ActivityUpdateEvent(WireModel):
    activity: HistoryEntry
    timestamp: datetime
    team_id: str
