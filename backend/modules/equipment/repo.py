from __future__ import annotations
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, Iterator, List, Optional
import logging
import uuid

from sqlalchemy import and_, delete, func, insert, or_, select, update
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from common.errors import AppError, NotFoundError, StoreTransactionError, UniquenessConflict
from common.events import (
    ArchivedEquipmentRecord, CategoryCount, ConditionCount, EquipmentRecord, EquipmentStats,
    HistoryEntry, StatsOverview,
)
from core.db import get_engine
from .tables import DESCRIPTIVE_COLUMNS, deleted_equipment, equipment, equipment_history

logger = logging.getLogger(__name__)

# Fields a client may change through update()
UPDATABLE_FIELDS = frozenset({
    'name', 'category', 'status', 'condition', 'location', 'notes', 'serial_number',
    'purchase_date', 'warranty_expiry', 'purchase_price', 'vendor', 'model', 'barcode',
    'priority', 'maintenance_date', 'is_reserved', 'reserved_by', 'reserved_until',
})

WARRANTY_WINDOW_DAYS = 30


@dataclass(frozen=True)
class StoreResult:
    """Post-commit state of one mutation."""
    record: EquipmentRecord
    archived: Optional[ArchivedEquipmentRecord] = None
    history: Optional[HistoryEntry] = None


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _aware(row: Dict[str, Any]) -> Dict[str, Any]:
    """SQLite hands back naive datetimes; everything we store is UTC."""
    out = {}
    for key, value in row.items():
        if isinstance(value, datetime) and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        out[key] = value
    return out


def _unique_message(exc: IntegrityError) -> str:
    text = str(getattr(exc, 'orig', exc)).lower()
    if 'barcode' in text:
        return "Barcode already exists"
    if 'serial' in text:
        return "Serial number already exists"
    return "Duplicate value for a unique field"


class EquipmentRepo:
    def __init__(self, engine: Optional[Engine] = None):
        self.engine = engine or get_engine()

    @contextmanager
    def _transaction(self, action: str) -> Iterator[Connection]:
        """One real transaction; any failure rolls the whole thing back."""
        try:
            with self.engine.begin() as conn:
                yield conn
        except AppError:
            raise
        except IntegrityError as e:
            logger.warning(f"Uniqueness violation while {action}: {e.orig}")
            raise UniquenessConflict(_unique_message(e))
        except SQLAlchemyError as e:
            logger.error(f"Transaction failed while {action}, rolled back: {e}")
            raise StoreTransactionError(f"Server error {action}")

    # ---- row helpers ----
    @staticmethod
    def _record(row) -> EquipmentRecord:
        return EquipmentRecord.model_validate(_aware(dict(row)))

    @staticmethod
    def _archived(row) -> ArchivedEquipmentRecord:
        return ArchivedEquipmentRecord.model_validate(_aware(dict(row)))

    def _fetch_active(self, conn: Connection, equipment_id: str, team_id: str, *, lock: bool = False):
        query = select(equipment).where(
            equipment.c.id == equipment_id,
            equipment.c.team_id == team_id,
            equipment.c.is_active.is_(True),
        )
        if lock:
            query = query.with_for_update()
        return conn.execute(query).mappings().first()

    def _log_history(
        self,
        conn: Connection,
        action_type: str,
        equipment_id: str,
        actor: Dict[str, Any],
        team_id: str,
        old: Optional[EquipmentRecord] = None,
        new: Optional[EquipmentRecord] = None,
        notes: Optional[str] = None,
    ) -> HistoryEntry:
        """Audit row written inside the caller's transaction."""
        values = {
            'id': str(uuid.uuid4()),
            'equipment_id': equipment_id,
            'action_type': action_type,
            'old_values': old.to_wire() if old else None,
            'new_values': new.to_wire() if new else None,
            'user_id': actor['id'],
            'user_name': actor['name'],
            'team_id': team_id,
            'notes': notes,
            'ip_address': actor.get('ip_address'),
            'user_agent': actor.get('user_agent'),
            'created_at': _now(),
        }
        conn.execute(insert(equipment_history).values(**values))
        return HistoryEntry.model_validate(values)

    # ---- queries ----
    def list_equipment(
        self,
        team_id: str,
        search: Optional[str] = None,
        category: Optional[str] = None,
        status: Optional[str] = None,
        condition: Optional[str] = None,
    ) -> List[EquipmentRecord]:
        """Active records for a team, most recently updated first"""
        clauses = [equipment.c.team_id == team_id, equipment.c.is_active.is_(True)]
        if search and search.strip():
            pattern = f"%{search.strip().lower()}%"
            clauses.append(or_(
                func.lower(equipment.c.name).like(pattern),
                func.lower(equipment.c.location).like(pattern),
                func.lower(equipment.c.notes).like(pattern),
            ))
        if category:
            clauses.append(equipment.c.category == category)
        if status:
            clauses.append(equipment.c.status == status)
        if condition:
            clauses.append(equipment.c.condition == condition)

        query = select(equipment).where(and_(*clauses)).order_by(equipment.c.updated_at.desc())
        with self.engine.connect() as conn:
            rows = conn.execute(query).mappings().all()
        return [self._record(r) for r in rows]

    def get(self, equipment_id: str, team_id: str) -> EquipmentRecord:
        with self.engine.connect() as conn:
            row = self._fetch_active(conn, equipment_id, team_id)
        if not row:
            raise NotFoundError()
        return self._record(row)

    def list_archived(self, team_id: str) -> List[ArchivedEquipmentRecord]:
        query = (
            select(deleted_equipment)
            .where(deleted_equipment.c.team_id == team_id)
            .order_by(deleted_equipment.c.deleted_at.desc())
        )
        with self.engine.connect() as conn:
            rows = conn.execute(query).mappings().all()
        return [self._archived(r) for r in rows]

    def history(self, equipment_id: str, team_id: str, limit: int = 50) -> List[HistoryEntry]:
        query = (
            select(equipment_history)
            .where(equipment_history.c.equipment_id == equipment_id, equipment_history.c.team_id == team_id)
            .order_by(equipment_history.c.created_at.desc())
            .limit(limit)
        )
        with self.engine.connect() as conn:
            rows = conn.execute(query).mappings().all()
        return [HistoryEntry.model_validate(_aware(dict(r))) for r in rows]

    def activity(self, team_id: str, limit: int = 20) -> List[HistoryEntry]:
        query = (
            select(equipment_history)
            .where(equipment_history.c.team_id == team_id)
            .order_by(equipment_history.c.created_at.desc())
            .limit(limit)
        )
        with self.engine.connect() as conn:
            rows = conn.execute(query).mappings().all()
        return [HistoryEntry.model_validate(_aware(dict(r))) for r in rows]

    def stats(self, team_id: str) -> EquipmentStats:
        active = and_(equipment.c.team_id == team_id, equipment.c.is_active.is_(True))
        today = date.today()
        with self.engine.connect() as conn:
            status_counts = dict(conn.execute(
                select(equipment.c.status, func.count()).where(active).group_by(equipment.c.status)
            ).all())
            categories = conn.execute(
                select(equipment.c.category, func.count()).where(active)
                .group_by(equipment.c.category).order_by(equipment.c.category)
            ).all()
            conditions = conn.execute(
                select(equipment.c.condition, func.count()).where(active)
                .group_by(equipment.c.condition).order_by(equipment.c.condition)
            ).all()
            reserved = conn.execute(
                select(func.count()).where(active, equipment.c.is_reserved.is_(True))
            ).scalar_one()
            critical = conn.execute(
                select(func.count()).where(active, equipment.c.priority == 'critical')
            ).scalar_one()
            warranty_expiring = conn.execute(
                select(func.count()).where(
                    active,
                    equipment.c.warranty_expiry >= today,
                    equipment.c.warranty_expiry <= today + timedelta(days=WARRANTY_WINDOW_DAYS),
                )
            ).scalar_one()
            recent_activity = conn.execute(
                select(func.count()).select_from(equipment_history).where(
                    equipment_history.c.team_id == team_id,
                    equipment_history.c.created_at >= _now() - timedelta(hours=24),
                )
            ).scalar_one()

        return EquipmentStats(
            overview=StatsOverview(
                total=sum(status_counts.values()),
                checked=status_counts.get('checked', 0),
                pending=status_counts.get('pending', 0),
                issues=status_counts.get('issue', 0),
                reserved=reserved,
                critical=critical,
                warranty_expiring=warranty_expiring,
            ),
            categories=[CategoryCount(category=c, count=n) for c, n in categories],
            conditions=[ConditionCount(condition=c, count=n) for c, n in conditions],
            recent_activity=recent_activity,
            last_updated=_now(),
        )

    def report_rows(self, team_id: str) -> List[EquipmentRecord]:
        query = (
            select(equipment)
            .where(equipment.c.team_id == team_id, equipment.c.is_active.is_(True))
            .order_by(equipment.c.category.asc(), equipment.c.name.asc())
        )
        with self.engine.connect() as conn:
            rows = conn.execute(query).mappings().all()
        return [self._record(r) for r in rows]

    # ---- mutations ----
    def create(self, fields: Dict[str, Any], actor: Dict[str, Any]) -> StoreResult:
        """Insert a new active record stamped with the creator as checker."""
        now = _now()
        values = {k: v for k, v in fields.items() if k in UPDATABLE_FIELDS}
        values.update({
            'id': str(uuid.uuid4()),
            'status': values.get('status') or 'pending',
            'condition': values.get('condition') or 'good',
            'priority': values.get('priority') or 'medium',
            'is_reserved': bool(values.get('is_reserved', False)),
            'last_checked': now,
            'checked_by': actor['id'],
            'checked_by_name': actor['name'],
            'team_id': actor['team_id'],
            'is_active': True,
            'created_at': now,
            'updated_at': now,
            'version': 1,
        })
        with self._transaction("creating equipment") as conn:
            conn.execute(insert(equipment).values(**values))
            record = self._record(self._fetch_active(conn, values['id'], actor['team_id']))
            entry = self._log_history(conn, 'created', record.id, actor, record.team_id, new=record)

        logger.info(f"Equipment created: {record.name} ({record.id})")
        return StoreResult(record=record, history=entry)

    def update(self, equipment_id: str, patch: Dict[str, Any], actor: Dict[str, Any]) -> StoreResult:
        """
        Apply a partial update. A status change stamps lastChecked/checkedBy in the
        same UPDATE statement, so status and audit fields never disagree.
        """
        changes = {k: v for k, v in patch.items() if k in UPDATABLE_FIELDS}
        team_id = actor['team_id']
        with self._transaction("updating equipment") as conn:
            row = self._fetch_active(conn, equipment_id, team_id, lock=True)
            if not row:
                raise NotFoundError()
            before = self._record(row)

            now = _now()
            values = dict(changes)
            if 'status' in changes:
                values.update(last_checked=now, checked_by=actor['id'], checked_by_name=actor['name'])
            values.update(updated_at=now, version=equipment.c.version + 1)

            conn.execute(update(equipment).where(equipment.c.id == equipment_id).values(**values))
            after = self._record(self._fetch_active(conn, equipment_id, team_id))

            action = 'status_changed' if 'status' in changes and changes['status'] != before.status else 'updated'
            entry = self._log_history(conn, action, equipment_id, actor, team_id, old=before, new=after)

        logger.info(f"Equipment updated: {after.name} ({after.id}) v{after.version} fields={sorted(changes)}")
        return StoreResult(record=after, history=entry)

    def archive(self, equipment_id: str, actor: Dict[str, Any], reason: Optional[str] = None) -> StoreResult:
        """Move an active record into deleted_equipment. Both writes commit or neither does."""
        team_id = actor['team_id']
        with self._transaction("deleting equipment") as conn:
            row = self._fetch_active(conn, equipment_id, team_id, lock=True)
            if not row:
                raise NotFoundError()
            snapshot = self._record(row)

            archived_values = {col: row[col] for col in DESCRIPTIVE_COLUMNS}
            archived_values.update({
                'id': str(uuid.uuid4()),
                'original_equipment_id': snapshot.id,
                'deleted_at': _now(),
                'deleted_by': actor['id'],
                'deleted_by_name': actor['name'],
                'deletion_reason': reason or None,
                'original_created_at': row['created_at'],
                'original_updated_at': row['updated_at'],
            })
            conn.execute(insert(deleted_equipment).values(**archived_values))
            conn.execute(delete(equipment).where(equipment.c.id == equipment_id))
            archived = self._archived(archived_values)
            entry = self._log_history(conn, 'deleted', equipment_id, actor, team_id, old=snapshot, notes=reason)

        logger.info(f"Equipment archived: {snapshot.name} ({snapshot.id}) -> {archived.id}")
        return StoreResult(record=snapshot, archived=archived, history=entry)

    def restore(self, archived_id: str, actor: Dict[str, Any]) -> StoreResult:
        """
        Recreate an active record from an archive entry and purge the entry.
        The restored record gets a new id, its reservation is reset and it is
        marked as checked now by the restoring user; status and condition carry over.
        """
        team_id = actor['team_id']
        with self._transaction("restoring equipment") as conn:
            row = conn.execute(
                select(deleted_equipment)
                .where(deleted_equipment.c.id == archived_id, deleted_equipment.c.team_id == team_id)
                .with_for_update()
            ).mappings().first()
            if not row:
                raise NotFoundError("Deleted equipment not found")
            archived = self._archived(row)

            now = _now()
            values = {col: row[col] for col in DESCRIPTIVE_COLUMNS}
            values.update({
                'id': str(uuid.uuid4()),
                'is_reserved': False,
                'reserved_by': None,
                'reserved_until': None,
                'last_checked': now,
                'checked_by': actor['id'],
                'checked_by_name': actor['name'],
                'is_active': True,
                'created_at': now,
                'updated_at': now,
                'version': 1,
            })
            conn.execute(insert(equipment).values(**values))
            conn.execute(delete(deleted_equipment).where(deleted_equipment.c.id == archived_id))
            record = self._record(self._fetch_active(conn, values['id'], team_id))
            entry = self._log_history(conn, 'restored', record.id, actor, team_id, new=record)

        logger.info(f"Equipment restored: {record.name} ({archived.id} -> {record.id})")
        return StoreResult(record=record, archived=archived, history=entry)

    def purge_archived(self, archived_id: str, team_id: str) -> ArchivedEquipmentRecord:
        """Permanently drop an archive entry"""
        with self._transaction("permanently deleting equipment") as conn:
            row = conn.execute(
                select(deleted_equipment)
                .where(deleted_equipment.c.id == archived_id, deleted_equipment.c.team_id == team_id)
            ).mappings().first()
            if not row:
                raise NotFoundError("Deleted equipment not found")
            conn.execute(delete(deleted_equipment).where(deleted_equipment.c.id == archived_id))
        return self._archived(row)
