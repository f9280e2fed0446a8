from __future__ import annotations
from typing import Any, Dict, List, Optional
import logging

from starlette.concurrency import run_in_threadpool

from common.events import (
    ArchivedEquipmentRecord, EquipmentRecord, EquipmentStats, EquipmentUpdateEvent, HistoryEntry,
)
from core.websocket import Broadcaster
from .repo import EquipmentRepo, StoreResult

logger = logging.getLogger(__name__)


class EquipmentService:
    """
    Mutation gateway: run the store operation, then publish exactly one event
    built from the same post-commit snapshot the caller gets back.
    Nothing is published when the store operation fails.
    """

    def __init__(self, broadcaster: Optional[Broadcaster] = None, repo: Optional[EquipmentRepo] = None):
        self.repo = repo or EquipmentRepo()
        self.broadcaster = broadcaster

    # ---- queries ----
    async def list_equipment(self, actor: Dict[str, Any], **filters) -> List[EquipmentRecord]:
        return await run_in_threadpool(self.repo.list_equipment, actor['team_id'], **filters)

    async def get_stats(self, team_id: str) -> EquipmentStats:
        return await run_in_threadpool(self.repo.stats, team_id)

    async def list_deleted(self, actor: Dict[str, Any]) -> List[ArchivedEquipmentRecord]:
        return await run_in_threadpool(self.repo.list_archived, actor['team_id'])

    async def get_history(self, equipment_id: str, actor: Dict[str, Any]) -> List[HistoryEntry]:
        # 404 for ids that were never active in this team
        history = await run_in_threadpool(self.repo.history, equipment_id, actor['team_id'])
        if not history:
            await run_in_threadpool(self.repo.get, equipment_id, actor['team_id'])
        return history

    async def get_activity(self, actor: Dict[str, Any], limit: int = 20) -> List[HistoryEntry]:
        return await run_in_threadpool(self.repo.activity, actor['team_id'], limit)

    async def get_report(self, actor: Dict[str, Any]) -> List[EquipmentRecord]:
        return await run_in_threadpool(self.repo.report_rows, actor['team_id'])

    # ---- mutations ----
    async def create_equipment(
        self, fields: Dict[str, Any], actor: Dict[str, Any], mutation_id: Optional[str] = None
    ) -> EquipmentRecord:
        result = await run_in_threadpool(self.repo.create, fields, actor)
        await self._announce('create', result, actor, mutation_id)
        return result.record

    async def update_equipment(
        self, equipment_id: str, patch: Dict[str, Any], actor: Dict[str, Any], mutation_id: Optional[str] = None
    ) -> EquipmentRecord:
        result = await run_in_threadpool(self.repo.update, equipment_id, patch, actor)
        await self._announce('update', result, actor, mutation_id)
        return result.record

    async def delete_equipment(
        self,
        equipment_id: str,
        actor: Dict[str, Any],
        reason: Optional[str] = None,
        mutation_id: Optional[str] = None,
    ) -> StoreResult:
        result = await run_in_threadpool(self.repo.archive, equipment_id, actor, reason)
        await self._announce('delete', result, actor, mutation_id)
        return result

    async def restore_equipment(
        self, archived_id: str, actor: Dict[str, Any], mutation_id: Optional[str] = None
    ) -> StoreResult:
        result = await run_in_threadpool(self.repo.restore, archived_id, actor)
        await self._announce('restore', result, actor, mutation_id)
        return result

    async def purge_deleted(self, archived_id: str, actor: Dict[str, Any]) -> ArchivedEquipmentRecord:
        # Archive-only change, active views are unaffected so nothing is broadcast
        return await run_in_threadpool(self.repo.purge_archived, archived_id, actor['team_id'])

    # ---- fan-out ----
    async def _announce(
        self, operation: str, result: StoreResult, actor: Dict[str, Any], mutation_id: Optional[str]
    ) -> Optional[EquipmentUpdateEvent]:
        """Publish a committed mutation. The commit stands even if the push fails; polling catches up."""
        if self.broadcaster is None:
            return None

        event = EquipmentUpdateEvent.build(
            operation, result.record, archived=result.archived, actor=actor, mutation_id=mutation_id,
        )
        scope = event.team_id
        try:
            await self.broadcaster.publish(scope, event)
        except Exception as e:
            logger.error(f"❌ Failed to broadcast equipment {operation} ({result.record.id}) to team-{scope}: {e}")
            return event

        if result.history is not None:
            await self.broadcaster.publish_activity(scope, result.history)
        try:
            stats = await self.get_stats(scope)
        except Exception as e:
            logger.warning(f"Skipping stats broadcast for team-{scope}: {e}")
        else:
            await self.broadcaster.publish_stats(scope, stats)
        return event
