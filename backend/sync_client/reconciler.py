"""
Client-side reconciliation of optimistic mutations with server truth.

Each record is Clean, SpeculativePending (a request is in flight and the view
shows the predicted value) or Reconciling (the server answered, or its echo
arrived, and the view is being settled). Every transition below is plain
synchronous code; the only awaits are the gateway requests themselves.

Ordering between writers is decided by the server-assigned record version:
an external snapshot only replaces the local one when its version is newer.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple, Union
import asyncio
import logging
import uuid

from pydantic import ValidationError as PydanticValidationError

from common.errors import AppError, MutationConflict, NotFoundError, ValidationError
from common.events import (
    ActivityUpdateEvent, ArchivedEquipmentRecord, EquipmentFields, EquipmentRecord,
    EquipmentUpdateEvent, StatsUpdateEvent, utcnow,
)
from .cache import LocalView

logger = logging.getLogger(__name__)

# Fields the server stamps on every commit; a difference here alone is not a visible change
BOOKKEEPING = frozenset({
    'id', 'version', 'created_at', 'updated_at', 'last_checked', 'checked_by',
    'checked_by_name', 'is_active', 'team_id',
})


class RecordState(str, Enum):
    CLEAN = "clean"
    SPECULATIVE_PENDING = "speculative_pending"
    RECONCILING = "reconciling"


@dataclass(eq=False)
class PendingMutation:
    operation: str
    record_id: str
    mutation_id: str
    patch: Dict[str, Any] = field(default_factory=dict)
    snapshot: Optional[EquipmentRecord] = None
    predicted: Optional[EquipmentRecord] = None
    index: Optional[int] = None
    source_id: Optional[str] = None                       # archive id being restored
    archived: Optional[ArchivedEquipmentRecord] = None
    archived_index: Optional[int] = None
    state: RecordState = RecordState.SPECULATIVE_PENDING
    echo: Optional[EquipmentUpdateEvent] = None
    buffered: List[EquipmentUpdateEvent] = field(default_factory=list)
    server_copy: Optional[EquipmentRecord] = None
    queued: Dict[str, Any] = field(default_factory=dict)  # superseding intent not yet sent
    delete_after: Optional[Tuple[Optional[str], asyncio.Future]] = None  # (reason, caller)
    waiters: List[asyncio.Future] = field(default_factory=list)


def _visible(record: EquipmentRecord) -> Dict[str, Any]:
    return record.model_dump(exclude=set(BOOKKEEPING))


def _new_mutation_id() -> str:
    return uuid.uuid4().hex


def _temp_id() -> str:
    return f"temp-{uuid.uuid4()}"


def _retrieve(task: asyncio.Task) -> None:
    # Follow-up failures reach their callers through waiters
    if not task.cancelled():
        task.exception()


class Reconciler:
    def __init__(
        self,
        view: LocalView,
        gateway,
        *,
        actor_id: Optional[str] = None,
        team_id: str = "global",
    ):
        self.view = view
        self.gateway = gateway
        self.actor_id = actor_id
        self.team_id = team_id
        self.pending: Dict[str, PendingMutation] = {}
        self.tombstones: Set[str] = set()
        self._aliases: Dict[str, str] = {}                 # temp id -> server id
        self._by_mutation: Dict[str, PendingMutation] = {}
        self._touched: Dict[str, int] = {}
        self._seq = 0
        self._refreshing: List[int] = []                   # start marks of list requests in flight

    # ---- bookkeeping ----
    def resolve_id(self, record_id: str) -> str:
        return self._aliases.get(record_id, record_id)

    def state_of(self, record_id: str) -> RecordState:
        p = self.pending.get(self.resolve_id(record_id))
        return p.state if p else RecordState.CLEAN

    def _touch(self, record_id: str) -> None:
        self._seq += 1
        self._touched[record_id] = self._seq

    def _begin(self, p: PendingMutation) -> None:
        self.pending[p.record_id] = p
        self._by_mutation[p.mutation_id] = p
        self._touch(p.record_id)

    def _settle(self, p: PendingMutation) -> None:
        if self.pending.get(p.record_id) is p:
            del self.pending[p.record_id]
        self._by_mutation.pop(p.mutation_id, None)

    def _rekey(self, p: PendingMutation, new_id: str) -> None:
        """A create/restore learned its server id."""
        if self.pending.get(p.record_id) is p:
            del self.pending[p.record_id]
        self._aliases[p.record_id] = new_id
        p.record_id = new_id
        self.pending[new_id] = p
        self._touch(new_id)

    def _show(self, old_id: str, display: EquipmentRecord) -> None:
        """Put display where old_id is shown, without a visible change when only bookkeeping differs."""
        existing = self.view.get(display.id) if display.id != old_id else None
        if existing is not None:
            # Already inserted from another source; keep one copy
            self.view.remove(old_id)
            if display.version >= existing.version:
                self.view.replace(display, notify=_visible(existing) != _visible(display))
            return
        shown = self.view.get(old_id)
        if shown is None:
            self.view.insert_front(display)
        else:
            self.view.replace(display, old_id=old_id, notify=_visible(shown) != _visible(display))

    # ---- user mutations ----
    async def create(self, fields: Dict[str, Any]) -> EquipmentRecord:
        temp_id = _temp_id()
        try:
            predicted = EquipmentRecord.model_validate({
                **fields,
                'id': temp_id,
                'team_id': self.team_id,
                'version': 0,
                'last_checked': utcnow(),
                'checked_by': self.actor_id,
            })
        except PydanticValidationError as e:
            errors = [{'field': '.'.join(str(p) for p in err['loc']), 'message': err['msg']} for err in e.errors()]
            raise ValidationError(errors=errors)

        p = PendingMutation('create', temp_id, _new_mutation_id(), patch=dict(fields), predicted=predicted)
        self._begin(p)
        self.view.insert_front(predicted)
        return await self._run(p, lambda: self.gateway.create_equipment(fields, mutation_id=p.mutation_id))

    async def update(self, record_id: str, patch: Dict[str, Any]) -> EquipmentRecord:
        record_id = self.resolve_id(record_id)
        p = self.pending.get(record_id)
        if p is not None:
            return await self._supersede(p, patch)
        if record_id in self.tombstones:
            raise NotFoundError()
        current = self.view.get(record_id)
        if current is None:
            raise NotFoundError()

        predicted = current.model_copy(update=patch)
        p = PendingMutation('update', record_id, _new_mutation_id(), patch=dict(patch), snapshot=current, predicted=predicted)
        self._begin(p)
        self.view.replace(predicted)
        return await self._run(p, lambda: self.gateway.update_equipment(record_id, patch, mutation_id=p.mutation_id))

    async def _supersede(self, p: PendingMutation, patch: Dict[str, Any]) -> EquipmentRecord:
        """Second edit while the first is in flight: show it now, send it once the first lands."""
        if p.operation == 'delete' or p.delete_after is not None:
            raise MutationConflict("Equipment is being deleted")
        shown = self.view.get(p.record_id)
        if shown is not None:
            self.view.replace(shown.model_copy(update=patch))
        p.queued.update(patch)
        self._touch(p.record_id)
        waiter = asyncio.get_running_loop().create_future()
        p.waiters.append(waiter)
        return await waiter

    async def delete(self, record_id: str, reason: Optional[str] = None) -> ArchivedEquipmentRecord:
        record_id = self.resolve_id(record_id)
        pending = self.pending.get(record_id)
        if pending is not None:
            return await self._delete_after(pending, reason)
        current = self.view.get(record_id)
        if current is None or record_id in self.tombstones:
            raise NotFoundError()

        p = PendingMutation('delete', record_id, _new_mutation_id(), snapshot=current)
        self._begin(p)
        p.index = self.view.remove(record_id)
        return await self._run(p, lambda: self.gateway.delete_equipment(record_id, reason, mutation_id=p.mutation_id))

    async def _delete_after(self, p: PendingMutation, reason: Optional[str]) -> ArchivedEquipmentRecord:
        """Delete requested while a change is in flight: sent once that change lands, failed with it otherwise."""
        if p.operation == 'delete' or p.delete_after is not None:
            raise MutationConflict("Equipment is already being deleted")
        waiter = asyncio.get_running_loop().create_future()
        p.delete_after = (reason, waiter)
        self._touch(p.record_id)
        return await waiter

    async def restore(self, archived_id: str) -> EquipmentRecord:
        if any(q.operation == 'restore' and q.source_id == archived_id for q in self.pending.values()):
            raise MutationConflict("Equipment is already being restored")

        entry = self.view.archived(archived_id)
        p = PendingMutation('restore', _temp_id(), _new_mutation_id(), source_id=archived_id, archived=entry)
        if entry is not None:
            p.predicted = EquipmentRecord.model_validate({
                **entry.model_dump(include=set(EquipmentFields.model_fields)),
                'id': p.record_id,
                'is_reserved': False,
                'reserved_by': None,
                'reserved_until': None,
                'last_checked': utcnow(),
                'checked_by': self.actor_id,
                'version': 0,
            })
            p.archived_index = self.view.remove_archived(archived_id)
        self._begin(p)
        if p.predicted is not None:
            self.view.insert_front(p.predicted)
        return await self._run(p, lambda: self.gateway.restore_equipment(archived_id, mutation_id=p.mutation_id))

    async def purge(self, archived_id: str) -> None:
        entry = self.view.archived(archived_id)
        index = self.view.remove_archived(archived_id)
        try:
            await self.gateway.purge_deleted(archived_id)
        except AppError as e:
            if entry is not None:
                self.view.add_archived(entry, index or 0)
            self.view.record_error(e)
            raise

    # ---- request outcome ----
    async def _run(self, p: PendingMutation, send: Callable[[], Awaitable[Any]]):
        try:
            result = await send()
        except AppError as e:
            if p.echo is not None:
                # The broadcast already proved the commit
                logger.info(f"{p.operation} {p.record_id} confirmed by echo; ignoring request error: {e.message}")
                return self._succeed(p, None)
            self._fail(p, e)
            raise
        return self._succeed(p, result)

    def _succeed(self, p: PendingMutation, result) -> Union[EquipmentRecord, ArchivedEquipmentRecord, None]:
        p.state = RecordState.RECONCILING
        if p.operation == 'delete':
            archived = result if result is not None else (p.echo.archived if p.echo else None)
            self._settle(p)
            self.tombstones.add(p.record_id)
            if archived is not None:
                self.view.add_archived(archived)
            p.state = RecordState.CLEAN
            self._drain(p)
            return archived

        echoed = p.echo.equipment if p.echo else None
        if result is None or (echoed is not None and echoed.version > result.version):
            confirmed = echoed
        else:
            confirmed = result

        shown_id = p.record_id
        self._settle(p)
        if confirmed.id != shown_id:
            self._aliases[shown_id] = confirmed.id
        display = confirmed.model_copy(update=p.queued) if p.queued else confirmed
        self._show(shown_id, display)
        self._touch(confirmed.id)
        p.state = RecordState.CLEAN

        following = self._follow_up(p, confirmed)
        if not following:
            for w in p.waiters:
                if not w.done():
                    w.set_result(confirmed)
        self._drain(p)
        if not following and p.delete_after is not None:
            self._send_queued_delete(confirmed.id, p.delete_after)
        return confirmed

    def _follow_up(self, p: PendingMutation, confirmed: EquipmentRecord) -> bool:
        """Send the superseding edits still unsent. Returns True when a request was started."""
        delta = {k: v for k, v in p.queued.items() if getattr(confirmed, k, None) != v}
        if not delta:
            return False

        nxt = PendingMutation(
            'update', confirmed.id, _new_mutation_id(),
            patch=delta, snapshot=confirmed, predicted=confirmed.model_copy(update=delta),
        )
        nxt.waiters = p.waiters
        nxt.delete_after = p.delete_after
        self._begin(nxt)
        task = asyncio.ensure_future(self._run(
            nxt, lambda: self.gateway.update_equipment(confirmed.id, delta, mutation_id=nxt.mutation_id)
        ))
        task.add_done_callback(_retrieve)
        logger.debug(f"Follow-up update for {confirmed.id}: {sorted(delta)}")
        return True

    def _send_queued_delete(self, record_id: str, intent: Tuple[Optional[str], asyncio.Future]) -> None:
        reason, waiter = intent

        def relay(task: asyncio.Task) -> None:
            if waiter.done():
                _retrieve(task)
            elif task.cancelled():
                waiter.cancel()
            elif task.exception() is not None:
                waiter.set_exception(task.exception())
            else:
                waiter.set_result(task.result())

        task = asyncio.ensure_future(self.delete(record_id, reason))
        task.add_done_callback(relay)
        logger.debug(f"Queued delete for {record_id} sent")

    def _fail(self, p: PendingMutation, error: AppError) -> None:
        self._settle(p)
        if p.operation == 'update':
            self.view.replace(p.snapshot)
        elif p.operation == 'delete':
            self.view.insert_at(p.index, p.snapshot)
        else:
            self.view.remove(p.record_id)
            if p.operation == 'restore' and p.archived is not None:
                self.view.add_archived(p.archived, p.archived_index or 0)
        p.state = RecordState.CLEAN

        self.view.record_error(error)
        for w in p.waiters:
            if not w.done():
                w.set_exception(error)
        if p.delete_after is not None and not p.delete_after[1].done():
            p.delete_after[1].set_exception(error)
        logger.warning(f"Rolled back {p.operation} of {p.record_id}: {error.message}")
        self._drain(p)

    def _drain(self, p: PendingMutation) -> None:
        """Apply what arrived for this record while it was pending."""
        events, p.buffered = p.buffered, []
        for event in events:
            self.apply_event(event)
        if p.server_copy is not None:
            copy, p.server_copy = p.server_copy, None
            self._apply_snapshot(copy)

    # ---- channel events ----
    def apply_event(self, event) -> None:
        if isinstance(event, StatsUpdateEvent):
            self.view.set_stats(event.stats)
            return
        if isinstance(event, ActivityUpdateEvent):
            self.view.push_activity(event.activity)
            return

        p = self._echo_target(event)
        if p is not None:
            self._confirm_echo(p, event)
            return
        rid = event.equipment.id
        pending = self.pending.get(rid)
        if pending is not None:
            pending.buffered.append(event)
            self._touch(rid)
            return
        self._apply_external(event)

    def _echo_target(self, event: EquipmentUpdateEvent) -> Optional[PendingMutation]:
        if event.mutation_id:
            p = self._by_mutation.get(event.mutation_id)
            if p is not None and p.operation == event.operation and p.echo is None:
                return p
            return None
        if not self.actor_id or event.actor_id != self.actor_id:
            return None
        for p in self.pending.values():
            if p.echo is None and p.operation == event.operation and self._matches(p, event):
                return p
        return None

    @staticmethod
    def _matches(p: PendingMutation, event: EquipmentUpdateEvent) -> bool:
        rec = event.equipment
        if p.operation == 'delete':
            return rec.id == p.record_id
        if p.operation == 'restore':
            return event.archived is not None and event.archived.id == p.source_id
        if p.operation == 'update' and rec.id != p.record_id:
            return False
        return all(getattr(rec, k, None) == v for k, v in p.patch.items())

    def _confirm_echo(self, p: PendingMutation, event: EquipmentUpdateEvent) -> None:
        p.echo = event
        p.state = RecordState.RECONCILING
        if p.operation == 'delete':
            self.tombstones.add(p.record_id)
            if event.archived is not None:
                self.view.add_archived(event.archived)
            return

        rec = event.equipment
        display = rec.model_copy(update=p.queued) if p.queued else rec
        self._show(p.record_id, display)
        if rec.id != p.record_id:
            self._rekey(p, rec.id)
        if p.operation == 'restore' and event.archived is not None:
            self.view.remove_archived(event.archived.id)

    def _apply_external(self, event: EquipmentUpdateEvent) -> None:
        rec = event.equipment
        rid = rec.id
        if rid in self.tombstones:
            logger.debug(f"Ignoring {event.operation} for deleted equipment {rid}")
            return
        self._touch(rid)

        if event.operation == 'delete':
            self.tombstones.add(rid)
            self.view.remove(rid)
            if event.archived is not None:
                self.view.add_archived(event.archived)
            return

        if event.operation == 'restore' and event.archived is not None:
            self.view.remove_archived(event.archived.id)
        shown = self.view.get(rid)
        if shown is None:
            self.view.insert_front(rec)
        elif rec.version > shown.version:
            self.view.replace(rec)

    def _apply_snapshot(self, rec: EquipmentRecord) -> None:
        if rec.id in self.tombstones:
            return
        shown = self.view.get(rec.id)
        if shown is not None and rec.version > shown.version:
            self.view.replace(rec)

    # ---- full refresh ----
    async def refresh(self) -> List[EquipmentRecord]:
        started = self._seq
        self._refreshing.append(started)
        try:
            records = await self.gateway.list_equipment()
        finally:
            self._refreshing.remove(started)
        self.apply_refresh(records, started)
        return records

    def apply_refresh(self, records: List[EquipmentRecord], started: int) -> None:
        """
        Replace Clean records with the server list. Pending records keep their
        speculative value (the server copy waits until they settle) and records
        touched after ``started`` keep whichever copy is newer.
        """
        fresh: List[EquipmentRecord] = []
        seen = set()
        for rec in records:
            rid = rec.id
            seen.add(rid)
            if rid in self.tombstones:
                continue
            p = self.pending.get(rid)
            if p is not None:
                if p.server_copy is None or rec.version > p.server_copy.version:
                    p.server_copy = rec
                shown = self.view.get(rid)
                if shown is not None:
                    fresh.append(shown)
                continue
            if self._touched.get(rid, 0) > started:
                shown = self.view.get(rid)
                if shown is not None:
                    fresh.append(shown if shown.version >= rec.version else rec)
                continue
            fresh.append(rec)

        extras = [
            r for r in self.view.records
            if r.id not in seen and (r.id in self.pending or self._touched.get(r.id, 0) > started)
        ]
        self.view.replace_all(extras + fresh)
        self._prune(seen, started)

    def _prune(self, listed: Set[str], started: int) -> None:
        """
        Forget bookkeeping nothing can use any more: tombstones for ids the
        server no longer lists, touch marks older than every list request in
        flight, and aliases whose record has left the view.
        """
        self.tombstones = {
            rid for rid in self.tombstones
            if rid in listed or rid in self.pending or self._touched.get(rid, 0) > started
        }
        floor = min(self._refreshing, default=self._seq)
        self._touched = {rid: seq for rid, seq in self._touched.items() if seq > floor or rid in self.pending}
        self._aliases = {
            temp: rid for temp, rid in self._aliases.items()
            if rid in self.pending or self.view.index_of(rid) is not None
        }

    async def refresh_stats(self) -> None:
        self.view.set_stats(await self.gateway.get_stats())

    async def refresh_deleted(self) -> None:
        entries = await self.gateway.list_deleted()
        restoring = {p.source_id for p in self.pending.values() if p.operation == 'restore'}
        self.view.set_deleted([e for e in entries if e.id not in restoring])
