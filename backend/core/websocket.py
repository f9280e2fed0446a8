"""WebSocket fan-out for real-time equipment sync.
Keeps the team-scope subscription registry and publishes committed mutations
to every socket joined to the affected scope.
"""
import asyncio
import logging
from typing import Any, Dict, List, Optional, Set
from datetime import datetime, timezone

import socketio
from starlette.concurrency import run_in_threadpool

from common.errors import AppError
from common.events import (
    ACTIVITY_UPDATE, EQUIPMENT_UPDATE, JOIN_TEAM, STATS_UPDATE, TEAM_JOINED,
    ActivityUpdateEvent, EquipmentStats, EquipmentUpdateEvent, HistoryEntry, StatsUpdateEvent, utcnow,
)
from core.config import settings

logger = logging.getLogger(__name__)


def _client_manager():
    """Shared backplane so several workers still fan out (and order) per scope."""
    if settings.SOCKETIO_MESSAGE_QUEUE:
        logger.info("Socket.IO using Redis message queue for cross-process fan-out")
        return socketio.AsyncRedisManager(settings.SOCKETIO_MESSAGE_QUEUE)
    return None


def create_socket_server() -> socketio.AsyncServer:
    return socketio.AsyncServer(
        async_mode='asgi',
        cors_allowed_origins='*',
        client_manager=_client_manager(),
        logger=False,
        engineio_logger=False,
        ping_timeout=settings.SOCKETIO_PING_TIMEOUT,
        ping_interval=settings.SOCKETIO_PING_INTERVAL,
        max_http_buffer_size=1000000,  # 1MB buffer for large messages
        allow_upgrades=True,  # Allow upgrade from polling to WebSocket
    )


class SubscriptionRegistry:
    """Which socket is joined to which team scope"""

    def __init__(self):
        # scope -> {sid}
        self.scopes: Dict[str, Set[str]] = {}
        # sid -> {user_id, username, scope, connected_at, last_seen}
        self.sessions: Dict[str, Dict[str, Any]] = {}

    def connect(self, sid: str, user: Dict[str, Any]) -> None:
        now = datetime.now(timezone.utc).isoformat()
        self.sessions[sid] = {
            'user_id': user.get('id'),
            'username': user.get('name'),
            'team_id': user.get('team_id'),
            'scope': None,
            'connected_at': now,
            'last_seen': now,
        }

    def join(self, sid: str, scope: str) -> Optional[str]:
        """Put sid in exactly one scope. Returns the scope it left, if any."""
        session = self.sessions.get(sid)
        if session is None:
            raise KeyError(sid)
        previous = session['scope']
        if previous == scope:
            return None
        if previous is not None:
            self._discard(sid, previous)
        self.scopes.setdefault(scope, set()).add(sid)
        session['scope'] = scope
        session['last_seen'] = datetime.now(timezone.utc).isoformat()
        return previous

    def leave(self, sid: str) -> Optional[Dict[str, Any]]:
        session = self.sessions.pop(sid, None)
        if session and session['scope'] is not None:
            self._discard(sid, session['scope'])
        return session

    def _discard(self, sid: str, scope: str) -> None:
        members = self.scopes.get(scope)
        if members is None:
            return
        members.discard(sid)
        if not members:
            del self.scopes[scope]

    def scope_of(self, sid: str) -> Optional[str]:
        session = self.sessions.get(sid)
        return session['scope'] if session else None

    def members(self, scope: str) -> Set[str]:
        return set(self.scopes.get(scope, ()))

    def active_scopes(self) -> List[str]:
        return [scope for scope, members in self.scopes.items() if members]


class Broadcaster:
    """
    Sole writer to the push channel.

    Publishes for one scope go out one at a time, in call order, so every
    member of a scope sees the same event sequence.
    """

    def __init__(self, server: socketio.AsyncServer, namespace: str = None, registry: SubscriptionRegistry = None):
        self.server = server
        self.namespace = namespace or settings.SOCKETIO_NAMESPACE
        self.registry = registry or SubscriptionRegistry()
        self._locks: Dict[str, asyncio.Lock] = {}

    @staticmethod
    def room_for(scope: str) -> str:
        return f"team-{scope}"

    def _lock_for(self, scope: str) -> asyncio.Lock:
        lock = self._locks.get(scope)
        if lock is None:
            lock = self._locks[scope] = asyncio.Lock()
        return lock

    # ---- membership ----
    async def join(self, sid: str, scope: str) -> None:
        previous = self.registry.join(sid, scope)
        if previous is not None:
            await self.server.leave_room(sid, self.room_for(previous), namespace=self.namespace)
        await self.server.enter_room(sid, self.room_for(scope), namespace=self.namespace)
        logger.info(f"👥 Socket {sid} joined team-{scope}" + (f" (left team-{previous})" if previous else ""))

    async def leave(self, sid: str) -> None:
        session = self.registry.leave(sid)
        if session and session['scope'] is not None:
            await self.server.leave_room(sid, self.room_for(session['scope']), namespace=self.namespace)

    def sweep_stale_sessions(self) -> int:
        """Drop registry entries whose socket the server no longer knows about."""
        stale = [
            sid for sid in list(self.registry.sessions)
            if not self.server.manager.is_connected(sid, self.namespace)
        ]
        for sid in stale:
            self.registry.leave(sid)
        if stale:
            logger.info(f"Cleaned up {len(stale)} stale session(s)")
        return len(stale)

    # ---- publishing ----
    async def publish(self, scope: str, event: EquipmentUpdateEvent) -> int:
        """Deliver a committed mutation to every member of scope. Returns the member count."""
        async with self._lock_for(scope):
            members = len(self.registry.members(scope))
            await self.server.emit(EQUIPMENT_UPDATE, event.to_wire(), room=self.room_for(scope), namespace=self.namespace)
        logger.info(f"📡 Broadcast equipment {event.operation} to team-{scope} ({members} member(s)): {event.equipment.name}")
        return members

    async def publish_stats(self, scope: str, stats: EquipmentStats) -> None:
        """Best effort: stats never gate record correctness."""
        payload = StatsUpdateEvent(stats=stats, timestamp=utcnow(), team_id=scope)
        try:
            async with self._lock_for(scope):
                await self.server.emit(STATS_UPDATE, payload.to_wire(), room=self.room_for(scope), namespace=self.namespace)
        except Exception as e:
            logger.warning(f"Stats broadcast to team-{scope} failed: {e}")

    async def publish_activity(self, scope: str, entry: HistoryEntry) -> None:
        # ip/user agent stay server-side
        entry = entry.model_copy(update={'ip_address': None, 'user_agent': None})
        payload = ActivityUpdateEvent(activity=entry, timestamp=utcnow(), team_id=scope)
        try:
            async with self._lock_for(scope):
                await self.server.emit(ACTIVITY_UPDATE, payload.to_wire(), room=self.room_for(scope), namespace=self.namespace)
        except Exception as e:
            logger.warning(f"Activity broadcast to team-{scope} failed: {e}")

    def connection_stats(self) -> Dict[str, Any]:
        return {
            'connected': len(self.registry.sessions),
            'scopes': {scope: len(members) for scope, members in self.registry.scopes.items()},
        }


def _requested_scope(data: Any) -> Optional[str]:
    if isinstance(data, dict):
        return data.get('teamId') or data.get('team_id')
    if isinstance(data, str) and data.strip():
        return data.strip()
    return None


def register_handlers(server: socketio.AsyncServer, broadcaster: Broadcaster, resolve_user=None) -> None:
    """Wire the /equipment namespace events to a broadcaster."""
    from core.security import user_from_token

    resolve_user = resolve_user or user_from_token
    namespace = broadcaster.namespace

    @server.on('connect', namespace=namespace)
    async def connect(sid, environ, auth=None):
        token = (auth or {}).get('token') if isinstance(auth, dict) else None
        if not token:
            raise socketio.exceptions.ConnectionRefusedError('Authentication required')
        try:
            user = await run_in_threadpool(resolve_user, token)
        except AppError as e:
            raise socketio.exceptions.ConnectionRefusedError(e.message)

        broadcaster.registry.connect(sid, user)
        logger.info(f"🔌 Equipment client connected: {sid} ({user.get('name')})")
        await server.emit('connection_established', {'sid': sid}, to=sid, namespace=namespace)

    @server.on('disconnect', namespace=namespace)
    async def disconnect(sid, *args):
        await broadcaster.leave(sid)
        logger.info(f"🔌 Equipment client disconnected: {sid}")

    @server.on(JOIN_TEAM, namespace=namespace)
    async def join_team(sid, data=None):
        session = broadcaster.registry.sessions.get(sid)
        if session is None:
            return {'success': False, 'message': 'Not connected'}

        scope = _requested_scope(data) or session['team_id'] or settings.DEFAULT_TEAM_ID
        if session['team_id'] and scope != session['team_id']:
            logger.warning(f"Socket {sid} refused join of team-{scope} (member of {session['team_id']})")
            return {'success': False, 'message': 'Not a member of this team'}

        await broadcaster.join(sid, scope)
        await server.emit(TEAM_JOINED, {'teamId': scope}, to=sid, namespace=namespace)
        return {'success': True, 'teamId': scope}


__all__ = ['Broadcaster', 'SubscriptionRegistry', 'create_socket_server', 'register_handlers']
