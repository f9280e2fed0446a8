"""
Subscription channel: one Socket.IO connection to the /equipment namespace,
joined to a single team scope, exposed as an ordered async stream of typed
events. Connection state changes travel in the same stream as data events.
"""
from __future__ import annotations
from dataclasses import dataclass
from typing import Any, AsyncIterator, Optional, Union
import asyncio
import logging
import random

import socketio
from pydantic import ValidationError as PydanticValidationError

from common.events import (
    ACTIVITY_UPDATE, EQUIPMENT_UPDATE, JOIN_TEAM, STATS_UPDATE, TEAM_JOINED,
    ActivityUpdateEvent, EquipmentUpdateEvent, StatsUpdateEvent,
)
from .config import ClientSettings, client_settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChannelConnected:
    team_id: str
    reconnect: bool = False


@dataclass(frozen=True)
class ChannelDisconnected:
    reason: Optional[str] = None


@dataclass(frozen=True)
class ChannelConnectError:
    message: str


ChannelEvent = Union[
    ChannelConnected, ChannelDisconnected, ChannelConnectError,
    EquipmentUpdateEvent, StatsUpdateEvent, ActivityUpdateEvent,
]

_CLOSED = object()

_PAYLOADS = {
    EQUIPMENT_UPDATE: EquipmentUpdateEvent,
    STATS_UPDATE: StatsUpdateEvent,
    ACTIVITY_UPDATE: ActivityUpdateEvent,
}


class SubscriptionChannel:
    """
    Lazy: nothing connects until iteration starts (or ``start()`` is called).
    Restartable: ``start()`` after ``close()`` opens a fresh stream.
    ``close()`` ends any running iteration.
    """

    def __init__(
        self,
        token: str,
        team_id: str,
        *,
        base_url: Optional[str] = None,
        settings: Optional[ClientSettings] = None,
        client: Optional[Any] = None,
    ):
        self.settings = settings or client_settings
        self.token = token
        self.team_id = team_id
        self.url = (base_url or self.settings.BASE_URL).rstrip("/")
        self.namespace = self.settings.NAMESPACE
        self.sio = client or socketio.AsyncClient(
            reconnection=True,
            reconnection_delay=self.settings.RECONNECT_DELAY,
            reconnection_delay_max=self.settings.RECONNECT_DELAY_MAX,
            randomization_factor=self.settings.RECONNECT_JITTER,
            logger=False,
            engineio_logger=False,
        )
        self._queue: asyncio.Queue = asyncio.Queue()
        self._connect_task: Optional[asyncio.Task] = None
        self._started = False
        self._closed = False
        self._joined_before = False
        self._register()

    # ---- socket.io wiring ----
    def _register(self) -> None:
        ns = self.namespace
        self.sio.on("connect", self._on_connect, namespace=ns)
        self.sio.on("disconnect", self._on_disconnect, namespace=ns)
        self.sio.on("connect_error", self._on_connect_error, namespace=ns)
        self.sio.on(TEAM_JOINED, self._on_team_joined, namespace=ns)
        for name in _PAYLOADS:
            self.sio.on(name, self._payload_handler(name), namespace=ns)

    async def _on_connect(self):
        # Membership is explicit: the server only fans out after join-team
        await self.sio.emit(JOIN_TEAM, {"teamId": self.team_id}, namespace=self.namespace)

    async def _on_team_joined(self, data=None):
        team_id = (data or {}).get("teamId", self.team_id) if isinstance(data, dict) else self.team_id
        self._put(ChannelConnected(team_id=team_id, reconnect=self._joined_before))
        self._joined_before = True
        logger.info(f"🔌 Subscribed to team-{team_id}")

    async def _on_disconnect(self, *args):
        reason = str(args[0]) if args else None
        self._put(ChannelDisconnected(reason=reason))
        logger.warning(f"Equipment channel disconnected ({reason or 'unknown'})")

    async def _on_connect_error(self, data=None):
        message = data.get("message") if isinstance(data, dict) else str(data or "connection refused")
        self._put(ChannelConnectError(message=message))
        logger.warning(f"Equipment channel connect error: {message}")

    def _payload_handler(self, name: str):
        model = _PAYLOADS[name]

        async def handler(data):
            try:
                self._put(model.model_validate(data))
            except PydanticValidationError as e:
                logger.warning(f"Dropping malformed {name} payload: {e}")

        return handler

    def _put(self, item) -> None:
        if not self._closed:
            self._queue.put_nowait(item)

    # ---- lifecycle ----
    async def start(self) -> None:
        if self._started and not self._closed:
            return
        if self._closed:
            self._queue = asyncio.Queue()
        self._started, self._closed = True, False
        self._joined_before = False
        self._connect_task = asyncio.create_task(self._connect_loop())

    async def _connect_loop(self) -> None:
        """
        First connection, retried with exponential backoff and jitter.
        Once connected, python-socketio owns reconnection.
        """
        delay = self.settings.RECONNECT_DELAY
        while not self._closed:
            try:
                await self.sio.connect(
                    self.url,
                    auth={"token": self.token},
                    namespaces=[self.namespace],
                    socketio_path=self.settings.SOCKETIO_PATH,
                    wait_timeout=self.settings.CONNECT_TIMEOUT,
                )
                return
            except socketio.exceptions.ConnectionError as e:
                # The client already fired connect_error for this attempt
                logger.debug(f"Connect attempt failed, retrying: {e}")
                jitter = 1 + random.uniform(-self.settings.RECONNECT_JITTER, self.settings.RECONNECT_JITTER)
                await asyncio.sleep(delay * jitter)
                delay = min(delay * 2, self.settings.RECONNECT_DELAY_MAX)

    async def close(self) -> None:
        if self._closed:
            return
        self._queue.put_nowait(_CLOSED)
        self._closed = True
        if self._connect_task is not None and not self._connect_task.done():
            self._connect_task.cancel()
        try:
            await self.sio.disconnect()
        except Exception as e:
            logger.debug(f"Ignoring error while closing channel: {e}")

    # ---- iteration ----
    async def events(self) -> AsyncIterator[ChannelEvent]:
        await self.start()
        queue = self._queue
        while True:
            item = await queue.get()
            if item is _CLOSED:
                return
            yield item

    def __aiter__(self) -> AsyncIterator[ChannelEvent]:
        return self.events()
