from __future__ import annotations
from typing import Any, Dict, Optional
import asyncio
import logging

from common.errors import TransientChannelError
from common.events import ArchivedEquipmentRecord, EquipmentRecord
from .cache import DEGRADED, HEALTHY, LocalView
from .channel import ChannelConnected, ChannelConnectError, ChannelDisconnected, SubscriptionChannel
from .config import ClientSettings, client_settings
from .gateway import GatewayClient
from .poller import Poller
from .reconciler import Reconciler

logger = logging.getLogger(__name__)


class SyncSession:
    """
    One signed-in client: the local view kept in step with the server through
    the subscription channel, with polling as the fallback.

    Every (re)connect triggers a full resync since nothing is replayed for the
    time the channel was down.
    """

    def __init__(
        self,
        gateway: GatewayClient,
        channel,
        *,
        actor_id: Optional[str] = None,
        team_id: str = "global",
        settings: Optional[ClientSettings] = None,
    ):
        self.settings = settings or client_settings
        self.gateway = gateway
        self.channel = channel
        self.view = LocalView(activity_size=self.settings.ACTIVITY_FEED_SIZE)
        self.reconciler = Reconciler(self.view, gateway, actor_id=actor_id, team_id=team_id)
        self.poller = Poller(self.reconciler, self.settings)
        self._consumer: Optional[asyncio.Task] = None
        self.resyncs = 0
        self.channel_failures = 0

    @classmethod
    async def login(
        cls,
        phone: str,
        *,
        base_url: Optional[str] = None,
        settings: Optional[ClientSettings] = None,
    ) -> "SyncSession":
        settings = settings or client_settings
        gateway = GatewayClient(base_url, settings=settings)
        body = await gateway.login(phone)
        user = body["user"]
        team_id = settings.TEAM_ID or user["teamId"]
        channel = SubscriptionChannel(body["token"], team_id, base_url=base_url, settings=settings)
        return cls(gateway, channel, actor_id=user["id"], team_id=team_id, settings=settings)

    # ---- lifecycle ----
    async def start(self) -> None:
        self.poller.set_degraded(True)
        await self.resync()
        self.poller.start()
        self._consumer = asyncio.create_task(self._consume())

    async def close(self) -> None:
        await self.channel.close()
        if self._consumer is not None:
            try:
                await asyncio.wait_for(self._consumer, timeout=5)
            except asyncio.TimeoutError:
                self._consumer.cancel()
        await self.poller.stop()
        await self.gateway.aclose()

    async def __aenter__(self) -> "SyncSession":
        await self.start()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    async def resync(self) -> None:
        """Full refresh of everything the view holds. Failures leave polling to catch up."""
        self.resyncs += 1
        for refresh in (self.reconciler.refresh, self.reconciler.refresh_stats, self.reconciler.refresh_deleted):
            try:
                await refresh()
            except Exception as e:
                logger.warning(f"Resync step {refresh.__name__} failed: {e}")

    async def _consume(self) -> None:
        async for event in self.channel:
            await self.handle(event)

    async def handle(self, event) -> None:
        if isinstance(event, ChannelConnected):
            self.channel_failures = 0
            self._set_connectivity(HEALTHY)
            if event.reconnect:
                logger.info("🔄 Channel reconnected, resynchronizing")
            await self.resync()
        elif isinstance(event, ChannelDisconnected):
            self._set_connectivity(DEGRADED)
        elif isinstance(event, ChannelConnectError):
            self._set_connectivity(DEGRADED)
            self.channel_failures += 1
            if self.channel_failures == self.settings.CHANNEL_ERROR_THRESHOLD:
                self.view.record_error(TransientChannelError(f"Live updates unavailable: {event.message}"))
        else:
            self.reconciler.apply_event(event)

    def _set_connectivity(self, state: str) -> None:
        if self.view.set_connectivity(state):
            self.poller.set_degraded(state == DEGRADED)
            logger.info(f"Connectivity is now {state}")

    # ---- user actions ----
    async def create(self, fields: Dict[str, Any]) -> EquipmentRecord:
        return await self.reconciler.create(fields)

    async def update(self, record_id: str, patch: Dict[str, Any]) -> EquipmentRecord:
        return await self.reconciler.update(record_id, patch)

    async def delete(self, record_id: str, reason: Optional[str] = None) -> ArchivedEquipmentRecord:
        return await self.reconciler.delete(record_id, reason)

    async def restore(self, archived_id: str) -> EquipmentRecord:
        return await self.reconciler.restore(archived_id)

    async def purge(self, archived_id: str) -> None:
        await self.reconciler.purge(archived_id)
