import asyncio

import pytest

from common.errors import TransientChannelError
from sync_client.cache import DEGRADED, HEALTHY
from sync_client.channel import ChannelConnected, ChannelConnectError, ChannelDisconnected
from sync_client.config import ClientSettings
from sync_client.gateway import NetworkError
from sync_client.poller import Poller, RefreshTimer
from sync_client.session import SyncSession


class Counter:
    def __init__(self):
        self.runs = 0

    async def __call__(self):
        self.runs += 1


def test_default_cadence_tightens_when_degraded():
    poller = Poller(_NullReconciler(), ClientSettings())

    healthy = poller.intervals()
    assert healthy == {"equipment": 15, "stats": 20, "deleted": 30}

    poller.set_degraded(True)
    degraded = poller.intervals()
    assert degraded == {"equipment": 5, "stats": 10, "deleted": 15}
    assert all(degraded[k] < healthy[k] for k in healthy)

    poller.set_degraded(False)
    assert poller.intervals() == healthy


def test_degraded_must_be_faster():
    with pytest.raises(ValueError):
        RefreshTimer("bad", Counter(), healthy=5, degraded=5)


async def test_timer_runs_more_often_while_degraded():
    action = Counter()
    timer = RefreshTimer("equipment", action, healthy=0.5, degraded=0.02)
    timer.start()
    try:
        await asyncio.sleep(0.2)
        assert action.runs == 0

        timer.set_degraded(True)
        await asyncio.sleep(0.2)
        degraded_runs = action.runs
        assert degraded_runs >= 3

        timer.set_degraded(False)
        await asyncio.sleep(0.2)
        assert action.runs <= degraded_runs + 1
    finally:
        await timer.stop()


async def test_failing_refresh_keeps_polling():
    calls = []

    async def flaky():
        calls.append(1)
        raise RuntimeError("server unreachable")

    timer = RefreshTimer("stats", flaky, healthy=1, degraded=0.02)
    timer.set_degraded(True)
    timer.start()
    try:
        await asyncio.sleep(0.15)
    finally:
        await timer.stop()
    assert len(calls) >= 2


class _NullReconciler:
    async def refresh(self):
        pass

    async def refresh_stats(self):
        pass

    async def refresh_deleted(self):
        pass


class _IdleGateway:
    async def list_equipment(self):
        return []

    async def list_deleted(self):
        return []

    async def get_stats(self):
        raise NetworkError()


async def test_session_switches_cadence_with_channel_state():
    settings = ClientSettings(CHANNEL_ERROR_THRESHOLD=3)
    session = SyncSession(_IdleGateway(), channel=None, actor_id="u1", team_id="crew", settings=settings)
    assert session.view.connectivity == DEGRADED

    await session.handle(ChannelConnected(team_id="crew"))
    assert session.view.connectivity == HEALTHY
    assert session.poller.intervals()["stats"] == settings.POLL_STATS_HEALTHY
    assert session.resyncs == 1

    await session.handle(ChannelDisconnected(reason="transport close"))
    assert session.view.connectivity == DEGRADED
    assert session.poller.intervals()["stats"] == settings.POLL_STATS_DEGRADED
    assert session.view.last_error is None

    for _ in range(3):
        await session.handle(ChannelConnectError(message="refused"))
    assert isinstance(session.view.last_error, TransientChannelError)

    await session.handle(ChannelConnected(team_id="crew", reconnect=True))
    assert session.channel_failures == 0
    assert session.resyncs == 2
