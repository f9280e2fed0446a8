import pytest

from common.events import EQUIPMENT_UPDATE, STATS_UPDATE, TEAM_JOINED, EquipmentRecord, EquipmentUpdateEvent
from core.websocket import SubscriptionRegistry
from conftest import actor_of


def _event(team_id="crew", name="Sony FX6", version=1, operation="update"):
    record = EquipmentRecord(
        id="eq-1", name=name, category="Camera", location="Cage A", team_id=team_id, version=version,
    )
    return EquipmentUpdateEvent.build(operation, record, actor={"id": "u1", "name": "Alice"})


async def _join(fake_server, sid, user, data=None):
    await fake_server.connect(sid, user.token)
    return await fake_server.join(sid, data if data is not None else {"teamId": user.team_id})


def test_registry_join_moves_between_scopes():
    registry = SubscriptionRegistry()
    registry.connect("s1", {"id": "u1", "name": "Alice", "team_id": "crew"})

    assert registry.join("s1", "crew") is None
    assert registry.join("s1", "other") == "crew"
    assert registry.members("crew") == set()
    assert registry.members("other") == {"s1"}

    registry.leave("s1")
    assert registry.active_scopes() == []
    assert registry.scope_of("s1") is None


async def test_connect_without_token_is_refused(fake_server, broadcaster):
    import socketio

    with pytest.raises(socketio.exceptions.ConnectionRefusedError):
        await fake_server.connect("s1", None)
    with pytest.raises(socketio.exceptions.ConnectionRefusedError):
        await fake_server.connect("s2", "not-a-jwt")
    assert broadcaster.registry.sessions == {}


async def test_join_acknowledges_and_enters_room(fake_server, broadcaster, users):
    ack = await _join(fake_server, "s1", users["alice"])

    assert ack == {"success": True, "teamId": "crew"}
    assert (TEAM_JOINED, {"teamId": "crew"}) in fake_server.delivered["s1"]
    assert broadcaster.registry.members("crew") == {"s1"}
    assert "s1" in fake_server.rooms["team-crew"]


async def test_join_defaults_to_users_team(fake_server, broadcaster, users):
    await fake_server.connect("s1", users["alice"].token)
    ack = await fake_server.join("s1", None)
    assert ack["teamId"] == "crew"


async def test_cannot_join_another_team(fake_server, broadcaster, users):
    ack = await _join(fake_server, "s1", users["carol"], {"teamId": "crew"})

    assert ack["success"] is False
    assert broadcaster.registry.members("crew") == set()


async def test_publish_reaches_every_member_once(fake_server, broadcaster, users):
    await _join(fake_server, "a", users["alice"])
    await _join(fake_server, "b", users["bob"])
    await _join(fake_server, "c", users["carol"])

    count = await broadcaster.publish("crew", _event())

    assert count == 2
    assert len(fake_server.events_for("a")) == 1
    assert len(fake_server.events_for("b")) == 1
    assert fake_server.events_for("c") == []


async def test_publish_order_is_call_order(fake_server, broadcaster, users):
    await _join(fake_server, "a", users["alice"])
    await _join(fake_server, "b", users["bob"])

    for v in (1, 2, 3):
        await broadcaster.publish("crew", _event(version=v))

    for sid in ("a", "b"):
        assert [e["equipment"]["version"] for e in fake_server.events_for(sid)] == [1, 2, 3]


async def test_disconnect_leaves_scope(fake_server, broadcaster, users):
    await _join(fake_server, "a", users["alice"])
    await fake_server.disconnect("a")

    assert broadcaster.registry.sessions == {}
    assert await broadcaster.publish("crew", _event()) == 0
    assert fake_server.events_for("a") == []


async def test_sweep_drops_sessions_the_server_lost(fake_server, broadcaster, users):
    await _join(fake_server, "a", users["alice"])
    await _join(fake_server, "b", users["bob"])
    fake_server.connected.discard("a")

    assert broadcaster.sweep_stale_sessions() == 1
    assert broadcaster.registry.members("crew") == {"b"}


async def test_stats_publish_is_best_effort(fake_server, broadcaster, users, engine):
    from modules.equipment.repo import EquipmentRepo

    await _join(fake_server, "a", users["alice"])
    stats = EquipmentRepo(engine).stats("crew")
    fake_server.fail_emits = True

    await broadcaster.publish_stats("crew", stats)  # does not raise

    fake_server.fail_emits = False
    await broadcaster.publish_stats("crew", stats)
    assert len(fake_server.events_for("a", STATS_UPDATE)) == 1


async def test_activity_broadcast_hides_client_details(fake_server, broadcaster, users, engine):
    from modules.equipment.repo import EquipmentRepo

    await _join(fake_server, "a", users["alice"])
    actor = {**actor_of(users["alice"]), "ip_address": "10.0.0.8", "user_agent": "pytest"}
    entry = EquipmentRepo(engine).create(
        {"name": "Zoom F8n", "category": "Audio", "location": "Bag 3"}, actor,
    ).history

    await broadcaster.publish_activity("crew", entry)

    (payload,) = fake_server.events_for("a", "activity-update")
    assert payload["activity"]["ipAddress"] is None
    assert payload["activity"]["userAgent"] is None
    assert payload["activity"]["actionType"] == "created"


async def test_connection_stats(fake_server, broadcaster, users):
    await _join(fake_server, "a", users["alice"])
    await _join(fake_server, "c", users["carol"])
    assert broadcaster.connection_stats() == {"connected": 2, "scopes": {"crew": 1, "other": 1}}


def test_event_wire_shape_is_camel_case():
    wire = _event().to_wire()
    assert wire["operation"] == "update"
    assert wire["teamId"] == "crew"
    assert wire["actorName"] == "Alice"
    assert wire["equipment"]["isActive"] is True
    assert "serialNumber" in wire["equipment"]
