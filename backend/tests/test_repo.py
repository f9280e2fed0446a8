from datetime import date, timedelta

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from common.errors import NotFoundError, StoreTransactionError, UniquenessConflict
from modules.equipment.repo import EquipmentRepo
from modules.equipment.tables import deleted_equipment, equipment, equipment_history
from conftest import actor_of


@pytest.fixture
def repo(engine):
    return EquipmentRepo(engine)


def _camera(**overrides):
    fields = {
        "name": "Sony FX6",
        "category": "Camera",
        "location": "Cage A",
        "notes": "Main body",
        "priority": "high",
        "serial_number": "FX6-001",
    }
    fields.update(overrides)
    return fields


def _count(engine, table):
    with engine.connect() as conn:
        return conn.execute(select(func.count()).select_from(table)).scalar_one()


def test_create_stamps_creator_and_starts_at_version_one(repo, users):
    result = repo.create(_camera(), actor_of(users["alice"]))
    rec = result.record

    assert rec.status == "pending"
    assert rec.condition == "good"
    assert rec.version == 1
    assert rec.team_id == "crew"
    assert rec.checked_by == users["alice"].id
    assert rec.checked_by_name == "Alice"
    assert rec.last_checked is not None
    assert result.history.action_type == "created"


def test_duplicate_serial_number_is_a_uniqueness_conflict(repo, users, engine):
    repo.create(_camera(), actor_of(users["alice"]))
    with pytest.raises(UniquenessConflict) as exc:
        repo.create(_camera(name="Second body"), actor_of(users["alice"]))

    assert exc.value.status_code == 409
    assert "Serial number" in exc.value.message
    assert _count(engine, equipment) == 1
    # no audit row for the rejected insert
    assert _count(engine, equipment_history) == 1


def test_status_change_stamps_audit_fields_and_bumps_version(repo, users):
    rec = repo.create(_camera(), actor_of(users["alice"])).record

    result = repo.update(rec.id, {"status": "checked"}, actor_of(users["bob"]))

    assert result.record.status == "checked"
    assert result.record.checked_by == users["bob"].id
    assert result.record.checked_by_name == "Bob"
    assert result.record.last_checked >= rec.last_checked
    assert result.record.version == 2
    assert result.history.action_type == "status_changed"


def test_plain_update_keeps_checker(repo, users):
    rec = repo.create(_camera(), actor_of(users["alice"])).record

    result = repo.update(rec.id, {"location": "Truck 2"}, actor_of(users["bob"]))

    assert result.record.location == "Truck 2"
    assert result.record.checked_by == users["alice"].id
    assert result.history.action_type == "updated"


def test_update_is_scoped_to_the_actors_team(repo, users):
    rec = repo.create(_camera(), actor_of(users["alice"])).record
    with pytest.raises(NotFoundError):
        repo.update(rec.id, {"location": "Elsewhere"}, actor_of(users["carol"]))


def test_archive_restore_round_trip(repo, users, engine):
    alice, bob = actor_of(users["alice"]), actor_of(users["bob"])
    original = repo.create(_camera(is_reserved=True), alice).record
    original = repo.update(
        original.id, {"status": "issue", "condition": "fair", "is_reserved": True, "reserved_by": "Dana"}, alice,
    ).record

    archived = repo.archive(original.id, bob, reason="Sent for repair")
    assert archived.record.id == original.id
    assert archived.archived.original_equipment_id == original.id
    assert archived.archived.deletion_reason == "Sent for repair"
    assert archived.archived.deleted_by_name == "Bob"
    assert _count(engine, equipment) == 0
    assert _count(engine, deleted_equipment) == 1

    restored = repo.restore(archived.archived.id, bob).record

    assert restored.id != original.id
    for field in ("name", "category", "location", "notes", "priority", "serial_number"):
        assert getattr(restored, field) == getattr(original, field)
    assert restored.status == "issue"
    assert restored.condition == "fair"
    assert restored.is_reserved is False
    assert restored.reserved_by is None
    assert restored.reserved_until is None
    assert restored.last_checked > original.last_checked
    assert restored.checked_by == users["bob"].id
    assert restored.version == 1
    assert _count(engine, deleted_equipment) == 0
    assert repo.list_archived("crew") == []


def test_archive_missing_record(repo, users):
    with pytest.raises(NotFoundError):
        repo.archive("does-not-exist", actor_of(users["alice"]))


def test_archive_is_atomic(repo, users, engine, monkeypatch):
    rec = repo.create(_camera(), actor_of(users["alice"])).record

    def broken_history(*args, **kwargs):
        raise OperationalError("INSERT INTO equipment_history", {}, Exception("disk I/O error"))

    monkeypatch.setattr(repo, "_log_history", broken_history)
    with pytest.raises(StoreTransactionError):
        repo.archive(rec.id, actor_of(users["alice"]))

    # archive insert and active delete were rolled back together
    assert _count(engine, deleted_equipment) == 0
    assert repo.get(rec.id, "crew").id == rec.id


def test_restore_is_atomic(repo, users, engine, monkeypatch):
    alice = actor_of(users["alice"])
    rec = repo.create(_camera(), alice).record
    archived = repo.archive(rec.id, alice).archived

    def broken_history(*args, **kwargs):
        raise OperationalError("INSERT INTO equipment_history", {}, Exception("disk I/O error"))

    monkeypatch.setattr(repo, "_log_history", broken_history)
    with pytest.raises(StoreTransactionError):
        repo.restore(archived.id, alice)

    # new active row and archive purge were rolled back together
    assert _count(engine, equipment) == 0
    assert [a.id for a in repo.list_archived("crew")] == [archived.id]

    monkeypatch.undo()
    assert repo.restore(archived.id, alice).record.name == "Sony FX6"


def test_restore_twice_is_not_found(repo, users):
    alice = actor_of(users["alice"])
    rec = repo.create(_camera(), alice).record
    archived = repo.archive(rec.id, alice).archived
    repo.restore(archived.id, alice)

    with pytest.raises(NotFoundError):
        repo.restore(archived.id, alice)


def test_list_filters_and_recency_order(repo, users):
    alice = actor_of(users["alice"])
    a = repo.create(_camera(name="Aputure 600d", category="Lighting", serial_number=None), alice).record
    b = repo.create(_camera(name="Zoom F8n", category="Audio", serial_number=None, notes="Bag 3"), alice).record
    repo.update(a.id, {"notes": "Bag 3 spare"}, alice)

    assert [r.id for r in repo.list_equipment("crew")] == [a.id, b.id]
    assert [r.id for r in repo.list_equipment("crew", category="Audio")] == [b.id]
    assert {r.id for r in repo.list_equipment("crew", search="bag 3")} == {a.id, b.id}
    assert repo.list_equipment("other") == []


def test_stats_counts(repo, users):
    alice = actor_of(users["alice"])
    repo.create(_camera(serial_number=None, priority="critical"), alice)
    soon = repo.create(
        _camera(name="Rode NTG", category="Audio", serial_number=None, warranty_expiry=date.today() + timedelta(days=10)),
        alice,
    ).record
    repo.update(soon.id, {"status": "checked", "is_reserved": True}, alice)

    stats = repo.stats("crew")

    assert stats.overview.total == 2
    assert stats.overview.checked == 1
    assert stats.overview.pending == 1
    assert stats.overview.reserved == 1
    assert stats.overview.critical == 1
    assert stats.overview.warranty_expiring == 1
    assert {c.category: c.count for c in stats.categories} == {"Audio": 1, "Camera": 1}
    assert stats.recent_activity == 3


def test_purge_archived(repo, users, engine):
    alice = actor_of(users["alice"])
    rec = repo.create(_camera(), alice).record
    archived = repo.archive(rec.id, alice).archived

    repo.purge_archived(archived.id, "crew")

    assert _count(engine, deleted_equipment) == 0
    with pytest.raises(NotFoundError):
        repo.purge_archived(archived.id, "crew")
