import asyncio
import datetime
import io
import json

from sqlalchemy import func, select

from app.db import models
from app.medications.registry import MedicationRegistry
from app.providers.rxnorm import RxNormSource
from app.schemas.drug import DrugPayload
from app.snapshots.manager import SnapshotCacheManager
from app.snapshots.store import SqlSnapshotStore

OLD = DrugPayload(
    name="Aspirin 81 MG Oral Tablet OLD",
    ingredient_base_names=["Old Ingredient"],
    dosage_forms=["Old Form"],
)
NEW = DrugPayload(
    name="Aspirin 81 MG Oral Tablet NEW",
    ingredient_base_names=["New Aspirin"],
    dosage_forms=["New Oral Tablet"],
)


def _registry(session_factory, source, clock) -> MedicationRegistry:
    store = SqlSnapshotStore(session_factory)
    manager = SnapshotCacheManager(store, source, clock=clock, stale_after_days=30)
    return MedicationRegistry(session_factory, manager, list_stale_after_days=10)


async def _count(session_factory, model) -> int:
    async with session_factory() as session:
        result = await session.execute(select(func.count()).select_from(model))
        return int(result.scalar_one())


async def _seed_medication(session_factory, owner_id: int, rxcui: str, payload, synced_at) -> None:
    await SqlSnapshotStore(session_factory).upsert(rxcui, payload, synced_at)
    async with session_factory() as session:
        session.add(models.UserMedication(owner_id=owner_id, rxcui=rxcui, created_at=synced_at))
        await session.commit()


def test_add_creates_medication_and_snapshot(database, source, clock) -> None:
    async def scenario():
        async with database() as session_factory:
            registry = _registry(session_factory, source, clock)
            result = await registry.add(1, "213269")
            return result, await _count(session_factory, models.DrugSnapshot)

    result, snapshots = asyncio.run(scenario())

    assert result.status == "created"
    assert result.medication.owner_id == 1
    assert result.medication.rxcui == "213269"
    assert result.medication.created_at == clock()
    assert result.snapshot.payload.name == "Aspirin 81 MG Oral Tablet"
    assert snapshots == 1


def test_two_owners_share_one_snapshot_and_one_fetch(database, source, clock) -> None:
    async def scenario():
        async with database() as session_factory:
            registry = _registry(session_factory, source, clock)
            first = await registry.add(1, "213269")
            second = await registry.add(2, "213269")
            return (
                first,
                second,
                await _count(session_factory, models.DrugSnapshot),
                await _count(session_factory, models.UserMedication),
            )

    first, second, snapshots, medications = asyncio.run(scenario())

    assert first.status == "created"
    assert second.status == "created"
    assert source.calls == ["213269"]
    assert snapshots == 1
    assert medications == 2
    assert first.snapshot.payload == second.snapshot.payload
    assert first.medication.id != second.medication.id


def test_duplicate_add_reports_existing_medication(database, source, clock) -> None:
    async def scenario():
        async with database() as session_factory:
            registry = _registry(session_factory, source, clock)
            first = await registry.add(1, "213269")
            second = await registry.add(1, "213269")
            return first, second, await _count(session_factory, models.UserMedication)

    first, second, medications = asyncio.run(scenario())

    assert second.status == "already_exists"
    assert second.medication.id == first.medication.id
    assert second.snapshot.payload.name == "Aspirin 81 MG Oral Tablet"
    assert medications == 1
    assert source.calls == ["213269"]


def test_add_race_loser_sees_existing_medication(database, source, clock, monkeypatch) -> None:
    async def scenario():
        async with database() as session_factory:
            registry = _registry(session_factory, source, clock)
            winner = await registry.add(1, "213269")

            original_find = registry._find
            calls = {"count": 0}

            async def find_after_race(owner_id, rxcui):
                calls["count"] += 1
                if calls["count"] == 1:
                    # the pre-check ran before the winner committed
                    return None
                return await original_find(owner_id, rxcui)

            monkeypatch.setattr(registry, "_find", find_after_race)
            loser = await registry.add(1, "213269")
            return winner, loser, await _count(session_factory, models.UserMedication)

    winner, loser, medications = asyncio.run(scenario())

    assert loser.status == "already_exists"
    assert loser.medication.id == winner.medication.id
    assert medications == 1


def test_add_unknown_rxcui_is_rejected(database, source, clock) -> None:
    async def scenario():
        async with database() as session_factory:
            registry = _registry(session_factory, source, clock)
            result = await registry.add(1, "nonexistent-key")
            return (
                result,
                await _count(session_factory, models.DrugSnapshot),
                await _count(session_factory, models.UserMedication),
            )

    result, snapshots, medications = asyncio.run(scenario())

    assert result.status == "invalid"
    assert result.reason == "not_found"
    assert result.medication is None
    assert snapshots == 0
    assert medications == 0


def test_add_during_outage_without_snapshot_is_rejected(database, source, clock) -> None:
    source.fail("213269")

    async def scenario():
        async with database() as session_factory:
            registry = _registry(session_factory, source, clock)
            return await registry.add(1, "213269"), await _count(session_factory, models.UserMedication)

    result, medications = asyncio.run(scenario())

    assert result.status == "invalid"
    assert result.reason == "unavailable"
    assert medications == 0


def test_add_reuses_fresh_snapshot_without_fetch(database, source, clock) -> None:
    async def scenario():
        async with database() as session_factory:
            await SqlSnapshotStore(session_factory).upsert("213269", OLD, clock())
            registry = _registry(session_factory, source, clock)
            return await registry.add(1, "213269")

    result = asyncio.run(scenario())

    assert result.status == "created"
    assert result.snapshot.payload == OLD
    assert source.calls == []


def test_add_refreshes_stale_snapshot(database, source, clock) -> None:
    source.records["213269"] = NEW

    async def scenario():
        async with database() as session_factory:
            await SqlSnapshotStore(session_factory).upsert(
                "213269", OLD, clock() - datetime.timedelta(days=31)
            )
            registry = _registry(session_factory, source, clock)
            result = await registry.add(1, "213269")
            return result, await SqlSnapshotStore(session_factory).get("213269")

    result, stored = asyncio.run(scenario())

    assert result.snapshot.payload == NEW
    assert stored.payload == NEW


def test_list_is_newest_first(database, source, clock) -> None:
    source.records["198440"] = DrugPayload(name="Aspirin 325 MG Oral Tablet")

    async def scenario():
        async with database() as session_factory:
            registry = _registry(session_factory, source, clock)
            await registry.add(1, "213269")
            clock.advance(minutes=5)
            await registry.add(1, "198440")
            await registry.add(2, "213269")
            return await registry.list_for(1)

    entries = asyncio.run(scenario())

    assert [entry.medication.rxcui for entry in entries] == ["198440", "213269"]
    assert all(entry.degraded is False for entry in entries)


def test_list_refreshes_stale_snapshot(database, source, clock) -> None:
    source.records["213269"] = NEW

    async def scenario():
        async with database() as session_factory:
            await _seed_medication(
                session_factory, 1, "213269", OLD, clock() - datetime.timedelta(days=31)
            )
            registry = _registry(session_factory, source, clock)
            entries = await registry.list_for(1)
            return entries, await SqlSnapshotStore(session_factory).get("213269")

    entries, stored = asyncio.run(scenario())

    assert entries[0].snapshot.payload.name == "Aspirin 81 MG Oral Tablet NEW"
    assert entries[0].degraded is False
    assert stored.last_synced_at == clock()


def test_list_serves_stale_snapshot_when_upstream_fails(database, source, clock) -> None:
    source.fail("213269")
    synced_at = clock() - datetime.timedelta(days=31)

    async def scenario():
        async with database() as session_factory:
            await _seed_medication(session_factory, 1, "213269", OLD, synced_at)
            registry = _registry(session_factory, source, clock)
            entries = await registry.list_for(1)
            return entries, await SqlSnapshotStore(session_factory).get("213269")

    entries, stored = asyncio.run(scenario())

    assert len(entries) == 1
    assert entries[0].snapshot.payload == OLD
    assert entries[0].degraded is True
    assert stored.payload == OLD
    assert stored.last_synced_at == synced_at


def test_list_serves_stale_snapshot_when_rxnorm_body_is_malformed(database, clock, monkeypatch) -> None:
    body = json.dumps({"properties": {"rxcui": "213269", "name": 12345}}).encode("utf-8")
    monkeypatch.setattr("app.providers.rxnorm.urlopen", lambda request, timeout=None: io.BytesIO(body))
    source = RxNormSource(base_url="https://rxnav.test/REST", timeout=3)
    synced_at = clock() - datetime.timedelta(days=31)

    async def scenario():
        async with database() as session_factory:
            await _seed_medication(session_factory, 1, "213269", OLD, synced_at)
            registry = _registry(session_factory, source, clock)
            entries = await registry.list_for(1)
            return entries, await SqlSnapshotStore(session_factory).get("213269")

    entries, stored = asyncio.run(scenario())

    assert entries[0].snapshot.payload == OLD
    assert entries[0].degraded is True
    assert stored.last_synced_at == synced_at


def test_list_uses_list_threshold(database, source, clock) -> None:
    source.records["213269"] = NEW

    async def scenario():
        async with database() as session_factory:
            await _seed_medication(
                session_factory, 1, "213269", OLD, clock() - datetime.timedelta(days=9)
            )
            registry = _registry(session_factory, source, clock)
            return await registry.list_for(1)

    entries = asyncio.run(scenario())

    assert entries[0].snapshot.payload == OLD
    assert source.calls == []


def test_remove_missing_medication(database, source, clock) -> None:
    async def scenario():
        async with database() as session_factory:
            registry = _registry(session_factory, source, clock)
            return await registry.remove(1, "999999")

    assert asyncio.run(scenario()).status == "not_found"


def test_remove_keeps_snapshot(database, source, clock) -> None:
    async def scenario():
        async with database() as session_factory:
            registry = _registry(session_factory, source, clock)
            await registry.add(1, "213269")
            result = await registry.remove(1, "213269")
            return (
                result,
                await registry.has(1, "213269"),
                await _count(session_factory, models.DrugSnapshot),
            )

    result, still_has, snapshots = asyncio.run(scenario())

    assert result.status == "removed"
    assert still_has is False
    assert snapshots == 1


def test_remove_other_owners_medication_is_not_found(database, source, clock) -> None:
    async def scenario():
        async with database() as session_factory:
            registry = _registry(session_factory, source, clock)
            await registry.add(2, "213269")
            result = await registry.remove(1, "213269")
            return result, await registry.has(2, "213269")

    result, other_still_has = asyncio.run(scenario())

    assert result.status == "not_found"
    assert other_still_has is True


def test_count_and_purge_owner(database, source, clock) -> None:
    source.records["198440"] = DrugPayload(name="Aspirin 325 MG Oral Tablet")

    async def scenario():
        async with database() as session_factory:
            registry = _registry(session_factory, source, clock)
            await registry.add(1, "213269")
            await registry.add(1, "198440")
            await registry.add(2, "213269")
            before = await registry.count_for(1)
            purged = await registry.purge_owner(1)
            return (
                before,
                purged,
                await registry.count_for(1),
                await registry.count_for(2),
                await _count(session_factory, models.DrugSnapshot),
            )

    before, purged, after, other, snapshots = asyncio.run(scenario())

    assert before == 2
    assert purged == 2
    assert after == 0
    assert other == 1
    assert snapshots == 2
