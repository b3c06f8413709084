from __future__ import annotations

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import async_sessionmaker

from app.config.settings import settings
from app.db import models
from app.db.session import dialect_insert
from app.schemas.drug import DrugSnapshot
from app.schemas.medication import AddResult, Medication, MedicationEntry, RemoveResult
from app.snapshots.freshness import is_stale
from app.snapshots.manager import EnsureOutcome, SnapshotCacheManager
from app.snapshots.store import as_utc, snapshot_from_row
from app.utils.errors import RxSnapshotError
from app.utils.logging import get_logger

logger = get_logger(__name__)


def medication_from_row(row: models.UserMedication) -> Medication:
    return Medication(
        id=row.id,
        owner_id=row.owner_id,
        rxcui=row.rxcui,
        created_at=as_utc(row.created_at),
    )


class MedicationRegistry:
    """Owner -> RXCUI links, read through the snapshot cache.

    Removing a medication never touches the snapshot it points at; snapshots
    are shared between owners.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        manager: SnapshotCacheManager,
        list_stale_after_days: int | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._manager = manager
        self.list_stale_after_days = (
            list_stale_after_days
            if list_stale_after_days is not None
            else settings.snapshot.list_stale_after_days
        )

    def _pair_query(self, owner_id: int):
        return (
            select(models.UserMedication, models.DrugSnapshot)
            .join(models.DrugSnapshot, models.UserMedication.rxcui == models.DrugSnapshot.rxcui)
            .where(models.UserMedication.owner_id == owner_id)
        )

    async def _find(self, owner_id: int, rxcui: str) -> tuple[Medication, DrugSnapshot] | None:
        async with self._session_factory() as session:
            result = await session.execute(
                self._pair_query(owner_id).where(models.UserMedication.rxcui == rxcui)
            )
            row = result.first()
        if row is None:
            return None
        medication_row, snapshot_row = row
        return medication_from_row(medication_row), snapshot_from_row(snapshot_row)

    async def list_for(self, owner_id: int) -> list[MedicationEntry]:
        async with self._session_factory() as session:
            result = await session.execute(
                self._pair_query(owner_id).order_by(
                    models.UserMedication.created_at.desc(),
                    models.UserMedication.id.desc(),
                )
            )
            rows = result.all()

        entries: list[MedicationEntry] = []
        for medication_row, snapshot_row in rows:
            medication = medication_from_row(medication_row)
            snapshot = snapshot_from_row(snapshot_row)
            degraded = False
            if is_stale(snapshot, self.list_stale_after_days, self._manager.clock()):
                ensured = await self._manager.ensure_snapshot(
                    snapshot.rxcui, stale_after_days=self.list_stale_after_days
                )
                if ensured.snapshot is not None:
                    snapshot = ensured.snapshot
                else:
                    degraded = True
                    logger.warning(
                        "medication_snapshot_degraded",
                        owner_id=owner_id,
                        rxcui=snapshot.rxcui,
                        outcome=ensured.outcome.value,
                    )
            entries.append(MedicationEntry(medication=medication, snapshot=snapshot, degraded=degraded))
        return entries

    async def add(self, owner_id: int, rxcui: str) -> AddResult:
        existing = await self._find(owner_id, rxcui)
        if existing is not None:
            medication, snapshot = existing
            return AddResult(status="already_exists", medication=medication, snapshot=snapshot)

        ensured = await self._manager.ensure_snapshot(rxcui)
        if ensured.snapshot is None:
            reason = "not_found" if ensured.outcome is EnsureOutcome.UPSTREAM_INVALID else "unavailable"
            logger.info("medication_add_rejected", owner_id=owner_id, rxcui=rxcui, reason=reason)
            return AddResult(status="invalid", reason=reason)

        async with self._session_factory() as session:
            insert = dialect_insert(session.bind.dialect.name)
            stmt = insert(models.UserMedication).values(
                owner_id=owner_id,
                rxcui=rxcui,
                created_at=self._manager.clock(),
            )
            # Concurrent adds of the same pair: exactly one row wins.
            stmt = stmt.on_conflict_do_nothing(index_elements=["owner_id", "rxcui"])
            result = await session.execute(stmt)
            await session.commit()
            created = bool(result.rowcount)

        found = await self._find(owner_id, rxcui)
        if found is None:
            raise RxSnapshotError(f"medication {owner_id}/{rxcui} missing after insert")
        medication, stored_snapshot = found
        if not created:
            return AddResult(status="already_exists", medication=medication, snapshot=stored_snapshot)

        logger.info("medication_added", owner_id=owner_id, rxcui=rxcui, medication_id=medication.id)
        return AddResult(status="created", medication=medication, snapshot=ensured.snapshot)

    async def remove(self, owner_id: int, rxcui: str) -> RemoveResult:
        async with self._session_factory() as session:
            result = await session.execute(
                delete(models.UserMedication).where(
                    models.UserMedication.owner_id == owner_id,
                    models.UserMedication.rxcui == rxcui,
                )
            )
            await session.commit()
            removed = bool(result.rowcount)
        if not removed:
            return RemoveResult(status="not_found")
        logger.info("medication_removed", owner_id=owner_id, rxcui=rxcui)
        return RemoveResult(status="removed")

    async def has(self, owner_id: int, rxcui: str) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(
                select(models.UserMedication.id).where(
                    models.UserMedication.owner_id == owner_id,
                    models.UserMedication.rxcui == rxcui,
                )
            )
            return result.first() is not None

    async def count_for(self, owner_id: int) -> int:
        async with self._session_factory() as session:
            result = await session.execute(
                select(func.count(models.UserMedication.id)).where(
                    models.UserMedication.owner_id == owner_id
                )
            )
            return int(result.scalar_one())

    async def purge_owner(self, owner_id: int) -> int:
        """Drop every medication of a deleted owner. Snapshots stay."""
        async with self._session_factory() as session:
            result = await session.execute(
                delete(models.UserMedication).where(models.UserMedication.owner_id == owner_id)
            )
            await session.commit()
            return int(result.rowcount or 0)
