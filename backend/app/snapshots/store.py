from __future__ import annotations

import datetime

from pydantic import ValidationError
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import async_sessionmaker

from app.db import models
from app.db.session import dialect_insert
from app.schemas.drug import DrugPayload, DrugSnapshot
from app.utils.errors import SnapshotIntegrityError


def as_utc(value: datetime.datetime) -> datetime.datetime:
    # SQLite hands back naive datetimes; everything is stored as UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=datetime.timezone.utc)
    return value.astimezone(datetime.timezone.utc)


def snapshot_from_row(row: models.DrugSnapshot) -> DrugSnapshot:
    try:
        payload = DrugPayload(
            name=row.drug_name,
            ingredient_base_names=row.ingredient_base_names or [],
            dosage_forms=row.dosage_forms or [],
        )
    except ValidationError as exc:
        raise SnapshotIntegrityError(row.rxcui, str(exc)) from exc
    if row.last_synced_at is None:
        raise SnapshotIntegrityError(row.rxcui, "last_synced_at is missing")
    return DrugSnapshot(
        rxcui=row.rxcui,
        payload=payload,
        last_synced_at=as_utc(row.last_synced_at),
    )


class SqlSnapshotStore:
    """Durable snapshot storage keyed by RXCUI.

    Each call runs in its own session. Writes for one key are a single
    ``INSERT ... ON CONFLICT DO UPDATE`` statement, so the database serializes
    them and a reader sees one complete payload or the other.
    """

    def __init__(self, session_factory: async_sessionmaker) -> None:
        self._session_factory = session_factory

    async def get(self, rxcui: str) -> DrugSnapshot | None:
        async with self._session_factory() as session:
            row = await session.get(models.DrugSnapshot, rxcui)
            return snapshot_from_row(row) if row is not None else None

    async def upsert(
        self, rxcui: str, payload: DrugPayload, synced_at: datetime.datetime
    ) -> DrugSnapshot:
        synced_at = as_utc(synced_at)
        async with self._session_factory() as session:
            insert = dialect_insert(session.bind.dialect.name)
            stmt = insert(models.DrugSnapshot).values(
                rxcui=rxcui,
                drug_name=payload.name,
                ingredient_base_names=list(payload.ingredient_base_names),
                dosage_forms=list(payload.dosage_forms),
                last_synced_at=synced_at,
                created_at=synced_at,
                updated_at=synced_at,
            )
            # A refresh that finishes late must not move last_synced_at backwards.
            stmt = stmt.on_conflict_do_update(
                index_elements=[models.DrugSnapshot.rxcui],
                set_={
                    "drug_name": stmt.excluded.drug_name,
                    "ingredient_base_names": stmt.excluded.ingredient_base_names,
                    "dosage_forms": stmt.excluded.dosage_forms,
                    "last_synced_at": stmt.excluded.last_synced_at,
                    "updated_at": stmt.excluded.updated_at,
                },
                where=models.DrugSnapshot.last_synced_at <= stmt.excluded.last_synced_at,
            )
            await session.execute(stmt)
            await session.commit()

            row = await session.get(models.DrugSnapshot, rxcui)
            if row is None:
                raise SnapshotIntegrityError(rxcui, "row missing after upsert")
            return snapshot_from_row(row)

    async def list_stale(self, cutoff: datetime.datetime, limit: int) -> list[str]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(models.DrugSnapshot.rxcui)
                .where(models.DrugSnapshot.last_synced_at <= as_utc(cutoff))
                .order_by(models.DrugSnapshot.last_synced_at.asc())
                .limit(limit)
            )
            return list(result.scalars().all())

    async def delete(self, rxcui: str) -> bool:
        """Purge a snapshot together with every medication that references it."""
        async with self._session_factory() as session:
            await session.execute(
                delete(models.UserMedication).where(models.UserMedication.rxcui == rxcui)
            )
            result = await session.execute(
                delete(models.DrugSnapshot).where(models.DrugSnapshot.rxcui == rxcui)
            )
            await session.commit()
            return bool(result.rowcount)
