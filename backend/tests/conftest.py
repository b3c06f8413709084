import datetime
import threading
import time
from contextlib import asynccontextmanager

import pytest
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from app.db.models import Base
from app.db.session import create_session_factory
from app.schemas.drug import DrugLookup, DrugPayload, DrugSnapshot

FIXED_NOW = datetime.datetime(2026, 1, 6, 9, 0, tzinfo=datetime.timezone.utc)

ASPIRIN = DrugPayload(
    name="Aspirin 81 MG Oral Tablet",
    ingredient_base_names=["Aspirin"],
    dosage_forms=["Oral Tablet"],
)


class FixedClock:
    def __init__(self, now: datetime.datetime) -> None:
        self.now = now

    def __call__(self) -> datetime.datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + datetime.timedelta(**kwargs)


class FakeDrugSource:
    """Stands in for RxNormSource; records every fetch."""

    def __init__(self, records: dict[str, DrugPayload] | None = None, delay: float = 0.0) -> None:
        self.records = dict(records or {})
        self.statuses: dict[str, str] = {}
        self.delay = delay
        self.calls: list[str] = []
        self._lock = threading.Lock()

    def fail(self, rxcui: str, status: str = "error") -> None:
        self.statuses[rxcui] = status

    def fetch(self, rxcui: str) -> DrugLookup:
        with self._lock:
            self.calls.append(rxcui)
        if self.delay:
            time.sleep(self.delay)
        status = self.statuses.get(rxcui)
        if status:
            return DrugLookup(rxcui=rxcui, status=status)
        record = self.records.get(rxcui)
        if record is None:
            return DrugLookup(rxcui=rxcui, status="not_found")
        return DrugLookup(rxcui=rxcui, status="ok", record=record)


class FakeSnapshotStore:
    def __init__(self) -> None:
        self.rows: dict[str, DrugSnapshot] = {}
        self.upserts = 0

    async def get(self, rxcui: str) -> DrugSnapshot | None:
        return self.rows.get(rxcui)

    async def upsert(self, rxcui, payload, synced_at) -> DrugSnapshot:
        self.upserts += 1
        current = self.rows.get(rxcui)
        if current is None or current.last_synced_at <= synced_at:
            self.rows[rxcui] = DrugSnapshot(rxcui=rxcui, payload=payload, last_synced_at=synced_at)
        return self.rows[rxcui]

    async def list_stale(self, cutoff, limit) -> list[str]:
        stale = sorted(
            (row for row in self.rows.values() if row.last_synced_at <= cutoff),
            key=lambda row: row.last_synced_at,
        )
        return [row.rxcui for row in stale[:limit]]


@asynccontextmanager
async def sqlite_session_factory():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    try:
        yield create_session_factory(engine)
    finally:
        await engine.dispose()


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(FIXED_NOW)


@pytest.fixture
def database():
    return sqlite_session_factory


@pytest.fixture
def source() -> FakeDrugSource:
    return FakeDrugSource(records={"213269": ASPIRIN})


@pytest.fixture
def fake_store() -> FakeSnapshotStore:
    return FakeSnapshotStore()
