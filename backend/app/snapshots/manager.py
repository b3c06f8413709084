"""Get-or-refresh access to drug snapshots.

``SnapshotCacheManager.ensure_snapshot`` serves a stored snapshot while it is
fresh and otherwise asks RxNorm for the current record and writes it through
to the store. Refreshes of the same RXCUI that overlap in time share a single
upstream call.
"""

from __future__ import annotations

import asyncio
import datetime
import enum
from typing import Callable, Protocol

from pydantic import BaseModel

from app.config.settings import settings
from app.schemas.drug import DrugLookup, DrugPayload, DrugSnapshot
from app.snapshots.freshness import is_stale, utcnow
from app.utils.logging import get_logger

logger = get_logger(__name__)


class SnapshotStore(Protocol):
    async def get(self, rxcui: str) -> DrugSnapshot | None: ...

    async def upsert(
        self, rxcui: str, payload: DrugPayload, synced_at: datetime.datetime
    ) -> DrugSnapshot: ...

    async def list_stale(self, cutoff: datetime.datetime, limit: int) -> list[str]: ...


class DrugSource(Protocol):
    def fetch(self, rxcui: str) -> DrugLookup: ...


class EnsureOutcome(str, enum.Enum):
    HIT = "hit"
    REFRESHED = "refreshed"
    UPSTREAM_INVALID = "upstream_invalid"
    UPSTREAM_UNAVAILABLE = "upstream_unavailable"


class EnsureResult(BaseModel):
    outcome: EnsureOutcome
    snapshot: DrugSnapshot | None = None
    # what the store held before this call, if anything
    previous: DrugSnapshot | None = None

    @property
    def ok(self) -> bool:
        return self.snapshot is not None


class SnapshotCacheManager:
    def __init__(
        self,
        store: SnapshotStore,
        source: DrugSource,
        clock: Callable[[], datetime.datetime] = utcnow,
        stale_after_days: int | None = None,
    ) -> None:
        self.store = store
        self.source = source
        self.clock = clock
        self.stale_after_days = (
            stale_after_days
            if stale_after_days is not None
            else settings.snapshot.ensure_stale_after_days
        )
        self._in_flight: dict[str, asyncio.Task[EnsureResult]] = {}

    async def ensure_snapshot(
        self,
        rxcui: str,
        force_refresh: bool = False,
        stale_after_days: int | None = None,
    ) -> EnsureResult:
        threshold = self.stale_after_days if stale_after_days is None else stale_after_days
        current = await self.store.get(rxcui)
        if current is not None and not force_refresh and not is_stale(current, threshold, self.clock()):
            logger.debug("snapshot_hit", rxcui=rxcui)
            return EnsureResult(outcome=EnsureOutcome.HIT, snapshot=current, previous=current)

        result = await self._refresh_shared(rxcui)
        return result.model_copy(update={"previous": current})

    async def _refresh_shared(self, rxcui: str) -> EnsureResult:
        task = self._in_flight.get(rxcui)
        if task is None:
            task = asyncio.create_task(self._refresh(rxcui))
            self._in_flight[rxcui] = task
            task.add_done_callback(lambda _: self._in_flight.pop(rxcui, None))
        else:
            logger.debug("snapshot_refresh_joined", rxcui=rxcui)
        # One caller going away must not cancel the fetch the others wait on.
        return await asyncio.shield(task)

    async def _refresh(self, rxcui: str) -> EnsureResult:
        lookup = await asyncio.to_thread(self.source.fetch, rxcui)
        if lookup.status == "not_found":
            logger.info("snapshot_upstream_invalid", rxcui=rxcui)
            return EnsureResult(outcome=EnsureOutcome.UPSTREAM_INVALID)
        if lookup.status != "ok" or lookup.record is None:
            logger.warning("snapshot_upstream_unavailable", rxcui=rxcui, status=lookup.status)
            return EnsureResult(outcome=EnsureOutcome.UPSTREAM_UNAVAILABLE)

        snapshot = await self.store.upsert(rxcui, lookup.record, self.clock())
        logger.info("snapshot_refreshed", rxcui=rxcui, last_synced_at=snapshot.last_synced_at.isoformat())
        return EnsureResult(outcome=EnsureOutcome.REFRESHED, snapshot=snapshot)

    def in_flight(self) -> int:
        return len(self._in_flight)
