from __future__ import annotations

import asyncio
import datetime

from app.config.settings import settings
from app.db.session import create_engine, create_session_factory
from app.providers.rxnorm import RxNormSource
from app.snapshots.manager import SnapshotCacheManager
from app.snapshots.store import SqlSnapshotStore
from app.utils.logging import configure_logging, get_logger

logger = get_logger(__name__)


async def sweep_stale_snapshots(manager: SnapshotCacheManager, limit: int) -> dict[str, int]:
    """Force-refresh up to *limit* of the oldest stale snapshots.

    Failed refreshes leave the stored snapshot untouched.
    """
    cutoff = manager.clock() - datetime.timedelta(days=manager.stale_after_days)
    rxcuis = await manager.store.list_stale(cutoff, limit)

    refreshed = 0
    failed = 0
    for rxcui in rxcuis:
        result = await manager.ensure_snapshot(rxcui, force_refresh=True)
        if result.ok:
            refreshed += 1
        else:
            failed += 1
    logger.info("snapshot_sweep_finished", candidates=len(rxcuis), refreshed=refreshed, failed=failed)
    return {"candidates": len(rxcuis), "refreshed": refreshed, "failed": failed}


async def _run(limit: int) -> dict[str, int]:
    engine = create_engine()
    try:
        store = SqlSnapshotStore(create_session_factory(engine))
        manager = SnapshotCacheManager(store, RxNormSource())
        return await sweep_stale_snapshots(manager, limit)
    finally:
        await engine.dispose()


def run_refresh_sweep(limit: int | None = None) -> dict[str, int]:
    configure_logging(settings.log_level, json_output=settings.json_logs)
    return asyncio.run(_run(limit or settings.snapshot.sweep_batch_size))
