from __future__ import annotations

import datetime

from app.schemas.drug import DrugSnapshot


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def is_stale(
    snapshot: DrugSnapshot,
    stale_after_days: int,
    now: datetime.datetime | None = None,
) -> bool:
    """Return True once *stale_after_days* have elapsed since the last sync.

    The boundary is inclusive: a snapshot exactly *stale_after_days* old is
    stale.
    """
    current = now or utcnow()
    return current >= snapshot.last_synced_at + datetime.timedelta(days=stale_after_days)
