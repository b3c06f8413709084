from __future__ import annotations

import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


LookupStatus = Literal["ok", "not_found", "error", "rate_limited"]
SearchStatus = Literal["ok", "error", "rate_limited"]


class DrugPayload(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    ingredient_base_names: list[str] = Field(default_factory=list)
    dosage_forms: list[str] = Field(default_factory=list)


class DrugSnapshot(BaseModel):
    """Last known RxNorm record for one RXCUI."""

    model_config = ConfigDict(frozen=True)

    rxcui: str
    payload: DrugPayload
    last_synced_at: datetime.datetime


class DrugLookup(BaseModel):
    rxcui: str
    status: LookupStatus
    record: DrugPayload | None = None

    @property
    def unavailable(self) -> bool:
        return self.status in ("error", "rate_limited")


class DrugSearchHit(BaseModel):
    rxcui: str
    name: str
    ingredient_base_names: list[str] = Field(default_factory=list)
    dosage_forms: list[str] = Field(default_factory=list)


class DrugSearchResult(BaseModel):
    term: str
    limit: int
    status: SearchStatus = "ok"
    drugs: list[DrugSearchHit] = Field(default_factory=list)


class DrugSearchResponse(BaseModel):
    message: str
    count: int
    drugs: list[DrugSearchHit] = Field(default_factory=list)


class RefreshJobResponse(BaseModel):
    job_id: str
    status: str = "queued"
