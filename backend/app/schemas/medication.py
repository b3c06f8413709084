from __future__ import annotations

import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from app.schemas.drug import DrugSnapshot


class Medication(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    owner_id: int
    rxcui: str
    created_at: datetime.datetime


class MedicationEntry(BaseModel):
    medication: Medication
    snapshot: DrugSnapshot
    # True when a refresh was due but failed and the old snapshot is served
    degraded: bool = False


class AddResult(BaseModel):
    status: Literal["created", "already_exists", "invalid"]
    medication: Medication | None = None
    snapshot: DrugSnapshot | None = None
    reason: Literal["not_found", "unavailable"] | None = None


class RemoveResult(BaseModel):
    status: Literal["removed", "not_found"]


# HTTP request/response shapes


class AddMedicationRequest(BaseModel):
    rxcui: str = Field(min_length=1, max_length=50)


class MedicationResponse(BaseModel):
    id: int
    rxcui: str
    drug_name: str
    ingredient_base_names: list[str] = Field(default_factory=list)
    dosage_forms: list[str] = Field(default_factory=list)
    added_at: datetime.datetime
    # served from an expired snapshot because RxNorm could not be reached
    degraded: bool = False


class MedicationListResponse(BaseModel):
    message: str
    count: int
    data: list[MedicationResponse] = Field(default_factory=list)
