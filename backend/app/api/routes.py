from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status

from app.config.settings import settings
from app.jobs.queue import enqueue_refresh_sweep
from app.medications.registry import MedicationRegistry
from app.providers.rxnorm import RxNormSource
from app.providers.search import search_drugs
from app.schemas.drug import DrugSearchResponse, DrugSnapshot, RefreshJobResponse
from app.schemas.medication import (
    AddMedicationRequest,
    Medication,
    MedicationListResponse,
    MedicationResponse,
)

router = APIRouter()


def get_registry(request: Request) -> MedicationRegistry:
    return request.app.state.registry


def get_source(request: Request) -> RxNormSource:
    return request.app.state.source


def get_owner_id(x_owner_id: int = Header(..., gt=0)) -> int:
    """Owner id as forwarded by the authenticating gateway."""
    return x_owner_id


def _normalize_rxcui(rxcui: str) -> str:
    return rxcui.strip()


def _medication_response(
    medication: Medication, snapshot: DrugSnapshot, degraded: bool = False
) -> MedicationResponse:
    return MedicationResponse(
        id=medication.id,
        rxcui=medication.rxcui,
        drug_name=snapshot.payload.name,
        ingredient_base_names=list(snapshot.payload.ingredient_base_names),
        dosage_forms=list(snapshot.payload.dosage_forms),
        added_at=medication.created_at,
        degraded=degraded,
    )


@router.get("/health")
def health() -> dict:
    return {"status": "ok"}


@router.get("/drugs/search", response_model=DrugSearchResponse)
def search_drugs_endpoint(
    drug_name: str = Query(..., min_length=2, max_length=255),
    limit: int | None = Query(default=None, ge=1, le=25),
    source: RxNormSource = Depends(get_source),
) -> DrugSearchResponse:
    result = search_drugs(source, drug_name, limit or settings.rxnorm.search_limit)
    if result.status != "ok":
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Failed to fetch drug information.",
        )
    if not result.drugs:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No drugs found matching your search.",
        )
    return DrugSearchResponse(
        message="Drugs retrieved successfully.",
        count=len(result.drugs),
        drugs=result.drugs,
    )


@router.get("/medications", response_model=MedicationListResponse)
async def list_medications(
    owner_id: int = Depends(get_owner_id),
    registry: MedicationRegistry = Depends(get_registry),
) -> MedicationListResponse:
    entries = await registry.list_for(owner_id)
    data = [_medication_response(entry.medication, entry.snapshot, entry.degraded) for entry in entries]
    return MedicationListResponse(
        message="Medications retrieved successfully.",
        count=len(data),
        data=data,
    )


@router.post(
    "/medications",
    response_model=MedicationResponse,
    status_code=status.HTTP_201_CREATED,
)
async def add_medication(
    payload: AddMedicationRequest,
    owner_id: int = Depends(get_owner_id),
    registry: MedicationRegistry = Depends(get_registry),
) -> MedicationResponse:
    rxcui = _normalize_rxcui(payload.rxcui)
    if not rxcui:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="RXCUI is required.",
        )

    result = await registry.add(owner_id, rxcui)
    if result.status == "invalid":
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="Invalid RXCUI. Drug not found in RxNorm database.",
        )
    if result.status == "already_exists":
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={
                "message": "This medication is already in your list.",
                "data": {
                    "id": result.medication.id,
                    "rxcui": result.medication.rxcui,
                    "drug_name": result.snapshot.payload.name,
                },
            },
        )
    return _medication_response(result.medication, result.snapshot)


@router.delete("/medications/{rxcui}")
async def remove_medication(
    rxcui: str,
    owner_id: int = Depends(get_owner_id),
    registry: MedicationRegistry = Depends(get_registry),
) -> dict:
    result = await registry.remove(owner_id, _normalize_rxcui(rxcui))
    if result.status == "not_found":
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Medication not found in your list.",
        )
    return {"message": "Medication removed successfully."}


@router.post("/snapshots/refresh", response_model=RefreshJobResponse)
def refresh_snapshots(
    limit: int | None = Query(default=None, ge=1, le=1000),
) -> RefreshJobResponse:
    job = enqueue_refresh_sweep(limit)
    return RefreshJobResponse(job_id=job.id)
