from __future__ import annotations

import json
import socket
from http.client import HTTPException
from typing import Any
from urllib.error import HTTPError, URLError
from urllib.parse import quote, urlencode
from urllib.request import Request, urlopen

from pydantic import ValidationError

from app.config.settings import settings
from app.schemas.drug import DrugLookup, DrugPayload, DrugSearchHit, DrugSearchResult
from app.utils.logging import get_logger

logger = get_logger(__name__)

_PROPERTIES_PATH = "/rxcui/{rxcui}/properties.json"
_HISTORY_PATH = "/rxcui/{rxcui}/historystatus.json"
_DRUGS_PATH = "/drugs.json"
_BRANDED_DRUG_TTY = "SBD"


def _unique(values: list[Any]) -> list[str]:
    seen: list[str] = []
    for value in values:
        if isinstance(value, str) and value and value not in seen:
            seen.append(value)
    return seen


def _as_list(value: Any) -> list:
    return value if isinstance(value, list) else []


def extract_ingredient_base_names(features: dict) -> list[str]:
    items = _as_list(features.get("ingredientAndStrength"))
    return _unique([item.get("baseName") for item in items if isinstance(item, dict)])


def extract_dosage_forms(features: dict) -> list[str]:
    items = _as_list(features.get("doseFormGroupConcept"))
    return _unique([item.get("doseFormGroupName") for item in items if isinstance(item, dict)])


class RxNormSource:
    """Blocking client for the NLM RxNorm REST API.

    Every transport failure, non-2xx status and malformed body is folded into
    a ``status`` value on the returned model; nothing here raises.
    """

    def __init__(self, base_url: str | None = None, timeout: float | None = None) -> None:
        self.base_url = (base_url or settings.rxnorm.base_url).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.rxnorm.timeout_seconds

    def _build_url(self, path: str, params: dict[str, str] | None = None) -> str:
        url = f"{self.base_url}{path}"
        if params:
            url = f"{url}?{urlencode(params)}"
        return url

    def _get_json(self, path: str, params: dict[str, str] | None = None) -> tuple[str, Any]:
        request = Request(self._build_url(path, params), headers={"Accept": "application/json"})
        try:
            with urlopen(request, timeout=self.timeout) as response:
                body = response.read().decode("utf-8")
            return "ok", json.loads(body)
        except HTTPError as exc:
            if exc.code == 404:
                return "not_found", None
            status = "rate_limited" if exc.code == 429 else "error"
            logger.warning("rxnorm_http_error", path=path, code=exc.code)
            return status, None
        except (
            URLError,
            HTTPException,
            ConnectionError,
            TimeoutError,
            socket.timeout,
            json.JSONDecodeError,
            UnicodeDecodeError,
        ) as exc:
            logger.warning("rxnorm_request_failed", path=path, error=str(exc))
            return "error", None

    def _definitional_features(self, rxcui: str) -> tuple[str, dict]:
        status, payload = self._get_json(_HISTORY_PATH.format(rxcui=quote(rxcui, safe="")))
        if status != "ok":
            return status, {}
        if not isinstance(payload, dict):
            return "error", {}
        history = payload.get("rxcuiStatusHistory") or {}
        features = history.get("definitionalFeatures") if isinstance(history, dict) else None
        return "ok", features if isinstance(features, dict) else {}

    def fetch(self, rxcui: str) -> DrugLookup:
        status, payload = self._get_json(_PROPERTIES_PATH.format(rxcui=quote(rxcui, safe="")))
        if status != "ok":
            return DrugLookup(rxcui=rxcui, status=status)
        if not isinstance(payload, dict):
            return DrugLookup(rxcui=rxcui, status="error")

        properties = payload.get("properties")
        name = properties.get("name") if isinstance(properties, dict) else None
        if name is None or name == "":
            # RxNav answers unknown RXCUIs with 200 and an empty body.
            return DrugLookup(rxcui=rxcui, status="not_found")
        if not isinstance(name, str):
            logger.warning("rxnorm_malformed_properties", rxcui=rxcui)
            return DrugLookup(rxcui=rxcui, status="error")

        status, features = self._definitional_features(rxcui)
        if status != "ok":
            # A half-filled record would overwrite good cached attributes.
            return DrugLookup(rxcui=rxcui, status="rate_limited" if status == "rate_limited" else "error")

        try:
            record = DrugPayload(
                name=name,
                ingredient_base_names=extract_ingredient_base_names(features),
                dosage_forms=extract_dosage_forms(features),
            )
        except ValidationError as exc:
            logger.warning("rxnorm_malformed_record", rxcui=rxcui, error=str(exc))
            return DrugLookup(rxcui=rxcui, status="error")
        return DrugLookup(rxcui=rxcui, status="ok", record=record)

    def search(self, term: str, limit: int | None = None) -> DrugSearchResult:
        limit = limit or settings.rxnorm.search_limit
        status, payload = self._get_json(_DRUGS_PATH, {"name": term})
        if status == "not_found":
            return DrugSearchResult(term=term, limit=limit)
        if status != "ok":
            return DrugSearchResult(term=term, limit=limit, status=status)
        if not isinstance(payload, dict):
            return DrugSearchResult(term=term, limit=limit, status="error")

        drug_group = payload.get("drugGroup")
        groups = _as_list(drug_group.get("conceptGroup")) if isinstance(drug_group, dict) else []
        branded = next(
            (group for group in groups if isinstance(group, dict) and group.get("tty") == _BRANDED_DRUG_TTY),
            {},
        )
        concepts = [
            concept
            for concept in _as_list(branded.get("conceptProperties"))
            if isinstance(concept, dict)
            and isinstance(concept.get("rxcui"), (str, int))
            and isinstance(concept.get("name"), str)
            and concept.get("rxcui") != ""
        ][:limit]

        hits: list[DrugSearchHit] = []
        for concept in concepts:
            rxcui = str(concept["rxcui"])
            feature_status, features = self._definitional_features(rxcui)
            if feature_status != "ok":
                logger.warning("rxnorm_enrich_failed", rxcui=rxcui, status=feature_status)
            try:
                hits.append(
                    DrugSearchHit(
                        rxcui=rxcui,
                        name=concept["name"],
                        ingredient_base_names=extract_ingredient_base_names(features),
                        dosage_forms=extract_dosage_forms(features),
                    )
                )
            except ValidationError as exc:
                logger.warning("rxnorm_malformed_hit", rxcui=rxcui, error=str(exc))
        return DrugSearchResult(term=term, limit=limit, drugs=hits)
