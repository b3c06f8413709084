from __future__ import annotations

from app.cache import delete_search_result, get_search_result, search_cache_key, set_search_result
from app.config.settings import settings
from app.providers.rxnorm import RxNormSource
from app.schemas.drug import DrugSearchResult
from app.utils.logging import get_logger

logger = get_logger(__name__)


def normalize_term(term: str) -> str:
    return " ".join(term.split()).casefold()


def search_drugs(
    source: RxNormSource, term: str, limit: int | None = None
) -> DrugSearchResult:
    """Search RxNorm through a fixed-TTL Redis cache.

    Only successful results are cached; failures are retried on the next call.
    """
    normalized = normalize_term(term)
    limit = limit or settings.rxnorm.search_limit
    cache_key = search_cache_key(normalized, limit)
    cached = get_search_result(cache_key)
    if cached:
        logger.debug("search_cache_hit", key=cache_key)
        return cached

    logger.debug("search_cache_miss", key=cache_key)
    result = source.search(normalized, limit)
    if result.status == "ok":
        set_search_result(cache_key, result, settings.search_cache_ttl_seconds)
    return result


def clear_search_cache(term: str, limit: int | None = None) -> bool:
    limit = limit or settings.rxnorm.search_limit
    return delete_search_result(search_cache_key(normalize_term(term), limit))
