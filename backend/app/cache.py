from __future__ import annotations

import json

from redis import Redis
from redis.exceptions import RedisError

from app.config.settings import settings
from app.schemas.drug import DrugSearchResult
from app.utils.logging import get_logger

logger = get_logger(__name__)


def _get_client() -> Redis:
    return Redis.from_url(settings.redis_url)


def search_cache_key(term: str, limit: int) -> str:
    return f"rxnorm:search:{term}:{limit}"


def get_search_result(cache_key: str) -> DrugSearchResult | None:
    try:
        client = _get_client()
        raw = client.get(cache_key)
    except RedisError as exc:
        logger.warning("search_cache_read_failed", key=cache_key, error=str(exc))
        return None

    if not raw:
        return None

    try:
        payload = json.loads(raw)
        return DrugSearchResult(**payload)
    except (json.JSONDecodeError, TypeError, ValueError):
        return None


def set_search_result(cache_key: str, result: DrugSearchResult, ttl_seconds: int) -> None:
    try:
        client = _get_client()
        client.setex(cache_key, ttl_seconds, result.model_dump_json())
    except RedisError as exc:
        logger.warning("search_cache_write_failed", key=cache_key, error=str(exc))


def delete_search_result(cache_key: str) -> bool:
    try:
        client = _get_client()
        return bool(client.delete(cache_key))
    except RedisError as exc:
        logger.warning("search_cache_delete_failed", key=cache_key, error=str(exc))
        return False
