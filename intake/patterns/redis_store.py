"""Redis-backed supplier pattern store.

Each supplier owns one hash (``<prefix>:<supplier_id>``) mapping field names to
JSON-encoded patterns. HSET on a single field is atomic, which gives
last-writer-wins semantics per (supplier, field) without extra locking.

Based on redis-py:
https://redis.readthedocs.io/en/stable/
"""

import logging

import redis
from pydantic import ValidationError
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from intake.extraction.schema import FieldName
from intake.patterns.store import SupplierPattern
from intake.shared.config import Settings

logger = logging.getLogger(__name__)

_RETRY = retry(
    retry=retry_if_exception_type((redis.ConnectionError, redis.TimeoutError)),
    stop=stop_after_attempt(3),
    wait=wait_exponential_jitter(initial=0.5, max=5),
    reraise=True,
)


class RedisPatternStore:
    """Pattern store shared across workers through Redis."""

    def __init__(self, settings: Settings, client: redis.Redis | None = None) -> None:
        """Initialize Redis pattern store.

        Args:
            settings: Application settings with redis_url and redis_key_prefix
            client: Pre-built client (tests); created from redis_url when omitted
        """
        self.settings = settings
        self._prefix = settings.redis_key_prefix
        self._client = client or redis.Redis.from_url(settings.redis_url, decode_responses=True)

    def _key(self, supplier_id: str) -> str:
        return f"{self._prefix}:{supplier_id}"

    @staticmethod
    def _decode(raw: str | bytes) -> SupplierPattern | None:
        try:
            return SupplierPattern.model_validate_json(raw)
        except ValidationError as e:
            logger.warning(f"Discarding unreadable stored pattern: {e}")
            return None

    @_RETRY
    def get(self, supplier_id: str, field_name: FieldName) -> SupplierPattern | None:
        raw = self._client.hget(self._key(supplier_id), FieldName(field_name).value)
        if raw is None:
            return None
        return self._decode(raw)

    @_RETRY
    def get_all(self, supplier_id: str) -> list[SupplierPattern]:
        entries = self._client.hgetall(self._key(supplier_id))
        patterns = [p for p in (self._decode(raw) for raw in entries.values()) if p is not None]
        return sorted(patterns, key=lambda p: p.field_name.value)

    @_RETRY
    def upsert(self, supplier_id: str, field_name: FieldName, pattern_text: str) -> SupplierPattern:
        field = FieldName(field_name)
        stored = SupplierPattern(supplier_id=supplier_id, field_name=field, pattern=pattern_text)
        self._client.hset(self._key(supplier_id), field.value, stored.model_dump_json())
        logger.debug(f"Stored pattern in Redis for supplier {supplier_id}, field {field.value}")
        return stored

    def is_available(self) -> bool:
        """Check if the Redis server answers.

        Returns:
            True if PING succeeds
        """
        try:
            return bool(self._client.ping())
        except redis.RedisError:
            return False
