"""Read-through cache in front of the ledger store.

Purely an optimisation: every failure is logged and reported as a miss, and
nothing read from here is ever used to authorise a state transition.
"""
from typing import Optional, Type, TypeVar

import redis
import structlog
from pydantic import BaseModel

logger = structlog.get_logger(component="cache")

ModelT = TypeVar("ModelT", bound=BaseModel)


def order_key(order_id: str) -> str:
    return f"order:{order_id}"


def payment_key(payment_id: str) -> str:
    return f"payment:{payment_id}"


class Cache:

    def __init__(self, client: Optional[redis.Redis] = None, default_ttl: int = 600):
        self._client = client
        self._default_ttl = default_ttl

    @classmethod
    def from_url(cls, url: Optional[str], default_ttl: int = 600) -> "Cache":
        if not url:
            logger.warning("cache_disabled", reason="REDIS_URL not set")
            return cls(None, default_ttl)
        return cls(redis.Redis.from_url(url, decode_responses=True), default_ttl)

    @property
    def enabled(self) -> bool:
        return self._client is not None

    def get(self, key: str) -> Optional[str]:
        if self._client is None:
            return None
        try:
            return self._client.get(key)
        except redis.RedisError as e:
            logger.warning("cache_get_failed", key=key, error=str(e))
            return None

    def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        if self._client is None:
            return
        try:
            self._client.setex(key, ttl_seconds or self._default_ttl, value)
        except redis.RedisError as e:
            logger.warning("cache_set_failed", key=key, error=str(e))

    def delete(self, key_or_pattern: str) -> None:
        if self._client is None:
            return
        try:
            if any(ch in key_or_pattern for ch in "*?["):
                keys = list(self._client.scan_iter(match=key_or_pattern))
                if keys:
                    self._client.delete(*keys)
            else:
                self._client.delete(key_or_pattern)
        except redis.RedisError as e:
            logger.warning("cache_delete_failed", key=key_or_pattern, error=str(e))

    def get_model(self, key: str, model: Type[ModelT]) -> Optional[ModelT]:
        cached = self.get(key)
        if not cached:
            return None
        try:
            return model.model_validate_json(cached)
        except ValueError as e:
            logger.warning("cache_entry_invalid", key=key, error=str(e))
            self.delete(key)
            return None

    def set_model(self, key: str, value: BaseModel, ttl_seconds: Optional[int] = None) -> None:
        self.set(key, value.model_dump_json(), ttl_seconds)

    def ping(self) -> bool:
        if self._client is None:
            return True
        try:
            return bool(self._client.ping())
        except redis.RedisError:
            return False

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
