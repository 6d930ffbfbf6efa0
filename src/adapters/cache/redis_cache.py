"""
Redis-backed cache invalidation target.

Application caches store entries under ``<cacheName>::<key>``; the sync worker
only ever evicts single entries or clears a whole cache.
"""
from contextlib import contextmanager
from typing import Iterator

import redis

from src.domain.errors import CapacityError, TransientIOError
from src.utils.logging import configure_logging


class RedisCacheInvalidator:
    """
    Narrow ``evict`` / ``clear`` interface over a Redis client.

    Redis timeouts surface as TransientIOError and an unreachable server as
    CapacityError, so callers can schedule a retry either way.
    """

    def __init__(self, client: redis.Redis, scan_count: int = 500):
        self.client = client
        self.scan_count = scan_count
        self.log = configure_logging("redis_cache")

    @classmethod
    def from_url(cls, url: str, timeout_seconds: float = 2.0) -> "RedisCacheInvalidator":
        client = redis.Redis.from_url(
            url,
            socket_timeout=timeout_seconds,
            socket_connect_timeout=timeout_seconds,
        )
        return cls(client)

    @staticmethod
    def entry_key(cache_name: str, key: str) -> str:
        return f"{cache_name}::{key}"

    def evict(self, cache_name: str, key: str) -> bool:
        """Remove one entry. Returns True when an entry existed."""
        full_key = self.entry_key(cache_name, key)
        with _translate_errors(cache_name):
            removed = self.client.delete(full_key)
        self.log.debug("Evicted cache entry", extra={"cache": cache_name, "key": key, "removed": removed})
        return bool(removed)

    def clear(self, cache_name: str) -> int:
        """Remove every entry of a cache; returns the number of keys deleted."""
        deleted = 0
        batch = []
        with _translate_errors(cache_name):
            for key in self.client.scan_iter(match=self.entry_key(cache_name, "*"), count=self.scan_count):
                batch.append(key)
                if len(batch) >= self.scan_count:
                    deleted += self.client.delete(*batch)
                    batch = []
            if batch:
                deleted += self.client.delete(*batch)
        self.log.info("Cleared cache", extra={"cache": cache_name, "deleted": deleted})
        return deleted

    def ping(self) -> bool:
        try:
            return bool(self.client.ping())
        except redis.exceptions.RedisError:
            return False


@contextmanager
def _translate_errors(cache_name: str) -> Iterator[None]:
    try:
        yield
    except redis.exceptions.TimeoutError as exc:
        raise TransientIOError(f"Redis timeout on cache {cache_name}: {exc}") from exc
    except redis.exceptions.ConnectionError as exc:
        raise CapacityError(f"Redis unavailable for cache {cache_name}: {exc}") from exc
    except redis.exceptions.RedisError as exc:
        raise TransientIOError(f"Redis error on cache {cache_name}: {exc}") from exc
